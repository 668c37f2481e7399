"""
Service settings read from the environment
"""
import os

from pydantic import BaseModel

from .market_data import BINANCE_URL


class Settings(BaseModel):
    db_path: str = ""
    market: str = "binance"
    binance_url: str = BINANCE_URL
    http_timeout: float = 10.0
    kline_limit: int = 300
    tick_seconds: int = 60
    default_account: str = "default"
    firebase_credentials_path: str = ""
    log_level: str = "INFO"
    port: int = 5000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=os.getenv("PAPERBOT_DB_PATH", ""),
            market=os.getenv("PAPERBOT_MARKET", "binance"),
            binance_url=os.getenv("BINANCE_API_URL", BINANCE_URL),
            http_timeout=float(os.getenv("PAPERBOT_HTTP_TIMEOUT", "10")),
            kline_limit=int(os.getenv("PAPERBOT_KLINE_LIMIT", "300")),
            tick_seconds=int(os.getenv("PAPERBOT_TICK_SECONDS", "60")),
            default_account=os.getenv("PAPERBOT_ACCOUNT", "default"),
            firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH", ""),
            log_level=os.getenv("PAPERBOT_LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "5000")),
        )
