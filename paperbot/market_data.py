"""
Binance public market data client (klines and ticker price)
"""
import logging
from typing import List, Optional

import httpx

from .errors import MarketDataError
from .models import Candle

logger = logging.getLogger(__name__)

BINANCE_URL = "https://data-api.binance.vision/api/v3"


class BinanceMarketData:
    """Async client for the public Binance spot REST API"""

    def __init__(self, base_url: str = BINANCE_URL, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self):
        await self.client.aclose()

    async def _get(self, path: str, params: dict):
        url = f"{self.base_url}/{path}"
        try:
            response = await self.client.get(url, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"Market data request to {path} failed: {e}")
            raise MarketDataError(f"Binance request failed: {e}") from e

        if response.status_code != 200:
            raise MarketDataError(f"Binance API error: {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise MarketDataError("Binance returned invalid JSON") from e

    async def fetch_candles(self, symbol: str, interval: str, limit: int = 300) -> List[Candle]:
        """Fetch the latest klines, oldest first"""
        data = await self._get("klines", {"symbol": symbol, "interval": interval, "limit": limit})
        try:
            return [
                Candle(
                    time=int(k[0]) // 1000,
                    open=float(k[1]),
                    high=float(k[2]),
                    low=float(k[3]),
                    close=float(k[4]),
                    volume=float(k[5]),
                )
                for k in data
            ]
        except (TypeError, ValueError, IndexError) as e:
            raise MarketDataError(f"Malformed kline payload for {symbol}") from e

    async def fetch_current_price(self, symbol: str) -> float:
        data = await self._get("ticker/price", {"symbol": symbol})
        try:
            return float(data["price"])
        except (TypeError, KeyError, ValueError) as e:
            raise MarketDataError(f"Malformed ticker payload for {symbol}") from e
