"""
Mock market data source for offline development
"""
import asyncio
import random
import time
from typing import Dict, List, Optional

from .models import Candle

INTERVAL_SECONDS = {
    "1m": 60, "3m": 180, "5m": 300, "15m": 900, "30m": 1800,
    "1h": 3600, "2h": 7200, "4h": 14400, "6h": 21600, "8h": 28800,
    "12h": 43200, "1d": 86400, "3d": 259200, "1w": 604800,
}


class MockMarketData:
    """Random-walk candles with a slow drift, one price path per symbol"""

    def __init__(self, base_price: float = 60000.0, seed: Optional[int] = None):
        self.base_price = base_price
        self.random = random.Random(seed)
        self.last_price: Dict[str, float] = {}

    async def fetch_candles(self, symbol: str, interval: str, limit: int = 300) -> List[Candle]:
        await asyncio.sleep(0.05)  # Simulate API delay

        step = INTERVAL_SECONDS.get(interval, 3600)
        now = int(time.time()) // step * step
        price = self.last_price.get(symbol, self.base_price)

        trend_direction = self.random.choice([1, -1])
        trend_strength = self.random.uniform(0.0001, 0.0005)

        candles = []
        for i in range(limit):
            open_price = price
            close_price = open_price * (1 + trend_direction * trend_strength + self.random.uniform(-0.004, 0.004))
            high_price = max(open_price, close_price) * (1 + self.random.uniform(0, 0.002))
            low_price = min(open_price, close_price) * (1 - self.random.uniform(0, 0.002))
            candles.append(Candle(
                time=now - step * (limit - 1 - i),
                open=round(open_price, 2),
                high=round(high_price, 2),
                low=round(low_price, 2),
                close=round(close_price, 2),
                volume=round(self.random.uniform(100, 1000), 3),
            ))
            price = close_price

        self.last_price[symbol] = candles[-1].close if candles else price
        return candles

    async def fetch_current_price(self, symbol: str) -> float:
        await asyncio.sleep(0.01)
        return self.last_price.get(symbol, self.base_price)
