# tests/conftest.py
from typing import List, Optional

import pytest

from paperbot.bot_manager import BotManager
from paperbot.errors import MarketDataError
from paperbot.models import BotConfig, Candle, MarketAnalysis, Position, TickResult
from paperbot.store import InMemoryStore


def build_flat_candles(count: int = 300, price: float = 100.0, volume: float = 1000.0) -> List[Candle]:
    return [
        Candle(time=i * 3600, open=price, high=price, low=price, close=price, volume=volume)
        for i in range(count)
    ]


def build_uptrend_breakout(start: float = 1000.0) -> List[Candle]:
    """Steady uptrend, a five candle pullback, then a high volume engulfing breakout"""
    candles = []
    prev_close = start
    for i in range(494):
        open_price = prev_close
        close = open_price + 1
        candles.append(Candle(time=i * 3600, open=open_price, high=close + 0.5, low=open_price - 0.5,
                              close=close, volume=1000))
        prev_close = close
    for i in range(494, 499):
        open_price = prev_close
        close = open_price - 40
        candles.append(Candle(time=i * 3600, open=open_price, high=open_price + 0.5, low=close - 0.5,
                              close=close, volume=1000))
        prev_close = close
    open_price = prev_close - 1
    close = prev_close + 400
    candles.append(Candle(time=499 * 3600, open=open_price, high=close + 1, low=open_price - 1,
                          close=close, volume=5000))
    return candles


class FakeMarketData:
    """Serves a fixed candle list; raises when `error` is set"""

    def __init__(self, candles: Optional[List[Candle]] = None, error: Optional[Exception] = None):
        self.candles = candles or []
        self.error = error
        self.calls = 0

    async def fetch_candles(self, symbol: str, interval: str, limit: int = 300) -> List[Candle]:
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.candles)

    async def fetch_current_price(self, symbol: str) -> float:
        if self.error:
            raise self.error
        if not self.candles:
            raise MarketDataError("no price")
        return self.candles[-1].close


@pytest.fixture
def flat_candles():
    return build_flat_candles()


@pytest.fixture
def uptrend_candles():
    return build_uptrend_breakout()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def config():
    return BotConfig(id="acct-1", is_active=True)


@pytest.fixture
def make_manager(store, config):
    """Factory: BotManager over the in-memory store with the given candles"""
    def _make(candles=None, error=None, **kwargs):
        store.create_account(config)
        return BotManager(store, FakeMarketData(candles, error), **kwargs)
    return _make


@pytest.fixture
def tick_result(config):
    def _make(balance: float = 9000.0):
        return TickResult(account_id=config.id,
                          config=config.model_copy(update={"current_balance": balance}))
    return _make


@pytest.fixture
def long_position(config):
    """Long 50 @ 100 with 5x leverage and 1000 margin"""
    def _make(**overrides):
        fields = dict(account_id=config.id, side="long", entry_price=100.0, quantity=50.0,
                      leverage=5, margin_used=1000.0, stop_loss=99.0, take_profit=110.0)
        fields.update(overrides)
        return Position(**fields)
    return _make


@pytest.fixture
def analysis():
    def _make(**overrides):
        fields = dict(price=100.0, bias="neutral", rsi=50.0, macd_histogram=0.0, atr=0.1)
        fields.update(overrides)
        return MarketAnalysis(**fields)
    return _make


@pytest.fixture
def fake_market():
    def _make(candles=None, error=None):
        return FakeMarketData(candles, error)
    return _make
