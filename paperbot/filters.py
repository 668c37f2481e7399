"""
Context and guardrail filters layered on top of the indicator votes
"""
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .models import Candle, CandlePattern, DirectionalFlags, SupportResistance, Direction


def _trailing_mean(values: np.ndarray, lookback: int) -> Optional[float]:
    """Mean of the `lookback` values before the latest one"""
    last = values.size - 1
    window = values[max(0, last - lookback):last]
    if window.size == 0:
        return None
    return float(window.mean())


def is_chop_zone(price: float, ema50: float, ema200: float, ratio: float = 0.2) -> bool:
    """Price trapped around the midpoint of EMA50 and EMA200"""
    if math.isnan(ema50) or math.isnan(ema200):
        return False
    midpoint = (ema50 + ema200) / 2
    spread = abs(ema50 - ema200)
    return spread > 0 and abs(price - midpoint) < spread * ratio


def is_low_volume(volumes: Sequence[float], lookback: int = 50, ratio: float = 0.4) -> bool:
    values = np.asarray(volumes, dtype=float)
    average = _trailing_mean(values, lookback)
    if average is None:
        return False
    return values[-1] < average * ratio


def detect_volume_spike(volumes: Sequence[float], lookback: int = 20, ratio: float = 1.5) -> bool:
    values = np.asarray(volumes, dtype=float)
    average = _trailing_mean(values, lookback)
    if average is None:
        return False
    return values[-1] > average * ratio


def _local_extrema(values: np.ndarray, lowest: bool) -> List[float]:
    """Points strictly beyond their two neighbours on each side"""
    found = []
    for i in range(2, values.size - 2):
        neighbours = (values[i - 2], values[i - 1], values[i + 1], values[i + 2])
        if lowest and all(values[i] < n for n in neighbours):
            found.append(float(values[i]))
        elif not lowest and all(values[i] > n for n in neighbours):
            found.append(float(values[i]))
    return found


def find_support_resistance(highs: Sequence[float], lows: Sequence[float],
                            closes: Sequence[float], lookback: int = 50) -> SupportResistance:
    highs = np.asarray(highs, dtype=float)
    lows = np.asarray(lows, dtype=float)
    if len(closes) == 0:
        return SupportResistance()

    last = len(closes) - 1
    price = float(closes[last])
    start = max(0, last - lookback)
    supports = _local_extrema(lows[start:last + 1], lowest=True)
    resistances = _local_extrema(highs[start:last + 1], lowest=False)

    tolerance = price * 0.005
    double_bottom = any(
        abs(first - second) < tolerance and price > first
        for first, second in zip(supports, supports[1:])
    )

    failed_breakout = False
    if resistances:
        nearest = min(resistances, key=lambda r: abs(r - price))
        recent_high = float(highs[max(0, last - 5):last + 1].max())
        failed_breakout = recent_high >= nearest * 0.997 and price < nearest

    return SupportResistance(
        supports=supports,
        resistances=resistances,
        double_bottom=double_bottom,
        failed_breakout=failed_breakout,
        near_support=any(s <= price <= s * 1.01 for s in supports),
        near_resistance=any(r * 0.99 <= price <= r for r in resistances),
    )


def detect_candlestick_pattern(candles: Sequence[Candle]) -> CandlePattern:
    """Reversal pattern on the latest candle(s)"""
    if len(candles) < 3:
        return CandlePattern()

    c, p, pp = candles[-1], candles[-2], candles[-3]
    body = abs(c.close - c.open)
    prev_body = abs(p.close - p.open)

    if c.high - c.low > 0:
        lower_wick = min(c.open, c.close) - c.low
        upper_wick = c.high - max(c.open, c.close)
        if lower_wick >= body * 2 and upper_wick < body * 0.5:
            return CandlePattern(bullish=True, pattern="Hammer")
        if upper_wick >= body * 2 and lower_wick < body * 0.5:
            return CandlePattern(bearish=True, pattern="Shooting Star")

    if prev_body > 0:
        if p.close < p.open and c.close > c.open and c.close > p.open and c.open < p.close:
            return CandlePattern(bullish=True, pattern="Bullish Engulfing")
        if p.close > p.open and c.close < c.open and c.close < p.open and c.open > p.close:
            return CandlePattern(bearish=True, pattern="Bearish Engulfing")

    first_body = abs(pp.close - pp.open)
    if pp.close < pp.open and prev_body < first_body * 0.3 and c.close > c.open and body > first_body * 0.5:
        return CandlePattern(bullish=True, pattern="Morning Star")
    if pp.close > pp.open and prev_body < first_body * 0.3 and c.close < c.open and body > first_body * 0.5:
        return CandlePattern(bearish=True, pattern="Evening Star")

    return CandlePattern()


def detect_rsi_divergence(closes: Sequence[float], rsi_values: Sequence[float], lookback: int = 20,
                          oversold: float = 40.0, overbought: float = 60.0) -> DirectionalFlags:
    """Price makes a new extreme that RSI does not confirm"""
    last = len(closes) - 1
    start = max(0, last - lookback)
    bullish = bearish = False
    # NaN RSI compares False, so warm-up candles never diverge
    for i in range(start + 2, last - 1):
        if closes[last] < closes[i] and rsi_values[last] > rsi_values[i] and rsi_values[i] < oversold:
            bullish = True
        if closes[last] > closes[i] and rsi_values[last] < rsi_values[i] and rsi_values[i] > overbought:
            bearish = True
    return DirectionalFlags(bullish=bullish, bearish=bearish)


def macd_crossover(macd_line: Sequence[float], signal_line: Sequence[float]) -> Tuple[bool, bool]:
    """(bullish cross, bearish cross) between the last two candles"""
    if len(macd_line) < 2:
        return False, False
    prev_above = macd_line[-2] > signal_line[-2]
    curr_above = macd_line[-1] > signal_line[-1]
    return (not prev_above and curr_above), (prev_above and not curr_above)


def bollinger_side(price: float, upper: float, lower: float) -> str:
    if price > upper:
        return "above"
    if price < lower:
        return "below"
    return "inside"


def rsi_guardrail(bias: Direction, rsi: Optional[float], overbought: float = 75.0,
                  oversold: float = 25.0) -> Optional[str]:
    """Veto reason when RSI is too stretched to enter in the bias direction"""
    if rsi is None:
        return None
    if bias == "bullish" and rsi > overbought:
        return f"⚠ RSI guardrail: RSI > {overbought:g}, blocking long"
    if bias == "bearish" and rsi < oversold:
        return f"⚠ RSI guardrail: RSI < {oversold:g}, blocking short"
    return None
