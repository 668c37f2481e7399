"""
Technical indicator library

Every function takes equal-length arrays and returns an array of the same
length. Indices before an indicator has enough history hold NaN; EMA based
series (EMA, MACD, ATR, ADX, OBV, SAR, VWAP) seed from the first value and
have no warm-up gap.
"""
from typing import Dict, Sequence, Callable

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .models import IndicatorSet


def _as_array(data: Sequence[float]) -> np.ndarray:
    return np.asarray(data, dtype=float)


def _rolling(values: np.ndarray, period: int, func: Callable) -> np.ndarray:
    """Apply func over each trailing window; NaN before the first full window"""
    out = np.full(values.size, np.nan)
    if period <= 0 or values.size < period:
        return out
    windows = sliding_window_view(values, period)
    out[period - 1:] = func(windows, axis=1)
    return out


def ema(data: Sequence[float], period: int) -> np.ndarray:
    """Exponential moving average seeded with the first data point"""
    values = _as_array(data)
    out = np.empty(values.size)
    if values.size == 0:
        return out
    k = 2 / (period + 1)
    out[0] = values[0]
    for i in range(1, values.size):
        out[i] = values[i] * k + out[i - 1] * (1 - k)
    return out


def sma(data: Sequence[float], period: int) -> np.ndarray:
    return _rolling(_as_array(data), period, np.mean)


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    return 100 - 100 / (1 + avg_gain / avg_loss)


def rsi(closes: Sequence[float], period: int = 14) -> np.ndarray:
    """Wilder's RSI. The first `period` entries are NaN."""
    values = _as_array(closes)
    out = np.full(values.size, np.nan)
    if values.size <= period:
        return out

    deltas = np.diff(values)
    avg_gain = float(np.clip(deltas[:period], 0, None).sum()) / period
    avg_loss = float(np.clip(-deltas[:period], 0, None).sum()) / period
    out[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period + 1, values.size):
        change = deltas[i - 1]
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period
        out[i] = _rsi_value(avg_gain, avg_loss)
    return out


def macd(closes: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> Dict[str, np.ndarray]:
    macd_line = ema(closes, fast) - ema(closes, slow)
    signal_line = ema(macd_line, signal)
    return {
        "line": macd_line,
        "signal": signal_line,
        "histogram": macd_line - signal_line,
    }


def bollinger_bands(closes: Sequence[float], period: int = 20, std_dev: float = 2.0) -> Dict[str, np.ndarray]:
    """Bollinger bands over a population standard deviation"""
    values = _as_array(closes)
    middle = _rolling(values, period, np.mean)
    std = _rolling(values, period, np.std)
    return {
        "upper": middle + std_dev * std,
        "middle": middle,
        "lower": middle - std_dev * std,
    }


def _range_position(highs: np.ndarray, lows: np.ndarray, period: int):
    highest = _rolling(highs, period, np.max)
    lowest = _rolling(lows, period, np.min)
    return highest, lowest, highest - lowest


def stochastic(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
               period: int = 14, smooth_k: int = 3, smooth_d: int = 3) -> Dict[str, np.ndarray]:
    closes = _as_array(closes)
    _, lowest, span = _range_position(_as_array(highs), _as_array(lows), period)
    with np.errstate(divide="ignore", invalid="ignore"):
        raw_k = np.where(span == 0, 50.0, (closes - lowest) / span * 100)
    k = sma(raw_k, smooth_k)
    return {"k": k, "d": sma(k, smooth_d)}


def true_range(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float]) -> np.ndarray:
    highs, lows, closes = _as_array(highs), _as_array(lows), _as_array(closes)
    tr = highs - lows
    if closes.size > 1:
        prev_close = closes[:-1]
        tr[1:] = np.maximum.reduce([
            highs[1:] - lows[1:],
            np.abs(highs[1:] - prev_close),
            np.abs(lows[1:] - prev_close),
        ])
    return tr


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> np.ndarray:
    return ema(true_range(highs, lows, closes), period)


def obv(closes: Sequence[float], volumes: Sequence[float]) -> np.ndarray:
    """On-balance volume starting at 0"""
    closes, volumes = _as_array(closes), _as_array(volumes)
    if closes.size == 0:
        return np.empty(0)
    direction = np.sign(np.diff(closes))
    return np.concatenate(([0.0], np.cumsum(direction * volumes[1:])))


def williams_r(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> np.ndarray:
    closes = _as_array(closes)
    highest, _, span = _range_position(_as_array(highs), _as_array(lows), period)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(span == 0, -50.0, (highest - closes) / span * -100)


def adx(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> Dict[str, np.ndarray]:
    """Average directional index with +DI/-DI"""
    highs, lows = _as_array(highs), _as_array(lows)
    if highs.size == 0:
        empty = np.empty(0)
        return {"adx": empty, "plus_di": empty.copy(), "minus_di": empty.copy()}

    up_move = np.diff(highs)
    down_move = -np.diff(lows)
    plus_dm = np.concatenate(([0.0], np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)))
    minus_dm = np.concatenate(([0.0], np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)))

    smoothed_tr = atr(highs, lows, closes, period)
    with np.errstate(divide="ignore", invalid="ignore"):
        plus_di = np.where(smoothed_tr != 0, ema(plus_dm, period) / smoothed_tr * 100, 0.0)
        minus_di = np.where(smoothed_tr != 0, ema(minus_dm, period) / smoothed_tr * 100, 0.0)
        di_sum = plus_di + minus_di
        dx = np.where(di_sum != 0, np.abs(plus_di - minus_di) / di_sum * 100, 0.0)

    return {"adx": ema(dx, period), "plus_di": plus_di, "minus_di": minus_di}


def parabolic_sar(highs: Sequence[float], lows: Sequence[float], step: float = 0.02, max_step: float = 0.2) -> np.ndarray:
    """Parabolic SAR, starting in an uptrend from the first low"""
    highs, lows = _as_array(highs), _as_array(lows)
    out = np.empty(highs.size)
    if highs.size == 0:
        return out

    out[0] = lows[0]
    uptrend = True
    extreme = highs[0]
    factor = step

    for i in range(1, highs.size):
        sar = out[i - 1] + factor * (extreme - out[i - 1])
        if uptrend:
            sar = min(sar, lows[i - 1], lows[i - 2] if i > 1 else lows[i - 1])
            if sar > lows[i]:
                uptrend = False
                sar, extreme, factor = extreme, lows[i], step
            elif highs[i] > extreme:
                extreme = highs[i]
                factor = min(factor + step, max_step)
        else:
            sar = max(sar, highs[i - 1], highs[i - 2] if i > 1 else highs[i - 1])
            if sar < highs[i]:
                uptrend = True
                sar, extreme, factor = extreme, highs[i], step
            elif lows[i] < extreme:
                extreme = lows[i]
                factor = min(factor + step, max_step)
        out[i] = sar
    return out


def cmf(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
        volumes: Sequence[float], period: int = 20) -> np.ndarray:
    """Chaikin money flow"""
    highs, lows, closes, volumes = map(_as_array, (highs, lows, closes, volumes))
    span = highs - lows
    with np.errstate(divide="ignore", invalid="ignore"):
        money_flow = np.where(span == 0, 0.0, ((closes - lows) - (highs - closes)) / span * volumes)
        flow_sum = _rolling(money_flow, period, np.sum)
        volume_sum = _rolling(volumes, period, np.sum)
        return np.where(volume_sum == 0, 0.0, flow_sum / volume_sum)


def vwap(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], volumes: Sequence[float]) -> np.ndarray:
    """Cumulative VWAP from the start of the series"""
    highs, lows, closes, volumes = map(_as_array, (highs, lows, closes, volumes))
    typical = (highs + lows + closes) / 3
    cum_volume = np.cumsum(volumes)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(cum_volume == 0, closes, np.cumsum(typical * volumes) / cum_volume)


def calculate_all(closes: Sequence[float], highs: Sequence[float], lows: Sequence[float],
                  volumes: Sequence[float]) -> IndicatorSet:
    """Compute the full indicator set used by the signal engine"""
    macd_values = macd(closes)
    bands = bollinger_bands(closes)
    stoch = stochastic(highs, lows, closes)
    directional = adx(highs, lows, closes)

    return IndicatorSet(
        ema50=ema(closes, 50),
        ema200=ema(closes, 200),
        sma20=sma(closes, 20),
        rsi=rsi(closes),
        macd_line=macd_values["line"],
        macd_signal=macd_values["signal"],
        macd_histogram=macd_values["histogram"],
        bb_upper=bands["upper"],
        bb_middle=bands["middle"],
        bb_lower=bands["lower"],
        stoch_k=stoch["k"],
        stoch_d=stoch["d"],
        atr=atr(highs, lows, closes),
        obv=obv(closes, volumes),
        williams_r=williams_r(highs, lows, closes),
        adx=directional["adx"],
        plus_di=directional["plus_di"],
        minus_di=directional["minus_di"],
        parabolic_sar=parabolic_sar(highs, lows),
        cmf=cmf(highs, lows, closes, volumes),
        vwap=vwap(highs, lows, closes, volumes),
    )
