"""
Named strategy rule-sets

A strategy is a fixed tuple of directional keys, the number of keys required
for an entry, filter thresholds and guardrail thresholds. Accounts refer to a
rule-set by name through BotConfig.strategy.

Also holds the multi-timeframe view: hourly trend, average daily range and
5-minute pullback entries.
"""
import logging
from typing import Dict, List, Sequence

from .indicators import ema, atr
from .models import (
    ADRAnalysis, Candle, PullbackSignal, StrategyRules, TimeframeAnalysis, TrendResult,
)

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY = "triple_confirmation_v1"

RULESETS: Dict[str, StrategyRules] = {
    "triple_confirmation_v1": StrategyRules(name="triple_confirmation", version=1),
    # Later tuning: looser RSI guardrail, stricter reward target
    "triple_confirmation_v2": StrategyRules(
        name="triple_confirmation",
        version=2,
        rsi_guard_overbought=80.0,
        rsi_guard_oversold=20.0,
        min_risk_reward=2.5,
    ),
}


def get_rules(name: str) -> StrategyRules:
    """Look up a rule-set, falling back to the canonical one"""
    rules = RULESETS.get(name)
    if rules is None:
        logger.warning(f"⚠️  Unknown strategy '{name}', using {DEFAULT_STRATEGY}")
        return RULESETS[DEFAULT_STRATEGY]
    return rules


def available_strategies() -> List[str]:
    return sorted(RULESETS)


# -- multi-timeframe trend & volatility --

def analyze_h1_trend(candles: Sequence[Candle]) -> TrendResult:
    """Hourly trend: price against EMA200"""
    closes = [c.close for c in candles]
    ema50, ema200 = ema(closes, 50), ema(closes, 200)
    price = closes[-1]
    return TrendResult(
        trend="Bullish" if price > ema200[-1] else "Bearish",
        price=price,
        ema50=float(ema50[-1]),
        ema200=float(ema200[-1]),
    )


def calculate_adr(daily: Sequence[Candle], period: int = 14) -> ADRAnalysis:
    """Average daily range of the completed days and today's share of it"""
    lookback = min(period, len(daily) - 1)
    ranges = [c.high - c.low for c in daily[len(daily) - 1 - lookback:len(daily) - 1]]
    adr = sum(ranges) / lookback if lookback > 0 else 0.0

    today = daily[-1]
    move = today.high - today.low
    used = move / adr * 100 if adr > 0 else 0.0

    if used >= 100:
        status, label = "Warning", "Extended move - expect a pullback or consolidation"
    elif used >= 80:
        status, label = "Extended", "Approaching ADR - be careful"
    else:
        status, label = "Normal", "Normal range"
    return ADRAnalysis(adr=adr, current_daily_move=move, adr_used_pct=used,
                       status=status, status_label=label)


def daily_atr(daily: Sequence[Candle], period: int = 14) -> float:
    values = atr([c.high for c in daily], [c.low for c in daily], [c.close for c in daily], period)
    return float(values[-1])


def detect_pullback(m5: Sequence[Candle], trend: TrendResult, atr_value: float,
                    atr_fraction: float = 0.3, lookback: int = 60) -> PullbackSignal:
    """Counter-move against the hourly trend of at least atr_fraction x daily ATR
    from the swing extreme of the last `lookback` bars"""
    closes = [c.close for c in m5]
    last = len(closes) - 1
    recent = closes[last - min(lookback, last):]
    price = closes[last]
    threshold = atr_value * atr_fraction

    if trend.trend == "Bullish":
        drop = max(recent) - price
        if drop >= threshold:
            return PullbackSignal(
                active=True, type="pullback_long", move=drop, threshold=threshold,
                label=f"Pullback Entry LONG - drop ${drop:.0f} >= threshold ${threshold:.0f}",
            )
    else:
        rise = price - min(recent)
        if rise >= threshold:
            return PullbackSignal(
                active=True, type="pullback_short", move=rise, threshold=threshold,
                label=f"Pullback Entry SHORT - rise ${rise:.0f} >= threshold ${threshold:.0f}",
            )
    return PullbackSignal(threshold=threshold)


def run_timeframe_analysis(h1: Sequence[Candle], m5: Sequence[Candle],
                           daily: Sequence[Candle]) -> TimeframeAnalysis:
    """Trade only pullbacks in the hourly trend direction, never after the daily range is spent"""
    trend = analyze_h1_trend(h1)
    adr = calculate_adr(daily)
    atr_value = daily_atr(daily)
    pullback = detect_pullback(m5, trend, atr_value)

    signal = "WAIT"
    if pullback.active:
        signal = "BUY" if trend.trend == "Bullish" else "SELL"
    if adr.status == "Warning":
        signal = "WAIT"

    if signal == "BUY":
        label = "🟢 High probability - LONG entry"
    elif signal == "SELL":
        label = "🔴 High probability - SHORT entry"
    elif adr.status == "Warning":
        label = "⚠️ ADR exhausted - wait"
    else:
        label = "Wait for setup"

    return TimeframeAnalysis(h1_trend=trend, adr=adr, daily_atr=atr_value, pullback=pullback,
                             m5_signal=signal, overall_label=label)
