"""
Signal engine for the paper futures bot
Turns a candle series into indicator votes and a gated entry decision
"""
import logging
import math
from typing import List, Optional

import numpy as np
import pandas as pd

from . import filters
from .indicators import calculate_all
from .models import (
    Candle, IndicatorSet, Signal, SignalAnalysis, MarketAnalysis, MarketContext,
    EntryConditions, StrategyRules, finite_or_none,
)
from .strategy import RULESETS, DEFAULT_STRATEGY

logger = logging.getLogger(__name__)


def _valid(value) -> bool:
    return value is not None and not math.isnan(value)


def vote_confidence(votes: int, total: int) -> int:
    """Share of the winning side in percent, halves rounded up; 50 with no votes"""
    if total <= 0:
        return 50
    return math.floor(votes / total * 100 + 0.5)


class SignalEngine:
    """Pure analysis: same candles and rules in, same result out"""

    def __init__(self):
        logger.info("🔧 Initializing Signal Engine...")

    def candles_frame(self, candles: List[Candle]) -> pd.DataFrame:
        return pd.DataFrame([c.model_dump() for c in candles],
                            columns=["time", "open", "high", "low", "close", "volume"])

    def calculate_indicators(self, candles: List[Candle]) -> IndicatorSet:
        """Calculate the full indicator set for a candle series"""
        df = self.candles_frame(candles)
        return calculate_all(
            df["close"].to_numpy(dtype=float),
            df["high"].to_numpy(dtype=float),
            df["low"].to_numpy(dtype=float),
            df["volume"].to_numpy(dtype=float),
        )

    def analyze_signals(self, ind: IndicatorSet, closes) -> SignalAnalysis:
        """Vote every indicator at the latest candle and aggregate the votes.

        Indicators still in warm-up (NaN) abstain. ATR is informational and
        always votes neutral.
        """
        closes = np.asarray(closes, dtype=float)
        if closes.size == 0:
            return SignalAnalysis()

        last = closes.size - 1
        price = closes[last]
        signals: List[Signal] = []

        def add(name: str, value: str, bullish: Optional[bool], description: str):
            vote = "buy" if bullish is True else "sell" if bullish is False else "neutral"
            signals.append(Signal(name=name, vote=vote, display_value=value, description=description))

        rsi = ind.rsi[last]
        if _valid(rsi):
            add("RSI", f"{rsi:.1f}",
                True if rsi < 30 else False if rsi > 70 else None,
                "Oversold (<30)" if rsi < 30 else "Overbought (>70)" if rsi > 70 else "Neutral")

        macd_val, macd_sig = ind.macd_line[last], ind.macd_signal[last]
        if _valid(macd_val) and _valid(macd_sig):
            cross_up = cross_down = False
            if last > 0:
                prev_val, prev_sig = ind.macd_line[last - 1], ind.macd_signal[last - 1]
                cross_up = prev_val <= prev_sig and macd_val > macd_sig
                cross_down = prev_val >= prev_sig and macd_val < macd_sig
            if cross_up:
                add("MACD", f"{macd_val:.2f}", True, "Bullish Cross ↑")
            elif cross_down:
                add("MACD", f"{macd_val:.2f}", False, "Bearish Cross ↓")
            else:
                above = macd_val > macd_sig
                add("MACD", f"{macd_val:.2f}", above, "Above signal" if above else "Below signal")

        ema50, ema200 = ind.ema50[last], ind.ema200[last]
        if _valid(ema50) and _valid(ema200):
            golden = ema50 > ema200
            add("EMA 50/200", f"{ema50:.0f}/{ema200:.0f}", golden,
                "Golden Cross" if golden else "Death Cross")

        bb_up, bb_low = ind.bb_upper[last], ind.bb_lower[last]
        if _valid(bb_up) and _valid(bb_low):
            width = bb_up - bb_low
            position = (price - bb_low) / width if width > 0 else 0.5
            add("Bollinger", f"{position * 100:.0f}%",
                True if position < 0.2 else False if position > 0.8 else None,
                "Near lower band" if position < 0.2 else "Near upper band" if position > 0.8 else "Mid band")

        stoch_k = ind.stoch_k[last]
        if _valid(stoch_k):
            add("Stochastic", f"{stoch_k:.1f}",
                True if stoch_k < 20 else False if stoch_k > 80 else None,
                "Oversold" if stoch_k < 20 else "Overbought" if stoch_k > 80 else "Neutral")

        adx = ind.adx[last]
        if _valid(adx):
            if adx > 25:
                rising = ind.plus_di[last] > ind.minus_di[last]
                add("ADX", f"{adx:.1f}", rising, "Strong trend ↑" if rising else "Strong trend ↓")
            else:
                add("ADX", f"{adx:.1f}", None, "No trend")

        wr = ind.williams_r[last]
        if _valid(wr):
            add("Williams %R", f"{wr:.1f}",
                True if wr < -80 else False if wr > -20 else None,
                "Oversold" if wr < -80 else "Overbought" if wr > -20 else "Neutral")

        cmf = ind.cmf[last]
        if _valid(cmf):
            add("CMF", f"{cmf:.3f}",
                True if cmf > 0.05 else False if cmf < -0.05 else None,
                "Capital inflow" if cmf > 0.05 else "Capital outflow" if cmf < -0.05 else "Neutral")

        sar = ind.parabolic_sar[last]
        if _valid(sar):
            above = price > sar
            add("Parabolic SAR", f"{sar:.0f}", above,
                "Price above SAR ↑" if above else "Price below SAR ↓")

        # 10-candle trend needs 11 values
        if last >= 10:
            rising = ind.obv[last] > ind.obv[last - 10]
            add("OBV", f"{ind.obv[last] / 1e6:.1f}M", rising,
                "Volume rising" if rising else "Volume falling")

        atr = ind.atr[last]
        if _valid(atr):
            add("ATR", f"{atr:.0f}", None, f"Volatility: ${atr:.0f}")

        bullish = sum(1 for s in signals if s.vote == "buy")
        bearish = sum(1 for s in signals if s.vote == "sell")
        total = len(signals)
        confidence = vote_confidence(max(bullish, bearish), total)
        bias = "Bullish" if bullish > bearish else "Bearish" if bearish > bullish else "Neutral"

        return SignalAnalysis(
            signals=signals,
            bullish_count=bullish,
            bearish_count=bearish,
            total_count=total,
            confidence=confidence,
            bias=bias,
        )

    def analyze_market(self, candles: List[Candle], rules: Optional[StrategyRules] = None) -> MarketAnalysis:
        """
        Entry gate:
        1. No-trade zones (chop, low volume) block everything
        2. Context from support/resistance and EMA200 structure
        3. Directional keys, need rules.required_keys on one side
        4. RSI guardrail can still veto
        """
        rules = rules or RULESETS[DEFAULT_STRATEGY]
        total_keys = len(rules.keys)

        if len(candles) < 3:
            price = candles[-1].close if candles else 0.0
            return MarketAnalysis(
                price=price,
                required_keys=rules.required_keys,
                total_keys=total_keys,
                skip_reason="Insufficient candle data",
                reasoning="Insufficient candle data",
            )

        df = self.candles_frame(candles)
        closes = df["close"].to_numpy(dtype=float)
        highs = df["high"].to_numpy(dtype=float)
        lows = df["low"].to_numpy(dtype=float)
        volumes = df["volume"].to_numpy(dtype=float)
        last = closes.size - 1
        price = float(closes[last])

        ind = calculate_all(closes, highs, lows, volumes)
        signals = self.analyze_signals(ind, closes)
        reasoning: List[str] = []

        common = dict(
            price=price,
            rsi=finite_or_none(ind.rsi[last]),
            macd_histogram=finite_or_none(ind.macd_histogram[last]),
            ema50=finite_or_none(ind.ema50[last]),
            ema200=finite_or_none(ind.ema200[last]),
            atr=finite_or_none(ind.atr[last]),
            required_keys=rules.required_keys,
            total_keys=total_keys,
            signals=signals,
        )

        # Step 1: no-trade zones
        chop = filters.is_chop_zone(price, ind.ema50[last], ind.ema200[last], rules.chop_ratio)
        low_volume = filters.is_low_volume(volumes, rules.low_volume_lookback, rules.low_volume_ratio)
        if chop:
            reasoning.append("🚫 CHOP ZONE: price between EMA50/200 midpoint")
        if low_volume:
            reasoning.append(f"🚫 LOW VOLUME: below {rules.low_volume_ratio:.0%} of average")
        if chop or low_volume:
            return MarketAnalysis(
                **common,
                reasoning=" | ".join(reasoning),
                skip_reason="Chop Zone - no trend" if chop else "Low volume - dead market",
            )

        # Step 2: context
        sr = filters.find_support_resistance(highs, lows, closes, rules.sr_lookback)
        context = MarketContext(**sr.model_dump())
        context_reasons: List[str] = []
        if sr.near_support or sr.double_bottom:
            context.long_context = True
            context_reasons.append("Double Bottom detected ↑" if sr.double_bottom else "Price near Support Zone ↑")
        if sr.near_resistance or sr.failed_breakout:
            context.short_context = True
            context_reasons.append("Failed breakout at Resistance ↓" if sr.failed_breakout else "Price near Resistance Zone ↓")
        ema50, ema200 = ind.ema50[last], ind.ema200[last]
        if price > ema200 and ema50 > ema200:
            context.long_context = True
            context_reasons.append("Above EMA200 + bullish structure ↑")
        if price < ema200 and ema50 < ema200:
            context.short_context = True
            context_reasons.append("Below EMA200 + bearish structure ↓")
        reasoning.append(f"Context: {', '.join(context_reasons) or 'No context'}")

        # Step 3: directional keys
        cross_bull, cross_bear = filters.macd_crossover(ind.macd_line, ind.macd_signal)
        conditions = EntryConditions(
            rsi_divergence=filters.detect_rsi_divergence(
                closes, ind.rsi, rules.divergence_lookback,
                rules.divergence_oversold, rules.divergence_overbought),
            candlestick=filters.detect_candlestick_pattern(candles),
            volume_spike=filters.detect_volume_spike(
                volumes, rules.volume_spike_lookback, rules.volume_spike_ratio),
            macd_cross_bull=cross_bull,
            macd_cross_bear=cross_bear,
            bb_side=filters.bollinger_side(price, ind.bb_upper[last], ind.bb_lower[last]),
        )
        bull_conditions, bear_conditions = self._count_keys(conditions, candles[-1], rules)
        bull_keys, bear_keys = len(bull_conditions), len(bear_conditions)
        reasoning.append(f"Bull keys: {bull_keys}/{total_keys} [{', '.join(bull_conditions) or 'none'}]")
        reasoning.append(f"Bear keys: {bear_keys}/{total_keys} [{', '.join(bear_conditions) or 'none'}]")

        required = rules.required_keys
        bias = "neutral"
        entry_allowed = False
        skip_reason = ""
        if bull_keys >= required and context.long_context:
            bias, entry_allowed = "bullish", True
        elif bear_keys >= required and context.short_context:
            bias, entry_allowed = "bearish", True
        elif bull_keys >= required:
            skip_reason = (f"Trade skipped: {bull_keys}/{total_keys} bullish keys met BUT no long context "
                           f"(no support/double bottom)")
        elif bear_keys >= required:
            skip_reason = (f"Trade skipped: {bear_keys}/{total_keys} bearish keys met BUT no short context "
                           f"(no resistance/failed breakout)")
        else:
            direction = "bullish" if bull_keys > bear_keys else "bearish"
            skip_reason = (f"Trade skipped: Only {max(bull_keys, bear_keys)}/{total_keys} {direction} "
                           f"conditions met (need {required})")

        # Step 4: guardrail
        veto = filters.rsi_guardrail(bias, common["rsi"], rules.rsi_guard_overbought, rules.rsi_guard_oversold)
        if veto:
            bias, entry_allowed, skip_reason = "neutral", False, veto

        if skip_reason:
            reasoning.append(skip_reason)
        if entry_allowed:
            met = bull_conditions if bias == "bullish" else bear_conditions
            reasoning.append(f"✅ ENTRY ALLOWED: {bias.upper()} - {' + '.join(met)}")

        bb_up, bb_low = ind.bb_upper[last], ind.bb_lower[last]
        bb_position = 0.5
        if _valid(bb_up) and _valid(bb_low) and bb_up > bb_low:
            bb_position = float((price - bb_low) / (bb_up - bb_low))

        return MarketAnalysis(
            **common,
            bias=bias,
            score=0.5 if bias == "bullish" else -0.5 if bias == "bearish" else 0.0,
            bull_keys=bull_keys,
            bear_keys=bear_keys,
            bb_position=bb_position,
            reasoning=" | ".join(reasoning),
            entry_allowed=entry_allowed,
            skip_reason=skip_reason,
            context=context,
            conditions=conditions,
        )

    def _count_keys(self, conditions: EntryConditions, last_candle: Candle, rules: StrategyRules):
        """Labels of the bullish and bearish keys that fired"""
        bull: List[str] = []
        bear: List[str] = []

        if "rsi_divergence" in rules.keys:
            if conditions.rsi_divergence.bullish:
                bull.append("RSI Divergence ↑")
            if conditions.rsi_divergence.bearish:
                bear.append("RSI Divergence ↓")

        if "candlestick" in rules.keys:
            pattern = conditions.candlestick
            if pattern.bullish:
                bull.append(f"{pattern.pattern} ↑")
            if pattern.bearish:
                bear.append(f"{pattern.pattern} ↓")

        if "volume_spike" in rules.keys and conditions.volume_spike:
            if last_candle.close > last_candle.open:
                bull.append("Volume Spike (bullish) ↑")
            else:
                bear.append("Volume Spike (bearish) ↓")

        if "macd_cross" in rules.keys:
            if conditions.macd_cross_bull:
                bull.append("MACD Bullish Cross ↑")
            if conditions.macd_cross_bear:
                bear.append("MACD Bearish Cross ↓")

        if "bollinger_outside" in rules.keys:
            if conditions.bb_side == "below":
                bull.append("Below BB Lower (mean reversion) ↑")
            elif conditions.bb_side == "above":
                bear.append("Above BB Upper (mean reversion) ↓")

        return bull, bear
