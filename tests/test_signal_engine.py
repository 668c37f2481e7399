import pytest

from paperbot import filters
from paperbot.models import SignalAnalysis, StrategyRules
from paperbot.signal_engine import SignalEngine, vote_confidence
from paperbot.strategy import get_rules, available_strategies, DEFAULT_STRATEGY


@pytest.fixture
def engine():
    return SignalEngine()


def test_insufficient_candles(engine, flat_candles):
    analysis = engine.analyze_market(flat_candles[:2])
    assert not analysis.entry_allowed
    assert analysis.skip_reason == "Insufficient candle data"
    assert analysis.bias == "neutral"


def test_flat_market_has_no_keys(engine, flat_candles):
    analysis = engine.analyze_market(flat_candles)
    assert not analysis.entry_allowed
    assert analysis.bull_keys == 0 and analysis.bear_keys == 0
    assert analysis.skip_reason == "Trade skipped: Only 0/5 bearish conditions met (need 3)"
    assert analysis.bb_position == 0.5


def test_low_volume_blocks_everything(engine, flat_candles):
    flat_candles[-1] = flat_candles[-1].model_copy(update={"volume": 100.0})
    analysis = engine.analyze_market(flat_candles)
    assert not analysis.entry_allowed
    assert analysis.skip_reason == "Low volume - dead market"
    assert analysis.conditions is None


def test_chop_zone_blocks_everything(engine, flat_candles, monkeypatch):
    monkeypatch.setattr(filters, "is_chop_zone", lambda *args: True)
    analysis = engine.analyze_market(flat_candles)
    assert analysis.skip_reason == "Chop Zone - no trend"
    assert "CHOP ZONE" in analysis.reasoning


def test_breakout_allows_long_entry(engine, uptrend_candles):
    analysis = engine.analyze_market(uptrend_candles)
    assert analysis.entry_allowed
    assert analysis.bias == "bullish"
    assert analysis.score == 0.5
    assert analysis.bull_keys == 3
    assert analysis.context.long_context
    assert analysis.conditions.candlestick.pattern == "Bullish Engulfing"
    assert analysis.conditions.volume_spike
    assert analysis.conditions.macd_cross_bull
    assert analysis.rsi == pytest.approx(71.75, abs=0.5)
    assert "✅ ENTRY ALLOWED: BULLISH" in analysis.reasoning


def test_rsi_guardrail_vetoes_entry(engine, uptrend_candles):
    rules = StrategyRules(name="strict_guard", rsi_guard_overbought=70.0)
    analysis = engine.analyze_market(uptrend_candles, rules)
    assert not analysis.entry_allowed
    assert analysis.bias == "neutral"
    assert analysis.skip_reason == "⚠ RSI guardrail: RSI > 70, blocking long"


def test_analysis_is_deterministic(engine, uptrend_candles):
    first = engine.analyze_market(uptrend_candles)
    second = engine.analyze_market(list(uptrend_candles))
    assert first.model_dump() == second.model_dump()


def test_signal_votes_abstain_during_warmup(engine, flat_candles):
    candles = flat_candles[:5]
    ind = engine.calculate_indicators(candles)
    result = engine.analyze_signals(ind, [c.close for c in candles])
    names = [s.name for s in result.signals]
    assert "RSI" not in names
    assert "OBV" not in names
    assert "ATR" in names
    assert result.total_count == len(result.signals)


def test_atr_vote_is_neutral(engine, uptrend_candles):
    ind = engine.calculate_indicators(uptrend_candles)
    result = engine.analyze_signals(ind, [c.close for c in uptrend_candles])
    atr = next(s for s in result.signals if s.name == "ATR")
    assert atr.vote == "neutral"
    assert result.bullish_count + result.bearish_count <= result.total_count


def test_bias_score_sign():
    assert SignalAnalysis(bias="Bullish", confidence=70).bias_score == 70
    assert SignalAnalysis(bias="Bearish", confidence=60).bias_score == -60
    assert SignalAnalysis(bias="Neutral", confidence=40).bias_score == 0


def test_unknown_strategy_falls_back():
    assert get_rules("does_not_exist") is get_rules(DEFAULT_STRATEGY)
    assert "triple_confirmation_v2" in available_strategies()
    assert get_rules(DEFAULT_STRATEGY).required_keys == 3


@pytest.mark.parametrize("votes,total,expected", [
    (1, 8, 13),   # 12.5 rounds up
    (3, 8, 38),   # 37.5 rounds up
    (5, 8, 63),
    (1, 3, 33),
    (2, 3, 67),
    (0, 0, 50),
])
def test_vote_confidence_rounds_half_up(votes, total, expected):
    assert vote_confidence(votes, total) == expected
