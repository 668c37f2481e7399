import pytest

from paperbot.position_manager import PositionManager, unrealized_pnl, pnl_percent
from paperbot.strategy import get_rules


@pytest.fixture
def manager():
    return PositionManager(get_rules("triple_confirmation_v1"))


def test_pnl_helpers(long_position):
    position = long_position()
    assert unrealized_pnl(position, 102) == pytest.approx(100.0)
    assert pnl_percent(position, 100.0) == pytest.approx(10.0)

    short = long_position(side="short")
    assert unrealized_pnl(short, 102) == pytest.approx(-100.0)


class TestExits:
    def test_liquidation_debits_margin(self, manager, long_position, analysis, tick_result):
        result = tick_result(9000.0)
        position = long_position(stop_loss=None)

        still_open = manager.manage_open_positions([position], 81.0, analysis(price=81.0), result)

        assert still_open == []
        closed = result.updated_positions[0]
        assert closed.status == "liquidated"
        assert closed.exit_reason == "Liquidation"
        assert closed.pnl == -1000.0
        assert closed.pnl_pct == -100.0
        assert result.config.current_balance == 8000.0
        assert result.trades[0].action == "liquidation"
        assert result.logs[0].level == "error"

    def test_stop_loss_wins_over_take_profit(self, manager, long_position, analysis, tick_result):
        result = tick_result(9000.0)
        position = long_position(stop_loss=105.0, take_profit=104.0)

        closed = manager.evaluate_position(position, 104.5, analysis(price=104.5), result)

        assert closed.exit_reason == "Stop Loss"
        assert closed.pnl == pytest.approx(225.0)
        assert result.config.current_balance == pytest.approx(10225.0)
        assert result.trades[0].action == "stop_loss"

    def test_take_profit(self, manager, long_position, analysis, tick_result):
        result = tick_result(9000.0)
        position = long_position(stop_loss=99.4, take_profit=101.2)

        closed = manager.evaluate_position(position, 101.5, analysis(price=101.5), result)

        assert closed.status == "closed"
        assert closed.exit_reason == "Take Profit"
        assert result.config.current_balance == pytest.approx(10075.0)
        assert result.logs[0].level == "trade"

    def test_short_take_profit(self, manager, long_position, analysis, tick_result):
        result = tick_result(9000.0)
        position = long_position(side="short", stop_loss=100.6, take_profit=98.8)

        closed = manager.evaluate_position(position, 98.5, analysis(price=98.5), result)

        assert closed.exit_reason == "Take Profit"
        assert closed.pnl == pytest.approx(75.0)

    def test_signal_reversal(self, manager, long_position, analysis, tick_result):
        result = tick_result(9000.0)
        position = long_position()

        closed = manager.evaluate_position(position, 100.1, analysis(price=100.1, bias="bearish"), result)

        assert closed.exit_reason == "Signal reversal"
        assert result.trades[0].action == "close_long"
        assert result.trades[0].indicators_snapshot.bias == "bearish"

    def test_nothing_fires(self, manager, long_position, analysis, tick_result):
        result = tick_result(9000.0)
        position = long_position()

        still_open = manager.manage_open_positions([position], 100.1, analysis(price=100.1), result)

        assert still_open == [position]
        assert result.updated_positions == []
        assert result.trades == [] and result.logs == []
        assert result.config.current_balance == 9000.0


class TestTrailingStop:
    def test_break_even(self, manager, long_position, analysis, tick_result):
        result = tick_result()
        position = manager.evaluate_position(long_position(), 100.25, analysis(price=100.25), result)

        assert position.is_open
        assert position.stop_loss == 100.0
        assert result.trades[0].action == "trail_stop"
        assert "BREAK-EVEN" in result.logs[0].message

    def test_atr_trail(self, manager, long_position, analysis, tick_result):
        result = tick_result()
        position = manager.evaluate_position(long_position(), 100.4, analysis(price=100.4, atr=0.1), result)

        assert position.stop_loss == pytest.approx(100.25)
        assert "ATR TRAIL" in result.logs[0].message

    def test_short_atr_trail(self, manager, long_position, analysis, tick_result):
        result = tick_result()
        short = long_position(side="short", stop_loss=101.0, take_profit=90.0)
        position = manager.evaluate_position(short, 99.6, analysis(price=99.6, atr=0.1), result)

        assert position.stop_loss == pytest.approx(99.75)

    def test_never_loosens(self, manager, long_position, analysis, tick_result):
        result = tick_result()
        position = long_position(stop_loss=100.3)

        updated = manager.evaluate_position(position, 100.4, analysis(price=100.4, atr=0.1), result)

        assert updated is position
        assert result.trades == []

    def test_below_trigger(self, manager, long_position):
        assert manager.trailing_stop(long_position(), 100.1, 0.5, 0.1) == 99.0


class TestSmartExit:
    def test_rsi_overbought(self, manager, long_position, analysis, tick_result):
        result = tick_result()
        closed = manager.evaluate_position(long_position(), 103.5, analysis(price=103.5, rsi=80.0), result)

        assert closed.status == "closed"
        assert closed.exit_reason == "RSI overbought (80.0)"
        # trail then close
        assert [t.action for t in result.trades] == ["trail_stop", "close_long"]

    def test_macd_momentum(self, manager, long_position, analysis, tick_result):
        result = tick_result()
        closed = manager.evaluate_position(
            long_position(), 105.0,
            analysis(price=105.0, rsi=60.0, macd_histogram=-1.0, bias="bearish", score=-0.5), result)

        assert closed.exit_reason == "MACD bearish momentum"

    def test_macd_dip_with_neutral_bias_stays_open(self, manager, long_position, analysis, tick_result):
        result = tick_result()
        position = manager.evaluate_position(
            long_position(), 105.0, analysis(price=105.0, rsi=60.0, macd_histogram=-1.0), result)

        assert position.is_open
        assert [t.action for t in result.trades] == ["trail_stop"]

    def test_short_macd_momentum(self, manager, long_position, analysis):
        short = long_position(side="short", stop_loss=101.0, take_profit=50.0)
        assert manager.smart_exit_reason(short, 25.0, analysis(rsi=40.0, macd_histogram=1.0, score=0.5)) \
            == "MACD bullish momentum"
        assert manager.smart_exit_reason(short, 25.0, analysis(rsi=40.0, macd_histogram=1.0)) is None

    def test_macd_needs_twenty_percent(self, manager, long_position, analysis):
        reason = manager.smart_exit_reason(long_position(), 16.0, analysis(rsi=60.0, macd_histogram=-1.0))
        assert reason is None


class TestEntry:
    def test_opens_long(self, manager, config, analysis, tick_result):
        result = tick_result(10000.0)
        allowed = analysis(price=1000.0, bias="bullish", entry_allowed=True, bull_keys=3)

        position = manager.evaluate_entry(config, allowed, 1000.0, 0, result)

        assert position.side == "long"
        assert position.margin_used == 1000.0
        assert position.quantity == pytest.approx(5.0)
        assert position.stop_loss == pytest.approx(994.0)
        assert position.take_profit == pytest.approx(1012.0)
        assert result.config.current_balance == 9000.0
        assert result.opened_positions == [position]
        assert result.trades[0].action == "open_long"
        assert [log.level for log in result.logs] == ["trade", "info"]

    def test_skips_when_position_open(self, manager, config, analysis, tick_result):
        result = tick_result(10000.0)
        allowed = analysis(bias="bullish", entry_allowed=True)
        assert manager.evaluate_entry(config, allowed, 100.0, 1, result) is None
        assert result.logs == []

    def test_logs_no_trade(self, manager, config, analysis, tick_result):
        result = tick_result(10000.0)
        blocked = analysis(skip_reason="Chop Zone - no trend")

        assert manager.evaluate_entry(config, blocked, 100.0, 0, result) is None
        assert len(result.logs) == 1
        assert result.logs[0].message == "⏸ NO TRADE: Chop Zone - no trend"

    def test_margin_guard(self, manager, config, analysis, tick_result):
        result = tick_result(50.0)
        allowed = analysis(bias="bearish", entry_allowed=True)

        assert manager.evaluate_entry(config, allowed, 100.0, 0, result) is None
        assert result.logs[0].message.startswith("⏸ NO TRADE: margin")
        assert result.config.current_balance == 50.0

    def test_risk_reward_discard(self, manager, config, analysis, tick_result):
        result = tick_result(10000.0)
        config = config.model_copy(update={"take_profit_pct": 5.0})
        allowed = analysis(bias="bullish", entry_allowed=True)

        assert manager.evaluate_entry(config, allowed, 100.0, 0, result) is None
        assert result.logs[0].message.startswith("❌ TRADE DISCARDED")
        assert result.opened_positions == []
        assert result.config.current_balance == 10000.0


def test_force_close(manager, long_position, tick_result):
    result = tick_result(9000.0)
    closed = manager.force_close(long_position(), 98.0, "Bot reset", result)

    assert closed.exit_reason == "Bot reset"
    assert closed.pnl == pytest.approx(-100.0)
    assert result.config.current_balance == pytest.approx(9900.0)
