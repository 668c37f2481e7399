import asyncio
import logging
from unittest.mock import AsyncMock, Mock

import pytest
from pydantic import ValidationError

from paperbot.errors import AccountNotFoundError, MarketDataError
from paperbot.models import ConfigUpdateRequest


@pytest.mark.asyncio
async def test_inactive_account_is_skipped(make_manager, store, config, flat_candles):
    manager = make_manager(flat_candles)
    store.save_config(config.model_copy(update={"is_active": False}))

    result = await manager.tick(config.id)

    assert not result.executed
    assert manager.market_data.calls == 0
    assert store.get_logs(config.id) == []


@pytest.mark.asyncio
async def test_flat_market_logs_one_no_trade(make_manager, store, config, flat_candles):
    manager = make_manager(flat_candles)

    result = await manager.tick(config.id)

    assert result.executed
    assert not result.analysis.entry_allowed
    assert store.get_config(config.id).current_balance == 10000.0
    logs = store.get_logs(config.id)
    assert len(logs) == 1
    assert logs[0].level == "info"
    assert logs[0].message == "⏸ NO TRADE: Trade skipped: Only 0/5 bearish conditions met (need 3)"
    assert store.get_trades(config.id) == []


@pytest.mark.asyncio
async def test_breakout_opens_long(make_manager, store, config, uptrend_candles):
    manager = make_manager(uptrend_candles)

    result = await manager.tick(config.id)

    price = uptrend_candles[-1].close
    [position] = store.get_open_positions(config.id)
    assert position.side == "long"
    assert position.margin_used == pytest.approx(1000.0)
    assert position.quantity == pytest.approx(1000.0 * 5 / price)
    assert position.stop_loss == pytest.approx(price * (1 - 0.03 / 5))
    assert position.take_profit == pytest.approx(price * (1 + 0.06 / 5))
    assert store.get_config(config.id).current_balance == pytest.approx(9000.0)
    assert [t.action for t in result.trades] == ["open_long"]
    assert result.trades[0].indicators_snapshot.bull_keys == 3


@pytest.mark.asyncio
async def test_second_tick_keeps_single_position(make_manager, store, config, uptrend_candles):
    manager = make_manager(uptrend_candles)

    await manager.tick(config.id)
    second = await manager.tick(config.id)

    assert len(store.get_open_positions(config.id)) == 1
    assert second.trades == []
    assert store.get_config(config.id).current_balance == pytest.approx(9000.0)


@pytest.mark.asyncio
async def test_market_failure_leaves_state_untouched(make_manager, store, config):
    manager = make_manager(error=MarketDataError("timeout"))

    with pytest.raises(MarketDataError):
        await manager.tick(config.id)

    assert store.get_config(config.id).current_balance == 10000.0
    assert store.get_logs(config.id) == []


@pytest.mark.asyncio
async def test_empty_candles_is_a_market_error(make_manager, config):
    manager = make_manager([])

    with pytest.raises(MarketDataError):
        await manager.tick(config.id)


@pytest.mark.asyncio
async def test_unknown_account(make_manager, flat_candles):
    manager = make_manager(flat_candles)

    with pytest.raises(AccountNotFoundError):
        await manager.tick("nobody")


@pytest.mark.asyncio
async def test_scheduled_tick_swallows_market_errors(make_manager, store, config):
    manager = make_manager(error=MarketDataError("down"))

    await manager.tick_active_accounts()

    assert store.get_logs(config.id) == []


@pytest.mark.asyncio
async def test_toggle_and_run(make_manager, store, config, flat_candles):
    manager = make_manager(flat_candles)

    toggled = await manager.toggle(config.id)
    assert not toggled.is_active

    result = await manager.run(config.id)
    assert result.executed
    assert len(store.get_logs(config.id)) == 1


@pytest.mark.asyncio
async def test_reset_closes_positions(make_manager, store, config, uptrend_candles):
    manager = make_manager(uptrend_candles)
    await manager.tick(config.id)

    await manager.reset(config.id)

    assert store.get_open_positions(config.id) == []
    [position] = store.get_positions(config.id)
    assert position.exit_reason == "Bot reset"
    restored = store.get_config(config.id)
    assert restored.current_balance == restored.initial_balance
    assert not restored.is_active

    stats = manager.trade_stats(config.id)
    assert stats.total_trades == 1
    assert stats.open == 0
    assert stats.liquidations == 0


@pytest.mark.asyncio
async def test_reset_balance_drops_history(make_manager, store, config, uptrend_candles):
    manager = make_manager(uptrend_candles)
    await manager.tick(config.id)

    updated = await manager.reset_balance(config.id, 5000.0)

    assert updated.current_balance == updated.initial_balance == 5000.0
    assert store.get_open_positions(config.id) == []
    assert store.get_trades(config.id) == []
    [log] = store.get_logs(config.id)
    assert log.message.startswith("💰 Balance reset")


@pytest.mark.asyncio
async def test_update_config(make_manager, store, config):
    manager = make_manager()

    updated = await manager.update_config(config.id, ConfigUpdateRequest(leverage=10, interval="4h"))

    assert updated.leverage == 10
    assert updated.interval == "4h"
    assert store.get_config(config.id).stop_loss_pct == 3.0


@pytest.mark.asyncio
async def test_tick_notifies_and_broadcasts(make_manager, config, uptrend_candles):
    notifier = Mock()
    notifier.send_trade_notification = AsyncMock()
    callback = AsyncMock()
    manager = make_manager(uptrend_candles, notifier=notifier)
    manager.set_event_callback(callback)

    await manager.tick(config.id)

    notifier.send_trade_notification.assert_awaited_once()
    message = callback.await_args.args[0]
    assert message["type"] == "tick"
    assert message["account_id"] == config.id
    assert message["bias"] == "bullish"


@pytest.mark.asyncio
async def test_accounts_do_not_share_state(make_manager, store, config, uptrend_candles):
    manager = make_manager(uptrend_candles)
    other = manager.ensure_account("acct-2", is_active=True)

    await manager.tick(config.id)

    assert store.get_open_positions(other.id) == []
    assert store.get_config(other.id).current_balance == 10000.0
    assert manager.ensure_account("acct-2").id == "acct-2"
    assert len(manager.accounts()) == 2


@pytest.mark.asyncio
async def test_current_signals_and_position_size(make_manager, config, uptrend_candles):
    manager = make_manager(uptrend_candles)

    signals = await manager.current_signals(config.id)
    sizing = await manager.position_size(config.id, risk_pct=1.0)

    assert signals.total_count == len(signals.signals)
    assert sizing.risk_amount == pytest.approx(100.0)
    assert sizing.sl_price < uptrend_candles[-1].close


@pytest.mark.asyncio
async def test_update_config_switches_strategy(make_manager, store, config):
    manager = make_manager()

    updated = await manager.update_config(config.id, ConfigUpdateRequest(strategy="triple_confirmation_v2"))

    assert updated.strategy == "triple_confirmation_v2"
    assert store.get_config(config.id).strategy == "triple_confirmation_v2"


def test_unknown_strategy_is_rejected():
    with pytest.raises(ValidationError):
        ConfigUpdateRequest(strategy="nope")


@pytest.mark.asyncio
async def test_tick_log_names_ruleset(make_manager, config, flat_candles, caplog):
    manager = make_manager(flat_candles)

    with caplog.at_level(logging.INFO, logger="paperbot.bot_manager"):
        await manager.tick(config.id)

    assert "triple_confirmation v1" in caplog.text


@pytest.mark.asyncio
async def test_concurrent_ticks_open_one_position(make_manager, store, config, uptrend_candles):
    manager = make_manager(uptrend_candles)

    results = await asyncio.gather(*(manager.tick(config.id) for _ in range(5)))

    assert len(store.get_open_positions(config.id)) == 1
    assert store.get_config(config.id).current_balance == pytest.approx(9000.0)
    assert sum(len(r.opened_positions) for r in results) == 1


@pytest.mark.asyncio
async def test_tick_racing_reset_ends_consistent(make_manager, store, config, uptrend_candles):
    manager = make_manager(uptrend_candles)

    await asyncio.gather(manager.tick(config.id), manager.reset(config.id))

    final = store.get_config(config.id)
    assert store.get_open_positions(config.id) == []
    assert final.current_balance == pytest.approx(final.initial_balance)
    assert not final.is_active


@pytest.mark.asyncio
async def test_forecast_uses_interval_horizon(make_manager, config, uptrend_candles):
    manager = make_manager(uptrend_candles)

    projection = await manager.forecast(config.id)
    short = await manager.forecast(config.id, periods=10)

    # 1h chart projects a week ahead
    assert len(projection.base_case) == 169
    assert len(short.bull_case) == 11
    assert projection.base_case[0].time > uptrend_candles[-1].time


@pytest.mark.asyncio
async def test_timeframe_analysis_fetches_three_intervals(make_manager, config, uptrend_candles):
    manager = make_manager(uptrend_candles)

    view = await manager.timeframe_analysis(config.id)

    assert manager.market_data.calls == 3
    assert view.h1_trend.trend == "Bullish"
    # the breakout candle alone spans many average days
    assert view.adr.status == "Warning"
    assert view.m5_signal == "WAIT"


@pytest.mark.asyncio
async def test_views_raise_on_empty_market(make_manager, config):
    manager = make_manager([])

    with pytest.raises(MarketDataError):
        await manager.forecast(config.id)
    with pytest.raises(MarketDataError):
        await manager.timeframe_analysis(config.id)
