"""
Bot Manager for the paper futures bot
Runs trading ticks per account and handles the manual bot actions
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .errors import AccountNotFoundError, MarketDataError
from .forecast import DEFAULT_PERIODS, PROJECTION_PERIODS, calculate_projection
from .models import (
    BotConfig, BotLog, BotStatus, ConfigUpdateRequest, PositionSizeResult, Projection, SignalAnalysis,
    Side, TickResult, TimeframeAnalysis, TradeStats, finite_or_none,
)
from .notifier import FirebaseNotifier
from .position_manager import PositionManager
from .risk import position_size
from .signal_engine import SignalEngine
from .store import BotStore
from .strategy import get_rules, run_timeframe_analysis

logger = logging.getLogger(__name__)


class BotManager:
    """Serializes ticks per account and applies each tick atomically.

    A tick reads the account, fetches candles, decides every transition on
    working copies and hands the store a single TickResult. Nothing is
    written if any step before the commit fails.
    """

    def __init__(self, store: BotStore, market_data, notifier: Optional[FirebaseNotifier] = None,
                 signal_engine: Optional[SignalEngine] = None, kline_limit: int = 300,
                 tick_seconds: int = 60):
        self.store = store
        self.market_data = market_data
        self.notifier = notifier
        self.signal_engine = signal_engine or SignalEngine()
        self.kline_limit = kline_limit
        self.tick_seconds = tick_seconds
        self.scheduler = AsyncIOScheduler()
        self.event_callback: Optional[Callable] = None
        self._locks: Dict[str, asyncio.Lock] = {}

    def set_event_callback(self, callback: Callable):
        """Set callback for tick broadcasts"""
        self.event_callback = callback

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        return self._locks.setdefault(account_id, asyncio.Lock())

    def ensure_account(self, account_id: str, **defaults) -> BotConfig:
        try:
            return self.store.get_config(account_id)
        except AccountNotFoundError:
            logger.info(f"🆕 Creating bot config for account '{account_id}'")
            return self.store.create_account(BotConfig(id=account_id, **defaults))

    # -- ticking --

    async def tick(self, account_id: str, force: bool = False) -> TickResult:
        """Run one trading tick. Inactive accounts are skipped unless forced."""
        async with self._lock_for(account_id):
            config = self.store.get_config(account_id)
            if not config.is_active and not force:
                return TickResult(account_id=account_id, config=config, executed=False)

            candles = await self.market_data.fetch_candles(config.symbol, config.interval, self.kline_limit)
            if not candles:
                raise MarketDataError(f"No candle data for {config.symbol}")

            price = candles[-1].close
            rules = get_rules(config.strategy)
            analysis = self.signal_engine.analyze_market(candles, rules)
            manager = PositionManager(rules)

            result = TickResult(account_id=account_id, config=config.model_copy(), price=price,
                                analysis=analysis)
            open_positions = self.store.get_open_positions(account_id)
            still_open = manager.manage_open_positions(open_positions, price, analysis, result)
            manager.evaluate_entry(config, analysis, price, len(still_open), result)

            rsi_text = f"{analysis.rsi:.1f}" if analysis.rsi is not None else "n/a"
            logger.info(
                f"Tick [{account_id}] {rules.label}: ${price:.2f} | Bias: {analysis.bias} | "
                f"BullKeys: {analysis.bull_keys}/{analysis.total_keys} "
                f"BearKeys: {analysis.bear_keys}/{analysis.total_keys} | "
                f"RSI: {rsi_text} | "
                f"Bal: ${result.config.current_balance:.2f}"
            )

            self.store.commit(result)

        await self._publish(result)
        return result

    async def _publish(self, result: TickResult):
        if self.notifier:
            for trade in result.trades:
                await self.notifier.send_trade_notification(trade, result.config)

        if self.event_callback:
            try:
                await self.event_callback({
                    "type": "tick",
                    "account_id": result.account_id,
                    "price": result.price,
                    "balance": result.config.current_balance,
                    "trades": [t.model_dump(mode="json") for t in result.trades],
                    "bias": result.analysis.bias if result.analysis else None,
                    "timestamp": datetime.now().isoformat(),
                })
            except Exception as e:
                logger.warning(f"Failed to broadcast tick: {e}")

    async def tick_active_accounts(self):
        """Scheduled job: tick every active account"""
        for config in self.store.list_accounts():
            if not config.is_active:
                continue
            try:
                await self.tick(config.id)
            except MarketDataError as e:
                logger.warning(f"⚠️  Tick skipped for {config.id}, market data unavailable: {e}")
            except Exception as e:
                logger.error(f"❌ Error ticking {config.id}: {e}")

    def start(self):
        """Start periodic ticking"""
        self.scheduler.add_job(
            self.tick_active_accounts,
            'interval',
            seconds=self.tick_seconds,
            id='tick_active_accounts',
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(f"🟢 Bot scheduler started - tick every {self.tick_seconds}s")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("🔴 Bot scheduler stopped")

    # -- actions --

    async def toggle(self, account_id: str) -> BotConfig:
        async with self._lock_for(account_id):
            config = self.store.get_config(account_id)
            config = self.store.save_config(config.model_copy(update={"is_active": not config.is_active}))
        logger.info(f"{'🟢' if config.is_active else '🔴'} Bot {account_id} "
                    f"{'activated' if config.is_active else 'deactivated'}")
        return config

    async def run(self, account_id: str) -> TickResult:
        """Force one tick even if the bot is inactive"""
        return await self.tick(account_id, force=True)

    async def reset(self, account_id: str) -> TickResult:
        """Close open positions at market, restore the initial balance, deactivate"""
        async with self._lock_for(account_id):
            config = self.store.get_config(account_id)
            price = await self.market_data.fetch_current_price(config.symbol)
            manager = PositionManager(get_rules(config.strategy))

            result = TickResult(account_id=account_id, config=config.model_copy(), price=price)
            for position in self.store.get_open_positions(account_id):
                result.updated_positions.append(manager.force_close(position, price, "Bot reset", result))
            result.config.current_balance = config.initial_balance
            result.config.is_active = False
            result.log("info", f"♻️ Bot reset: balance restored to ${config.initial_balance:.2f}")
            self.store.commit(result)

        logger.info(f"♻️ Bot {account_id} reset")
        return result

    async def reset_balance(self, account_id: str, new_balance: Optional[float] = None) -> BotConfig:
        """Start over with a new balance, dropping open positions and history"""
        async with self._lock_for(account_id):
            config = self.store.get_config(account_id)
            balance = new_balance or config.initial_balance
            config = config.model_copy(update={
                "is_active": False, "current_balance": balance, "initial_balance": balance,
            })
            self.store.clear_account(config)
            self.store.append_log(BotLog(account_id=account_id, level="info",
                                         message=f"💰 Balance reset to ${balance:.2f}"))
        logger.info(f"💰 Bot {account_id} balance reset to ${balance:.2f}")
        return config

    async def update_config(self, account_id: str, update: ConfigUpdateRequest) -> BotConfig:
        async with self._lock_for(account_id):
            config = self.store.get_config(account_id)
            changes = update.model_dump(exclude_none=True)
            config = self.store.save_config(config.model_copy(update=changes))
        logger.info(f"⚙️ Bot {account_id} config updated: {changes}")
        return config

    # -- views --

    def status(self, account_id: str) -> BotStatus:
        return BotStatus(
            config=self.store.get_config(account_id),
            positions=self.store.get_positions(account_id, 20),
            trades=self.store.get_trades(account_id, 50),
            logs=self.store.get_logs(account_id, 30),
        )

    async def current_signals(self, account_id: str) -> SignalAnalysis:
        """Indicator votes for the latest candle, without touching state"""
        config = self.store.get_config(account_id)
        candles = await self._fetch(config.symbol, config.interval, self.kline_limit)
        ind = self.signal_engine.calculate_indicators(candles)
        return self.signal_engine.analyze_signals(ind, [c.close for c in candles])

    async def position_size(self, account_id: str, risk_pct: float = 1.0, side: Side = "long",
                            sl_multiplier: float = 1.5) -> PositionSizeResult:
        """ATR-based size for risking risk_pct of the current balance"""
        config = self.store.get_config(account_id)
        candles = await self._fetch(config.symbol, config.interval, self.kline_limit)
        ind = self.signal_engine.calculate_indicators(candles)
        atr = finite_or_none(ind.atr[-1]) or 0.0
        return position_size(config.current_balance, risk_pct, candles[-1].close, atr,
                             side=side, sl_multiplier=sl_multiplier)

    async def _fetch(self, symbol: str, interval: str, limit: int):
        candles = await self.market_data.fetch_candles(symbol, interval, limit)
        if not candles:
            raise MarketDataError(f"No {interval} candle data for {symbol}")
        return candles

    async def forecast(self, account_id: str, periods: Optional[int] = None) -> Projection:
        """Regression projection on the account's chart interval"""
        config = self.store.get_config(account_id)
        candles = await self._fetch(config.symbol, config.interval, 500)
        periods = periods or PROJECTION_PERIODS.get(config.interval, DEFAULT_PERIODS)
        return calculate_projection(candles, periods)

    async def timeframe_analysis(self, account_id: str) -> TimeframeAnalysis:
        """Hourly trend, daily range and 5-minute pullback for the account's symbol"""
        config = self.store.get_config(account_id)
        h1 = await self._fetch(config.symbol, "1h", 300)
        m5 = await self._fetch(config.symbol, "5m", 300)
        daily = await self._fetch(config.symbol, "1d", 30)
        return run_timeframe_analysis(h1, m5, daily)

    def trade_stats(self, account_id: str) -> TradeStats:
        """Win/loss statistics over the account's positions"""
        positions = self.store.get_positions(account_id, limit=10_000)
        closed = [p for p in positions if not p.is_open]
        wins = sum(1 for p in closed if (p.pnl or 0) > 0)
        losses = sum(1 for p in closed if (p.pnl or 0) <= 0)
        liquidations = sum(1 for p in closed if p.status == "liquidated")
        total_pnl = sum(p.pnl or 0 for p in closed)
        win_rate = (wins / len(closed) * 100) if closed else 0.0

        return TradeStats(
            total_trades=len(closed),
            wins=wins,
            losses=losses,
            liquidations=liquidations,
            open=len(positions) - len(closed),
            win_rate=round(win_rate, 2),
            total_pnl=round(total_pnl, 2),
        )

    def accounts(self) -> List[BotConfig]:
        return self.store.list_accounts()
