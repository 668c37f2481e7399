"""
Position lifecycle for simulated leveraged positions

Checks run in a fixed order for every open position:
liquidation, stop loss, take profit, trailing stop, smart exit, signal reversal.
The first check that closes a position ends its evaluation for the tick; the
trailing stop only moves the stop and lets the later checks run.

Nothing here touches storage. All changes land on the TickResult, whose
config carries the running balance.
"""
import logging
import math
from typing import List, Optional

from .models import (
    BotConfig, Position, Trade, TickResult, MarketAnalysis, StrategyRules,
    IndicatorSnapshot, TradeAction, LogLevel, utcnow,
)
from .risk import validate_risk_reward, stop_and_target

logger = logging.getLogger(__name__)


def unrealized_pnl(position: Position, price: float) -> float:
    if position.side == "long":
        return (price - position.entry_price) * position.quantity
    return (position.entry_price - price) * position.quantity


def pnl_percent(position: Position, pnl: float) -> float:
    return pnl / position.margin_used * 100


class PositionManager:
    """Decides entries and drives open positions through their lifecycle"""

    def __init__(self, rules: StrategyRules):
        self.rules = rules

    # -- open positions --

    def manage_open_positions(self, positions: List[Position], price: float,
                              analysis: MarketAnalysis, result: TickResult) -> List[Position]:
        """Evaluate every open position; returns those still open afterwards"""
        still_open = []
        for position in positions:
            updated = self.evaluate_position(position, price, analysis, result)
            if updated is not position:
                result.updated_positions.append(updated)
            if updated.is_open:
                still_open.append(updated)
        return still_open

    def evaluate_position(self, position: Position, price: float,
                          analysis: MarketAnalysis, result: TickResult) -> Position:
        """Run the exit checks on one position; returns it unchanged if nothing fired"""
        if not position.is_open:
            return position

        rules = self.rules
        pnl = unrealized_pnl(position, price)
        pnl_pct = pnl_percent(position, pnl)

        # 1. Liquidation
        if pnl_pct <= rules.liquidation_pct:
            return self._liquidate(position, price, result)

        # 2. Stop loss
        sl = position.stop_loss
        if sl is not None and ((position.side == "long" and price <= sl) or
                               (position.side == "short" and price >= sl)):
            return self._close(
                position, price, pnl, "Stop Loss", "stop_loss", result,
                trade_reason=f"Stop Loss hit at ${price:.2f}",
                log_message=f"🛑 STOP LOSS: {position.side} | PnL: ${pnl:.2f} ({pnl_pct:.1f}%)",
            )

        # 3. Take profit
        tp = position.take_profit
        if tp is not None and ((position.side == "long" and price >= tp) or
                               (position.side == "short" and price <= tp)):
            return self._close(
                position, price, pnl, "Take Profit", "take_profit", result,
                trade_reason=f"Take Profit at ${price:.2f}",
                log_message=f"🎯 TAKE PROFIT: {position.side} | PnL: ${pnl:.2f} ({pnl_pct:.1f}%)",
            )

        # 4. Trailing stop, keeps evaluating
        position = self._trail_stop(position, price, pnl_pct, analysis, result)

        # 5. Smart early exit
        exit_reason = self.smart_exit_reason(position, pnl_pct, analysis)
        if exit_reason:
            return self._close(
                position, price, pnl, exit_reason, self._close_action(position), result,
                trade_reason=f"Smart exit: {exit_reason} | PnL: {pnl_pct:.1f}%",
                log_message=(f"🧠 SMART EXIT: {position.side} | {exit_reason} | "
                             f"PnL: ${pnl:.2f} ({pnl_pct:.1f}%)"),
                snapshot=IndicatorSnapshot.from_analysis(analysis),
            )

        # 6. Signal reversal
        if ((position.side == "long" and analysis.bias == "bearish") or
                (position.side == "short" and analysis.bias == "bullish")):
            return self._close(
                position, price, pnl, "Signal reversal", self._close_action(position), result,
                trade_reason=f"Signal reversal → {analysis.bias}",
                log_message=(f"🔄 REVERSAL EXIT: {position.side} → {analysis.bias} | "
                             f"PnL: ${pnl:.2f} ({pnl_pct:.1f}%)"),
                snapshot=IndicatorSnapshot.from_analysis(analysis),
            )

        return position

    def trailing_stop(self, position: Position, price: float, pnl_pct: float, atr: float) -> Optional[float]:
        """Stop after trailing: break-even from the first trigger, then
        price ∓ ATR multiple for every further step. Never loosens."""
        rules = self.rules
        current = position.stop_loss
        if pnl_pct < rules.trail_trigger_pct:
            return current

        steps = math.floor((pnl_pct - rules.trail_trigger_pct) / rules.trail_step_pct)
        break_even = position.entry_price
        if position.side == "long":
            atr_trail = price - rules.trail_atr_multiplier * atr if steps > 0 else break_even
            candidates = [break_even, atr_trail] + ([current] if current is not None else [])
            return max(candidates)
        atr_trail = price + rules.trail_atr_multiplier * atr if steps > 0 else break_even
        candidates = [break_even, atr_trail] + ([current] if current is not None else [])
        return min(candidates)

    def smart_exit_reason(self, position: Position, pnl_pct: float, analysis: MarketAnalysis) -> Optional[str]:
        """Take a large profit early when momentum turns against the position.
        The MACD exit also needs the gated analysis to lean the other way."""
        rules = self.rules
        if pnl_pct < rules.smart_exit_rsi_pct:
            return None

        rsi = analysis.rsi
        if rsi is not None:
            if position.side == "long" and rsi > rules.smart_exit_rsi_overbought:
                return f"RSI overbought ({rsi:.1f})"
            if position.side == "short" and rsi < rules.smart_exit_rsi_oversold:
                return f"RSI oversold ({rsi:.1f})"

        hist = analysis.macd_histogram
        if pnl_pct >= rules.smart_exit_macd_pct and hist is not None:
            if position.side == "long" and hist < 0 and analysis.score < 0:
                return "MACD bearish momentum"
            if position.side == "short" and hist > 0 and analysis.score > 0:
                return "MACD bullish momentum"
        return None

    def _trail_stop(self, position: Position, price: float, pnl_pct: float,
                    analysis: MarketAnalysis, result: TickResult) -> Position:
        atr = analysis.atr or 0.0
        current = position.stop_loss
        new_stop = self.trailing_stop(position, price, pnl_pct, atr)
        if new_stop is None or new_stop == current:
            return position

        trailed = position.model_copy(update={"stop_loss": new_stop})
        trail_type = "BREAK-EVEN" if math.isclose(new_stop, position.entry_price) else "ATR TRAIL"
        old = f"${current:.2f}" if current is not None else "none"
        result.trades.append(Trade(
            account_id=result.account_id,
            position_id=position.id,
            action="trail_stop",
            price=price,
            quantity=position.quantity,
            balance_after=result.config.current_balance,
            reason=f"{trail_type}: SL {old} → ${new_stop:.2f}",
        ))
        result.log("info", (f"🔒 {trail_type}: {position.side} SL {old} → ${new_stop:.2f} "
                            f"(profit: {pnl_pct:.1f}% | ATR: {atr:.2f})"))
        return trailed

    def _liquidate(self, position: Position, price: float, result: TickResult) -> Position:
        margin = position.margin_used
        result.config.current_balance -= margin
        closed = position.model_copy(update={
            "status": "liquidated",
            "exit_price": price,
            "pnl": -margin,
            "pnl_pct": -100.0,
            "closed_at": utcnow(),
            "exit_reason": "Liquidation",
        })
        result.trades.append(Trade(
            account_id=result.account_id,
            position_id=position.id,
            action="liquidation",
            price=price,
            quantity=position.quantity,
            pnl=-margin,
            balance_after=result.config.current_balance,
            reason=f"Liquidated at ${price:.2f}",
        ))
        result.log("error", f"⚠️ LIQUIDATION: {position.side} | PnL: -${margin:.2f}")
        logger.warning(f"⚠️ Position {position.id} liquidated at ${price:.2f}")
        return closed

    def _close(self, position: Position, price: float, pnl: float, exit_reason: str,
               action: TradeAction, result: TickResult, trade_reason: str, log_message: str,
               snapshot: Optional[IndicatorSnapshot] = None, level: LogLevel = "trade") -> Position:
        result.config.current_balance += position.margin_used + pnl
        closed = position.model_copy(update={
            "status": "closed",
            "exit_price": price,
            "pnl": pnl,
            "pnl_pct": pnl_percent(position, pnl),
            "closed_at": utcnow(),
            "exit_reason": exit_reason,
        })
        result.trades.append(Trade(
            account_id=result.account_id,
            position_id=position.id,
            action=action,
            price=price,
            quantity=position.quantity,
            pnl=pnl,
            balance_after=result.config.current_balance,
            reason=trade_reason,
            indicators_snapshot=snapshot,
        ))
        result.log(level, log_message)
        logger.info(log_message)
        return closed

    def _close_action(self, position: Position) -> TradeAction:
        return "close_long" if position.side == "long" else "close_short"

    def force_close(self, position: Position, price: float, reason: str, result: TickResult) -> Position:
        """Close at market outside the normal checks (bot reset)"""
        pnl = unrealized_pnl(position, price)
        return self._close(
            position, price, pnl, reason, self._close_action(position), result,
            trade_reason=f"{reason} at ${price:.2f}",
            log_message=f"⏹ FORCE CLOSE: {position.side} | {reason} | PnL: ${pnl:.2f}",
            level="info",
        )

    # -- entries --

    def evaluate_entry(self, config: BotConfig, analysis: MarketAnalysis, price: float,
                       open_count: int, result: TickResult) -> Optional[Position]:
        """Open a position when the gate allows it and the risk checks pass"""
        if open_count > 0:
            return None

        if not analysis.entry_allowed:
            result.log("info", f"⏸ NO TRADE: {analysis.skip_reason or 'Conditions not met'}")
            return None

        rules = self.rules
        balance = result.config.current_balance
        margin = balance * config.position_size_pct / 100
        if not (margin > rules.min_margin and balance > margin):
            result.log("info", (f"⏸ NO TRADE: margin ${margin:.2f} below minimum ${rules.min_margin:.2f} "
                                f"or balance ${balance:.2f} too low"))
            return None

        side = "long" if analysis.bias == "bullish" else "short"
        leverage = config.leverage
        quantity = margin * leverage / price
        stop_loss, take_profit = stop_and_target(
            side, price, config.stop_loss_pct, config.take_profit_pct, leverage)

        rr = validate_risk_reward(side, price, stop_loss, take_profit, rules.min_risk_reward)
        if not rr.valid:
            result.log("info", (f"❌ TRADE DISCARDED: {side.upper()} @ ${price:.2f} | "
                                f"{rr.reason} | {analysis.reasoning}"))
            logger.info(f"❌ Trade discarded: {rr.reason}")
            return None

        result.config.current_balance -= margin
        keys = analysis.bull_keys if side == "long" else analysis.bear_keys
        entry_reason = " | ".join([
            f"{side.upper()} - Triple Confirmation",
            rr.reason,
            f"Keys: {keys}/{analysis.total_keys}",
            analysis.reasoning,
        ])
        position = Position(
            account_id=result.account_id,
            side=side,
            entry_price=price,
            quantity=quantity,
            leverage=leverage,
            margin_used=margin,
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_reason=entry_reason[:500],
        )
        result.opened_positions.append(position)
        result.trades.append(Trade(
            account_id=result.account_id,
            position_id=position.id,
            action="open_long" if side == "long" else "open_short",
            price=price,
            quantity=quantity,
            balance_after=result.config.current_balance,
            reason=(f"{side.upper()} @ ${price:.2f} | Margin: ${margin:.2f} | "
                    f"{leverage}x | {rr.reason}"),
            indicators_snapshot=IndicatorSnapshot.from_analysis(analysis),
        ))
        result.log("trade", (f"📈 {side.upper()} OPEN @ ${price:.2f} | Qty: {quantity:.6f} | "
                             f"SL: ${stop_loss:.2f} | TP: ${take_profit:.2f} | {rr.reason}"))
        result.log("info", f"🧠 Reasoning: {analysis.reasoning}")
        logger.info(f"📈 Opened {side} position {position.id} @ ${price:.2f}")
        return position
