"""
Risk checks applied before a simulated position is opened
"""
import math

from .models import RiskRewardResult, PositionSizeResult, Side


def validate_risk_reward(side: Side, entry_price: float, stop_loss: float,
                         take_profit: float, min_ratio: float = 2.0) -> RiskRewardResult:
    """Accept a trade only when reward / risk reaches min_ratio (inclusive)"""
    risk = abs(entry_price - stop_loss)
    reward = abs(take_profit - entry_price)
    if risk == 0:
        return RiskRewardResult(valid=False, ratio=0.0, reason="Risk is zero - invalid SL")

    ratio = reward / risk
    # stop/target derived from percentages land a hair off the boundary
    valid = ratio >= min_ratio or math.isclose(ratio, min_ratio, rel_tol=1e-9)
    if valid:
        reason = f"R:R {ratio:.2f}:1 ✅ (min {min_ratio}:1)"
    else:
        reason = f"R:R {ratio:.2f}:1 ❌ - below {min_ratio}:1 minimum, {side} trade discarded"
    return RiskRewardResult(valid=valid, ratio=ratio, reason=reason)


def stop_and_target(side: Side, price: float, stop_loss_pct: float,
                    take_profit_pct: float, leverage: int):
    """Stop/target prices from margin percentages scaled down by leverage"""
    sl = stop_loss_pct / 100 / leverage
    tp = take_profit_pct / 100 / leverage
    if side == "long":
        return price * (1 - sl), price * (1 + tp)
    return price * (1 + sl), price * (1 - tp)


def position_size(balance: float, risk_pct: float, entry_price: float, atr: float,
                  side: Side = "long", sl_multiplier: float = 1.5) -> PositionSizeResult:
    """Size a position so that an ATR-based stop loses risk_pct of the balance"""
    sl_distance = atr * sl_multiplier
    if sl_distance <= 0:
        raise ValueError("ATR must be positive to size a position")
    sl_price = entry_price - sl_distance if side == "long" else entry_price + sl_distance
    risk_amount = balance * (risk_pct / 100)
    return PositionSizeResult(
        sl_price=sl_price,
        sl_distance=sl_distance,
        risk_amount=risk_amount,
        position_size=risk_amount / sl_distance,
    )
