"""
Data models for the paper futures trading bot
"""
import math
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

Side = Literal["long", "short"]
Vote = Literal["buy", "sell", "neutral"]
Direction = Literal["bullish", "bearish", "neutral"]
LogLevel = Literal["info", "warn", "error", "trade"]
TradeAction = Literal[
    "open_long", "open_short", "close_long", "close_short",
    "stop_loss", "take_profit", "liquidation", "trail_stop",
]
KlineInterval = Literal[
    "1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def finite_or_none(value) -> Optional[float]:
    """Convert a numpy/NaN value into a JSON friendly float"""
    if value is None:
        return None
    value = float(value)
    return value if math.isfinite(value) else None


class Candle(BaseModel):
    """Individual OHLCV candle"""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class IndicatorSet(BaseModel):
    """Per-candle indicator arrays; index i of every array matches candle i.

    Indices before an indicator's warm-up hold NaN.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ema50: np.ndarray
    ema200: np.ndarray
    sma20: np.ndarray
    rsi: np.ndarray
    macd_line: np.ndarray
    macd_signal: np.ndarray
    macd_histogram: np.ndarray
    bb_upper: np.ndarray
    bb_middle: np.ndarray
    bb_lower: np.ndarray
    stoch_k: np.ndarray
    stoch_d: np.ndarray
    atr: np.ndarray
    obv: np.ndarray
    williams_r: np.ndarray
    adx: np.ndarray
    plus_di: np.ndarray
    minus_di: np.ndarray
    parabolic_sar: np.ndarray
    cmf: np.ndarray
    vwap: np.ndarray

    def __len__(self) -> int:
        return len(self.ema50)


class Signal(BaseModel):
    """Vote of a single indicator at the latest candle"""
    name: str
    vote: Vote
    display_value: str
    description: str


class SignalAnalysis(BaseModel):
    """Aggregated indicator votes"""
    signals: List[Signal] = Field(default_factory=list)
    bullish_count: int = 0
    bearish_count: int = 0
    total_count: int = 0
    confidence: int = 50
    bias: Literal["Bullish", "Bearish", "Neutral"] = "Neutral"

    @property
    def bias_score(self) -> int:
        """Signed confidence: positive when bullish, negative when bearish"""
        if self.bias == "Bullish":
            return self.confidence
        if self.bias == "Bearish":
            return -self.confidence
        return 0


class SupportResistance(BaseModel):
    supports: List[float] = Field(default_factory=list)
    resistances: List[float] = Field(default_factory=list)
    double_bottom: bool = False
    failed_breakout: bool = False
    near_support: bool = False
    near_resistance: bool = False


class MarketContext(SupportResistance):
    long_context: bool = False
    short_context: bool = False


class DirectionalFlags(BaseModel):
    bullish: bool = False
    bearish: bool = False


class CandlePattern(DirectionalFlags):
    pattern: str = ""


class EntryConditions(BaseModel):
    """State of the five directional keys at the latest candle"""
    rsi_divergence: DirectionalFlags = Field(default_factory=DirectionalFlags)
    candlestick: CandlePattern = Field(default_factory=CandlePattern)
    volume_spike: bool = False
    macd_cross_bull: bool = False
    macd_cross_bear: bool = False
    bb_side: Literal["above", "below", "inside"] = "inside"


class MarketAnalysis(BaseModel):
    """Result of the entry gate: filters, context, keys and guardrails"""
    bias: Direction = "neutral"
    score: float = 0.0
    bull_keys: int = 0
    bear_keys: int = 0
    required_keys: int = 3
    total_keys: int = 5
    price: float
    rsi: Optional[float] = None
    macd_histogram: Optional[float] = None
    ema50: Optional[float] = None
    ema200: Optional[float] = None
    bb_position: float = 0.5
    atr: Optional[float] = None
    reasoning: str = ""
    entry_allowed: bool = False
    skip_reason: str = ""
    context: Optional[MarketContext] = None
    conditions: Optional[EntryConditions] = None
    signals: Optional[SignalAnalysis] = None


class IndicatorSnapshot(BaseModel):
    """Indicator and signal values a trade decision was based on"""
    model_config = ConfigDict(frozen=True)

    price: float
    bias: Direction
    bull_keys: int
    bear_keys: int
    entry_allowed: bool
    rsi: Optional[float] = None
    macd_histogram: Optional[float] = None
    ema50: Optional[float] = None
    ema200: Optional[float] = None
    bb_position: Optional[float] = None
    atr: Optional[float] = None
    signal_bias: Optional[str] = None
    signal_confidence: Optional[int] = None
    reasoning: str = ""

    @classmethod
    def from_analysis(cls, analysis: MarketAnalysis) -> "IndicatorSnapshot":
        return cls(
            price=analysis.price,
            bias=analysis.bias,
            bull_keys=analysis.bull_keys,
            bear_keys=analysis.bear_keys,
            entry_allowed=analysis.entry_allowed,
            rsi=analysis.rsi,
            macd_histogram=analysis.macd_histogram,
            ema50=analysis.ema50,
            ema200=analysis.ema200,
            bb_position=analysis.bb_position,
            atr=analysis.atr,
            signal_bias=analysis.signals.bias if analysis.signals else None,
            signal_confidence=analysis.signals.confidence if analysis.signals else None,
            reasoning=analysis.reasoning,
        )


class RiskRewardResult(BaseModel):
    valid: bool
    ratio: float
    reason: str


class PositionSizeResult(BaseModel):
    """ATR based position sizing"""
    sl_price: float
    sl_distance: float
    risk_amount: float
    position_size: float


class ProjectionPoint(BaseModel):
    time: int
    value: float


class Projection(BaseModel):
    """Regression forecast with a widening volatility band"""
    base_case: List[ProjectionPoint] = Field(default_factory=list)
    bull_case: List[ProjectionPoint] = Field(default_factory=list)
    bear_case: List[ProjectionPoint] = Field(default_factory=list)


class TrendResult(BaseModel):
    trend: Literal["Bullish", "Bearish"]
    price: float
    ema50: float
    ema200: float


class ADRAnalysis(BaseModel):
    """How much of the average daily range today's candle has used"""
    adr: float
    current_daily_move: float
    adr_used_pct: float
    status: Literal["Normal", "Extended", "Warning"] = "Normal"
    status_label: str = "Normal range"


class PullbackSignal(BaseModel):
    active: bool = False
    type: Literal["pullback_long", "pullback_short", "none"] = "none"
    label: str = "Wait for pullback"
    move: float = 0.0
    threshold: float = 0.0


class TimeframeAnalysis(BaseModel):
    """Hourly trend, daily range and 5-minute pullback combined"""
    h1_trend: TrendResult
    adr: ADRAnalysis
    daily_atr: float
    pullback: PullbackSignal
    m5_signal: Literal["BUY", "SELL", "WAIT"] = "WAIT"
    overall_label: str = "Wait for setup"


class StrategyRules(BaseModel):
    """A named, versioned rule-set driving entries and exits"""
    model_config = ConfigDict(frozen=True)

    name: str
    version: int = 1
    keys: List[str] = Field(default_factory=lambda: [
        "rsi_divergence", "candlestick", "volume_spike", "macd_cross", "bollinger_outside",
    ])
    required_keys: int = 3

    # no-trade zones
    chop_ratio: float = 0.2
    low_volume_ratio: float = 0.4
    low_volume_lookback: int = 50

    # keys
    volume_spike_ratio: float = 1.5
    volume_spike_lookback: int = 20
    divergence_lookback: int = 20
    divergence_oversold: float = 40.0
    divergence_overbought: float = 60.0
    sr_lookback: int = 50

    # guardrails
    rsi_guard_overbought: float = 75.0
    rsi_guard_oversold: float = 25.0
    min_risk_reward: float = 2.0
    min_margin: float = 10.0

    # position management
    liquidation_pct: float = -90.0
    trail_trigger_pct: float = 1.0
    trail_step_pct: float = 0.5
    trail_atr_multiplier: float = 1.5
    smart_exit_rsi_pct: float = 15.0
    smart_exit_macd_pct: float = 20.0
    smart_exit_rsi_overbought: float = 75.0
    smart_exit_rsi_oversold: float = 25.0

    @property
    def label(self) -> str:
        return f"{self.name} v{self.version}"


class BotConfig(BaseModel):
    """Persistent account-level settings"""
    id: str
    name: str = "BTC Paper Trading Bot"
    symbol: str = "BTCUSDT"
    interval: KlineInterval = "1h"
    leverage: int = 5
    position_size_pct: float = 10.0
    stop_loss_pct: float = 3.0
    take_profit_pct: float = 6.0
    is_active: bool = False
    initial_balance: float = 10000.0
    current_balance: float = 10000.0
    strategy: str = "triple_confirmation_v1"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConfigUpdateRequest(BaseModel):
    """Patch for the tunable parts of a bot config"""
    model_config = ConfigDict(extra="ignore")

    leverage: Optional[int] = Field(None, ge=1, le=125)
    position_size_pct: Optional[float] = Field(None, ge=1, le=100)
    stop_loss_pct: Optional[float] = Field(None, ge=0.5, le=100)
    take_profit_pct: Optional[float] = Field(None, ge=0.5, le=100)
    interval: Optional[KlineInterval] = None
    strategy: Optional[str] = None

    @field_validator("strategy")
    @classmethod
    def known_strategy(cls, value: Optional[str]) -> Optional[str]:
        from .strategy import RULESETS

        if value is not None and value not in RULESETS:
            raise ValueError(f"unknown strategy '{value}', expected one of {sorted(RULESETS)}")
        return value


class Position(BaseModel):
    """Simulated leveraged position"""
    id: str = Field(default_factory=new_id)
    account_id: str
    side: Side
    entry_price: float
    quantity: float
    leverage: int
    margin_used: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    status: Literal["open", "closed", "liquidated"] = "open"
    entry_reason: str = ""
    exit_price: Optional[float] = None
    exit_reason: Optional[str] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    opened_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"


class Trade(BaseModel):
    """Immutable audit record of a position event"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    account_id: str
    position_id: Optional[str] = None
    action: TradeAction
    price: float
    quantity: float
    pnl: Optional[float] = None
    balance_after: Optional[float] = None
    reason: str = ""
    indicators_snapshot: Optional[IndicatorSnapshot] = None
    created_at: datetime = Field(default_factory=utcnow)


class BotLog(BaseModel):
    """Audit log line explaining why the bot did or did not trade"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    account_id: str
    level: LogLevel = "info"
    message: str
    data: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class TickResult(BaseModel):
    """Every mutation produced by one tick, applied by the store in one go"""
    account_id: str
    config: BotConfig
    executed: bool = True
    price: Optional[float] = None
    opened_positions: List[Position] = Field(default_factory=list)
    updated_positions: List[Position] = Field(default_factory=list)
    trades: List[Trade] = Field(default_factory=list)
    logs: List[BotLog] = Field(default_factory=list)
    analysis: Optional[MarketAnalysis] = None

    def log(self, level: LogLevel, message: str, data: Optional[Dict[str, Any]] = None) -> BotLog:
        entry = BotLog(account_id=self.account_id, level=level, message=message, data=data)
        self.logs.append(entry)
        return entry


class BotStatus(BaseModel):
    """Snapshot of an account for the dashboard"""
    config: BotConfig
    positions: List[Position]
    trades: List[Trade]
    logs: List[BotLog]
    analysis: Optional[MarketAnalysis] = None
    executed: bool = False


class TradeStats(BaseModel):
    """Aggregate results over closed positions"""
    total_trades: int
    wins: int
    losses: int
    liquidations: int
    open: int
    win_rate: float
    total_pnl: float
