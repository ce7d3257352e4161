"""Shared domain types for the signal-to-execution pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from copy_trading.schemas import CopyTradeConfig, IndicatorPayload


class SignalType(str, Enum):
    """Signal classification, ordered from strong sell to strong buy."""

    STRONG_SELL = "STRONG_SELL"
    SELL = "SELL"
    NEUTRAL = "NEUTRAL"
    BUY = "BUY"
    STRONG_BUY = "STRONG_BUY"

    @property
    def order_side(self) -> OrderSide | None:
        """Order side implied by the classification; NEUTRAL has none."""
        if self in (SignalType.BUY, SignalType.STRONG_BUY):
            return OrderSide.BUY
        if self in (SignalType.SELL, SignalType.STRONG_SELL):
            return OrderSide.SELL
        return None


class SignalStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class TradeStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    FAILED = "failed"


ExecutionMode = Literal["auto", "manual"]


@dataclass(slots=True)
class TradingPair:
    """A tradable symbol registered from exchange info."""

    symbol: str
    base_asset: str
    quote_asset: str
    status: str = "TRADING"
    step_size: float | None = None


@dataclass(slots=True)
class Signal:
    """A persisted, classified trading recommendation."""

    id: str
    symbol: str
    signal_type: SignalType
    price: float
    confidence: float
    indicators: IndicatorPayload
    status: SignalStatus
    created_at: datetime
    expires_at: datetime
    interval: str = "1h"
    strategy_id: str | None = None
    trader_id: str | None = None
    executed_at: datetime | None = None
    executed_price: float | None = None

    @property
    def reasons(self) -> list[str]:
        return list(self.indicators.reasons)

    @property
    def confidence_pct(self) -> float:
        return self.confidence * 100.0

    def as_event(self) -> dict[str, Any]:
        """Payload pushed to live-update subscribers."""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "signal_type": self.signal_type.value,
            "price": self.price,
            "confidence": round(self.confidence_pct, 2),
            "status": self.status.value,
            "trader_id": self.trader_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class TradeRecord:
    """Audit record of one order attempt."""

    id: str
    user_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    status: TradeStatus
    requested_amount: float
    mode: ExecutionMode
    created_at: datetime
    signal_id: str | None = None
    trader_id: str | None = None
    exchange_order_id: str | None = None
    executed_qty: float = 0.0
    executed_price: float = 0.0
    executed_value: float = 0.0
    commission: float = 0.0
    commission_asset: str | None = None
    error_message: str | None = None
    executed_at: datetime | None = None
    close_price: float | None = None
    closed_at: datetime | None = None
    realized_pnl: float | None = None
    realized_pnl_pct: float | None = None

    @property
    def is_closed(self) -> bool:
        return self.close_price is not None and self.realized_pnl is not None


@dataclass(slots=True)
class CopyTradeDecision:
    """Outcome of evaluating one signal against one follower config."""

    should_copy: bool
    reason: str
    estimated_amount: float | None = None


@dataclass(slots=True)
class Follower:
    """A follower of a trader together with their copy-trade config."""

    follower_id: str
    trader_id: str
    config: CopyTradeConfig


@dataclass(slots=True)
class Credentials:
    """Decrypted exchange key pair. Never persisted or cached."""

    api_key: str
    api_secret: str

    def __repr__(self) -> str:
        return "Credentials(api_key='***', api_secret='***')"


@dataclass(slots=True)
class Balance:
    asset: str
    free: float
    locked: float = 0.0


@dataclass(slots=True)
class Fill:
    price: float
    qty: float
    commission: float = 0.0
    commission_asset: str | None = None


@dataclass(slots=True)
class ExchangeOrder:
    """Normalized exchange order response."""

    order_id: str
    symbol: str
    status: str
    side: str | None = None
    order_type: str | None = None
    price: float = 0.0
    executed_qty: float = 0.0
    cummulative_quote_qty: float = 0.0
    fills: list[Fill] = field(default_factory=list)

    @property
    def average_fill_price(self) -> float:
        filled = sum(f.qty for f in self.fills)
        if filled > 0:
            return sum(f.price * f.qty for f in self.fills) / filled
        if self.executed_qty > 0 and self.cummulative_quote_qty > 0:
            return self.cummulative_quote_qty / self.executed_qty
        return self.price

    @property
    def total_commission(self) -> float:
        return sum(f.commission for f in self.fills)


@dataclass(slots=True)
class OrderRequest:
    user_id: str
    symbol: str
    side: OrderSide
    amount: float
    order_type: OrderType = OrderType.MARKET
    limit_price: float | None = None
    signal_id: str | None = None

    @property
    def mode(self) -> ExecutionMode:
        return "auto" if self.signal_id else "manual"


@dataclass(slots=True)
class OrderResult:
    """Structured result returned to execution callers."""

    success: bool
    order_id: str | None = None
    executed_qty: float | None = None
    executed_price: float | None = None
    status: str | None = None
    trade_id: str | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass(slots=True)
class BalanceCheck:
    passed: bool
    available: float
    required: float

    @property
    def shortfall(self) -> float:
        return max(0.0, self.required - self.available)


@dataclass(slots=True)
class PositionSizeCheck:
    passed: bool
    current: float
    max: float

    @property
    def shortfall(self) -> float:
        return max(0.0, self.current - self.max)


@dataclass(slots=True)
class DailyLimitCheck:
    passed: bool
    used: float
    requested: float
    limit: float

    @property
    def shortfall(self) -> float:
        return max(0.0, self.used + self.requested - self.limit)


@dataclass(slots=True)
class RiskCheckResult:
    """Result of the pre-trade risk checks for one execution attempt."""

    passed: bool
    balance: BalanceCheck
    position_size: PositionSizeCheck
    daily_limit: DailyLimitCheck
    reason: str | None = None
    failed_check: Literal["balance", "position_size", "daily_limit"] | None = None

    @property
    def shortfall(self) -> float:
        if self.failed_check is None:
            return 0.0
        return getattr(self, self.failed_check).shortfall


@dataclass(slots=True)
class BatchResult:
    """Signals generated for a batch of symbols plus per-symbol failures."""

    signals: list[Signal] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DispatchResult:
    """Outcome of fanning one signal out to a trader's followers."""

    signal_id: str
    followers: int = 0
    executed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    notified: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    skipped_reason: str | None = None


@dataclass(slots=True)
class ScanResult:
    """Outcome of one scanner tick."""

    timestamp: datetime
    symbols_scanned: int
    signals_generated: int
    errors: list[str] = field(default_factory=list)
    signals: list[dict[str, Any]] = field(default_factory=list)
    elapsed_ms: float = 0.0


@dataclass(slots=True)
class TradeStats:
    """Aggregates over a user's trade records."""

    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    win_rate: float = 0.0
    total_volume: float = 0.0
    avg_trade_size: float = 0.0
    total_profit: float = 0.0
    avg_profit: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    total_commission: float = 0.0


@dataclass(slots=True)
class DailyVolume:
    date: str
    volume: float
    trades: int
