"""Error taxonomy of the signal-to-execution pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from copy_trading.types import RiskCheckResult


class CopyTradingError(Exception):
    """Base error. ``code`` is stable and used in results and logs."""

    code = "copy_trading_error"


class InsufficientDataError(CopyTradingError):
    """Raised when a price series is too short for an indicator warm-up."""

    code = "insufficient_data"

    def __init__(self, required: int, actual: int, indicator: str | None = None) -> None:
        self.required = required
        self.actual = actual
        self.indicator = indicator
        label = indicator or "indicators"
        super().__init__(f"{label} requires at least {required} prices, got {actual}")


class SymbolUnresolvedError(CopyTradingError):
    """Raised when a symbol is not a known trading pair and cannot be registered."""

    code = "symbol_unresolved"

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"unknown trading pair: {symbol}")


class RiskCheckFailedError(CopyTradingError):
    """Raised when a pre-trade risk check rejects an order."""

    code = "risk_check_failed"

    def __init__(self, result: RiskCheckResult) -> None:
        self.result = result
        self.failed_check = result.failed_check
        self.shortfall = result.shortfall
        super().__init__(result.reason or "risk check failed")


class ExchangeError(CopyTradingError):
    """Network or exchange-side failure. The order is assumed not filled."""

    code = "exchange_error"


class ExchangeTimeoutError(ExchangeError):
    """An exchange call exceeded its timeout."""

    code = "exchange_timeout"

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation}_timeout after {timeout:g}s")


class NoActiveCredentialError(CopyTradingError):
    code = "no_active_credential"

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"no active exchange credential for user {user_id}")


class NotActionableError(CopyTradingError):
    """Raised when a signal classification implies no order side."""

    code = "not_actionable"


class AlreadyProcessedError(CopyTradingError):
    """Raised when a signal was already acted upon for a user."""

    code = "already_processed"


class SignalNotFoundError(CopyTradingError):
    code = "signal_not_found"


class TradeNotFoundError(CopyTradingError):
    code = "trade_not_found"


class TradeNotClosableError(CopyTradingError):
    code = "trade_not_closable"


class FollowNotFoundError(CopyTradingError):
    code = "follow_not_found"


class InvalidScheduleError(CopyTradingError):
    code = "invalid_schedule"
