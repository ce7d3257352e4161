"""Hard pre-trade risk rules: balance, position size and daily volume."""

from __future__ import annotations

from typing import TYPE_CHECKING

from copy_trading.config import Settings
from copy_trading.ports import ExchangeClient
from copy_trading.types import (
    BalanceCheck,
    Credentials,
    DailyLimitCheck,
    PositionSizeCheck,
    RiskCheckResult,
)
from copy_trading.utils.logging import get_logger, log_risk_event
from copy_trading.utils.timeouts import call_with_timeout

if TYPE_CHECKING:
    from copy_trading.trading.stats import TradeStatsAggregator


class RiskChecker:
    """Rule-based risk controls, evaluated fresh on every attempt."""

    def __init__(
        self,
        exchange: ExchangeClient,
        stats: TradeStatsAggregator,
        settings: Settings,
    ) -> None:
        self._exchange = exchange
        self._stats = stats
        self._settings = settings
        self._logger = get_logger("copy_trading.risk.rules")

    async def check(self, user_id: str, credentials: Credentials, amount: float) -> RiskCheckResult:
        """Run every check and report each one independently.

        The balance is read from the exchange right before the decision; the
        caller must hold the user's execution lock.
        """
        balance = await call_with_timeout(
            self._exchange.get_balance(credentials, self._settings.quote_asset),
            self._settings.balance_timeout_sec,
            "get_balance",
        )
        used_today = await self._stats.today_volume(user_id)

        result = evaluate_limits(
            amount=amount,
            available=balance.free,
            used_today=used_today,
            max_position_size=self._settings.max_position_size,
            daily_trade_limit=self._settings.daily_trade_limit,
        )
        if not result.passed:
            log_risk_event(
                self._logger,
                event_type=result.failed_check or "unknown",
                action="reject",
                user_id=user_id,
                amount=amount,
                shortfall=round(result.shortfall, 8),
                reason=result.reason,
            )
        return result


def evaluate_limits(
    *,
    amount: float,
    available: float,
    used_today: float,
    max_position_size: float,
    daily_trade_limit: float,
) -> RiskCheckResult:
    """Pure evaluation of the three limits; the first failure names the result."""
    balance = BalanceCheck(passed=available >= amount, available=available, required=amount)
    position = PositionSizeCheck(passed=amount <= max_position_size, current=amount, max=max_position_size)
    daily = DailyLimitCheck(
        passed=used_today + amount <= daily_trade_limit,
        used=used_today,
        requested=amount,
        limit=daily_trade_limit,
    )

    reason = None
    failed_check = None
    if not balance.passed:
        failed_check = "balance"
        reason = f"Insufficient balance: available {available:.2f}, required {amount:.2f}"
    elif not position.passed:
        failed_check = "position_size"
        reason = f"Position size {amount:.2f} exceeds maximum {max_position_size:.2f}"
    elif not daily.passed:
        failed_check = "daily_limit"
        reason = (
            f"Daily limit exceeded: used {used_today:.2f} + requested {amount:.2f} "
            f"> limit {daily_trade_limit:.2f}"
        )

    return RiskCheckResult(
        passed=failed_check is None,
        balance=balance,
        position_size=position,
        daily_limit=daily,
        reason=reason,
        failed_check=failed_check,
    )
