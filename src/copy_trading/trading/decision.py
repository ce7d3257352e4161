"""Copy-trade decisions and fan-out of signals to followers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from copy_trading.config import Settings
from copy_trading.errors import NotActionableError
from copy_trading.events.broadcast import (
    COPY_TRADE_ERROR,
    COPY_TRADE_EXECUTED,
    COPY_TRADE_FAILED,
    COPY_TRADE_NOTIFICATION,
    user_topic,
)
from copy_trading.ports import Broadcaster, FollowStore
from copy_trading.schemas import CopyTradeConfig
from copy_trading.storage.database import Database
from copy_trading.trading.execution import OrderExecutionService
from copy_trading.types import (
    CopyTradeDecision,
    DispatchResult,
    Follower,
    OrderRequest,
    OrderResult,
    OrderType,
    Signal,
    SignalStatus,
)
from copy_trading.utils.logging import get_logger


@dataclass(slots=True, frozen=True)
class DecisionDefaults:
    """Amounts used when a follower config leaves them unset."""

    max_amount_per_trade: float = 1_000.0
    copy_amount: float = 100.0

    @classmethod
    def from_settings(cls, settings: Settings) -> DecisionDefaults:
        return cls(
            max_amount_per_trade=settings.default_max_amount_per_trade,
            copy_amount=settings.default_copy_amount,
        )


def evaluate_decision(
    signal: Signal,
    config: CopyTradeConfig,
    defaults: DecisionDefaults | None = None,
) -> CopyTradeDecision:
    """Decide whether a follower copies a signal. Pure; first failing rule wins."""
    defaults = defaults or DecisionDefaults()
    reasons: list[str] = []

    if config.symbols_filter:
        if signal.symbol not in config.symbols_filter:
            return CopyTradeDecision(False, f"Symbol {signal.symbol} not in filter list")
        reasons.append("Symbol matched")

    confidence = signal.confidence_pct
    if config.min_confidence is not None and confidence < config.min_confidence:
        return CopyTradeDecision(
            False,
            f"Confidence {confidence:.1f}% below minimum {config.min_confidence:g}%",
        )
    reasons.append(f"Confidence {confidence:.1f}%")

    if config.signal_type_filter:
        if signal.signal_type not in config.signal_type_filter:
            return CopyTradeDecision(
                False, f"Signal type {signal.signal_type.value} not in filter list"
            )
        reasons.append("Signal type matched")

    if signal.status != SignalStatus.PENDING:
        return CopyTradeDecision(False, f"Signal status is {signal.status.value}, not pending")

    estimated = min(config.max_amount_per_trade or defaults.max_amount_per_trade, defaults.copy_amount)
    return CopyTradeDecision(True, ", ".join(reasons), estimated)


class CopyTradeDispatcher:
    """Fans a signal out to every follower of its trader."""

    def __init__(
        self,
        follow_store: FollowStore,
        executor: OrderExecutionService,
        database: Database,
        broadcaster: Broadcaster,
        settings: Settings,
    ) -> None:
        self._follow_store = follow_store
        self._executor = executor
        self._database = database
        self._broadcaster = broadcaster
        self._settings = settings
        self._defaults = DecisionDefaults.from_settings(settings)
        self._logger = get_logger("copy_trading.trading.decision")

    async def dispatch(self, signal: Signal) -> DispatchResult:
        """Evaluate and act for every follower concurrently.

        A failure for one follower is collected and never aborts the others.
        """
        result = DispatchResult(signal_id=signal.id)
        if not signal.trader_id:
            result.skipped_reason = "no_trader"
            self._logger.debug("dispatch_skipped", signal_id=signal.id, reason="no_trader")
            return result

        followers = await self._follow_store.list_followers(signal.trader_id)
        result.followers = len(followers)
        if not followers:
            return result

        semaphore = asyncio.Semaphore(self._settings.dispatch_concurrency)

        async def _guarded(follower: Follower) -> None:
            async with semaphore:
                try:
                    await self._handle_follower(signal, follower, result)
                except Exception as exc:  # noqa: BLE001 - isolate followers.
                    result.errors[follower.follower_id] = str(exc)
                    self._logger.exception(
                        "dispatch_follower_failed",
                        signal_id=signal.id,
                        follower_id=follower.follower_id,
                        error=str(exc),
                    )

        await asyncio.gather(*(_guarded(follower) for follower in followers))

        if result.executed and not result.notified:
            await self._database.transition_signal_status(
                signal.id, SignalStatus.EXECUTED, executed_price=signal.price
            )

        self._logger.info(
            "signal_dispatched",
            signal_id=signal.id,
            trader_id=signal.trader_id,
            followers=result.followers,
            executed=len(result.executed),
            failed=len(result.failed),
            notified=len(result.notified),
            skipped=len(result.skipped),
            errors=len(result.errors),
        )
        return result

    async def execute_copy_trade(self, user_id: str, signal: Signal, amount: float) -> OrderResult:
        """Execute one follower's copy of ``signal`` and notify them of the outcome."""
        side = signal.signal_type.order_side
        if side is None:
            raise NotActionableError(f"signal type {signal.signal_type.value} is not actionable")

        request = OrderRequest(
            user_id=user_id,
            symbol=signal.symbol,
            side=side,
            amount=amount,
            order_type=OrderType.MARKET,
            signal_id=signal.id,
        )
        try:
            outcome = await self._executor.try_execute(request, trader_id=signal.trader_id)
        except Exception as exc:
            self._broadcaster.publish(
                user_topic(user_id),
                COPY_TRADE_ERROR,
                {"signal_id": signal.id, "symbol": signal.symbol, "error": str(exc)},
            )
            raise

        payload = {
            "signal_id": signal.id,
            "symbol": signal.symbol,
            "side": side.value,
            "amount": amount,
            "order_id": outcome.order_id,
            "trade_id": outcome.trade_id,
        }
        if outcome.success:
            payload.update(executed_qty=outcome.executed_qty, executed_price=outcome.executed_price)
            self._broadcaster.publish(user_topic(user_id), COPY_TRADE_EXECUTED, payload)
        else:
            payload.update(error=outcome.error, error_code=outcome.error_code)
            self._broadcaster.publish(user_topic(user_id), COPY_TRADE_FAILED, payload)
        return outcome

    async def _handle_follower(self, signal: Signal, follower: Follower, result: DispatchResult) -> None:
        decision = evaluate_decision(signal, follower.config, self._defaults)
        follower_id = follower.follower_id
        self._logger.debug(
            "copy_trade_decision",
            signal_id=signal.id,
            follower_id=follower_id,
            should_copy=decision.should_copy,
            reason=decision.reason,
        )
        if not decision.should_copy:
            result.skipped[follower_id] = decision.reason
            return

        amount = decision.estimated_amount or self._defaults.copy_amount
        if not follower.config.auto_execute:
            self._broadcaster.publish(
                user_topic(follower_id),
                COPY_TRADE_NOTIFICATION,
                {
                    "signal": signal.as_event(),
                    "trader_id": signal.trader_id,
                    "estimated_amount": amount,
                    "reason": decision.reason,
                },
            )
            result.notified.append(follower_id)
            return

        outcome = await self.execute_copy_trade(follower_id, signal, amount)
        if outcome.success:
            result.executed.append(follower_id)
        else:
            result.failed.append(follower_id)
            if outcome.error:
                result.errors[follower_id] = outcome.error
