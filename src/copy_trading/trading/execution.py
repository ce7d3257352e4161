"""Order execution: risk checks, sizing, submission and recording."""

from __future__ import annotations

import asyncio
import uuid
import weakref
from datetime import UTC, datetime
from decimal import ROUND_FLOOR, Decimal

from copy_trading.config import Settings
from copy_trading.errors import (
    AlreadyProcessedError,
    CopyTradingError,
    ExchangeError,
    ExchangeTimeoutError,
    NoActiveCredentialError,
    RiskCheckFailedError,
    SignalNotFoundError,
)
from copy_trading.ports import CredentialStore, ExchangeClient, MarketDataProvider
from copy_trading.risk.rules import RiskChecker
from copy_trading.storage.database import Database
from copy_trading.types import (
    Credentials,
    ExchangeOrder,
    OrderRequest,
    OrderResult,
    OrderType,
    SignalStatus,
    TradeRecord,
    TradeStatus,
)
from copy_trading.utils.logging import get_logger, log_order_execution
from copy_trading.utils.timeouts import call_with_timeout

_QUOTE_SUFFIXES = ("USDT", "USDC", "FDUSD", "BUSD", "TUSD", "BTC", "ETH", "BNB")
_STEP_SIZES = {
    "BTC": Decimal("0.00001"),
    "ETH": Decimal("0.0001"),
    "BNB": Decimal("0.01"),
}
_DEFAULT_STEP = Decimal("0.00001")

_FILLED_STATUSES = {"FILLED", "PARTIALLY_FILLED"}
_OPEN_STATUSES = {"NEW", "PENDING_NEW"}


def base_asset(symbol: str) -> str:
    symbol = symbol.upper()
    for quote in _QUOTE_SUFFIXES:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)]
    return symbol


def calculate_quantity(
    amount: float,
    price: float,
    symbol: str,
    step_size: float | None = None,
) -> float:
    """Convert a quote-currency amount to a base quantity floored to the step size.

    Unknown assets use the tightest supported step.
    """
    if amount <= 0:
        raise ValueError("amount_non_positive")
    if price <= 0:
        raise ValueError("price_non_positive")
    if step_size is not None and step_size > 0:
        step = Decimal(str(step_size))
    else:
        step = _STEP_SIZES.get(base_asset(symbol), _DEFAULT_STEP)
    raw = Decimal(str(amount)) / Decimal(str(price))
    steps = (raw / step).to_integral_value(rounding=ROUND_FLOOR)
    return float(steps * step)


class OrderExecutionService:
    """The only component that moves capital.

    Risk checks and submission for one user are serialized by a per-user lock;
    different users proceed concurrently.
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        exchange: ExchangeClient,
        credentials: CredentialStore,
        database: Database,
        risk_checker: RiskChecker,
        settings: Settings,
    ) -> None:
        self._market_data = market_data
        self._exchange = exchange
        self._credentials = credentials
        self._database = database
        self._risk_checker = risk_checker
        self._settings = settings
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._logger = get_logger("copy_trading.trading.execution")

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def execute_order(self, request: OrderRequest, trader_id: str | None = None) -> TradeRecord:
        """Execute one order and return its trade record.

        Rejections before submission (already processed, missing credential,
        failed risk check) raise and leave no record. Anything failing after
        the risk checks is recorded as a ``failed`` trade and returned.
        """
        if request.amount <= 0:
            raise ValueError("amount_non_positive")
        if request.order_type == OrderType.LIMIT and not request.limit_price:
            raise ValueError("limit_price_required")

        async with self._lock_for(request.user_id):
            if request.signal_id is not None:
                trader_id = await self._check_signal(request.user_id, request.signal_id, trader_id)

            credentials = await self._credentials.get_active_credentials(request.user_id)
            if credentials is None:
                raise NoActiveCredentialError(request.user_id)

            risk = await self._risk_checker.check(request.user_id, credentials, request.amount)
            if not risk.passed:
                raise RiskCheckFailedError(risk)

            record = await self._submit(request, credentials, trader_id)
            try:
                return await self._database.add_trade(record)
            except Exception as exc:
                # The exchange already has the order; keep enough to reconcile it by hand.
                self._logger.error(
                    "trade_record_persist_failed",
                    user_id=record.user_id,
                    symbol=record.symbol,
                    side=record.side.value,
                    order_id=record.exchange_order_id,
                    status=record.status.value,
                    executed_qty=record.executed_qty,
                    executed_price=record.executed_price,
                    signal_id=record.signal_id,
                    error=str(exc),
                )
                raise

    async def try_execute(self, request: OrderRequest, trader_id: str | None = None) -> OrderResult:
        """Structured-result wrapper for callers that do not handle exceptions."""
        try:
            record = await self.execute_order(request, trader_id)
        except CopyTradingError as exc:
            return OrderResult(success=False, error=str(exc), error_code=exc.code)
        except ValueError as exc:
            return OrderResult(success=False, error=str(exc), error_code="invalid_request")

        if record.status == TradeStatus.FAILED:
            message = record.error_message or "order_failed"
            return OrderResult(
                success=False,
                order_id=record.exchange_order_id,
                status=record.status.value,
                trade_id=record.id,
                error=message,
                error_code=message.split(":", 1)[0],
            )
        return OrderResult(
            success=True,
            order_id=record.exchange_order_id,
            executed_qty=record.executed_qty,
            executed_price=record.executed_price,
            status=record.status.value,
            trade_id=record.id,
        )

    async def get_order_status(self, user_id: str, symbol: str, order_id: str) -> ExchangeOrder:
        """Query the exchange and settle the matching pending trade record."""
        credentials = await self._require_credentials(user_id)
        order = await call_with_timeout(
            self._exchange.get_order(credentials, symbol, order_id),
            self._settings.market_data_timeout_sec,
            "get_order",
        )
        await self._reconcile(user_id, order)
        return order

    async def cancel_order(self, user_id: str, symbol: str, order_id: str) -> ExchangeOrder:
        credentials = await self._require_credentials(user_id)
        order = await call_with_timeout(
            self._exchange.cancel_order(credentials, symbol, order_id),
            self._settings.order_timeout_sec,
            "cancel_order",
        )
        self._logger.info("order_cancelled", user_id=user_id, symbol=symbol, order_id=order_id)
        await self._reconcile(user_id, order)
        return order

    async def reconcile_pending_orders(self, user_id: str) -> list[TradeRecord]:
        """Refresh every pending record of ``user_id``; return the ones that settled.

        A record whose status query fails stays pending and is retried next time.
        """
        settled: list[TradeRecord] = []
        pending = await self._database.list_trades(user_id, status=TradeStatus.PENDING)
        for record in pending:
            if record.exchange_order_id is None:
                continue
            try:
                await self.get_order_status(user_id, record.symbol, record.exchange_order_id)
            except CopyTradingError as exc:
                self._logger.warning(
                    "order_reconcile_failed",
                    user_id=user_id,
                    order_id=record.exchange_order_id,
                    code=exc.code,
                    error=str(exc),
                )
                continue
            updated = await self._database.get_trade(record.id)
            if updated is not None and updated.status != TradeStatus.PENDING:
                settled.append(updated)
        return settled

    async def _reconcile(self, user_id: str, order: ExchangeOrder) -> TradeRecord | None:
        record = await self._database.find_trade_by_order(user_id, order.order_id)
        if record is None or record.status != TradeStatus.PENDING:
            return record
        self._apply_order(record, order, record.executed_qty, record.executed_price)
        if record.status == TradeStatus.PENDING:
            return record
        await self._database.update_trade_execution(record)
        self._logger.info(
            "order_reconciled",
            user_id=user_id,
            trade_id=record.id,
            order_id=order.order_id,
            status=record.status.value,
            executed_qty=record.executed_qty,
            executed_price=record.executed_price,
        )
        return record

    async def _require_credentials(self, user_id: str) -> Credentials:
        credentials = await self._credentials.get_active_credentials(user_id)
        if credentials is None:
            raise NoActiveCredentialError(user_id)
        return credentials

    async def _check_signal(self, user_id: str, signal_id: str, trader_id: str | None) -> str | None:
        signal = await self._database.get_signal(signal_id)
        if signal is None:
            raise SignalNotFoundError(f"signal {signal_id} not found")
        if signal.status != SignalStatus.PENDING:
            raise AlreadyProcessedError(f"signal {signal.id} is {signal.status.value}")
        existing = await self._database.find_trade_for_signal(user_id, signal.id)
        if existing is not None:
            raise AlreadyProcessedError(f"signal {signal.id} already processed for user {user_id}")
        return trader_id or signal.trader_id

    async def _submit(
        self,
        request: OrderRequest,
        credentials: Credentials,
        trader_id: str | None,
    ) -> TradeRecord:
        record = TradeRecord(
            id=str(uuid.uuid4()),
            user_id=request.user_id,
            symbol=request.symbol.upper(),
            side=request.side,
            order_type=request.order_type,
            status=TradeStatus.FAILED,
            requested_amount=request.amount,
            mode=request.mode,
            created_at=datetime.now(UTC),
            signal_id=request.signal_id,
            trader_id=trader_id,
        )
        try:
            pair = await self._database.get_trading_pair(record.symbol)
            price = await call_with_timeout(
                self._market_data.get_current_price(record.symbol),
                self._settings.market_data_timeout_sec,
                "get_current_price",
            )
            if request.order_type == OrderType.LIMIT and request.limit_price:
                price = request.limit_price
            quantity = calculate_quantity(
                request.amount, price, record.symbol, pair.step_size if pair else None
            )
            if quantity <= 0:
                raise ValueError("quantity_below_step_size")
            order = await call_with_timeout(
                self._exchange.submit_order(
                    credentials,
                    record.symbol,
                    request.side,
                    request.order_type,
                    quantity,
                    request.limit_price if request.order_type == OrderType.LIMIT else None,
                ),
                self._settings.order_timeout_sec,
                "order",
            )
        except ExchangeTimeoutError as exc:
            record.error_message = f"{exc.operation}_timeout: no response within {exc.timeout:g}s"
            self._log_failure(record)
            return record
        except ExchangeError as exc:
            record.error_message = f"{exc.code}: {exc}"
            self._log_failure(record)
            return record
        except ValueError as exc:
            record.error_message = f"invalid_order: {exc}"
            self._log_failure(record)
            return record
        except Exception as exc:  # noqa: BLE001 - every submitted attempt gets a record.
            record.error_message = f"{ExchangeError.code}: {exc}"
            self._logger.exception(
                "order_submit_unexpected_error",
                user_id=record.user_id,
                symbol=record.symbol,
                signal_id=record.signal_id,
                error=str(exc),
            )
            return record

        self._apply_order(record, order, quantity, price)
        log_order_execution(
            self._logger,
            user_id=record.user_id,
            symbol=record.symbol,
            side=record.side.value,
            quantity=record.executed_qty or quantity,
            price=record.executed_price or None,
            order_id=record.exchange_order_id,
            status=record.status.value,
            mode=record.mode,
            signal_id=record.signal_id,
        )
        return record

    @staticmethod
    def _apply_order(record: TradeRecord, order: ExchangeOrder, quantity: float, price: float) -> None:
        record.exchange_order_id = order.order_id
        status = order.status.upper()
        if status in _FILLED_STATUSES:
            record.status = TradeStatus.FILLED
            record.executed_at = datetime.now(UTC)
        elif status in _OPEN_STATUSES:
            record.status = TradeStatus.PENDING
        else:
            record.status = TradeStatus.FAILED
            record.error_message = f"order_{status.lower()}: exchange reported {status}"

        executed_qty = order.executed_qty or sum(f.qty for f in order.fills)
        record.executed_qty = executed_qty
        if record.status == TradeStatus.FILLED:
            record.executed_price = order.average_fill_price or price
            record.executed_value = order.cummulative_quote_qty or executed_qty * record.executed_price
        elif record.status == TradeStatus.PENDING:
            record.executed_price = price
        else:
            record.executed_price = 0.0
            record.executed_value = 0.0
        record.commission = order.total_commission
        if order.fills:
            record.commission_asset = order.fills[0].commission_asset

    def _log_failure(self, record: TradeRecord) -> None:
        self._logger.warning(
            "order_failed",
            user_id=record.user_id,
            symbol=record.symbol,
            side=record.side.value,
            amount=record.requested_amount,
            signal_id=record.signal_id,
            error=record.error_message,
        )
