from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from conftest import FakeExchange, make_signal
from copy_trading.app import App
from copy_trading.errors import (
    AlreadyProcessedError,
    ExchangeError,
    NoActiveCredentialError,
    RiskCheckFailedError,
)
from copy_trading.storage.database import Database
from copy_trading.trading.execution import calculate_quantity
from copy_trading.types import OrderRequest, OrderSide, OrderType, SignalStatus, TradeStatus


@pytest.mark.parametrize(
    ("amount", "price", "symbol", "step_size", "expected"),
    [
        (100.0, 50_000.0, "BTCUSDT", None, 0.002),
        (100.0, 30_000.0, "BTCUSDT", None, 0.00333),
        (100.0, 2_999.0, "ETHUSDT", None, 0.0333),
        (100.0, 301.0, "BNBUSDT", None, 0.33),
        (100.0, 3.0, "XYZUSDT", None, 33.33333),
        (100.0, 3.0, "XYZUSDT", 0.1, 33.3),
    ],
)
def test_calculate_quantity_floors_to_step(
    amount: float, price: float, symbol: str, step_size: float | None, expected: float
) -> None:
    assert calculate_quantity(amount, price, symbol, step_size) == pytest.approx(expected)


def test_calculate_quantity_rejects_bad_input() -> None:
    with pytest.raises(ValueError):
        calculate_quantity(100.0, 0.0, "BTCUSDT")
    with pytest.raises(ValueError):
        calculate_quantity(-1.0, 100.0, "BTCUSDT")


@pytest.mark.asyncio
async def test_manual_order_is_filled_and_recorded(app: App, exchange: FakeExchange, db: Database) -> None:
    exchange.balances["alice"] = 1_000.0

    result = await app.executor.try_execute(
        OrderRequest(user_id="alice", symbol="BTCUSDT", side=OrderSide.BUY, amount=100.0)
    )

    assert result.success
    assert result.executed_qty == pytest.approx(0.002)
    assert result.executed_price == pytest.approx(50_000.0)
    record = await db.get_trade(result.trade_id)
    assert record is not None
    assert record.status == TradeStatus.FILLED
    assert record.mode == "manual"
    assert record.executed_value == pytest.approx(100.0)
    assert record.commission == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_insufficient_balance_rejects_without_side_effects(
    app: App, exchange: FakeExchange, db: Database
) -> None:
    exchange.balances["alice"] = 50.0

    with pytest.raises(RiskCheckFailedError) as excinfo:
        await app.executor.execute_order(
            OrderRequest(user_id="alice", symbol="BTCUSDT", side=OrderSide.BUY, amount=100.0)
        )

    assert excinfo.value.failed_check == "balance"
    assert excinfo.value.shortfall == pytest.approx(50.0)
    assert exchange.submitted == []
    assert exchange.balances["alice"] == 50.0
    assert await db.count_trades("alice") == 0


@pytest.mark.asyncio
async def test_position_size_ceiling(app: App, exchange: FakeExchange) -> None:
    exchange.balances["alice"] = 50_000.0

    result = await app.executor.try_execute(
        OrderRequest(user_id="alice", symbol="BTCUSDT", side=OrderSide.BUY, amount=12_000.0)
    )

    assert not result.success
    assert result.error_code == "risk_check_failed"
    assert "Position size" in (result.error or "")


@pytest.mark.asyncio
async def test_concurrent_orders_respect_daily_limit(app: App, exchange: FakeExchange, db: Database) -> None:
    exchange.balances["alice"] = 10_000.0
    request = OrderRequest(user_id="alice", symbol="BTCUSDT", side=OrderSide.BUY, amount=3_000.0)

    outcomes = await asyncio.gather(
        app.executor.execute_order(request),
        app.executor.execute_order(request),
        return_exceptions=True,
    )

    filled = [o for o in outcomes if not isinstance(o, BaseException)]
    rejected = [o for o in outcomes if isinstance(o, RiskCheckFailedError)]
    assert len(filled) == 1
    assert len(rejected) == 1
    assert rejected[0].failed_check == "daily_limit"
    assert len(exchange.submitted) == 1
    assert await db.count_trades("alice") == 1


@pytest.mark.asyncio
async def test_signal_cannot_be_executed_twice(app: App, exchange: FakeExchange, db: Database) -> None:
    exchange.balances["alice"] = 1_000.0
    signal = await db.add_signal(make_signal())
    request = OrderRequest(
        user_id="alice", symbol="BTCUSDT", side=OrderSide.BUY, amount=100.0, signal_id=signal.id
    )

    record = await app.executor.execute_order(request)
    assert record.mode == "auto"
    assert record.trader_id == "trader-1"

    with pytest.raises(AlreadyProcessedError):
        await app.executor.execute_order(request)

    await db.transition_signal_status(signal.id, SignalStatus.EXECUTED, executed_price=signal.price)
    with pytest.raises(AlreadyProcessedError):
        await app.executor.execute_order(
            OrderRequest(user_id="bob", symbol="BTCUSDT", side=OrderSide.BUY, amount=100.0, signal_id=signal.id)
        )
    assert len(exchange.submitted) == 1


@pytest.mark.asyncio
async def test_missing_credentials(app: App) -> None:
    with pytest.raises(NoActiveCredentialError):
        await app.executor.execute_order(
            OrderRequest(user_id="carol", symbol="BTCUSDT", side=OrderSide.BUY, amount=100.0)
        )
    with pytest.raises(NoActiveCredentialError):
        await app.executor.get_order_status("carol", "BTCUSDT", "1")


@pytest.mark.asyncio
async def test_order_timeout_records_failed_trade(app: App, exchange: FakeExchange, db: Database) -> None:
    exchange.balances["alice"] = 1_000.0
    exchange.submit_delay = 1.0

    result = await app.executor.try_execute(
        OrderRequest(user_id="alice", symbol="BTCUSDT", side=OrderSide.BUY, amount=100.0)
    )

    assert not result.success
    assert result.error_code == "order_timeout"
    record = await db.get_trade(result.trade_id)
    assert record is not None
    assert record.status == TradeStatus.FAILED
    assert record.error_message.startswith("order_timeout")


@pytest.mark.asyncio
async def test_exchange_error_recorded_verbatim(app: App, exchange: FakeExchange, db: Database) -> None:
    exchange.balances["alice"] = 1_000.0
    exchange.submit_error = ExchangeError("APIError(code=-2010): insufficient balance")

    record = await app.executor.execute_order(
        OrderRequest(user_id="alice", symbol="BTCUSDT", side=OrderSide.SELL, amount=100.0)
    )

    assert record.status == TradeStatus.FAILED
    assert "APIError(code=-2010)" in (record.error_message or "")
    stored = await db.get_trade(record.id)
    assert stored is not None and stored.status == TradeStatus.FAILED


@pytest.mark.asyncio
async def test_limit_order_uses_limit_price(app: App, exchange: FakeExchange) -> None:
    exchange.balances["alice"] = 1_000.0

    record = await app.executor.execute_order(
        OrderRequest(
            user_id="alice",
            symbol="ETHUSDT",
            side=OrderSide.BUY,
            amount=100.0,
            order_type=OrderType.LIMIT,
            limit_price=2_000.0,
        )
    )

    assert exchange.submitted[0]["qty"] == pytest.approx(0.05)
    assert record.executed_price == pytest.approx(2_000.0)


@pytest.mark.asyncio
async def test_cancel_order_proxies_to_exchange(app: App, exchange: FakeExchange) -> None:
    exchange.balances["alice"] = 1_000.0
    record = await app.executor.execute_order(
        OrderRequest(user_id="alice", symbol="BTCUSDT", side=OrderSide.BUY, amount=100.0)
    )

    order = await app.executor.cancel_order("alice", "BTCUSDT", record.exchange_order_id or "")

    assert order.status == "CANCELED"


@pytest.mark.asyncio
async def test_transport_failure_records_failed_trade(
    app: App, exchange: FakeExchange, db: Database
) -> None:
    exchange.balances["alice"] = 1_000.0
    exchange.submit_error = ConnectionResetError("connection reset by peer")

    result = await app.executor.try_execute(
        OrderRequest(user_id="alice", symbol="BTCUSDT", side=OrderSide.BUY, amount=100.0)
    )

    assert not result.success
    assert result.error_code == "exchange_error"
    assert "connection reset by peer" in (result.error or "")
    assert len(exchange.submitted) == 1
    trades = await db.list_trades("alice")
    assert [t.status for t in trades] == [TradeStatus.FAILED]
    assert trades[0].id == result.trade_id


def _limit_buy(amount: float = 3_000.0) -> OrderRequest:
    return OrderRequest(
        user_id="alice",
        symbol="ETHUSDT",
        side=OrderSide.BUY,
        amount=amount,
        order_type=OrderType.LIMIT,
        limit_price=2_000.0,
    )


@pytest.mark.asyncio
async def test_resting_limit_orders_count_toward_daily_limit(app: App, exchange: FakeExchange) -> None:
    exchange.balances["alice"] = 50_000.0
    exchange.order_status = "NEW"

    results = [await app.executor.try_execute(_limit_buy()) for _ in range(3)]

    assert [r.success for r in results] == [True, False, False]
    assert results[0].status == TradeStatus.PENDING.value
    assert results[1].error_code == "risk_check_failed"
    assert "Daily limit exceeded" in (results[1].error or "")
    assert await app.stats.today_volume("alice") == pytest.approx(3_000.0)


@pytest.mark.asyncio
async def test_order_status_settles_filled_limit_order(
    app: App, exchange: FakeExchange, db: Database
) -> None:
    exchange.balances["alice"] = 1_000.0
    exchange.order_status = "NEW"
    record = await app.executor.execute_order(_limit_buy(100.0))
    assert record.status == TradeStatus.PENDING
    order_id = record.exchange_order_id or ""

    exchange.fill_order(order_id, 0.05, 2_000.0)
    order = await app.executor.get_order_status("alice", "ETHUSDT", order_id)

    assert order.status == "FILLED"
    stored = await db.get_trade(record.id)
    assert stored is not None
    assert stored.status == TradeStatus.FILLED
    assert stored.executed_qty == pytest.approx(0.05)
    assert stored.executed_price == pytest.approx(2_000.0)
    assert stored.executed_value == pytest.approx(100.0)
    assert stored.executed_at is not None
    assert await app.stats.today_volume("alice") == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_cancelled_limit_order_is_recorded_failed(
    app: App, exchange: FakeExchange, db: Database
) -> None:
    exchange.balances["alice"] = 10_000.0
    exchange.order_status = "NEW"
    record = await app.executor.execute_order(_limit_buy())

    await app.executor.cancel_order("alice", "ETHUSDT", record.exchange_order_id or "")

    stored = await db.get_trade(record.id)
    assert stored is not None
    assert stored.status == TradeStatus.FAILED
    assert (stored.error_message or "").startswith("order_canceled")
    assert stored.executed_price == 0.0
    assert await app.stats.today_volume("alice") == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_reconcile_pending_orders(app: App, exchange: FakeExchange, db: Database) -> None:
    exchange.balances["alice"] = 10_000.0
    exchange.order_status = "NEW"
    first = await app.executor.execute_order(_limit_buy(100.0))
    second = await app.executor.execute_order(_limit_buy(200.0))
    exchange.fill_order(first.exchange_order_id or "", 0.05, 2_000.0)

    settled = await app.executor.reconcile_pending_orders("alice")

    assert [t.id for t in settled] == [first.id]
    stored = await db.get_trade(second.id)
    assert stored is not None and stored.status == TradeStatus.PENDING


@pytest.mark.asyncio
async def test_record_persist_failure_logs_exchange_order(
    app: App, exchange: FakeExchange, db: Database, monkeypatch: pytest.MonkeyPatch
) -> None:
    exchange.balances["alice"] = 1_000.0

    async def _failing_add_trade(record: object) -> object:
        raise AlreadyProcessedError("signal already processed for user alice")

    monkeypatch.setattr(db, "add_trade", _failing_add_trade)

    with capture_logs() as logs, pytest.raises(AlreadyProcessedError):
        await app.executor.execute_order(
            OrderRequest(user_id="alice", symbol="BTCUSDT", side=OrderSide.BUY, amount=100.0)
        )

    failures = [entry for entry in logs if entry["event"] == "trade_record_persist_failed"]
    assert len(failures) == 1
    assert failures[0]["log_level"] == "error"
    assert failures[0]["order_id"] == "1"
    assert failures[0]["status"] == TradeStatus.FILLED.value
