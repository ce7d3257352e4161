from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from copy_trading.errors import TradeNotClosableError, TradeNotFoundError
from copy_trading.storage.database import Database
from copy_trading.trading.stats import TradeStatsAggregator, local_midnight, summarize_trades
from copy_trading.types import OrderSide, OrderType, TradeRecord, TradeStatus


def _trade(
    *,
    status: TradeStatus = TradeStatus.FILLED,
    value: float = 100.0,
    price: float = 50_000.0,
    created_at: datetime | None = None,
    trader_id: str | None = "trader-1",
    realized_pnl: float | None = None,
    user_id: str = "alice",
) -> TradeRecord:
    filled = status == TradeStatus.FILLED
    return TradeRecord(
        id=str(uuid.uuid4()),
        user_id=user_id,
        symbol="BTCUSDT",
        side=OrderSide.BUY,
        order_type=OrderType.MARKET,
        status=status,
        requested_amount=value,
        mode="auto",
        created_at=created_at or datetime.now(UTC),
        trader_id=trader_id,
        executed_qty=value / price if filled else 0.0,
        executed_price=price if filled else 0.0,
        executed_value=value if filled else 0.0,
        commission=value * 0.001 if filled else 0.0,
        close_price=price if realized_pnl is not None else None,
        realized_pnl=realized_pnl,
    )


def test_summarize_only_counts_closed_trades_for_pnl() -> None:
    trades = [
        _trade(realized_pnl=20.0),
        _trade(realized_pnl=-5.0),
        _trade(),
        _trade(status=TradeStatus.FAILED),
    ]

    stats = summarize_trades(trades)

    assert stats.total_trades == 4
    assert stats.successful_trades == 3
    assert stats.failed_trades == 1
    assert stats.total_volume == pytest.approx(300.0)
    assert stats.avg_trade_size == pytest.approx(100.0)
    assert stats.win_rate == pytest.approx(50.0)
    assert stats.total_profit == pytest.approx(15.0)
    assert stats.avg_profit == pytest.approx(7.5)
    assert stats.largest_win == pytest.approx(20.0)
    assert stats.largest_loss == pytest.approx(-5.0)
    assert stats.total_commission == pytest.approx(0.3)


def test_summarize_empty() -> None:
    stats = summarize_trades([])
    assert stats.total_trades == 0
    assert stats.win_rate == 0.0


@pytest.mark.asyncio
async def test_today_volume_counts_committed_trades_since_midnight(db: Database) -> None:
    aggregator = TradeStatsAggregator(db)
    await db.add_trade(_trade(value=300.0))
    await db.add_trade(_trade(status=TradeStatus.PENDING, value=400.0))
    await db.add_trade(_trade(status=TradeStatus.FAILED, value=1_000.0))
    await db.add_trade(_trade(value=700.0, created_at=local_midnight() - timedelta(minutes=5)))
    await db.add_trade(_trade(value=900.0, user_id="bob"))

    assert await aggregator.today_volume("alice") == pytest.approx(700.0)


@pytest.mark.asyncio
async def test_trader_follow_stats_filters_by_trader(db: Database) -> None:
    aggregator = TradeStatsAggregator(db)
    await db.add_trade(_trade(value=100.0, trader_id="trader-1"))
    await db.add_trade(_trade(value=250.0, trader_id="trader-2"))

    stats = await aggregator.trader_follow_stats("alice", "trader-2")

    assert stats.total_trades == 1
    assert stats.total_volume == pytest.approx(250.0)


@pytest.mark.asyncio
async def test_daily_volume_buckets(db: Database) -> None:
    aggregator = TradeStatsAggregator(db)
    now = datetime.now(UTC)
    two_days_ago = now.replace(hour=12, minute=0, second=0, microsecond=0) - timedelta(days=2)
    await db.add_trade(_trade(value=100.0, created_at=two_days_ago))
    await db.add_trade(_trade(value=50.0, created_at=two_days_ago + timedelta(minutes=1)))
    await db.add_trade(_trade(value=25.0, created_at=now))
    await db.add_trade(_trade(value=999.0, created_at=now - timedelta(days=40)))

    buckets = await aggregator.daily_volume("alice", days=30)

    assert [b.trades for b in buckets] == [2, 1]
    assert buckets[0].volume == pytest.approx(150.0)
    assert buckets[0].date < buckets[1].date


@pytest.mark.asyncio
async def test_close_trade_computes_pnl_pct(db: Database) -> None:
    aggregator = TradeStatsAggregator(db)
    trade = await db.add_trade(_trade(price=100.0, value=100.0))

    closed = await aggregator.close_trade(trade.id, close_price=110.0, realized_pnl=10.0)
    again = await aggregator.close_trade(trade.id, close_price=110.0, realized_pnl=10.0)

    assert closed.realized_pnl_pct == pytest.approx(10.0)
    assert again.realized_pnl_pct == pytest.approx(10.0)
    assert closed.closed_at is not None
    assert closed.is_closed


@pytest.mark.asyncio
async def test_close_trade_errors(db: Database) -> None:
    aggregator = TradeStatsAggregator(db)
    failed = await db.add_trade(_trade(status=TradeStatus.FAILED))

    with pytest.raises(TradeNotFoundError):
        await aggregator.close_trade("missing", close_price=1.0, realized_pnl=0.0)
    with pytest.raises(TradeNotClosableError):
        await aggregator.close_trade(failed.id, close_price=1.0, realized_pnl=0.0)


@pytest.mark.asyncio
async def test_trade_history_paginates(db: Database) -> None:
    aggregator = TradeStatsAggregator(db)
    now = datetime.now(UTC)
    for i in range(5):
        await db.add_trade(_trade(created_at=now - timedelta(minutes=i)))

    page = await aggregator.trade_history("alice", page=2, limit=2)

    assert len(page["trades"]) == 2
    assert page["pagination"] == {"page": 2, "limit": 2, "total": 5, "total_pages": 3}
