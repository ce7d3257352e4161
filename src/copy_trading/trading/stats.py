"""Read-side aggregation over trade records."""

from __future__ import annotations

from collections import OrderedDict
from datetime import UTC, datetime, timedelta
from typing import Any

from copy_trading.errors import TradeNotClosableError, TradeNotFoundError
from copy_trading.storage.database import Database
from copy_trading.types import DailyVolume, TradeRecord, TradeStats, TradeStatus
from copy_trading.utils.logging import get_logger


def local_midnight(now: datetime | None = None) -> datetime:
    """Start of the current local day, as an aware UTC datetime."""
    local_now = (now or datetime.now(UTC)).astimezone()
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(UTC)


def summarize_trades(trades: list[TradeRecord]) -> TradeStats:
    """Aggregate a list of trade records.

    Realized P&L, win rate and largest win/loss only consider closed trades.
    """
    filled = [t for t in trades if t.status == TradeStatus.FILLED]
    failed = [t for t in trades if t.status == TradeStatus.FAILED]
    closed = [t for t in trades if t.is_closed]

    total_volume = sum(t.executed_value for t in filled)
    profits = [float(t.realized_pnl) for t in closed if t.realized_pnl is not None]
    total_profit = sum(profits)
    wins = sum(1 for p in profits if p > 0)

    return TradeStats(
        total_trades=len(trades),
        successful_trades=len(filled),
        failed_trades=len(failed),
        win_rate=(wins / len(closed) * 100.0) if closed else 0.0,
        total_volume=total_volume,
        avg_trade_size=(total_volume / len(filled)) if filled else 0.0,
        total_profit=total_profit,
        avg_profit=(total_profit / len(closed)) if closed else 0.0,
        largest_win=max(profits) if profits else 0.0,
        largest_loss=min(profits) if profits else 0.0,
        total_commission=sum(t.commission for t in trades),
    )


class TradeStatsAggregator:
    """Per-user statistics over the trade record ledger."""

    def __init__(self, database: Database) -> None:
        self._database = database
        self._logger = get_logger("copy_trading.trading.stats")

    async def user_stats(self, user_id: str) -> TradeStats:
        return summarize_trades(await self._database.list_trades(user_id))

    async def trader_follow_stats(self, user_id: str, trader_id: str) -> TradeStats:
        """Statistics restricted to trades copied from one trader."""
        return summarize_trades(await self._database.list_trades(user_id, trader_id=trader_id))

    async def today_volume(self, user_id: str) -> float:
        """Volume committed since local midnight: filled value plus resting orders."""
        return await self._database.sum_committed_volume_since(user_id, local_midnight())

    async def daily_volume(self, user_id: str, days: int = 30) -> list[DailyVolume]:
        """Volume and trade-count buckets per UTC day over a trailing window."""
        since = datetime.now(UTC) - timedelta(days=days)
        trades = await self._database.list_trades(user_id, status=TradeStatus.FILLED, since=since)

        buckets: OrderedDict[str, DailyVolume] = OrderedDict()
        for trade in sorted(trades, key=lambda t: t.created_at):
            day = trade.created_at.astimezone(UTC).date().isoformat()
            bucket = buckets.setdefault(day, DailyVolume(date=day, volume=0.0, trades=0))
            bucket.volume += trade.executed_value
            bucket.trades += 1
        return list(buckets.values())

    async def trade_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        status: TradeStatus | None = None,
        symbol: str | None = None,
    ) -> dict[str, Any]:
        page = max(page, 1)
        trades = await self._database.list_trades(
            user_id,
            status=status,
            symbol=symbol,
            offset=(page - 1) * limit,
            limit=limit,
        )
        total = await self._database.count_trades(user_id, status=status, symbol=symbol)
        return {
            "trades": trades,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": -(-total // limit) if limit else 0,
            },
        }

    async def close_trade(self, trade_id: str, close_price: float, realized_pnl: float) -> TradeRecord:
        """Record the close of a filled trade and its percentage P&L."""
        record = await self._database.get_trade(trade_id)
        if record is None:
            raise TradeNotFoundError(f"trade {trade_id} not found")
        if record.status != TradeStatus.FILLED or record.executed_price <= 0:
            raise TradeNotClosableError(f"trade {trade_id} was never filled")

        pnl_pct = (close_price - record.executed_price) / record.executed_price * 100.0
        updated = await self._database.update_trade_close(
            trade_id,
            close_price=close_price,
            realized_pnl=realized_pnl,
            realized_pnl_pct=pnl_pct,
            closed_at=datetime.now(UTC),
        )
        if updated is None:
            raise TradeNotFoundError(f"trade {trade_id} not found")
        self._logger.info(
            "trade_closed",
            trade_id=trade_id,
            close_price=close_price,
            realized_pnl=realized_pnl,
            realized_pnl_pct=round(pnl_pct, 4),
        )
        return updated
