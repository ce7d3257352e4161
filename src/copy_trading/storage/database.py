"""Async persistence for signals, trade records and trading pairs."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.sql import Select

from copy_trading.errors import AlreadyProcessedError
from copy_trading.schemas import IndicatorPayload
from copy_trading.storage.models import Base, SignalORM, TradeRecordORM, TradingPairORM
from copy_trading.types import (
    OrderSide,
    OrderType,
    Signal,
    SignalStatus,
    SignalType,
    TradeRecord,
    TradeStatus,
    TradingPair,
)
from copy_trading.utils.logging import get_logger


def _utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Database:
    """Persistence layer for pipeline entities."""

    def __init__(self, database_url: str) -> None:
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self._logger = get_logger("copy_trading.storage.database")
        self._engine: AsyncEngine = create_async_engine(database_url, echo=False)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    async def init_db(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._logger.info("database_initialized", url=self._engine.url.render_as_string())

    async def close(self) -> None:
        await self._engine.dispose()

    # ==================== Trading pairs ====================

    async def get_trading_pair(self, symbol: str) -> TradingPair | None:
        async with self.session_factory() as session:
            row = await session.get(TradingPairORM, symbol.upper())
            if row is None:
                return None
            return TradingPair(
                symbol=row.symbol,
                base_asset=row.base_asset,
                quote_asset=row.quote_asset,
                status=row.status,
                step_size=row.step_size,
            )

    async def upsert_trading_pair(self, pair: TradingPair) -> None:
        async with self.session_factory() as session:
            row = await session.get(TradingPairORM, pair.symbol)
            if row is None:
                session.add(
                    TradingPairORM(
                        symbol=pair.symbol,
                        base_asset=pair.base_asset,
                        quote_asset=pair.quote_asset,
                        status=pair.status,
                        step_size=pair.step_size,
                    )
                )
            else:
                row.base_asset = pair.base_asset
                row.quote_asset = pair.quote_asset
                row.status = pair.status
                row.step_size = pair.step_size
            await session.commit()

    # ==================== Signals ====================

    async def add_signal(self, signal: Signal) -> Signal:
        row = SignalORM(
            id=signal.id,
            symbol=signal.symbol,
            signal_type=signal.signal_type.value,
            price=signal.price,
            confidence=signal.confidence,
            indicators=signal.indicators.model_dump(mode="json"),
            status=signal.status.value,
            interval=signal.interval,
            strategy_id=signal.strategy_id,
            trader_id=signal.trader_id,
            created_at=_utc(signal.created_at),
            expires_at=_utc(signal.expires_at),
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
        return signal

    async def get_signal(self, signal_id: str) -> Signal | None:
        async with self.session_factory() as session:
            row = await session.get(SignalORM, signal_id)
            return _signal_from_row(row) if row is not None else None

    async def query_signals(
        self,
        *,
        symbol: str | None = None,
        signal_type: SignalType | None = None,
        status: SignalStatus | None = None,
        trader_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Signal], int]:
        """Return one page of signals (newest first) and the total match count."""
        conditions = []
        if symbol:
            conditions.append(SignalORM.symbol == symbol.upper())
        if signal_type is not None:
            conditions.append(SignalORM.signal_type == signal_type.value)
        if status is not None:
            conditions.append(SignalORM.status == status.value)
        if trader_id is not None:
            conditions.append(SignalORM.trader_id == trader_id)
        if since is not None:
            conditions.append(SignalORM.created_at >= _utc(since))
        if until is not None:
            conditions.append(SignalORM.created_at <= _utc(until))

        page = max(page, 1)
        async with self.session_factory() as session:
            total = await session.scalar(select(func.count(SignalORM.id)).where(*conditions))
            result = await session.execute(
                select(SignalORM)
                .where(*conditions)
                .order_by(SignalORM.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = result.scalars().all()
        return [_signal_from_row(row) for row in rows], int(total or 0)

    async def transition_signal_status(
        self,
        signal_id: str,
        status: SignalStatus,
        *,
        executed_price: float | None = None,
    ) -> bool:
        """Move a pending signal to ``status``. Returns False if it was not pending."""
        if status == SignalStatus.PENDING:
            raise ValueError("signal status can only move forward from pending")
        values: dict[str, Any] = {"status": status.value}
        if status == SignalStatus.EXECUTED:
            values["executed_at"] = datetime.now(UTC)
            values["executed_price"] = executed_price
        async with self.session_factory() as session:
            result = await session.execute(
                update(SignalORM)
                .where(SignalORM.id == signal_id, SignalORM.status == SignalStatus.PENDING.value)
                .values(**values)
            )
            await session.commit()
        return result.rowcount == 1

    async def expire_pending_signals(self, older_than: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                update(SignalORM)
                .where(
                    SignalORM.status == SignalStatus.PENDING.value,
                    SignalORM.created_at < _utc(older_than),
                )
                .values(status=SignalStatus.EXPIRED.value)
            )
            await session.commit()
        return int(result.rowcount or 0)

    async def signal_statistics(
        self,
        *,
        symbol: str | None = None,
        since: datetime | None = None,
    ) -> dict[str, Any]:
        """Counts by classification and status plus average confidence."""
        conditions = []
        if symbol:
            conditions.append(SignalORM.symbol == symbol.upper())
        if since is not None:
            conditions.append(SignalORM.created_at >= _utc(since))

        async with self.session_factory() as session:
            by_type = await session.execute(
                select(SignalORM.signal_type, func.count(SignalORM.id))
                .where(*conditions)
                .group_by(SignalORM.signal_type)
            )
            by_status = await session.execute(
                select(SignalORM.status, func.count(SignalORM.id))
                .where(*conditions)
                .group_by(SignalORM.status)
            )
            totals = await session.execute(
                select(func.count(SignalORM.id), func.avg(SignalORM.confidence)).where(*conditions)
            )
            total, avg_confidence = totals.one()

        return {
            "total": int(total or 0),
            "by_type": {kind: int(count) for kind, count in by_type.all()},
            "by_status": {state: int(count) for state, count in by_status.all()},
            "avg_confidence": float(avg_confidence or 0.0),
        }

    # ==================== Trade records ====================

    async def add_trade(self, record: TradeRecord) -> TradeRecord:
        """Insert a trade record.

        Raises ``AlreadyProcessedError`` when a record already exists for the
        same (user, signal).
        """
        row = TradeRecordORM(
            id=record.id,
            user_id=record.user_id,
            signal_id=record.signal_id,
            trader_id=record.trader_id,
            symbol=record.symbol,
            side=record.side.value,
            order_type=record.order_type.value,
            exchange_order_id=record.exchange_order_id,
            status=record.status.value,
            requested_amount=record.requested_amount,
            executed_qty=record.executed_qty,
            executed_price=record.executed_price,
            executed_value=record.executed_value,
            commission=record.commission,
            commission_asset=record.commission_asset,
            mode=record.mode,
            error_message=record.error_message,
            created_at=_utc(record.created_at),
            executed_at=_utc(record.executed_at),
        )
        async with self.session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if record.signal_id is None:
                    raise
                raise AlreadyProcessedError(
                    f"signal {record.signal_id} already processed for user {record.user_id}"
                ) from exc
        return record

    async def get_trade(self, trade_id: str) -> TradeRecord | None:
        async with self.session_factory() as session:
            row = await session.get(TradeRecordORM, trade_id)
            return _trade_from_row(row) if row is not None else None

    async def find_trade_for_signal(self, user_id: str, signal_id: str) -> TradeRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TradeRecordORM).where(
                    TradeRecordORM.user_id == user_id,
                    TradeRecordORM.signal_id == signal_id,
                )
            )
            row = result.scalars().first()
            return _trade_from_row(row) if row is not None else None

    async def list_trades(
        self,
        user_id: str,
        *,
        trader_id: str | None = None,
        status: TradeStatus | None = None,
        symbol: str | None = None,
        since: datetime | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[TradeRecord]:
        """Return a user's trade records, newest first."""
        stmt = self._trade_filter(
            select(TradeRecordORM), user_id, trader_id, status, symbol, since
        ).order_by(TradeRecordORM.created_at.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_trade_from_row(row) for row in rows]

    async def count_trades(
        self,
        user_id: str,
        *,
        trader_id: str | None = None,
        status: TradeStatus | None = None,
        symbol: str | None = None,
        since: datetime | None = None,
    ) -> int:
        stmt = self._trade_filter(
            select(func.count(TradeRecordORM.id)), user_id, trader_id, status, symbol, since
        )
        async with self.session_factory() as session:
            return int(await session.scalar(stmt) or 0)

    async def sum_committed_volume_since(self, user_id: str, since: datetime) -> float:
        """Quote volume committed by the user since ``since``.

        Filled trades count their executed value; resting orders count the
        requested amount until they settle.
        """
        committed = case(
            (TradeRecordORM.status == TradeStatus.FILLED.value, TradeRecordORM.executed_value),
            else_=TradeRecordORM.requested_amount,
        )
        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.coalesce(func.sum(committed), 0.0)).where(
                    TradeRecordORM.user_id == user_id,
                    TradeRecordORM.status.in_(
                        (TradeStatus.FILLED.value, TradeStatus.PENDING.value)
                    ),
                    TradeRecordORM.created_at >= _utc(since),
                )
            )
        return float(total or 0.0)

    async def find_trade_by_order(self, user_id: str, exchange_order_id: str) -> TradeRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TradeRecordORM).where(
                    TradeRecordORM.user_id == user_id,
                    TradeRecordORM.exchange_order_id == exchange_order_id,
                )
            )
            row = result.scalars().first()
            return _trade_from_row(row) if row is not None else None

    async def update_trade_execution(self, record: TradeRecord) -> bool:
        """Write the execution fields of a still-pending record.

        Returns False when the record already left ``pending``.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(TradeRecordORM)
                .where(
                    TradeRecordORM.id == record.id,
                    TradeRecordORM.status == TradeStatus.PENDING.value,
                )
                .values(
                    status=record.status.value,
                    executed_qty=record.executed_qty,
                    executed_price=record.executed_price,
                    executed_value=record.executed_value,
                    commission=record.commission,
                    commission_asset=record.commission_asset,
                    error_message=record.error_message,
                    executed_at=_utc(record.executed_at),
                )
            )
            await session.commit()
        return result.rowcount == 1

    async def update_trade_close(
        self,
        trade_id: str,
        *,
        close_price: float,
        realized_pnl: float,
        realized_pnl_pct: float,
        closed_at: datetime,
    ) -> TradeRecord | None:
        async with self.session_factory() as session:
            row = await session.get(TradeRecordORM, trade_id)
            if row is None:
                return None
            row.close_price = close_price
            row.realized_pnl = realized_pnl
            row.realized_pnl_pct = realized_pnl_pct
            row.closed_at = _utc(closed_at)
            await session.commit()
            return _trade_from_row(row)

    @staticmethod
    def _trade_filter(
        stmt: Select[Any],
        user_id: str,
        trader_id: str | None,
        status: TradeStatus | None,
        symbol: str | None,
        since: datetime | None,
    ) -> Select[Any]:
        stmt = stmt.where(TradeRecordORM.user_id == user_id)
        if trader_id is not None:
            stmt = stmt.where(TradeRecordORM.trader_id == trader_id)
        if status is not None:
            stmt = stmt.where(TradeRecordORM.status == status.value)
        if symbol:
            stmt = stmt.where(TradeRecordORM.symbol == symbol.upper())
        if since is not None:
            stmt = stmt.where(TradeRecordORM.created_at >= _utc(since))
        return stmt


def _signal_from_row(row: SignalORM) -> Signal:
    return Signal(
        id=row.id,
        symbol=row.symbol,
        signal_type=SignalType(row.signal_type),
        price=row.price,
        confidence=row.confidence,
        indicators=IndicatorPayload.model_validate(row.indicators),
        status=SignalStatus(row.status),
        created_at=_utc(row.created_at),
        expires_at=_utc(row.expires_at),
        interval=row.interval,
        strategy_id=row.strategy_id,
        trader_id=row.trader_id,
        executed_at=_utc(row.executed_at),
        executed_price=row.executed_price,
    )


def _trade_from_row(row: TradeRecordORM) -> TradeRecord:
    return TradeRecord(
        id=row.id,
        user_id=row.user_id,
        symbol=row.symbol,
        side=OrderSide(row.side),
        order_type=OrderType(row.order_type),
        status=TradeStatus(row.status),
        requested_amount=row.requested_amount,
        mode=row.mode,  # type: ignore[arg-type]
        created_at=_utc(row.created_at),
        signal_id=row.signal_id,
        trader_id=row.trader_id,
        exchange_order_id=row.exchange_order_id,
        executed_qty=row.executed_qty,
        executed_price=row.executed_price,
        executed_value=row.executed_value,
        commission=row.commission,
        commission_asset=row.commission_asset,
        error_message=row.error_message,
        executed_at=_utc(row.executed_at),
        close_price=row.close_price,
        closed_at=_utc(row.closed_at),
        realized_pnl=row.realized_pnl,
        realized_pnl_pct=row.realized_pnl_pct,
    )
