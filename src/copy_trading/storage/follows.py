"""SQL-backed follow relationships and copy-trade configs."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from copy_trading.errors import FollowNotFoundError
from copy_trading.schemas import CopyTradeConfig
from copy_trading.storage.models import FollowORM
from copy_trading.types import Follower
from copy_trading.utils.logging import get_logger


class SqlFollowStore:
    """Follow store over the ``follows`` table.

    Configs are validated through ``CopyTradeConfig`` on every read and write,
    so a malformed persisted row fails loudly instead of being half-applied.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._logger = get_logger("copy_trading.storage.follows")

    async def follow(
        self,
        follower_id: str,
        trader_id: str,
        config: CopyTradeConfig | None = None,
    ) -> CopyTradeConfig:
        """Create or replace a follow relationship."""
        if follower_id == trader_id:
            raise ValueError("cannot_follow_self")
        config = config or CopyTradeConfig()
        payload = config.model_dump(mode="json")
        async with self._session_factory() as session:
            row = await self._get_row(session, follower_id, trader_id)
            if row is None:
                session.add(FollowORM(follower_id=follower_id, trader_id=trader_id, config=payload))
            else:
                row.config = payload
                row.updated_at = datetime.now(UTC)
            await session.commit()
        self._logger.info("follow_saved", follower_id=follower_id, trader_id=trader_id)
        return config

    async def unfollow(self, follower_id: str, trader_id: str) -> bool:
        """Delete the relationship. Returns False when it did not exist."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(FollowORM).where(
                    FollowORM.follower_id == follower_id,
                    FollowORM.trader_id == trader_id,
                )
            )
            await session.commit()
        return bool(result.rowcount)

    async def get_config(self, follower_id: str, trader_id: str) -> CopyTradeConfig | None:
        async with self._session_factory() as session:
            row = await self._get_row(session, follower_id, trader_id)
            if row is None:
                return None
            return CopyTradeConfig.model_validate(row.config)

    async def update_config(
        self, follower_id: str, trader_id: str, changes: dict[str, Any]
    ) -> CopyTradeConfig:
        """Merge ``changes`` into the stored config and validate the result."""
        async with self._session_factory() as session:
            row = await self._get_row(session, follower_id, trader_id)
            if row is None:
                raise FollowNotFoundError(f"{follower_id} does not follow {trader_id}")
            config = CopyTradeConfig.model_validate(row.config).merged(changes)
            row.config = config.model_dump(mode="json")
            row.updated_at = datetime.now(UTC)
            await session.commit()
        return config

    async def list_followers(self, trader_id: str) -> list[Follower]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(FollowORM).where(FollowORM.trader_id == trader_id).order_by(FollowORM.id)
            )
            rows = result.scalars().all()
        return [
            Follower(
                follower_id=row.follower_id,
                trader_id=row.trader_id,
                config=CopyTradeConfig.model_validate(row.config),
            )
            for row in rows
        ]

    @staticmethod
    async def _get_row(session: AsyncSession, follower_id: str, trader_id: str) -> FollowORM | None:
        result = await session.execute(
            select(FollowORM).where(
                FollowORM.follower_id == follower_id,
                FollowORM.trader_id == trader_id,
            )
        )
        return result.scalars().first()
