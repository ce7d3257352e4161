"""Interfaces of the collaborators the pipeline consumes."""

from __future__ import annotations

from typing import Any, Protocol

import pandas as pd  # type: ignore[import-untyped]

from copy_trading.schemas import CopyTradeConfig
from copy_trading.types import (
    Balance,
    Credentials,
    ExchangeOrder,
    Follower,
    OrderSide,
    OrderType,
    TradingPair,
)


class MarketDataProvider(Protocol):
    """Read-only market data source."""

    async def get_current_price(self, symbol: str) -> float:
        """Return the latest traded price."""

    async def get_klines(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        """Return OHLCV candles ascending by ``open_time``."""

    async def get_symbol_info(self, symbol: str) -> TradingPair | None:
        """Return exchange info for ``symbol`` or None when it is not listed."""


class ExchangeClient(Protocol):
    """Authenticated trading client. Credentials are supplied per call."""

    async def get_balance(self, credentials: Credentials, asset: str) -> Balance:
        """Return the free/locked balance of one asset."""

    async def submit_order(
        self,
        credentials: Credentials,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: float | None = None,
    ) -> ExchangeOrder:
        """Place an order and return the exchange response."""

    async def get_order(self, credentials: Credentials, symbol: str, order_id: str) -> ExchangeOrder:
        """Return the current state of an order."""

    async def cancel_order(self, credentials: Credentials, symbol: str, order_id: str) -> ExchangeOrder:
        """Cancel an open order."""


class CredentialStore(Protocol):
    """Source of decrypted exchange credentials."""

    async def get_active_credentials(self, user_id: str) -> Credentials | None:
        """Return the user's active key pair, or None."""


class FollowStore(Protocol):
    """Follow relationships between followers and traders."""

    async def list_followers(self, trader_id: str) -> list[Follower]:
        """Return every follower of ``trader_id`` with its config."""

    async def get_config(self, follower_id: str, trader_id: str) -> CopyTradeConfig | None:
        """Return one follower's config for a trader."""

    async def update_config(
        self, follower_id: str, trader_id: str, changes: dict[str, Any]
    ) -> CopyTradeConfig:
        """Apply a partial update and return the validated config."""


class Broadcaster(Protocol):
    """Fire-and-forget live-update channel."""

    def publish(self, topic: str, event_type: str, payload: dict[str, Any]) -> int:
        """Publish one event; return the number of subscribers reached."""
