"""Timeout wrapper for exchange and market-data calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from copy_trading.errors import ExchangeTimeoutError

T = TypeVar("T")


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    A timeout is reported as a failed call, never as a success.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as exc:
        raise ExchangeTimeoutError(operation, timeout) from exc
