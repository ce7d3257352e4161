"""Authenticated Binance spot trading client."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aiohttp
from binance import AsyncClient  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from copy_trading.config import Settings
from copy_trading.errors import ExchangeError
from copy_trading.types import (
    Balance,
    Credentials,
    ExchangeOrder,
    Fill,
    OrderSide,
    OrderType,
)
from copy_trading.utils.logging import get_logger, log_exchange_call

# Transport failures surface from aiohttp or the socket layer, not as Binance exceptions.
_CLIENT_ERRORS = (BinanceAPIException, BinanceRequestException, aiohttp.ClientError, OSError)


class BinanceTradingClient:
    """Per-call authenticated client.

    A new ``AsyncClient`` is created for every call and closed afterwards, so
    decrypted credentials live no longer than one operation.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger("copy_trading.exchange.binance_trading")

    @retry(
        retry=retry_if_exception_type(ExchangeError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def get_balance(self, credentials: Credentials, asset: str) -> Balance:
        async with self._session(credentials, "get_balance") as client:
            payload = await client.get_asset_balance(asset=asset)
        if not payload:
            return Balance(asset=asset, free=0.0, locked=0.0)
        return Balance(
            asset=asset,
            free=float(payload.get("free", 0.0)),
            locked=float(payload.get("locked", 0.0)),
        )

    async def submit_order(
        self,
        credentials: Credentials,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: float | None = None,
    ) -> ExchangeOrder:
        """Place a MARKET or GTC LIMIT order. Never retried."""
        params: dict[str, Any] = {
            "symbol": symbol,
            "side": side.value,
            "type": order_type.value,
            "quantity": f"{quantity:.8f}".rstrip("0").rstrip("."),
        }
        if order_type == OrderType.LIMIT:
            if price is None or price <= 0:
                raise ValueError("limit_price_required")
            params["timeInForce"] = AsyncClient.TIME_IN_FORCE_GTC
            params["price"] = f"{price:.8f}".rstrip("0").rstrip(".")

        async with self._session(credentials, "submit_order") as client:
            payload = await client.create_order(**params)
        return _parse_order(payload)

    @retry(
        retry=retry_if_exception_type(ExchangeError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def get_order(self, credentials: Credentials, symbol: str, order_id: str) -> ExchangeOrder:
        async with self._session(credentials, "get_order") as client:
            payload = await client.get_order(symbol=symbol, orderId=int(order_id))
        return _parse_order(payload)

    async def cancel_order(self, credentials: Credentials, symbol: str, order_id: str) -> ExchangeOrder:
        async with self._session(credentials, "cancel_order") as client:
            payload = await client.cancel_order(symbol=symbol, orderId=int(order_id))
        return _parse_order(payload)

    @asynccontextmanager
    async def _session(self, credentials: Credentials, operation: str) -> AsyncIterator[AsyncClient]:
        started = time.perf_counter()
        try:
            client = await AsyncClient.create(
                api_key=credentials.api_key,
                api_secret=credentials.api_secret,
                testnet=self._settings.binance_testnet,
            )
        except _CLIENT_ERRORS as exc:
            raise ExchangeError(f"{operation}_connect_failed: {exc}") from exc
        try:
            yield client
        except _CLIENT_ERRORS as exc:
            log_exchange_call(
                self._logger,
                operation=operation,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                error=str(exc),
            )
            raise ExchangeError(f"{operation}_failed: {exc}") from exc
        finally:
            await client.close_connection()
        log_exchange_call(
            self._logger,
            operation=operation,
            success=True,
            latency_ms=(time.perf_counter() - started) * 1000,
        )


def _parse_order(payload: dict[str, Any]) -> ExchangeOrder:
    fills = [
        Fill(
            price=float(item.get("price", 0.0)),
            qty=float(item.get("qty", 0.0)),
            commission=float(item.get("commission", 0.0)),
            commission_asset=item.get("commissionAsset"),
        )
        for item in payload.get("fills", [])
    ]
    return ExchangeOrder(
        order_id=str(payload["orderId"]),
        symbol=payload.get("symbol", ""),
        status=payload.get("status", "UNKNOWN"),
        side=payload.get("side"),
        order_type=payload.get("type"),
        price=float(payload.get("price") or 0.0),
        executed_qty=float(payload.get("executedQty") or 0.0),
        cummulative_quote_qty=float(payload.get("cummulativeQuoteQty") or 0.0),
        fills=fills,
    )
