"""Binance spot market data client."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import aiohttp
import pandas as pd  # type: ignore[import-untyped]
from binance import AsyncClient  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from copy_trading.config import Settings
from copy_trading.errors import ExchangeError
from copy_trading.types import TradingPair
from copy_trading.utils.logging import get_logger, log_exchange_call

_CLIENT_ERRORS = (BinanceAPIException, BinanceRequestException, aiohttp.ClientError, OSError)

_KLINE_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
    "quote_asset_volume",
    "number_of_trades",
    "taker_buy_base_asset_volume",
    "taker_buy_quote_asset_volume",
    "ignore",
]


class BinanceMarketData:
    """Read-only client for prices, klines and symbol info."""

    _INTERVAL_MAP = {
        "1m": AsyncClient.KLINE_INTERVAL_1MINUTE,
        "5m": AsyncClient.KLINE_INTERVAL_5MINUTE,
        "15m": AsyncClient.KLINE_INTERVAL_15MINUTE,
        "30m": AsyncClient.KLINE_INTERVAL_30MINUTE,
        "1h": AsyncClient.KLINE_INTERVAL_1HOUR,
        "4h": AsyncClient.KLINE_INTERVAL_4HOUR,
        "1d": AsyncClient.KLINE_INTERVAL_1DAY,
    }

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger("copy_trading.data.binance")
        self._client: AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def get_current_price(self, symbol: str) -> float:
        """Fetch the latest ticker price."""
        payload = await self._call("get_symbol_ticker", symbol=symbol)
        return float(payload["price"])

    async def get_klines(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        """Fetch spot klines and return a normalized dataframe."""
        resolved_interval = self._INTERVAL_MAP.get(interval.lower())
        if resolved_interval is None:
            raise ValueError(f"unsupported_interval: {interval}")

        rows = await self._call("get_klines", symbol=symbol, interval=resolved_interval, limit=limit)
        df = pd.DataFrame(rows, columns=_KLINE_COLUMNS)
        if df.empty:
            return df[["open_time", "open", "high", "low", "close", "volume", "close_time"]]

        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
        df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
        df = df.dropna(subset=numeric_cols).reset_index(drop=True)
        return df[["open_time", "open", "high", "low", "close", "volume", "close_time"]]

    async def get_symbol_info(self, symbol: str) -> TradingPair | None:
        """Return the trading pair with its LOT_SIZE step, or None when unlisted."""
        payload: dict[str, Any] | None = await self._call("get_symbol_info", symbol=symbol)
        if not payload:
            return None
        step_size = None
        for item in payload.get("filters", []):
            if item.get("filterType") == "LOT_SIZE":
                step_size = float(item["stepSize"])
        return TradingPair(
            symbol=payload["symbol"],
            base_asset=payload["baseAsset"],
            quote_asset=payload["quoteAsset"],
            status=payload.get("status", "TRADING"),
            step_size=step_size,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close_connection()
            self._client = None

    @retry(
        retry=retry_if_exception_type(ExchangeError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _call(self, method: str, **kwargs: Any) -> Any:
        client = await self._get_client()
        started = time.perf_counter()
        try:
            result = await getattr(client, method)(**kwargs)
        except _CLIENT_ERRORS as exc:
            log_exchange_call(
                self._logger,
                operation=method,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                error=str(exc),
            )
            raise ExchangeError(f"{method}_failed: {exc}") from exc
        log_exchange_call(
            self._logger,
            operation=method,
            success=True,
            latency_ms=(time.perf_counter() - started) * 1000,
            symbol=kwargs.get("symbol"),
        )
        return result

    async def _get_client(self) -> AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = await AsyncClient.create(testnet=self._settings.binance_testnet)
            return self._client
