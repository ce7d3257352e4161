from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pandas as pd
import pytest
import pytest_asyncio

from copy_trading.app import App, build_app
from copy_trading.config import Settings
from copy_trading.errors import ExchangeError
from copy_trading.events.broadcast import BroadcastHub
from copy_trading.schemas import IndicatorPayload
from copy_trading.storage.database import Database
from copy_trading.types import (
    Balance,
    Credentials,
    ExchangeOrder,
    Fill,
    OrderSide,
    OrderType,
    Signal,
    SignalStatus,
    SignalType,
    TradingPair,
)


def build_ohlcv(rows: int, start_price: float, drift: float, step_hours: int = 1) -> pd.DataFrame:
    start = datetime(2024, 1, 1, tzinfo=UTC)
    times = [start + timedelta(hours=i * step_hours) for i in range(rows)]
    closes = [start_price + i * drift for i in range(rows)]
    return pd.DataFrame(
        {
            "open_time": times,
            "open": closes,
            "high": [c * 1.001 for c in closes],
            "low": [c * 0.999 for c in closes],
            "close": closes,
            "volume": [1000.0 for _ in range(rows)],
            "close_time": [t + timedelta(hours=step_hours) for t in times],
        }
    )


def make_signal(
    symbol: str = "BTCUSDT",
    signal_type: SignalType = SignalType.BUY,
    confidence: float = 0.8,
    status: SignalStatus = SignalStatus.PENDING,
    trader_id: str | None = "trader-1",
    price: float = 50_000.0,
    created_at: datetime | None = None,
) -> Signal:
    created_at = created_at or datetime.now(UTC)
    return Signal(
        id=str(uuid.uuid4()),
        symbol=symbol,
        signal_type=signal_type,
        price=price,
        confidence=confidence,
        indicators=IndicatorPayload(reasons=["MACD bullish trend"]),
        status=status,
        created_at=created_at,
        expires_at=created_at + timedelta(hours=24),
        trader_id=trader_id,
    )


class FakeMarketData:
    def __init__(self, prices: dict[str, float] | None = None) -> None:
        self.prices = prices or {"BTCUSDT": 50_000.0, "ETHUSDT": 2_500.0, "BNBUSDT": 300.0}
        self.klines: dict[str, pd.DataFrame] = {}
        self.price_delay = 0.0
        self.failing: set[str] = set()

    async def get_current_price(self, symbol: str) -> float:
        if self.price_delay:
            await asyncio.sleep(self.price_delay)
        if symbol in self.failing:
            raise ExchangeError(f"get_symbol_ticker_failed: {symbol}")
        return self.prices[symbol]

    async def get_klines(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        if symbol in self.klines:
            return self.klines[symbol]
        return build_ohlcv(rows=limit, start_price=self.prices[symbol], drift=0.0)

    async def get_symbol_info(self, symbol: str) -> TradingPair | None:
        if symbol not in self.prices:
            return None
        return TradingPair(symbol=symbol, base_asset=symbol[:-4], quote_asset="USDT")


class FakeExchange:
    """Fills market orders at the configured price and debits the user's balance."""

    def __init__(self, market_data: FakeMarketData) -> None:
        self._market_data = market_data
        self.balances: dict[str, float] = {}
        self.submitted: list[dict[str, object]] = []
        self.balance_reads = 0
        self.submit_delay = 0.0
        self.submit_error: Exception | None = None
        self.order_status = "FILLED"
        self.orders: dict[str, ExchangeOrder] = {}
        self.credentials_by_order: dict[str, str] = {}

    async def get_balance(self, credentials: Credentials, asset: str) -> Balance:
        self.balance_reads += 1
        await asyncio.sleep(0)
        return Balance(asset=asset, free=self.balances.get(credentials.api_key, 0.0))

    async def submit_order(
        self,
        credentials: Credentials,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        price: float | None = None,
    ) -> ExchangeOrder:
        self.submitted.append({"user": credentials.api_key, "symbol": symbol, "side": side, "qty": quantity})
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.submit_error is not None:
            raise self.submit_error
        order = ExchangeOrder(
            order_id=str(len(self.submitted)),
            symbol=symbol,
            status="NEW",
            side=side.value,
            order_type=order_type.value,
            price=price or 0.0,
        )
        self.orders[order.order_id] = order
        self.credentials_by_order[order.order_id] = credentials.api_key
        if self.order_status == "FILLED":
            self.fill_order(order.order_id, quantity, price or self._market_data.prices[symbol])
        return order

    def fill_order(self, order_id: str, quantity: float, fill_price: float) -> ExchangeOrder:
        """Fill a resting order as the matching engine would, debiting the balance."""
        order = self.orders[order_id]
        value = quantity * fill_price
        user = self.credentials_by_order[order_id]
        self.balances[user] = self.balances.get(user, 0.0) - value
        order.status = "FILLED"
        order.executed_qty = quantity
        order.cummulative_quote_qty = value
        order.fills = [
            Fill(price=fill_price, qty=quantity, commission=value * 0.001, commission_asset="USDT")
        ]
        return order

    async def get_order(self, credentials: Credentials, symbol: str, order_id: str) -> ExchangeOrder:
        return self.orders[order_id]

    async def cancel_order(self, credentials: Credentials, symbol: str, order_id: str) -> ExchangeOrder:
        order = self.orders[order_id]
        order.status = "CANCELED"
        return order


class StaticCredentialStore:
    """Every user listed has credentials whose api_key is the user id."""

    def __init__(self, users: set[str] | None = None) -> None:
        self.users = users if users is not None else {"alice", "bob"}

    async def get_active_credentials(self, user_id: str) -> Credentials | None:
        if user_id not in self.users:
            return None
        return Credentials(api_key=user_id, api_secret=f"secret-{user_id}")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        market_data_timeout_sec=0.1,
        balance_timeout_sec=0.1,
        order_timeout_sec=0.2,
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncIterator[Database]:
    database = Database(settings.database_url)
    await database.init_db()
    yield database
    await database.close()


@pytest.fixture
def market_data() -> FakeMarketData:
    return FakeMarketData()


@pytest.fixture
def exchange(market_data: FakeMarketData) -> FakeExchange:
    return FakeExchange(market_data)


@pytest.fixture
def credentials() -> StaticCredentialStore:
    return StaticCredentialStore()


@pytest.fixture
def hub() -> BroadcastHub:
    return BroadcastHub(queue_size=10)


@pytest_asyncio.fixture
async def app(
    settings: Settings,
    db: Database,
    market_data: FakeMarketData,
    exchange: FakeExchange,
    credentials: StaticCredentialStore,
    hub: BroadcastHub,
) -> AsyncIterator[App]:
    application = build_app(
        settings,
        database=db,
        market_data=market_data,
        exchange=exchange,
        credentials=credentials,
        broadcaster=hub,
    )
    yield application
    await application.scanner.shutdown()
