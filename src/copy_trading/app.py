"""Composition root: builds every pipeline component with its collaborators."""

from __future__ import annotations

from dataclasses import dataclass

from copy_trading.config import Settings
from copy_trading.data.binance import BinanceMarketData
from copy_trading.events.broadcast import BroadcastHub
from copy_trading.exchange.binance_trading import BinanceTradingClient
from copy_trading.ports import CredentialStore, ExchangeClient, MarketDataProvider
from copy_trading.risk.rules import RiskChecker
from copy_trading.scheduler.scanner import SignalScanner
from copy_trading.signals.generator import SignalGenerator
from copy_trading.storage.credentials import SettingsCredentialStore
from copy_trading.storage.database import Database
from copy_trading.storage.follows import SqlFollowStore
from copy_trading.trading.decision import CopyTradeDispatcher
from copy_trading.trading.execution import OrderExecutionService
from copy_trading.trading.stats import TradeStatsAggregator


@dataclass(slots=True)
class App:
    settings: Settings
    database: Database
    market_data: MarketDataProvider
    exchange: ExchangeClient
    credentials: CredentialStore
    follows: SqlFollowStore
    broadcaster: BroadcastHub
    stats: TradeStatsAggregator
    risk_checker: RiskChecker
    executor: OrderExecutionService
    generator: SignalGenerator
    dispatcher: CopyTradeDispatcher
    scanner: SignalScanner

    async def start(self) -> None:
        await self.database.init_db()

    async def close(self) -> None:
        await self.scanner.shutdown()
        close = getattr(self.market_data, "close", None)
        if close is not None:
            await close()
        await self.database.close()


def build_app(
    settings: Settings,
    *,
    database: Database | None = None,
    market_data: MarketDataProvider | None = None,
    exchange: ExchangeClient | None = None,
    credentials: CredentialStore | None = None,
    broadcaster: BroadcastHub | None = None,
) -> App:
    """Wire the pipeline. Any collaborator can be overridden, e.g. with fakes in tests."""
    database = database or Database(settings.database_url)
    market_data = market_data or BinanceMarketData(settings)
    exchange = exchange or BinanceTradingClient(settings)
    credentials = credentials or SettingsCredentialStore(settings)
    broadcaster = broadcaster or BroadcastHub(settings.broadcast_queue_size)

    follows = SqlFollowStore(database.session_factory)
    stats = TradeStatsAggregator(database)
    risk_checker = RiskChecker(exchange, stats, settings)
    executor = OrderExecutionService(
        market_data, exchange, credentials, database, risk_checker, settings
    )
    generator = SignalGenerator(market_data, database, settings)
    dispatcher = CopyTradeDispatcher(follows, executor, database, broadcaster, settings)
    scanner = SignalScanner(generator, dispatcher, broadcaster, settings)

    return App(
        settings=settings,
        database=database,
        market_data=market_data,
        exchange=exchange,
        credentials=credentials,
        follows=follows,
        broadcaster=broadcaster,
        stats=stats,
        risk_checker=risk_checker,
        executor=executor,
        generator=generator,
        dispatcher=dispatcher,
        scanner=scanner,
    )
