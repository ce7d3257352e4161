"""CLI 入口模块 - Copy Trading 命令行接口。"""

import asyncio
import contextlib
import sys
from dataclasses import asdict
from pathlib import Path

import click

from copy_trading import __version__
from copy_trading.app import build_app
from copy_trading.config import Settings, get_settings
from copy_trading.scheduler.scanner import ScanJobConfig
from copy_trading.types import ScanResult
from copy_trading.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Copy Trading - 技术指标信号生成与跟单执行。

    扫描交易对生成信号，按关注者配置自动或手动跟单。
    """
    if version:
        click.echo(f"copy-trading version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("init-db")
def init_db() -> None:
    """创建数据库表。"""
    setup_logging()
    settings = get_settings()
    asyncio.run(_init_db(settings))
    click.echo("[OK] Database initialized")


@cli.command()
@click.option("--symbols", "-s", default=None, help="逗号分隔的交易对，默认使用配置")
@click.option("--interval", "-i", default=None, help="K 线周期")
@click.option("--limit", "-l", type=int, default=None, help="K 线数量")
@click.option("--trader-id", default=None, help="信号归属的交易员")
def scan(
    symbols: str | None,
    interval: str | None,
    limit: int | None,
    trader_id: str | None,
) -> None:
    """执行单次信号扫描。

    生成信号 → 推送 → 分发给关注者
    """
    setup_logging()
    logger = get_logger("copy_trading.main")
    settings = get_settings()

    config = ScanJobConfig(
        symbols=(
            [s.strip().upper() for s in symbols.split(",") if s.strip()]
            if symbols
            else list(settings.scanner_symbols)
        ),
        interval=interval or settings.scanner_interval,
        schedule=settings.scanner_schedule,
        kline_limit=limit or settings.scanner_kline_limit,
        trader_id=trader_id or settings.scanner_trader_id,
    )

    try:
        result = asyncio.run(_scan_once(settings, config))
    except Exception as e:
        logger.exception("scan_failed", error=str(e))
        sys.exit(1)

    click.echo(
        f"Scanned {result.symbols_scanned} symbols, "
        f"generated {result.signals_generated} signals in {result.elapsed_ms:.0f} ms"
    )
    for signal in result.signals:
        click.echo(
            f"   {signal['symbol']:<10} {signal['signal_type']:<12} "
            f"price={signal['price']} confidence={signal['confidence']}%"
        )
    for error in result.errors:
        click.echo(f"   [ERROR] {error}")


@cli.command()
def run() -> None:
    """按计划持续扫描。

    使用配置中的默认任务，Ctrl+C 停止。
    """
    setup_logging()
    logger = get_logger("copy_trading.main")
    settings = get_settings()

    logger.info(
        "starting_scanner",
        symbols=settings.scanner_symbols,
        schedule=settings.scanner_schedule,
        interval=settings.scanner_interval,
    )

    try:
        asyncio.run(_run_forever(settings))
    except KeyboardInterrupt:
        logger.info("scanner_stopped", message="User stopped scanner")
        sys.exit(0)


@cli.command("expire-signals")
def expire_signals() -> None:
    """将超时未处理的信号标记为过期。"""
    setup_logging()
    settings = get_settings()
    count = asyncio.run(_expire_signals(settings))
    click.echo(f"Expired {count} pending signals")


@cli.command()
@click.option("--user-id", "-u", required=True, help="用户 ID")
def reconcile(user_id: str) -> None:
    """同步用户挂单状态，更新成交或失败的交易记录。"""
    setup_logging()
    settings = get_settings()
    settled = asyncio.run(_reconcile(settings, user_id))
    click.echo(f"Settled {len(settled)} pending orders")
    for record in settled:
        click.echo(f"   {record.symbol:<10} {record.exchange_order_id} -> {record.status.value}")


@cli.command()
@click.option("--user-id", "-u", required=True, help="用户 ID")
@click.option("--days", "-d", type=int, default=7, help="每日交易量窗口（天）")
def stats(user_id: str, days: int) -> None:
    """显示用户交易统计。"""
    setup_logging()
    settings = get_settings()
    summary, daily, today = asyncio.run(_user_stats(settings, user_id, days))

    click.echo(f"[Trade Stats] {user_id}")
    for key, value in asdict(summary).items():
        click.echo(f"   {key}: {value:.2f}" if isinstance(value, float) else f"   {key}: {value}")
    click.echo(f"   today_volume: {today:.2f} / {settings.daily_trade_limit:.2f}")
    click.echo()
    click.echo(f"[Daily Volume] last {days} days")
    for bucket in daily:
        click.echo(f"   {bucket.date}: {bucket.volume:.2f} ({bucket.trades} trades)")


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("Copy Trading - Status")
    click.echo("=" * 50)
    click.echo()

    click.echo("[API Configuration]")
    binance_status = "[OK] Configured" if settings.has_credentials else "[--] Not configured"
    click.echo(f"   Binance API: {binance_status}")
    click.echo(f"   Binance Testnet: {'Yes' if settings.binance_testnet else 'No'}")
    click.echo(f"   Credential user: {settings.credential_user_id}")
    click.echo()

    click.echo("[Scanner]")
    click.echo(f"   Symbols: {', '.join(settings.scanner_symbols)}")
    click.echo(f"   Interval: {settings.scanner_interval}")
    click.echo(f"   Schedule: every {settings.scanner_schedule}")
    click.echo(f"   Trader: {settings.scanner_trader_id or '-'}")
    click.echo()

    click.echo("[Risk Parameters]")
    click.echo(f"   Max position size: {settings.max_position_size:.2f} {settings.quote_asset}")
    click.echo(f"   Daily trade limit: {settings.daily_trade_limit:.2f} {settings.quote_asset}")
    click.echo(f"   Default copy amount: {settings.default_copy_amount:.2f}")
    click.echo(f"   Order timeout: {settings.order_timeout_sec:g}s")
    click.echo()

    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Database: {settings.database_url}")
    click.echo()

    missing = settings.validate_for_trading()
    if missing:
        click.echo("[WARN] Order execution disabled, missing:")
        for key in missing:
            click.echo(f"   - {key}")
    else:
        click.echo("[OK] Trading configuration complete")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("copy_trading.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("pandas", "Data processing"),
        ("numpy", "Numerical computing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("binance", "Binance API client"),
        ("sqlalchemy", "Persistence"),
        ("aiosqlite", "SQLite async driver"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


async def _init_db(settings: Settings) -> None:
    app = build_app(settings)
    try:
        await app.start()
    finally:
        await app.close()


async def _scan_once(settings: Settings, config: ScanJobConfig) -> ScanResult:
    app = build_app(settings)
    try:
        await app.start()
        return await app.scanner.run_scan(config)
    finally:
        await app.close()


async def _run_forever(settings: Settings) -> None:
    app = build_app(settings)
    try:
        await app.start()
        app.scanner.start_default_job()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.Event().wait()
    finally:
        await app.close()


async def _expire_signals(settings: Settings) -> int:
    app = build_app(settings)
    try:
        await app.start()
        return await app.generator.expire_stale_signals()
    finally:
        await app.close()


async def _reconcile(settings: Settings, user_id: str) -> list:
    app = build_app(settings)
    try:
        await app.start()
        return await app.executor.reconcile_pending_orders(user_id)
    finally:
        await app.close()


async def _user_stats(settings: Settings, user_id: str, days: int) -> tuple:
    app = build_app(settings)
    try:
        await app.start()
        summary = await app.stats.user_stats(user_id)
        daily = await app.stats.daily_volume(user_id, days)
        today = await app.stats.today_volume(user_id)
        return summary, daily, today
    finally:
        await app.close()


# 支持 python -m copy_trading.main 调用
if __name__ == "__main__":
    cli()
