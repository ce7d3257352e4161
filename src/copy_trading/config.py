"""Configuration loading from environment variables and the .env file."""

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class LogFormat(str, Enum):
    """Log output format."""

    JSON = "json"
    CONSOLE = "console"


class ScoringRules(BaseModel):
    """Point values and thresholds of the signal scoring heuristic.

    The defaults are empirical constants; override them through
    ``SCORING__<FIELD>`` environment variables rather than editing code.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    golden_cross: int = 30
    trend: int = 10
    momentum_extreme: int = 20
    band_break: int = 15
    oversold: float = 30.0
    overbought: float = 70.0
    squeeze_bandwidth: float = 0.05
    strong_threshold: int = 40
    threshold: int = 20


class Settings(BaseSettings):
    """Runtime settings for the copy-trading pipeline.

    Loaded from environment variables and the ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== Storage ====================
    database_url: str = Field(
        default="sqlite+aiosqlite:///data/copy_trading.db",
        description="SQLAlchemy async database URL",
    )

    # ==================== Binance API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(default="", description="Binance API Secret")
    binance_testnet: bool = Field(default=True, description="Use the Binance testnet")
    credential_user_id: str = Field(
        default="default",
        description="User id that owns the configured Binance key pair",
    )
    quote_asset: str = Field(default="USDT", description="Quote currency for balances")

    # ==================== Timeouts ====================
    market_data_timeout_sec: float = Field(default=5.0, gt=0, le=60)
    balance_timeout_sec: float = Field(default=5.0, gt=0, le=60)
    order_timeout_sec: float = Field(default=15.0, gt=0, le=120)

    # ==================== Risk limits ====================
    max_position_size: float = Field(
        default=10_000.0,
        gt=0,
        description="Per-trade ceiling in quote currency",
    )
    daily_trade_limit: float = Field(
        default=5_000.0,
        gt=0,
        description="Per-user daily executed volume ceiling in quote currency",
    )

    # ==================== Copy trading ====================
    default_copy_amount: float = Field(default=100.0, gt=0)
    default_max_amount_per_trade: float = Field(default=1_000.0, gt=0)
    dispatch_concurrency: int = Field(default=8, ge=1, le=256)
    scan_concurrency: int = Field(default=4, ge=1, le=64)
    signal_expiry_hours: int = Field(default=24, ge=1, le=24 * 30)

    # ==================== Scanner ====================
    scanner_symbols: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["BTCUSDT", "ETHUSDT", "BNBUSDT"]
    )
    scanner_interval: str = Field(default="1h", description="Kline interval")
    scanner_schedule: str = Field(default="15m", description="Scan frequency")
    scanner_kline_limit: int = Field(default=100, ge=20, le=1000)
    scanner_trader_id: str | None = Field(
        default=None,
        description="Trader that default scanner signals are attributed to",
    )

    # ==================== Live updates ====================
    broadcast_queue_size: int = Field(default=100, ge=1, le=10_000)

    # ==================== Scoring ====================
    scoring: ScoringRules = Field(default_factory=ScoringRules)

    # ==================== Logging ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="Log output format",
    )

    @field_validator("scanner_symbols", mode="before")
    @classmethod
    def parse_symbols(cls, v: str | list[str]) -> list[str]:
        """Accept a comma separated string as well as a list."""
        if isinstance(v, str):
            return [item.strip().upper() for item in v.split(",") if item.strip()]
        return [str(item).upper() for item in v]

    @model_validator(mode="after")
    def check_timeouts(self) -> "Settings":
        """Order submission must be allowed more time than read-only calls."""
        if self.order_timeout_sec <= self.market_data_timeout_sec:
            raise ValueError("order_timeout_sec must exceed market_data_timeout_sec")
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.binance_api_key and self.binance_api_secret)

    def validate_for_trading(self) -> list[str]:
        """Return the names of missing settings required to place orders."""
        missing = []
        if not self.binance_api_key:
            missing.append("BINANCE_API_KEY")
        if not self.binance_api_secret:
            missing.append("BINANCE_API_SECRET")
        return missing


# Process-wide settings instance (lazy)
_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from the environment."""
    global _settings
    _settings = Settings()
    return _settings
