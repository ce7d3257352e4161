"""结构化日志配置模块。

所有组件通过 structlog 输出事件，事件名使用 snake_case，字段名与领域类型一致。
凭证字段在渲染前统一屏蔽，永远不会进入日志输出。
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from copy_trading.config import LogFormat, Settings, get_settings

_SECRET_KEYS = frozenset({"api_key", "api_secret", "secret", "credentials"})

# 第三方库默认过于啰嗦，只保留警告
_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "binance", "urllib3", "asyncio")


def _redact_secrets(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """屏蔽事件字典中的凭证字段。"""
    for key in _SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def _pipeline_processors(log_format: LogFormat) -> list[Processor]:
    """按输出格式组装处理器链，屏蔽始终在渲染器之前执行。"""
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _redact_secrets,
    ]
    if log_format == LogFormat.JSON:
        chain += [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return chain


def setup_logging(settings: Settings | None = None) -> None:
    """配置结构化日志系统。

    测试或嵌入场景可以直接传入 ``settings``，否则读取全局配置。
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_pipeline_processors(settings.log_format),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取结构化日志记录器，名称沿用模块路径（如 ``copy_trading.trading.execution``）。"""
    return structlog.get_logger(name)


# 便捷日志函数
def log_signal_generated(
    logger: structlog.stdlib.BoundLogger,
    *,
    signal_id: str,
    symbol: str,
    signal_type: str,
    confidence: float,
    **kwargs: Any,
) -> None:
    """记录信号生成。"""
    logger.info(
        "signal_generated",
        signal_id=signal_id,
        symbol=symbol,
        signal_type=signal_type,
        confidence=round(confidence, 4),
        **kwargs,
    )


def log_exchange_call(
    logger: structlog.stdlib.BoundLogger,
    *,
    operation: str,
    success: bool,
    latency_ms: float,
    **kwargs: Any,
) -> None:
    """记录交易所调用。"""
    level = "info" if success else "warning"
    getattr(logger, level)(
        "exchange_call",
        operation=operation,
        success=success,
        latency_ms=round(latency_ms, 2),
        **kwargs,
    )


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    user_id: str,
    symbol: str,
    side: str,
    quantity: float,
    price: float | None = None,
    order_id: str | None = None,
    status: str = "submitted",
    **kwargs: Any,
) -> None:
    """记录订单执行。"""
    logger.info(
        "order_execution",
        user_id=user_id,
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=price,
        order_id=order_id,
        status=status,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """记录风控事件。"""
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )
