"""
日志配置模块 - 使用 structlog 提供结构化日志

日志一律写到 stderr，stdout 留给 CLI 的 --json 输出和 NDJSON 导出。
"""

import logging
import sys
from typing import IO, Any, Optional

import structlog
from structlog.types import EventDict, WrappedLogger


def _compact_logical_times(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """逻辑时间字段（*_ms）为整数时去掉小数部分"""
    for key, value in event_dict.items():
        if key.endswith("_ms") and isinstance(value, float) and value.is_integer():
            event_dict[key] = int(value)
    return event_dict


def _format_exception(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """格式化异常信息"""
    exc_info = event_dict.pop("exc_info", None)
    if exc_info:
        if isinstance(exc_info, BaseException):
            event_dict["exception"] = f"{type(exc_info).__name__}: {exc_info}"
        elif exc_info is True:
            import traceback

            event_dict["exception"] = traceback.format_exc()
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
    stream: Optional[IO[str]] = None,
) -> None:
    """
    配置结构化日志

    可重复调用，后一次调用覆盖前一次的级别和输出格式。

    参数:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        json_format: 是否使用 JSON 格式输出（导出/CI 场景推荐）
        stream: 输出流，默认 sys.stderr
    """
    stream = stream or sys.stderr
    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _compact_logical_times,
        structlog.processors.StackInfoRenderer(),
        _format_exception,
    ]
    if json_format:
        processors = [
            *shared,
            structlog.stdlib.add_logger_name,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors = [
            *shared,
            structlog.dev.ConsoleRenderer(
                colors=stream.isatty(),
                sort_keys=False,
                pad_level=False,
            ),
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> Any:
    """
    获取结构化日志记录器

    参数:
        name: 日志记录器名称，通常为 __name__

    返回:
        BoundLogger: 结构化日志记录器

    示例:
        >>> from changefeed_sim.utils.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("poll_completed", method="polling", emitted=3)
        2024-01-01T10:30:00 [info] poll_completed method=polling emitted=3
    """
    return structlog.get_logger(name)


def set_log_level(level: str) -> None:
    """
    动态设置日志级别

    参数:
        level: 新的日志级别 (DEBUG, INFO, WARNING, ERROR)
    """
    logging.getLogger().setLevel(getattr(logging, level.upper()))


def bind_context(**kwargs: Any) -> None:
    """
    绑定全局上下文字段到所有日志记录

    示例:
        >>> bind_context(scenario="orders-burst", seed=42)
        >>> logger.info("lane_drained")  # 自动包含 scenario 和 seed
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """清除全局上下文字段"""
    structlog.contextvars.clear_contextvars()
