"""
Logging Configuration for the Challenge Engagement API.

This module sets up logging for the whole service. Development gets
color-coded, human-readable console output; every other environment gets one
JSON object per line for log collectors. Each record carries the correlation
id of the request that produced it.

Key Components:
- `correlation_id`: A `ContextVar` holding the current request's correlation
  id. `CorrelationMiddleware` sets it for every HTTP request.
- `CorrelationFilter`: Copies the correlation id onto each log record.
- `JSONFormatter`: Structured output, including any `extra` fields such as
  the procedure audit fields written by the command bus.
- `ColoredConsoleFormatter`: Readable output for local development.
- `get_logging_config` / `setup_logging`: Build and apply the `dictConfig`
  from the service settings.
- `log_function_call`: Decorator that logs entry, exit and timing.
"""

import asyncio
import functools
import json
import logging
import logging.config
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import Settings, get_settings

# Context variable for request correlation ID
correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else came in through `extra`
_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "correlation_id",
}


class CorrelationFilter(logging.Filter):
    """Filter that adds correlation ID to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        corr_id = correlation_id.get()
        if corr_id:
            record.correlation_id = corr_id
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if hasattr(record, "correlation_id"):
            log_entry["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console formatter for development"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")

        corr_id = getattr(record, "correlation_id", None)
        corr_part = f" [{corr_id}]" if corr_id else ""

        formatted = (
            f"{color}[{timestamp}] {record.levelname:8} {record.name}{corr_part}: "
            f"{record.getMessage()}{self.RESET}"
        )
        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


def get_logging_config(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Get logging configuration based on environment"""
    settings = settings or get_settings()
    log_level = settings.log_level

    def app_logger() -> Dict[str, Any]:
        return {"level": log_level, "handlers": ["console"], "propagate": False}

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"correlation": {"()": CorrelationFilter}},
        "formatters": {
            "json": {"()": JSONFormatter},
            "colored_console": {"()": ColoredConsoleFormatter},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "colored_console"
                if settings.environment == "development"
                else "json",
                "filters": ["correlation"],
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            # Application loggers
            "api": app_logger(),
            "services": app_logger(),
            "core": app_logger(),
            "providers": app_logger(),
            # Third-party loggers
            "uvicorn": {"level": "INFO", "handlers": ["console"], "propagate": False},
            "uvicorn.access": {
                "level": "INFO",
                "handlers": ["console"],
                "propagate": False,
            },
            "sqlalchemy.engine": {"level": "WARNING", "propagate": True},
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }

    if settings.log_file:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "json",
            "filters": ["correlation"],
            "filename": settings.log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
        }
        for logger_config in config["loggers"].values():
            if "handlers" in logger_config:
                logger_config["handlers"].append("file")
        config["root"]["handlers"].append("file")

    return config


def setup_logging(settings: Optional[Settings] = None):
    """Initialize logging configuration"""
    settings = settings or get_settings()
    logging.config.dictConfig(get_logging_config(settings))

    logger = logging.getLogger("core.logging")
    logger.info(f"Logging initialized for {settings.environment} environment")


def set_correlation_id(corr_id: str):
    """Set correlation ID for the current context"""
    correlation_id.set(corr_id)


def get_correlation_id() -> Optional[str]:
    """Get correlation ID from the current context"""
    return correlation_id.get()


def log_function_call(logger: logging.Logger):
    """Decorator to log function calls with execution time"""

    def decorator(func):
        def started():
            logger.debug(f"Calling {func.__name__}", extra={"function": func.__name__})
            return time.time()

        def finished(start_time: float):
            logger.debug(
                f"Completed {func.__name__}",
                extra={
                    "function": func.__name__,
                    "execution_time_ms": round((time.time() - start_time) * 1000, 2),
                    "success": True,
                },
            )

        def failed(start_time: float, e: Exception):
            logger.error(
                f"Failed {func.__name__}: {str(e)}",
                extra={
                    "function": func.__name__,
                    "execution_time_ms": round((time.time() - start_time) * 1000, 2),
                    "success": False,
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = started()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                failed(start_time, e)
                raise
            finished(start_time)
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = started()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                failed(start_time, e)
                raise
            finished(start_time)
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
