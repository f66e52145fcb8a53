"""
Logging for Concilify.

Every service gets a named logger (`get_logger("sync-engine")`) writing to the
console and to a rotating file under logs/. Production (ENVIRONMENT=production)
switches both to one JSON object per line.

Sync context travels with the record: pass `extra={...}` per call, or bind it
once with `bind_context(logger, correlation_id=..., store_id=...)` and log
through the returned adapter. The console formatter prints the bound store as
a short `marketplace/store_id #correlation` tag.
"""
import functools
import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional


# Project root and logs directory
PROJECT_ROOT = Path(__file__).parent.parent
LOGS_DIR = PROJECT_ROOT / "logs"
LOGS_DIR.mkdir(exist_ok=True)

# Attributes every LogRecord carries; anything else came in through extra={...}
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s%(context)s | %(module)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 10MB per file, keep 5 backups
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


def record_extra(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to ``record`` through ``extra``."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_") and key != "context"
    }


def context_tag(fields: Dict[str, Any]) -> str:
    """`` [shopee/123456 #abcd1234]`` from whichever store context is present."""
    parts = []
    store = "/".join(str(fields[key]) for key in ("marketplace", "store_id") if fields.get(key))
    if store:
        parts.append(store)
    if fields.get("correlation_id"):
        parts.append(f"#{fields['correlation_id']}")
    return f" [{' '.join(parts)}]" if parts else ""


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; extras are nested under ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = record_extra(record)
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text with the store context tag filled into ``%(context)s``."""

    def format(self, record: logging.LogRecord) -> str:
        record = logging.makeLogRecord(record.__dict__)
        record.context = context_tag(record_extra(record))
        return super().format(record)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored level names for the terminal, store tag appended to the logger name."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        # Copy so the file handler sharing this record keeps the plain level name
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname:8}{self.RESET}"
        record.name = f"{record.name}{context_tag(record_extra(record))}"
        return super().format(record)


class ContextAdapter(logging.LoggerAdapter):
    """
    LoggerAdapter that merges bound context with per-call ``extra``.

    The stock adapter replaces the caller's extra with the bound one; here
    per-call keys are kept and win on conflict.
    """

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context) -> "ContextAdapter":
        return ContextAdapter(self.logger, {**self.extra, **context})


def bind_context(logger: logging.Logger, **context) -> ContextAdapter:
    """
    Attach sync context to every record logged through the result.

    Usage:
        log = bind_context(logger, correlation_id="abcd1234", marketplace="shopee", store_id="123456")
        log.info("Discovery finished", extra={"total_ids": 42})
    """
    if isinstance(logger, ContextAdapter):
        return logger.bind(**context)
    return ContextAdapter(logger, dict(context))


def get_logger(
    service_name: str,
    log_level: Optional[str] = None,
    enable_console: bool = True,
    enable_file: bool = True,
    enable_json: Optional[bool] = None,
) -> logging.Logger:
    """
    Get a configured logger for a service.

    Args:
        service_name: Name of the service (e.g., 'sync-engine', 'token-manager')
        log_level: Logging level, defaults to LOG_LEVEL or INFO
        enable_console: Log to stdout
        enable_file: Log to logs/<service_name>.log with rotation
        enable_json: JSON output, defaults to True when ENVIRONMENT=production
    """
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, log_level)

    if enable_json is None:
        enable_json = os.getenv("ENVIRONMENT", "development").lower() == "production"

    logger = logging.getLogger(service_name)
    logger.setLevel(level)
    logger.handlers.clear()  # Clear existing handlers to avoid duplicates

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            StructuredFormatter() if enable_json
            else ColoredConsoleFormatter(fmt=CONSOLE_FORMAT, datefmt=DATE_FORMAT)
        )
        logger.addHandler(console_handler)

    if enable_file:
        file_handler = RotatingFileHandler(
            LOGS_DIR / f"{service_name}.log",
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(
            StructuredFormatter() if enable_json
            else ContextFormatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT)
        )
        logger.addHandler(file_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


def log_execution_time(logger: logging.Logger):
    """
    Decorator logging how long the wrapped call took, and whether it raised.

    Usage:
        @log_execution_time(logger)
        def run(self, request):
            ...
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception:
                elapsed = time.perf_counter() - started
                logger.error(
                    f"{func.__qualname__} failed after {elapsed:.2f}s",
                    exc_info=True,
                    extra={"execution_time_seconds": elapsed},
                )
                raise
            elapsed = time.perf_counter() - started
            logger.info(
                f"{func.__qualname__} finished in {elapsed:.2f}s",
                extra={"execution_time_seconds": elapsed},
            )
            return result

        return wrapper

    return decorator
