"""
logging_config.py - Logging setup for the scanner, the API and the CLI.

Log lines are structured strings, one event per line:
    match_complete | tier=exact | wine_id=opus-2019 | vintage=2019

`setup_logging(json_format=True)` wraps each record in a JSON object for log
aggregation. `graceful` turns an exception into a neutral value for code paths
where "no result" is the error channel (the matcher tiers).
"""

from __future__ import annotations

import functools
import inspect
import json
import logging
import sys
from typing import IO, Callable, Optional, TypeVar

T = TypeVar("T")

PLAIN_FORMAT = "%(asctime)s [%(name)-20s] %(levelname)-7s %(message)s"
DATE_FORMAT = "%H:%M:%S"

# Third-party loggers that log every request at INFO.
CHATTY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record; the message is escaped, never templated."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, DATE_FORMAT),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(
    level: int = logging.INFO,
    json_format: bool = False,
    stream: Optional[IO[str]] = None,
) -> None:
    """Configure the root logger once per process.

    Args:
        level: Logging level for scanner modules.
        json_format: Emit JSON lines instead of the plain format.
        stream: Destination, stderr by default so stdout stays clean for
            `winelens scan --json`.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_format:
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)

    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _log_failure(func: Callable, log_level: int, exc: Exception) -> None:
    logging.getLogger(func.__module__).log(
        log_level,
        "graceful_fallback | function=%s | error_type=%s | error=%s",
        func.__qualname__,
        type(exc).__name__,
        exc,
        exc_info=log_level >= logging.ERROR,
    )


def graceful(default_factory: Callable[[], T], log_level: int = logging.ERROR):
    """Decorator: log any exception and return `default_factory()` instead.

    Works on plain functions and coroutine functions. KeyboardInterrupt,
    SystemExit and task cancellation still propagate.
    """

    def decorator(func):
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    _log_failure(func, log_level, exc)
                    return default_factory()

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                _log_failure(func, log_level, exc)
                return default_factory()

        return wrapper

    return decorator
