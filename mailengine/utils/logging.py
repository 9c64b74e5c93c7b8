"""Logging for mailengine.

Console output goes through rich; when file logging is on, every record is
also written as one JSON object per line to ``app.log`` and records emitted
through ``log_event`` are copied to ``events.log``. Credentials are masked
before any handler sees a record.
"""

import json
import logging
import re
import time
from datetime import datetime, timezone
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from rich.logging import RichHandler

from .paths import LOGS_DIR

ROOT_LOGGER_NAME = "mailengine"

# Attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


## Formatting


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ``extra`` fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "where": f"{record.funcName}:{record.lineno}",
            "message": record.getMessage(),
        }
        entry.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


## Masking


class SensitiveDataMasker:
    """Redacts credentials from log text and structured fields.

    Besides ``key=value`` / ``key: value`` pairs this also catches the
    password argument of an IMAP ``LOGIN`` command line.
    """

    KEY_VALUE = re.compile(
        r'((?:password|passwd|secret|token|authorization)["\']?\s*[:=]\s*["\']?)'
        r'([^"\'}\s,]+)',
        re.IGNORECASE,
    )
    IMAP_LOGIN = re.compile(r'(\b[A-Z]\d+ LOGIN\s+(?:"[^"]*"|\S+)\s+)("(?:[^"\\]|\\.)*"|\S+)')

    SENSITIVE_FIELDS = frozenset(
        {
            "password",
            "passwd",
            "plaintext",
            "secret",
            "token",
            "authorization",
            "encryption_key",
            "encrypted_password",
            "imap_password",
            "smtp_password",
        }
    )

    def __init__(self, strategy: str = "full"):
        if strategy not in ("full", "partial"):
            raise ValueError(f"Unknown masking strategy: {strategy}")
        self.strategy = strategy

    def mask_func(self, value: str) -> str:
        if self.strategy == "partial" and len(value) > 6:
            return value[:2] + "*" * (len(value) - 4) + value[-2:]
        return "[REDACTED]"

    def mask_string(self, text: str) -> str:
        if not isinstance(text, str) or not text:
            return text

        def hide(match: re.Match) -> str:
            return match.group(1) + self.mask_func(match.group(2))

        return self.IMAP_LOGIN.sub(hide, self.KEY_VALUE.sub(hide, text))

    def mask_value(self, key: str, value: Any) -> Any:
        if str(key).lower() in self.SENSITIVE_FIELDS:
            return self.mask_func(str(value))
        if isinstance(value, dict):
            return self.mask_dict(value)
        if isinstance(value, str):
            return self.mask_string(value)
        return value

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict):
            return data
        return {key: self.mask_value(key, value) for key, value in data.items()}


class SensitiveDataFilter(logging.Filter):
    """Applies ``SensitiveDataMasker`` to the message and ``extra`` fields."""

    def __init__(self, strategy: str = "full"):
        super().__init__()
        self.masker = SensitiveDataMasker(strategy)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.masker.mask_string(record.msg)

        for key, value in list(record.__dict__.items()):
            if key in _RECORD_ATTRS:
                continue
            setattr(record, key, self.masker.mask_value(key, value))

        return True


## Log manager


class LogManager:
    """Owns the handlers attached to the ``mailengine`` logger."""

    APP_LOG = ("app.log", 5 * 1024 * 1024, 5)
    EVENTS_LOG = ("events.log", 2 * 1024 * 1024, 3)

    def __init__(
        self,
        log_level: str = "INFO",
        log_to_file: bool = False,
        log_dir: Optional[Path] = None,
    ):
        self.log_level = logging.getLevelName(log_level.upper())
        if not isinstance(self.log_level, int):
            raise ValueError(f"Invalid logging level: {log_level}")

        self.log_to_file = log_to_file
        self.log_dir = log_dir or LOGS_DIR
        self.root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        self.root_logger.setLevel(logging.DEBUG)

        self._mask = SensitiveDataFilter()
        self._setup_handlers()

    def _setup_handlers(self) -> None:
        for handler in list(self.root_logger.handlers):
            self.root_logger.removeHandler(handler)
            handler.close()

        console = RichHandler(show_path=False, markup=False, rich_tracebacks=True)
        # Console shows warnings and errors only
        console.setLevel(max(self.log_level, logging.WARNING))
        console.addFilter(self._mask)
        self.root_logger.addHandler(console)

        if self.log_to_file:
            self.root_logger.addHandler(self._file_handler(*self.APP_LOG, self.log_level))
            events = self._file_handler(*self.EVENTS_LOG, logging.INFO)
            events.addFilter(lambda record: hasattr(record, "event_type"))
            self.root_logger.addHandler(events)

    def _file_handler(
        self, filename: str, max_bytes: int, backups: int, level: int
    ) -> RotatingFileHandler:
        from .errors import FileSystemError

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                self.log_dir / filename,
                maxBytes=max_bytes,
                backupCount=backups,
                encoding="utf-8",
            )
        except OSError as e:
            raise FileSystemError(
                f"Cannot write {filename} in {self.log_dir}: {e}"
            ) from e

        handler.setLevel(level)
        handler.setFormatter(JSONFormatter())
        handler.addFilter(self._mask)
        return handler

    def get_logger(self, name: Optional[str] = None) -> logging.Logger:
        """Return a logger inside the ``mailengine`` namespace."""
        if not name or name == ROOT_LOGGER_NAME:
            return self.root_logger
        if name.startswith(f"{ROOT_LOGGER_NAME}."):
            return logging.getLogger(name)
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")

    def log_event(self, event_type: str, message: str, level: str = "INFO", **extra):
        log_level = logging.getLevelName(level.upper())
        if not isinstance(log_level, int):
            raise ValueError(f"Invalid logging level: {level}")

        self.root_logger.log(log_level, message, extra={"event_type": event_type, **extra})


## Call tracing


def _trace(func: Callable, is_async: bool) -> Callable:
    name = f"{func.__module__}.{func.__qualname__}"
    logger = logging.getLogger(ROOT_LOGGER_NAME)

    def finished(started: float, error: Optional[BaseException] = None) -> None:
        elapsed = time.perf_counter() - started
        if error is None:
            logger.debug(f"<- {name} ({elapsed:.3f}s)")
        else:
            logger.debug(f"<- {name} raised {type(error).__name__} after {elapsed:.3f}s")

    if is_async:

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            logger.debug(f"-> {name}")
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                finished(started, e)
                raise
            finished(started)
            return result

        return async_wrapper

    @wraps(func)
    def wrapper(*args, **kwargs):
        logger.debug(f"-> {name}")
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            finished(started, e)
            raise
        finished(started)
        return result

    return wrapper


def log_call(func):
    """Trace entry, exit and duration of a function at DEBUG level."""
    return _trace(func, is_async=False)


def async_log_call(func):
    """Trace entry, exit and duration of a coroutine at DEBUG level."""
    return _trace(func, is_async=True)


## Module-level access

_log_manager: Optional[LogManager] = None


def init_logging(
    log_level: str = "INFO",
    log_to_file: bool = False,
    log_dir: Optional[Path] = None,
    force: bool = False,
) -> LogManager:
    global _log_manager

    if _log_manager is None or force:
        _log_manager = LogManager(log_level, log_to_file=log_to_file, log_dir=log_dir)

    return _log_manager


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return (_log_manager or init_logging()).get_logger(name)


def log_event(event_type: str, message, **extra):
    """Emit a structured event; a dict ``message`` is merged into the fields."""
    if isinstance(message, dict):
        extra.update(message)
        message = f"Event: {event_type}"

    return (_log_manager or init_logging()).log_event(event_type, message, **extra)
