"""Store settings, overridable with MAILENGINE_DB_* environment variables."""

import os
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

ENV_PREFIX = "MAILENGINE_DB_"
JOURNAL_MODES = ("WAL", "DELETE", "TRUNCATE", "MEMORY")


def _env(name: str, default: T, cast: Callable[[str], T] = str) -> Callable[[], T]:
    def read() -> T:
        raw = os.getenv(ENV_PREFIX + name)
        return default if raw is None else cast(raw)

    return read


def _flag(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes")


@dataclass
class DatabaseConfig:
    """Pool, locking and timing settings for the SQLite store.

    ``busy_timeout`` bounds how long a writer waits on the SQLite lock.
    """

    pool_size: int = field(default_factory=_env("POOL_SIZE", 5, int))
    max_overflow: int = field(default_factory=_env("MAX_OVERFLOW", 5, int))
    pool_timeout: float = field(default_factory=_env("POOL_TIMEOUT", 30.0, float))

    busy_timeout: float = field(default_factory=_env("BUSY_TIMEOUT", 15.0, float))
    transaction_timeout: float = field(
        default_factory=_env("TRANSACTION_TIMEOUT", 60.0, float)
    )
    journal_mode: str = field(default_factory=_env("JOURNAL_MODE", "WAL", str.upper))

    echo: bool = field(default_factory=_env("ECHO", False, _flag))
    slow_query_threshold: float = field(
        default_factory=_env("SLOW_THRESHOLD", 1.0, float)
    )

    def __post_init__(self):
        if self.pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        if self.max_overflow < 0:
            raise ValueError("max_overflow must be >= 0")
        for name in ("pool_timeout", "busy_timeout", "transaction_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.journal_mode not in JOURNAL_MODES:
            raise ValueError(f"journal_mode must be one of {', '.join(JOURNAL_MODES)}")


_config: Optional[DatabaseConfig] = None


def get_config() -> DatabaseConfig:
    """Get or create the store configuration singleton."""
    global _config
    if _config is None:
        _config = DatabaseConfig()

    return _config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global _config
    _config = None
