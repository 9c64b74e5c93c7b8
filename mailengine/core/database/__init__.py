"""Database access layer - public API."""

from pathlib import Path
from typing import Optional

from mailengine.utils.config import get_config as get_app_config

from .engine_manager import EngineManager
from .repositories import AccountRepository, MessageRepository, ThreadRepository
from .transaction import TransactionManager


def get_engine_manager(db_path: Optional[Path] = None) -> EngineManager:
    """Engine manager for the configured (or given) database file."""
    return EngineManager(db_path or Path(get_app_config().database.database_path))


async def init_db(db_path: Optional[Path] = None) -> EngineManager:
    """Create the schema and return a ready engine manager."""
    manager = get_engine_manager(db_path)
    await manager.init_schema()
    return manager


__all__ = [
    "AccountRepository",
    "EngineManager",
    "MessageRepository",
    "ThreadRepository",
    "TransactionManager",
    "get_engine_manager",
    "init_db",
]
