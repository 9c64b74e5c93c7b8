"""SQLite engine factory and the metadata shared by the mail store tables."""

from pathlib import Path
from typing import Optional

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from mailengine.core.database.config import DatabaseConfig, get_config
from mailengine.utils.logging import get_logger

logger = get_logger(__name__)

NAMING_CONVENTION = {
    "pk": "pk_%(table_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "ix": "ix_%(column_0_label)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


def _connection_pragmas(config: DatabaseConfig) -> list:
    return [
        "PRAGMA foreign_keys=ON",
        f"PRAGMA journal_mode={config.journal_mode}",
        f"PRAGMA busy_timeout={int(config.busy_timeout * 1000)}",
    ]


def create_engine(db_path: Path, config: Optional[DatabaseConfig] = None) -> AsyncEngine:
    """Build the aiosqlite engine for the store at ``db_path``.

    Every pooled connection enforces foreign keys, so a message can never
    reference a missing thread or account.
    """
    config = config or get_config()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=config.echo,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_pre_ping=True,
        connect_args={"timeout": config.busy_timeout, "check_same_thread": False},
    )
    pragmas = _connection_pragmas(config)

    @event.listens_for(engine.sync_engine, "connect")
    def apply_pragmas(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        try:
            for pragma in pragmas:
                cursor.execute(pragma)
        finally:
            cursor.close()

    logger.debug(
        "Store engine ready",
        extra={"db_path": str(db_path), "journal_mode": config.journal_mode},
    )
    return engine


async def dispose_engine(engine: AsyncEngine) -> None:
    await engine.dispose()
    logger.debug("Store engine disposed")
