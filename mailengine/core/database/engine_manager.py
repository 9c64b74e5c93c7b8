"""Lazily created engine for the mail store, plus schema setup and health probe."""

import asyncio
from pathlib import Path
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from mailengine.core.database.base import create_engine, dispose_engine, metadata
from mailengine.core.database.config import DatabaseConfig, get_config
from mailengine.utils.errors import DatabaseConnectionError
from mailengine.utils.logging import get_logger

logger = get_logger(__name__)


class EngineManager:
    """Manages SQLAlchemy async engine lifecycle."""

    def __init__(
        self,
        db_path: Path,
        config: Optional[DatabaseConfig] = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.config = config or get_config()
        self._engine: Optional[AsyncEngine] = None
        self._lock = asyncio.Lock()

    async def get_engine(self) -> AsyncEngine:
        """Return the shared engine, creating it on first use.

        Raises:
            DatabaseConnectionError: If engine creation fails
        """
        async with self._lock:
            if self._engine is None:
                try:
                    self._engine = create_engine(self.db_path, config=self.config)
                except (OSError, SQLAlchemyError) as e:
                    raise DatabaseConnectionError(
                        "Could not open the mail store",
                        details={"db_path": str(self.db_path), "error": str(e)},
                    ) from e

        return self._engine

    async def init_schema(self) -> None:
        """Create all tables that do not exist yet."""
        # Tables register themselves on the shared metadata on import
        from mailengine.core.database import models  # noqa: F401

        engine = await self.get_engine()
        try:
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(
                "Failed to create database schema",
                details={"db_path": str(self.db_path), "error": str(e)},
            ) from e
        logger.info(f"Database schema ready: {self.db_path}")

    async def health_check(self) -> bool:
        """Run ``SELECT 1`` against the database."""
        try:
            engine = await self.get_engine()
            async with engine.connect() as conn:
                result = await conn.execute(text("SELECT 1"))
                return result.scalar() == 1
        except (DatabaseConnectionError, SQLAlchemyError) as e:
            logger.error(f"Mail store health probe failed: {e}")
            return False

    async def close(self) -> None:
        """Dispose the engine; the next get_engine() builds a fresh one."""
        if self._engine is not None:
            await dispose_engine(self._engine)
            self._engine = None

    async def __aenter__(self) -> "EngineManager":
        await self.get_engine()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
