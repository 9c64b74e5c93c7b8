"""Unit of work for the mail store: one connection per block.

The block commits when it exits cleanly and rolls back otherwise. A block
that outlives ``transaction_timeout`` is rolled back and reported as a
``DatabaseTransactionError`` even when no exception was raised inside it.
"""

import time
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction

from mailengine.core.database.config import get_config
from mailengine.utils.errors import DatabaseTransactionError
from mailengine.utils.logging import get_logger

logger = get_logger(__name__)


class TransactionManager:
    """Async context manager wrapping a single store transaction.

    Usage:
        async with TransactionManager(engine) as tx:
            await repo.insert(tx.connection, ...)
    """

    def __init__(self, engine: AsyncEngine, timeout: Optional[float] = None):
        self.engine = engine
        self.config = get_config()
        self.timeout = timeout or self.config.transaction_timeout

        self._connection: Optional[AsyncConnection] = None
        self._transaction: Optional[AsyncTransaction] = None
        self._opened_at = 0.0

    @property
    def connection(self) -> AsyncConnection:
        if self._connection is None:
            raise RuntimeError("No connection outside an active transaction block")
        return self._connection

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._opened_at if self._opened_at else 0.0

    async def __aenter__(self) -> "TransactionManager":
        self._opened_at = time.monotonic()
        try:
            self._connection = await self.engine.connect()
            self._transaction = await self._connection.begin()
        except SQLAlchemyError as e:
            await self._release()
            raise DatabaseTransactionError(
                "Could not open a store transaction", details={"error": str(e)}
            ) from e
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        elapsed = self.elapsed
        try:
            if exc_type is not None:
                await self._rollback()
                logger.debug(
                    f"Rolled back after {exc_type.__name__} ({elapsed:.2f}s)"
                )
            elif elapsed > self.timeout:
                await self._rollback()
                raise DatabaseTransactionError(
                    f"Transaction ran {elapsed:.2f}s, limit is {self.timeout}s",
                    details={"timeout": self.timeout, "duration": elapsed},
                )
            else:
                await self._transaction.commit()
                self._warn_if_slow(elapsed)
        finally:
            await self._release()

    async def _rollback(self) -> None:
        if self._transaction is not None and self._transaction.is_active:
            await self._transaction.rollback()

    def _warn_if_slow(self, elapsed: float) -> None:
        if elapsed > self.config.slow_query_threshold:
            logger.warning(
                "Slow store transaction",
                extra={
                    "duration_seconds": round(elapsed, 2),
                    "threshold_seconds": self.config.slow_query_threshold,
                },
            )

    async def _release(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._transaction = None
