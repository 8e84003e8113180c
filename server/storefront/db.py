"""
Database access layer.
Uses asyncpg for async Postgres access.

Callers work against the QueryExecutor / Transaction interfaces; driver
exceptions are translated into the storefront error taxonomy here so that
nothing above this module needs to know asyncpg exists.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import asyncpg

from .errors import (
    AppError,
    ConfigurationError,
    ConflictError,
    InvalidReferenceError,
    StorageError,
)
from .settings import settings, DATABASE_URL

logger = logging.getLogger(__name__)


# Connection pool (initialized on startup)
_pool: Any = None


async def init_pool() -> None:
    """Initialize the database connection pool. Call during app startup."""
    global _pool
    if DATABASE_URL:
        _pool = await asyncpg.create_pool(
            DATABASE_URL,
            min_size=2,
            max_size=10,
            command_timeout=settings.db_command_timeout,
        )


async def close_pool() -> None:
    """Close the database connection pool. Call during app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


@contextmanager
def translate_errors() -> Iterator[None]:
    """Re-raise driver failures as storefront errors, keeping the SQLSTATE."""
    try:
        yield
    except AppError:
        raise
    except asyncpg.exceptions.ForeignKeyViolationError as e:
        raise InvalidReferenceError(
            "The referenced record does not exist",
            code=e.sqlstate,
            details={"detail": e.detail} if e.detail else None,
        ) from e
    except asyncpg.exceptions.UniqueViolationError as e:
        raise ConflictError(
            "The record you're trying to create already exists",
            code=e.sqlstate,
        ) from e
    except asyncpg.exceptions.PostgresError as e:
        raise StorageError(str(e), code=e.sqlstate) from e
    except asyncio.TimeoutError as e:
        raise StorageError("Database query timed out", code="TIMEOUT") from e
    except (OSError, asyncpg.exceptions.InterfaceError) as e:
        raise StorageError(
            "Unable to connect to database. Please check connection settings and network.",
            code=type(e).__name__,
        ) from e


def affected_rows(status: str) -> int:
    """Parse the row count out of a command tag such as 'DELETE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class Transaction(ABC):
    """A checked-out connection with an open transaction."""

    @abstractmethod
    async def execute(self, sql: str, *args: Any) -> int:
        """Run a statement; returns the number of affected rows."""

    @abstractmethod
    async def fetch(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def fetchrow(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def fetchval(self, sql: str, *args: Any) -> Any:
        ...

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...

    @abstractmethod
    async def release(self) -> None:
        """Return the connection to its pool. Safe to call more than once."""


class QueryExecutor(ABC):
    """Runs parameterized statements ($1, $2, ... placeholders)."""

    # Whether SELECT ... FOR UPDATE is understood by the backend
    supports_row_locks: bool = True

    @abstractmethod
    async def execute(self, sql: str, *args: Any) -> int:
        ...

    @abstractmethod
    async def fetch(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def fetchrow(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def fetchval(self, sql: str, *args: Any) -> Any:
        ...

    @abstractmethod
    async def begin(self) -> Transaction:
        ...


@asynccontextmanager
async def atomic(executor: QueryExecutor) -> AsyncIterator[Transaction]:
    """
    Run a block inside one transaction.

    Commits when the block finishes, rolls back on any exception, and always
    releases the connection.
    """
    tx = await executor.begin()
    try:
        yield tx
        await tx.commit()
    except BaseException:
        try:
            await tx.rollback()
        except Exception as rollback_error:
            logger.error(f"Rollback failed: {rollback_error}")
        raise
    finally:
        await tx.release()


class PostgresTransaction(Transaction):
    def __init__(self, pool, conn):
        self._pool = pool
        self._conn = conn
        self._tx = conn.transaction()
        self._released = False

    async def start(self) -> None:
        with translate_errors():
            await self._tx.start()

    async def execute(self, sql: str, *args: Any) -> int:
        with translate_errors():
            return affected_rows(await self._conn.execute(sql, *args))

    async def fetch(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        with translate_errors():
            return [dict(row) for row in await self._conn.fetch(sql, *args)]

    async def fetchrow(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]:
        with translate_errors():
            row = await self._conn.fetchrow(sql, *args)
            return dict(row) if row else None

    async def fetchval(self, sql: str, *args: Any) -> Any:
        with translate_errors():
            return await self._conn.fetchval(sql, *args)

    async def commit(self) -> None:
        with translate_errors():
            await self._tx.commit()

    async def rollback(self) -> None:
        with translate_errors():
            await self._tx.rollback()

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._pool.release(self._conn)


class PostgresExecutor(QueryExecutor):
    """QueryExecutor over an asyncpg pool."""

    def __init__(self, pool):
        self._pool = pool

    async def execute(self, sql: str, *args: Any) -> int:
        with translate_errors():
            async with self._pool.acquire() as conn:
                return affected_rows(await conn.execute(sql, *args))

    async def fetch(self, sql: str, *args: Any) -> List[Dict[str, Any]]:
        with translate_errors():
            async with self._pool.acquire() as conn:
                return [dict(row) for row in await conn.fetch(sql, *args)]

    async def fetchrow(self, sql: str, *args: Any) -> Optional[Dict[str, Any]]:
        with translate_errors():
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(sql, *args)
                return dict(row) if row else None

    async def fetchval(self, sql: str, *args: Any) -> Any:
        with translate_errors():
            async with self._pool.acquire() as conn:
                return await conn.fetchval(sql, *args)

    async def begin(self) -> Transaction:
        with translate_errors():
            conn = await self._pool.acquire()
        tx = PostgresTransaction(self._pool, conn)
        try:
            await tx.start()
        except BaseException:
            await tx.release()
            raise
        return tx


def get_executor() -> QueryExecutor:
    """FastAPI dependency returning an executor bound to the global pool."""
    if _pool is None:
        raise ConfigurationError(
            "Database pool not initialized. Set DATABASE_URL and restart.",
            title="Database not configured",
        )
    return PostgresExecutor(_pool)


async def connection_diagnostics(executor: QueryExecutor) -> Dict[str, Any]:
    """Connectivity check used by the diagnostics endpoint."""
    version = await executor.fetchval("SELECT version()")
    rows = await executor.fetch(
        """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = 'public'
        ORDER BY table_name
        """
    )
    return {
        "connected": True,
        "server_version": version,
        "tables": [row["table_name"] for row in rows],
    }
