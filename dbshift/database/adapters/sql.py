"""
Relational database adapter built on the SQLAlchemy asyncio engine.

Statements are plain SQL strings with named ``:param`` placeholders.
Outside a transaction every call runs on its own connection and commits
on success; inside ``transaction()`` all calls share one connection.
"""

from contextlib import asynccontextmanager
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from ...core.exceptions import AdapterError, AdapterTypeError
from .base import DatabaseAdapter, DatabaseType

DIALECT_TYPES = {
    "sqlite": DatabaseType.SQLITE,
    "postgresql": DatabaseType.POSTGRESQL,
    "mysql": DatabaseType.MYSQL,
    "mariadb": DatabaseType.MYSQL,
}


class SQLAlchemyAdapter(DatabaseAdapter):
    """
    Adapter for SQLite, PostgreSQL and MySQL through SQLAlchemy.

    Features:
    - Database type derived from the engine dialect
    - Autocommit per call, or a shared transaction via ``transaction()``
    - Query count and slow query tracking
    """

    supports_transactions = True

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
        logger: Optional[logging.Logger] = None,
        slow_query_threshold: float = 1.0,
        **engine_kwargs: Any,
    ):
        """
        Initialize the adapter.

        Args:
            database_url: Async SQLAlchemy URL (e.g. sqlite+aiosqlite:///app.db)
            engine: Existing async engine to use instead of creating one
            logger: Logger instance for database operations
            slow_query_threshold: Seconds after which a statement is logged as slow
            **engine_kwargs: Extra arguments for create_async_engine
        """
        if engine is None:
            if database_url is None:
                raise AdapterError("Either database_url or engine is required", adapter_type="sql")
            engine = create_async_engine(database_url, **engine_kwargs)

        self.engine = engine
        self.logger = logger or logging.getLogger(__name__)
        self.slow_query_threshold = slow_query_threshold

        dialect = engine.dialect.name
        if dialect not in DIALECT_TYPES:
            raise AdapterTypeError(
                f"Unsupported SQL dialect: {dialect}",
                adapter_type=dialect,
                context={"supported": sorted(DIALECT_TYPES)},
            )
        self.type = DIALECT_TYPES[dialect]

        self._connection: Optional[AsyncConnection] = None
        self.stats = {
            "query_count": 0,
            "slow_queries": 0,
            "failed_queries": 0,
        }

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[AsyncConnection]:
        """Yield the transaction connection, or a fresh autocommitting one."""
        if self._connection is not None:
            yield self._connection
        else:
            async with self.engine.begin() as connection:
                yield connection

    async def execute(self, statement: str, params: Optional[Dict[str, Any]] = None) -> int:
        """
        Execute a write statement.

        Args:
            statement: SQL statement
            params: Named parameters

        Returns:
            Number of affected rows as reported by the driver
        """
        start_time = time.time()

        try:
            async with self._connect() as conn:
                result = await conn.execute(text(statement), params or {})
                rowcount = result.rowcount
        except SQLAlchemyError as e:
            self.stats["failed_queries"] += 1
            self.logger.error(f"Statement execution failed: {e}")
            raise AdapterError(
                f"Statement execution failed: {e}",
                adapter_type=self.type.value,
                context={"statement": statement.strip()[:100]},
                cause=e,
            ) from e

        self._track_query_performance(statement, time.time() - start_time)
        return rowcount

    async def query(self, statement: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a read statement.

        Args:
            statement: SQL query
            params: Named parameters

        Returns:
            Rows as dictionaries keyed by column name
        """
        start_time = time.time()

        try:
            async with self._connect() as conn:
                result = await conn.execute(text(statement), params or {})
                rows = [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            self.stats["failed_queries"] += 1
            self.logger.error(f"Query execution failed: {e}")
            raise AdapterError(
                f"Query execution failed: {e}",
                adapter_type=self.type.value,
                context={"statement": statement.strip()[:100]},
                cause=e,
            ) from e

        self._track_query_performance(statement, time.time() - start_time)
        return rows

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLAlchemyAdapter"]:
        """
        Run every call made inside the block on one connection and commit at the end.

        Nested use joins the outer transaction. Any exception rolls back.
        """
        if self._connection is not None:
            yield self
            return

        async with self.engine.begin() as connection:
            self._connection = connection
            try:
                yield self
            finally:
                self._connection = None

    async def close(self) -> None:
        """Dispose the engine and its connection pool."""
        await self.engine.dispose()
        self.logger.debug("SQL adapter engine disposed")

    def _track_query_performance(self, statement: str, execution_time: float) -> None:
        """Track query count and slow statements."""
        self.stats["query_count"] += 1

        if execution_time > self.slow_query_threshold:
            self.stats["slow_queries"] += 1
            self.logger.warning(f"Slow query detected: {execution_time:.2f}s - {statement.strip()[:100]}...")
