"""
Migration history ledger.

The ledger records which migrations have been applied and in which batch.
One implementation keeps it in a table for relational backends, the other
in a collection for the document backend; the right one is chosen once
from the adapter's declared database type.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional

from ...config.settings import IDENTIFIER_PATTERN
from ...core.exceptions import AdapterError, LedgerError, LedgerWriteError
from ..adapters.base import BackendFamily, DatabaseType, resolve_database_type

CREATE_TABLE_STATEMENTS = {
    DatabaseType.SQLITE: """
        CREATE TABLE IF NOT EXISTS {table} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name VARCHAR(255) NOT NULL UNIQUE,
            batch INTEGER NOT NULL,
            executed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    DatabaseType.POSTGRESQL: """
        CREATE TABLE IF NOT EXISTS {table} (
            id SERIAL PRIMARY KEY,
            name VARCHAR(255) NOT NULL UNIQUE,
            batch INTEGER NOT NULL,
            executed_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
        )
    """,
    DatabaseType.MYSQL: """
        CREATE TABLE IF NOT EXISTS {table} (
            id INT AUTO_INCREMENT PRIMARY KEY,
            name VARCHAR(255) NOT NULL UNIQUE,
            batch INT NOT NULL,
            executed_at DATETIME NULL
        )
    """,
}

# executed_at holds UTC. MySQL DATETIME is not converted by the session
# time zone, so its insert writes UTC_TIMESTAMP() explicitly.
INSERT_STATEMENTS = {
    DatabaseType.SQLITE: "INSERT INTO {table} (name, batch) VALUES (:name, :batch)",
    DatabaseType.POSTGRESQL: "INSERT INTO {table} (name, batch) VALUES (:name, :batch)",
    DatabaseType.MYSQL: "INSERT INTO {table} (name, batch, executed_at) VALUES (:name, :batch, UTC_TIMESTAMP())",
}


@dataclass(frozen=True)
class HistoryEntry:
    """A migration recorded as applied."""

    name: str
    batch: int
    executed_at: Optional[datetime]


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Normalize a stored timestamp (datetime or ISO string) to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise LedgerError(f"Unexpected executed_at value: {value!r}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class HistoryStore(ABC):
    """
    Ledger of applied migrations.

    The ledger is created lazily on first use; every public method can be
    called without calling ``ensure_ledger`` first.
    """

    def __init__(self, adapter: Any, name: str, logger: Optional[logging.Logger] = None):
        """
        Initialize the history store.

        Args:
            adapter: Database adapter owning the ledger
            name: Table or collection name
            logger: Logger instance for ledger operations
        """
        self.adapter = adapter
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self._ready = False

    async def ensure_ledger(self) -> None:
        """Create the ledger if it does not exist yet. Idempotent."""
        if self._ready:
            return
        await self._create_ledger()
        self._ready = True
        self.logger.debug(f"Migration ledger '{self.name}' created/verified")

    async def get_executed_names(self) -> List[str]:
        """Names of applied migrations in application order."""
        return [entry.name for entry in await self.get_executed()]

    async def get_executed(self) -> List[HistoryEntry]:
        """Applied migrations in application order."""
        await self.ensure_ledger()
        return await self._fetch_entries()

    async def record(self, name: str, batch: int) -> None:
        """
        Record a migration as applied.

        Raises:
            LedgerWriteError: If the write fails, including when the name
                is already recorded
        """
        await self.ensure_ledger()
        try:
            await self._insert(name, batch)
        except AdapterError as e:
            raise LedgerWriteError(
                f"Failed to record migration {name}",
                migration_name=name,
                context={"batch": batch, "ledger": self.name},
                cause=e,
            ) from e
        self.logger.debug(f"Recorded migration {name} in batch {batch}")

    async def remove(self, name: str) -> None:
        """
        Remove the history entry of a migration.

        Raises:
            LedgerWriteError: If the delete fails
        """
        await self.ensure_ledger()
        try:
            await self._delete(name)
        except AdapterError as e:
            raise LedgerWriteError(
                f"Failed to remove migration record {name}",
                migration_name=name,
                context={"ledger": self.name},
                cause=e,
            ) from e
        self.logger.debug(f"Removed migration record {name}")

    async def next_batch(self) -> int:
        """Highest recorded batch plus one, or 1 for an empty ledger."""
        await self.ensure_ledger()
        highest = await self._max_batch()
        return (highest or 0) + 1

    @abstractmethod
    async def _create_ledger(self) -> None:
        pass

    @abstractmethod
    async def _fetch_entries(self) -> List[HistoryEntry]:
        pass

    @abstractmethod
    async def _insert(self, name: str, batch: int) -> None:
        pass

    @abstractmethod
    async def _delete(self, name: str) -> None:
        pass

    @abstractmethod
    async def _max_batch(self) -> Optional[int]:
        pass


class SQLHistoryStore(HistoryStore):
    """Ledger kept in a relational table."""

    def __init__(self, adapter: Any, name: str = "migrations", logger: Optional[logging.Logger] = None):
        super().__init__(adapter, name, logger)
        self.db_type = resolve_database_type(adapter)

    async def _create_ledger(self) -> None:
        statement = CREATE_TABLE_STATEMENTS[self.db_type].format(table=self.name)
        await self.adapter.execute(statement, {})

    async def _fetch_entries(self) -> List[HistoryEntry]:
        rows = await self.adapter.query(
            f"SELECT name, batch, executed_at FROM {self.name} ORDER BY executed_at ASC, id ASC",
            {},
        )
        return [
            HistoryEntry(
                name=row["name"],
                batch=int(row["batch"]),
                executed_at=coerce_datetime(row["executed_at"]),
            )
            for row in rows
        ]

    async def _insert(self, name: str, batch: int) -> None:
        await self.adapter.execute(
            INSERT_STATEMENTS[self.db_type].format(table=self.name),
            {"name": name, "batch": batch},
        )

    async def _delete(self, name: str) -> None:
        await self.adapter.execute(f"DELETE FROM {self.name} WHERE name = :name", {"name": name})

    async def _max_batch(self) -> Optional[int]:
        rows = await self.adapter.query(f"SELECT MAX(batch) AS max_batch FROM {self.name}", {})
        if not rows or rows[0]["max_batch"] is None:
            return None
        return int(rows[0]["max_batch"])


class DocumentHistoryStore(HistoryStore):
    """Ledger kept in a document collection of ``{name, batch, executedAt}``."""

    async def _create_ledger(self) -> None:
        try:
            await self.adapter.query(self.name, {}, {"limit": 1})
        except AdapterError:
            self.logger.debug(f"Ledger collection '{self.name}' missing, creating it")
            await self.adapter.execute("createCollection", self.name, {})

        # Unique name index is what rejects a second record of the same migration
        await self.adapter.execute(
            "createIndex",
            self.name,
            {"keys": {"name": 1}, "unique": True, "name": "name_unique"},
        )

    async def _fetch_entries(self) -> List[HistoryEntry]:
        documents = await self.adapter.query(
            self.name,
            {},
            {"sort": {"executedAt": 1, "_id": 1}, "projection": {"name": 1, "batch": 1, "executedAt": 1}},
        )
        return [self._to_entry(document) for document in documents]

    async def _insert(self, name: str, batch: int) -> None:
        await self.adapter.execute(
            "insert",
            self.name,
            {"name": name, "batch": batch, "executedAt": datetime.now(timezone.utc)},
        )

    async def _delete(self, name: str) -> None:
        await self.adapter.execute("delete", self.name, {"filter": {"name": name}})

    async def _max_batch(self) -> Optional[int]:
        documents = await self.adapter.query(self.name, {}, {"sort": {"batch": -1}, "limit": 1})
        if not documents or documents[0].get("batch") is None:
            return None
        return int(documents[0]["batch"])

    @staticmethod
    def _to_entry(document: Dict[str, Any]) -> HistoryEntry:
        return HistoryEntry(
            name=document["name"],
            batch=int(document.get("batch", 0)),
            executed_at=coerce_datetime(document.get("executedAt")),
        )


def create_history_store(
    adapter: Any,
    table_name: str = "migrations",
    collection_name: str = "migrations",
    logger: Optional[logging.Logger] = None,
) -> HistoryStore:
    """
    Select the ledger implementation for an adapter.

    Ledger names are interpolated into statements, so both must be plain
    identifiers.

    Raises:
        ValueError: If a table or collection name is not a valid identifier
        AdapterTypeError: If the adapter's database type cannot be determined
    """
    for label, value in (("table", table_name), ("collection", collection_name)):
        if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
            raise ValueError(f"Invalid ledger {label} name: {value!r}")

    db_type = resolve_database_type(adapter)

    if db_type.family == BackendFamily.DOCUMENT:
        return DocumentHistoryStore(adapter, collection_name, logger)
    return SQLHistoryStore(adapter, table_name, logger)
