"""
Cross-process migration lock.

Only one process may run migrations against a database at a time. The lock
is a single row (or document) whose owner is set by compare-and-swap: the
update only matches while nobody owns it, and the owner is read back to
see who won. While held, a heartbeat task refreshes the lock timestamp every
``stale_after / 3`` seconds. A lock whose timestamp is older than
``stale_after`` has lost its heartbeat, so its holder is assumed to have
crashed and the lock is taken over.
"""

from abc import ABC, abstractmethod
import asyncio
from contextlib import suppress
import logging
import os
import socket
import time
from types import TracebackType
from typing import Any, Optional, Tuple, Type
import uuid

from ...core.exceptions import AdapterError, LockError
from ..adapters.base import BackendFamily, DatabaseType, resolve_database_type

LOCK_DOCUMENT_ID = "migration_lock"

CREATE_LOCK_TABLE_STATEMENTS = {
    DatabaseType.SQLITE: "CREATE TABLE IF NOT EXISTS {table} (id INTEGER PRIMARY KEY, locked_by VARCHAR(255), locked_at REAL)",
    DatabaseType.POSTGRESQL: "CREATE TABLE IF NOT EXISTS {table} (id INTEGER PRIMARY KEY, locked_by VARCHAR(255), locked_at DOUBLE PRECISION)",
    DatabaseType.MYSQL: "CREATE TABLE IF NOT EXISTS {table} (id INT PRIMARY KEY, locked_by VARCHAR(255), locked_at DOUBLE PRECISION)",
}

SEED_LOCK_ROW_STATEMENTS = {
    DatabaseType.SQLITE: "INSERT OR IGNORE INTO {table} (id, locked_by, locked_at) VALUES (1, NULL, NULL)",
    DatabaseType.POSTGRESQL: "INSERT INTO {table} (id, locked_by, locked_at) VALUES (1, NULL, NULL) ON CONFLICT (id) DO NOTHING",
    DatabaseType.MYSQL: "INSERT IGNORE INTO {table} (id, locked_by, locked_at) VALUES (1, NULL, NULL)",
}


def generate_owner_id() -> str:
    """Identifier for one lock acquisition: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class MigrationLock(ABC):
    """
    Async context manager guarding a whole migration run.

    Usage:
        async with lock:
            ...
    """

    def __init__(
        self,
        adapter: Any,
        name: str,
        timeout: float = 30.0,
        poll_interval: float = 0.5,
        stale_after: float = 300.0,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the lock.

        Args:
            adapter: Database adapter
            name: Lock table or collection name
            timeout: Seconds to wait for the lock before failing
            poll_interval: Seconds between acquisition attempts
            stale_after: Seconds without a heartbeat after which a held lock
                is taken over
            logger: Logger instance
        """
        self.adapter = adapter
        self.name = name
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self.logger = logger or logging.getLogger(__name__)
        self.owner: Optional[str] = None
        self._ready = False
        self._heartbeat: Optional["asyncio.Task[None]"] = None

    @property
    def held(self) -> bool:
        return self.owner is not None

    async def acquire(self) -> None:
        """
        Acquire the lock, waiting up to ``timeout`` seconds.

        Raises:
            LockError: If the lock is already held by this instance or
                cannot be acquired in time
        """
        if self.held:
            raise LockError("Migration lock is already held by this process", holder=self.owner)

        if not self._ready:
            await self._ensure()
            self._ready = True

        owner = generate_owner_id()
        deadline = time.monotonic() + self.timeout

        while True:
            if await self._try_acquire(owner, time.time()):
                self._hold(owner)
                self.logger.debug(f"Migration lock acquired by {owner}")
                return

            holder, locked_at = await self._read()
            if holder is not None and locked_at is not None and time.time() - locked_at > self.stale_after:
                self.logger.warning(f"Taking over stale migration lock from {holder}")
                if await self._take_over(holder, owner, time.time()):
                    self._hold(owner)
                    return

            if time.monotonic() >= deadline:
                raise LockError(
                    f"Could not acquire migration lock within {self.timeout}s. "
                    "Another migration may be in progress.",
                    holder=holder,
                    timeout=self.timeout,
                )

            await asyncio.sleep(self.poll_interval)

    async def release(self) -> None:
        """Release the lock if this instance holds it."""
        if not self.held:
            return
        owner = self.owner
        self.owner = None
        await self._stop_heartbeat()
        await self._release(owner)
        self.logger.debug(f"Migration lock released by {owner}")

    @property
    def heartbeat_interval(self) -> float:
        return self.stale_after / 3

    def _hold(self, owner: str) -> None:
        self.owner = owner
        self._heartbeat = asyncio.create_task(self._heartbeat_loop(owner))

    async def _heartbeat_loop(self, owner: str) -> None:
        """Keep ``locked_at`` fresh until the lock is released."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                still_held = await self._refresh(owner, time.time())
            except AdapterError as e:
                self.logger.warning(f"Migration lock heartbeat failed: {e}")
                continue
            if not still_held:
                self.logger.error(f"Migration lock held by {owner} was taken over by another process")
                return

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat = self._heartbeat, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self) -> "MigrationLock":
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.release()

    @abstractmethod
    async def _ensure(self) -> None:
        pass

    @abstractmethod
    async def _try_acquire(self, owner: str, now: float) -> bool:
        pass

    @abstractmethod
    async def _read(self) -> Tuple[Optional[str], Optional[float]]:
        pass

    @abstractmethod
    async def _take_over(self, holder: str, owner: str, now: float) -> bool:
        pass

    @abstractmethod
    async def _refresh(self, owner: str, now: float) -> bool:
        pass

    @abstractmethod
    async def _release(self, owner: str) -> None:
        pass


class SQLMigrationLock(MigrationLock):
    """Lock kept in a single-row table."""

    def __init__(self, adapter: Any, name: str, **kwargs: Any):
        super().__init__(adapter, name, **kwargs)
        self.db_type = resolve_database_type(adapter)

    async def _ensure(self) -> None:
        await self.adapter.execute(CREATE_LOCK_TABLE_STATEMENTS[self.db_type].format(table=self.name), {})
        await self.adapter.execute(SEED_LOCK_ROW_STATEMENTS[self.db_type].format(table=self.name), {})

    async def _try_acquire(self, owner: str, now: float) -> bool:
        await self.adapter.execute(
            f"UPDATE {self.name} SET locked_by = :owner, locked_at = :now WHERE id = 1 AND locked_by IS NULL",
            {"owner": owner, "now": now},
        )
        holder, _ = await self._read()
        return holder == owner

    async def _read(self) -> Tuple[Optional[str], Optional[float]]:
        rows = await self.adapter.query(f"SELECT locked_by, locked_at FROM {self.name} WHERE id = 1", {})
        if not rows:
            return None, None
        locked_at = rows[0]["locked_at"]
        return rows[0]["locked_by"], float(locked_at) if locked_at is not None else None

    async def _take_over(self, holder: str, owner: str, now: float) -> bool:
        await self.adapter.execute(
            f"UPDATE {self.name} SET locked_by = :owner, locked_at = :now WHERE id = 1 AND locked_by = :holder",
            {"owner": owner, "now": now, "holder": holder},
        )
        current, _ = await self._read()
        return current == owner

    async def _refresh(self, owner: str, now: float) -> bool:
        await self.adapter.execute(
            f"UPDATE {self.name} SET locked_at = :now WHERE id = 1 AND locked_by = :owner",
            {"owner": owner, "now": now},
        )
        current, _ = await self._read()
        return current == owner

    async def _release(self, owner: str) -> None:
        await self.adapter.execute(
            f"UPDATE {self.name} SET locked_by = NULL, locked_at = NULL WHERE id = 1 AND locked_by = :owner",
            {"owner": owner},
        )


class DocumentMigrationLock(MigrationLock):
    """Lock kept in a single document with a fixed ``_id``."""

    async def _ensure(self) -> None:
        if await self._fetch():
            return
        try:
            await self.adapter.execute(
                "insert",
                self.name,
                {"_id": LOCK_DOCUMENT_ID, "lockedBy": None, "lockedAt": None},
            )
        except AdapterError:
            # Another process may have inserted it first
            if not await self._fetch():
                raise

    async def _fetch(self) -> Optional[dict]:
        documents = await self.adapter.query(self.name, {"_id": LOCK_DOCUMENT_ID}, {"limit": 1})
        return documents[0] if documents else None

    async def _try_acquire(self, owner: str, now: float) -> bool:
        await self.adapter.execute(
            "update",
            self.name,
            {
                "filter": {"_id": LOCK_DOCUMENT_ID, "lockedBy": None},
                "update": {"$set": {"lockedBy": owner, "lockedAt": now}},
            },
        )
        holder, _ = await self._read()
        return holder == owner

    async def _read(self) -> Tuple[Optional[str], Optional[float]]:
        document = await self._fetch()
        if not document:
            return None, None
        locked_at = document.get("lockedAt")
        return document.get("lockedBy"), float(locked_at) if locked_at is not None else None

    async def _take_over(self, holder: str, owner: str, now: float) -> bool:
        await self.adapter.execute(
            "update",
            self.name,
            {
                "filter": {"_id": LOCK_DOCUMENT_ID, "lockedBy": holder},
                "update": {"$set": {"lockedBy": owner, "lockedAt": now}},
            },
        )
        current, _ = await self._read()
        return current == owner

    async def _refresh(self, owner: str, now: float) -> bool:
        await self.adapter.execute(
            "update",
            self.name,
            {
                "filter": {"_id": LOCK_DOCUMENT_ID, "lockedBy": owner},
                "update": {"$set": {"lockedAt": now}},
            },
        )
        current, _ = await self._read()
        return current == owner

    async def _release(self, owner: str) -> None:
        await self.adapter.execute(
            "update",
            self.name,
            {
                "filter": {"_id": LOCK_DOCUMENT_ID, "lockedBy": owner},
                "update": {"$set": {"lockedBy": None, "lockedAt": None}},
            },
        )


def create_migration_lock(adapter: Any, ledger_name: str, **kwargs: Any) -> MigrationLock:
    """
    Select the lock implementation for an adapter.

    The lock lives next to the ledger, in ``<ledger_name>_lock``.
    """
    db_type = resolve_database_type(adapter)
    lock_name = f"{ledger_name}_lock"

    if db_type.family == BackendFamily.DOCUMENT:
        return DocumentMigrationLock(adapter, lock_name, **kwargs)
    return SQLMigrationLock(adapter, lock_name, **kwargs)
