"""
Database adapter capability shared by migrations and the history ledger.

An adapter exposes a uniform ``execute``/``query`` pair and declares which
backend it talks to. Relational adapters take a statement and parameters;
document adapters take an operation name, a collection and a payload.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from ...core.exceptions import AdapterTypeError


class BackendFamily(str, Enum):
    """Backend families the migration engine knows how to keep a ledger in."""

    RELATIONAL = "relational"
    DOCUMENT = "document"


class DatabaseType(str, Enum):
    """Closed set of backends an adapter may declare."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MONGODB = "mongodb"

    @property
    def family(self) -> BackendFamily:
        """Backend family of this database type."""
        if self is DatabaseType.MONGODB:
            return BackendFamily.DOCUMENT
        return BackendFamily.RELATIONAL


class DatabaseAdapter(ABC):
    """
    Abstract base class for database adapters.

    Subclasses set ``type`` to a DatabaseType and implement ``execute``
    and ``query`` with the calling convention of their backend family.
    """

    type: Optional[DatabaseType] = None
    supports_transactions: bool = False

    @property
    def family(self) -> BackendFamily:
        """Backend family derived from the declared database type."""
        return resolve_database_type(self).family

    @abstractmethod
    async def execute(self, *args: Any) -> Any:
        """Execute a write statement or operation."""
        pass

    @abstractmethod
    async def query(self, *args: Any) -> List[Dict[str, Any]]:
        """Run a read and return rows as dictionaries."""
        pass

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["DatabaseAdapter"]:
        """Group calls in one transaction. No-op unless overridden."""
        yield self

    async def close(self) -> None:
        """Release resources held by the adapter."""
        pass


def resolve_database_type(adapter: Any) -> DatabaseType:
    """
    Determine the declared database type of an adapter.

    Looks at ``adapter.type`` first, then at ``adapter.config`` (mapping or
    object with a ``type`` field), so adapters that are not DatabaseAdapter
    subclasses can still be used.

    Raises:
        AdapterTypeError: If no known database type is declared
    """
    declared = getattr(adapter, "type", None)

    if declared is None:
        config = getattr(adapter, "config", None)
        if isinstance(config, dict):
            declared = config.get("type")
        elif config is not None:
            declared = getattr(config, "type", None)

    if isinstance(declared, DatabaseType):
        return declared

    if isinstance(declared, str):
        try:
            return DatabaseType(declared.lower())
        except ValueError:
            pass

    raise AdapterTypeError(
        "Cannot determine database type from adapter",
        adapter_type=str(declared) if declared is not None else "Unknown",
        context={"adapter_class": type(adapter).__name__},
    )
