"""
Pytest configuration and shared fixtures for the test suite.

Relational tests run against a real SQLite file through SQLAlchemy and
aiosqlite. Document tests run against InMemoryDocumentAdapter, which
implements the document adapter contract on plain Python lists.
"""

from pathlib import Path
import textwrap
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pytest

from dbshift.core.exceptions import AdapterError, UnsupportedOperationError
from dbshift.database.adapters.base import DatabaseAdapter, DatabaseType
from dbshift.database.adapters.sql import SQLAlchemyAdapter


class InMemoryDocumentAdapter(DatabaseAdapter):
    """Document adapter keeping collections in memory."""

    type = DatabaseType.MONGODB

    def __init__(self, strict_collections: bool = False) -> None:
        self.collections: Dict[str, List[Dict[str, Any]]] = {}
        self.unique_fields: Dict[str, Set[str]] = {}
        self.operations: List[Tuple[str, str]] = []
        self.strict_collections = strict_collections
        self._next_id = 1

    async def execute(self, operation: str, collection: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        payload = payload if payload is not None else {}
        self.operations.append((operation, collection))

        if operation == "createCollection":
            if collection in self.collections:
                raise AdapterError(f"collection {collection} already exists", adapter_type="mongodb")
            self.collections[collection] = []
            return None

        if operation == "dropCollection":
            self.collections.pop(collection, None)
            self.unique_fields.pop(collection, None)
            return None

        if operation == "createIndex":
            self.collections.setdefault(collection, [])
            if payload.get("unique"):
                self.unique_fields.setdefault(collection, set()).update(payload["keys"])
            return payload.get("name", "index")

        documents = self.collections.setdefault(collection, [])

        if operation == "insert":
            document = dict(payload)
            if "_id" not in document:
                document["_id"] = self._next_id
                self._next_id += 1
            for field in self.unique_fields.get(collection, set()) | {"_id"}:
                if any(existing.get(field) == document.get(field) for existing in documents):
                    raise AdapterError(f"duplicate key on {field}", adapter_type="mongodb")
            documents.append(document)
            return document["_id"]

        if operation == "update":
            modified = 0
            for document in documents:
                if self._matches(document, payload.get("filter", {})):
                    document.update(payload["update"]["$set"])
                    modified += 1
                    if not payload.get("many", False):
                        break
            return modified

        if operation == "delete":
            kept = [d for d in documents if not self._matches(d, payload.get("filter", {}))]
            deleted = len(documents) - len(kept)
            self.collections[collection] = kept
            return deleted

        raise UnsupportedOperationError(f"Unsupported document operation: {operation}", adapter_type="mongodb")

    async def query(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        options = options or {}

        if collection not in self.collections:
            if self.strict_collections:
                raise AdapterError(f"collection {collection} does not exist", adapter_type="mongodb")
            return []

        documents = [dict(d) for d in self.collections[collection] if self._matches(d, filter or {})]

        for key, direction in reversed(list(options.get("sort", {}).items())):
            documents.sort(key=lambda d: d.get(key), reverse=direction < 0)

        if options.get("limit"):
            documents = documents[:options["limit"]]

        return documents

    def names_in(self, collection: str) -> List[str]:
        return [d["name"] for d in self.collections.get(collection, [])]

    @staticmethod
    def _matches(document: Dict[str, Any], filter: Dict[str, Any]) -> bool:
        return all(document.get(key) == value for key, value in filter.items())


MIGRATION_SOURCE = '''
from dbshift import BaseMigration


class {class_name}(BaseMigration):
    name = "{name}"

    async def up(self, db):
{up}

    async def down(self, db):
{down}
'''


@pytest.fixture
def migrations_dir(tmp_path: Path) -> Path:
    """Empty migrations directory."""
    path = tmp_path / "migrations"
    path.mkdir()
    return path


@pytest.fixture
def write_migration(migrations_dir: Path) -> Callable[..., Path]:
    """Write a migration file with the given up/down bodies."""

    def _write(timestamp: int, name: str, up: str = "pass", down: str = "pass") -> Path:
        source = MIGRATION_SOURCE.format(
            class_name=f"M{timestamp}",
            name=name,
            up=textwrap.indent(up, " " * 8),
            down=textwrap.indent(down, " " * 8),
        )
        path = migrations_dir / f"{timestamp}_{name}.py"
        path.write_text(source)
        return path

    return _write


@pytest.fixture
def write_table_migration(write_migration: Callable[..., Path]) -> Callable[[int, str], Path]:
    """Write a relational migration that creates a table named after it."""

    def _write(timestamp: int, name: str) -> Path:
        return write_migration(
            timestamp,
            name,
            up=f'await db.execute("CREATE TABLE {name} (id INTEGER PRIMARY KEY)")',
            down=f'await db.execute("DROP TABLE {name}")',
        )

    return _write


@pytest.fixture
def write_collection_migration(write_migration: Callable[..., Path]) -> Callable[[int, str], Path]:
    """Write a document migration that creates a collection named after it."""

    def _write(timestamp: int, name: str) -> Path:
        return write_migration(
            timestamp,
            name,
            up=f'await db.execute("createCollection", "{name}", {{}})',
            down=f'await db.execute("dropCollection", "{name}", {{}})',
        )

    return _write


@pytest.fixture
async def sqlite_adapter(tmp_path: Path):
    """SQLAlchemy adapter on a temporary SQLite file."""
    adapter = SQLAlchemyAdapter(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    yield adapter
    await adapter.close()


@pytest.fixture
def document_adapter() -> InMemoryDocumentAdapter:
    """In-memory document adapter."""
    return InMemoryDocumentAdapter()


@pytest.fixture
def strict_document_adapter() -> InMemoryDocumentAdapter:
    """In-memory document adapter whose queries fail on missing collections."""
    return InMemoryDocumentAdapter(strict_collections=True)


@pytest.fixture
def table_exists() -> Callable[[SQLAlchemyAdapter, str], Any]:
    """Coroutine function checking whether a table exists in a SQLite database."""

    async def _exists(adapter: SQLAlchemyAdapter, name: str) -> bool:
        rows = await adapter.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name",
            {"name": name},
        )
        return bool(rows)

    return _exists
