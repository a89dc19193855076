"""
Migration file naming and boilerplate rendering.

Migration files are named ``<epoch-millis>_<sanitized-name>.py`` so that
their names sort chronologically and the timestamp can be parsed back.
"""

from datetime import datetime, timezone
from pathlib import Path
import re
import time
from typing import NamedTuple, Optional, Union

from ..adapters.base import BackendFamily

MIGRATION_FILE_EXTENSION = ".py"
MIGRATION_NAME_PATTERN = re.compile(r"^(\d+)_(.+)$")
_UNSAFE_CHARACTERS = re.compile(r"[^A-Za-z0-9_]")


SQL_MIGRATION_TEMPLATE = '''"""
Migration: {name}

Created: {timestamp}
"""

from dbshift import BaseMigration, DatabaseAdapter


class {class_name}(BaseMigration):
    """Migration: {name}"""

    name = "{name}"

    async def up(self, db: DatabaseAdapter) -> None:
        """Apply the migration."""
        # Example:
        # await db.execute(
        #     "CREATE TABLE users ("
        #     "id INTEGER PRIMARY KEY, "
        #     "name VARCHAR(255) NOT NULL, "
        #     "email VARCHAR(255) NOT NULL UNIQUE)"
        # )
        pass

    async def down(self, db: DatabaseAdapter) -> None:
        """Rollback the migration."""
        # Example:
        # await db.execute("DROP TABLE users")
        pass
'''


DOCUMENT_MIGRATION_TEMPLATE = '''"""
Migration: {name}

Created: {timestamp}
"""

from dbshift import BaseMigration, DatabaseAdapter


class {class_name}(BaseMigration):
    """Migration: {name}"""

    name = "{name}"

    async def up(self, db: DatabaseAdapter) -> None:
        """Apply the migration."""
        # Example:
        # await db.execute("createCollection", "users", {
        #     "validator": {
        #         "$jsonSchema": {
        #             "bsonType": "object",
        #             "required": ["name", "email"],
        #         },
        #     },
        # })
        # await db.execute("createIndex", "users", {"keys": {"email": 1}, "unique": True})
        pass

    async def down(self, db: DatabaseAdapter) -> None:
        """Rollback the migration."""
        # Example:
        # await db.execute("dropCollection", "users", {})
        pass
'''


class MigrationFileInfo(NamedTuple):
    """Timestamp and name parsed from a migration filename."""

    timestamp: int
    name: str


def current_timestamp_ms() -> int:
    """Current epoch time in milliseconds."""
    return time.time_ns() // 1_000_000


def sanitize_migration_name(name: str) -> str:
    """Replace every character outside [A-Za-z0-9_] with an underscore."""
    return _UNSAFE_CHARACTERS.sub("_", name)


def generate_migration_filename(name: str, timestamp: Optional[int] = None) -> str:
    """
    Build a migration filename from a human name.

    Args:
        name: Human-chosen migration name
        timestamp: Epoch milliseconds (defaults to now)

    Returns:
        Filename of the form ``<timestamp>_<sanitized-name>.py``
    """
    if timestamp is None:
        timestamp = current_timestamp_ms()
    return f"{timestamp}_{sanitize_migration_name(name)}{MIGRATION_FILE_EXTENSION}"


def parse_migration_filename(filename: Union[str, Path]) -> Optional[MigrationFileInfo]:
    """
    Parse a migration filename back into timestamp and name.

    Args:
        filename: Filename or path; only the stem is inspected

    Returns:
        MigrationFileInfo, or None if the name does not follow the pattern
    """
    match = MIGRATION_NAME_PATTERN.match(Path(filename).stem)
    if not match:
        return None
    return MigrationFileInfo(timestamp=int(match.group(1)), name=match.group(2))


def generate_class_name(name: str) -> str:
    """
    Turn a migration name into a PascalCase class name.

    ``create_users-table`` becomes ``CreateUsersTable``. Names that would
    not form a valid identifier get a ``Migration`` prefix.
    """
    class_name = "".join(part[:1].upper() + part[1:] for part in re.split(r"[_-]", name))
    if not class_name.isidentifier():
        class_name = f"Migration{class_name}"
    return class_name


def render_migration_template(
    family: BackendFamily,
    class_name: str,
    name: str,
    created_at: Optional[datetime] = None,
) -> str:
    """
    Render migration boilerplate for a backend family.

    Placeholders are substituted verbatim rather than with str.format so
    that braces in the example code survive.
    """
    template = DOCUMENT_MIGRATION_TEMPLATE if family == BackendFamily.DOCUMENT else SQL_MIGRATION_TEMPLATE
    created_at = created_at or datetime.now(timezone.utc)

    return (
        template
        .replace("{timestamp}", created_at.isoformat())
        .replace("{class_name}", class_name)
        .replace("{name}", name)
    )


def ensure_migrations_dir(directory: Union[str, Path]) -> Path:
    """Create the migrations directory (and parents) if needed."""
    path = Path(directory)
    path.mkdir(parents=True, exist_ok=True)
    return path
