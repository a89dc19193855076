"""
dbshift: schema migrations for relational and document databases.
"""

from .core.exceptions import DbShiftError, MigrationError
from .database import (
    BackendFamily,
    BaseMigration,
    DatabaseAdapter,
    DatabaseType,
    MigrationManager,
    MigrationStatus,
    RollbackOrder,
    create_adapter,
)

__version__ = "0.1.0"

__all__ = [
    "BackendFamily",
    "BaseMigration",
    "DatabaseAdapter",
    "DatabaseType",
    "DbShiftError",
    "MigrationError",
    "MigrationManager",
    "MigrationStatus",
    "RollbackOrder",
    "create_adapter",
]
