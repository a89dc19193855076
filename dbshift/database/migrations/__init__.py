"""
Database migration system.

This module provides migration discovery, execution and rollback with a
history ledger kept in the target database, for relational and document
backends alike.
"""

from .base import BaseMigration, MigrationFile
from .history import (
    DocumentHistoryStore,
    HistoryEntry,
    HistoryStore,
    SQLHistoryStore,
    create_history_store,
)
from .lock import DocumentMigrationLock, MigrationLock, SQLMigrationLock, create_migration_lock
from .manager import MigrationManager, MigrationStatus, RollbackOrder
from .utils import (
    generate_class_name,
    generate_migration_filename,
    parse_migration_filename,
    render_migration_template,
)

__all__ = [
    "BaseMigration",
    "DocumentHistoryStore",
    "DocumentMigrationLock",
    "HistoryEntry",
    "HistoryStore",
    "MigrationFile",
    "MigrationLock",
    "MigrationManager",
    "MigrationStatus",
    "RollbackOrder",
    "SQLHistoryStore",
    "SQLMigrationLock",
    "create_history_store",
    "create_migration_lock",
    "generate_class_name",
    "generate_migration_filename",
    "parse_migration_filename",
    "render_migration_template",
]
