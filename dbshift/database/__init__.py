"""
Database package for the dbshift migration engine.

This package provides:
- Adapters for relational (SQLAlchemy) and document (MongoDB) backends
- Schema migrations with a history ledger and cross-process locking
"""

from .adapters import BackendFamily, DatabaseAdapter, DatabaseType, create_adapter
from .migrations import BaseMigration, MigrationManager, MigrationStatus, RollbackOrder

__all__ = [
    "BackendFamily",
    "BaseMigration",
    "DatabaseAdapter",
    "DatabaseType",
    "MigrationManager",
    "MigrationStatus",
    "RollbackOrder",
    "create_adapter",
]
