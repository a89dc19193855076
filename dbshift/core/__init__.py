"""
Core module for the dbshift migration engine.

This module contains the exception hierarchy shared by the adapter,
configuration and migration layers.
"""

from .exceptions import (
    AdapterError,
    AdapterTypeError,
    DbShiftError,
    DuplicateMigrationError,
    LedgerError,
    LedgerWriteError,
    LockError,
    MigrationError,
    MigrationExecutionError,
    MigrationLoadError,
    UnsupportedOperationError,
)

__all__ = [
    "AdapterError",
    "AdapterTypeError",
    "DbShiftError",
    "DuplicateMigrationError",
    "LedgerError",
    "LedgerWriteError",
    "LockError",
    "MigrationError",
    "MigrationExecutionError",
    "MigrationLoadError",
    "UnsupportedOperationError",
]
