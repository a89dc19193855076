"""
Custom exceptions for the dbshift migration engine.

This module defines the exception hierarchy used throughout the system,
so callers can tell configuration problems, adapter problems and
migration failures apart.
"""

import time
from typing import Any, Dict, Optional


class DbShiftError(Exception):
    """Base exception class with enhanced error context."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        """
        Initialize the exception with context and cause tracking.

        Args:
            message: Error message
            context: Additional context information
            cause: Root cause exception if this is a wrapped exception
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.cause = cause
        self.timestamp = time.time()

    def __str__(self) -> str:
        """Return a detailed string representation of the exception."""
        parts = [self.message]

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"Context: {context_str}")

        if self.cause:
            parts.append(f"Caused by: {self.cause}")

        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
            "timestamp": self.timestamp,
        }


class AdapterError(DbShiftError):
    """Base exception for database adapter errors."""

    def __init__(
        self,
        message: str,
        adapter_type: str = "Unknown",
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            adapter_type: Declared type of the adapter involved
            context: Additional context information
            cause: Root cause exception
        """
        enhanced_context = {"adapter_type": adapter_type}
        if context:
            enhanced_context.update(context)

        super().__init__(message, enhanced_context, cause)
        self.adapter_type = adapter_type


class AdapterTypeError(AdapterError):
    """Exception raised when the backend family of an adapter cannot be determined."""
    pass


class UnsupportedOperationError(AdapterError):
    """Exception raised when an adapter is asked for an operation it does not know."""
    pass


class MigrationError(DbShiftError):
    """Base exception for all migration-related errors."""

    def __init__(
        self,
        message: str,
        migration_name: str = "Unknown",
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            migration_name: Name of the migration that caused the error
            context: Additional context information
            cause: Root cause exception
        """
        enhanced_context = {"migration_name": migration_name}
        if context:
            enhanced_context.update(context)

        super().__init__(message, enhanced_context, cause)
        self.migration_name = migration_name


class MigrationExecutionError(MigrationError):
    """Exception raised when a migration's up or down procedure fails."""

    def __init__(
        self,
        message: str,
        migration_name: str = "Unknown",
        direction: str = "up",
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            migration_name: Name of the failing migration
            direction: "up" or "down"
            context: Additional context information
            cause: Root cause exception
        """
        enhanced_context = {"direction": direction}
        if context:
            enhanced_context.update(context)

        super().__init__(message, migration_name, enhanced_context, cause)
        self.direction = direction


class MigrationLoadError(MigrationError):
    """Exception raised when a migration file cannot be imported."""
    pass


class DuplicateMigrationError(MigrationError):
    """Exception raised when two migration files resolve to the same name."""
    pass


class LedgerError(MigrationError):
    """Exception raised for migration history ledger failures."""
    pass


class LedgerWriteError(LedgerError):
    """Exception raised when recording or removing a history entry fails."""
    pass


class LockError(DbShiftError):
    """Exception raised when the migration lock cannot be acquired or released."""

    def __init__(
        self,
        message: str,
        holder: Optional[str] = None,
        timeout: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            holder: Identifier of the process currently holding the lock
            timeout: Seconds waited before giving up
            context: Additional context information
            cause: Root cause exception
        """
        enhanced_context = {"holder": holder, "timeout": timeout}
        if context:
            enhanced_context.update(context)

        super().__init__(message, enhanced_context, cause)
        self.holder = holder
        self.timeout = timeout
