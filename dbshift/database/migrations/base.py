"""
Base class for migration files.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class BaseMigration(ABC):
    """
    Abstract base class for all migrations.

    A migration file defines exactly one subclass with a ``name`` and
    async ``up``/``down`` procedures taking the database adapter.
    """

    name: str = ""

    @abstractmethod
    async def up(self, db: Any) -> None:
        """Apply the migration."""
        pass

    @abstractmethod
    async def down(self, db: Any) -> None:
        """Rollback the migration."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


@dataclass(frozen=True)
class MigrationFile:
    """A migration artifact discovered on disk."""

    timestamp: int
    name: str
    path: Path

    @property
    def filename(self) -> str:
        return self.path.name
