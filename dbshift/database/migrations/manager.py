"""
Database migration manager.

Discovers migration files on disk, compares them with the history ledger,
applies pending migrations in order and rolls back applied ones.
"""

from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import importlib.util
import logging
from pathlib import Path
from typing import Any, AsyncContextManager, Dict, List, Optional, Union

from ...core.exceptions import (
    DuplicateMigrationError,
    MigrationError,
    MigrationExecutionError,
    MigrationLoadError,
)
from ..adapters import create_adapter
from ..adapters.base import BackendFamily, DatabaseType, resolve_database_type
from .base import BaseMigration, MigrationFile
from .history import HistoryEntry, create_history_store
from .lock import MigrationLock, create_migration_lock
from .utils import (
    MIGRATION_FILE_EXTENSION,
    ensure_migrations_dir,
    generate_class_name,
    generate_migration_filename,
    parse_migration_filename,
    render_migration_template,
    sanitize_migration_name,
)


class RollbackOrder(str, Enum):
    """
    Which migrations count as "the most recent" when rolling back.

    CREATED: newest migration file first (by filename timestamp).
    APPLIED: most recently applied first (by ledger order).
    """

    CREATED = "created"
    APPLIED = "applied"


@dataclass(frozen=True)
class MigrationStatus:
    """Status of one migration, as reported by ``MigrationManager.status``."""

    name: str
    file: Optional[str]
    applied: bool
    applied_at: Optional[datetime] = None
    batch: Optional[int] = None
    timestamp: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "file": self.file,
            "applied": self.applied,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "batch": self.batch,
        }


class MigrationManager:
    """
    Database migration manager.

    Works against any adapter declaring a relational or document database
    type. Migrations within a run execute strictly one after another, and
    every run holds the migration lock so that two processes never migrate
    the same database concurrently.
    """

    def __init__(
        self,
        adapter: Any,
        migrations_dir: Union[str, Path],
        logger: Optional[logging.Logger] = None,
        history_table: str = "migrations",
        history_collection: str = "migrations",
        transactional: bool = True,
        lock_enabled: bool = True,
        lock_timeout: float = 30.0,
        lock_poll_interval: float = 0.5,
        lock_stale_after: float = 300.0,
    ):
        """
        Initialize migration manager.

        Args:
            adapter: Database adapter migrations run against
            migrations_dir: Directory containing migration files
            logger: Logger instance for migration operations
            history_table: Ledger table name for relational backends
            history_collection: Ledger collection name for the document backend
            transactional: Run each migration and its ledger write in one
                transaction when the adapter supports it
            lock_enabled: Hold the migration lock during runs
            lock_timeout: Seconds to wait for the migration lock
            lock_poll_interval: Seconds between lock attempts
            lock_stale_after: Seconds without a lock heartbeat after which
                a held lock is taken over

        Raises:
            AdapterTypeError: If the adapter's database type cannot be determined
        """
        self.adapter = adapter
        self.migrations_dir = Path(migrations_dir)
        self.logger = logger or logging.getLogger(__name__)
        self.transactional = transactional

        # Fails before any ledger or schema access
        self.db_type = resolve_database_type(adapter)

        self.history = create_history_store(adapter, history_table, history_collection, self.logger)

        self.lock: Optional[MigrationLock] = None
        if lock_enabled:
            self.lock = create_migration_lock(
                adapter,
                self.history.name,
                timeout=lock_timeout,
                poll_interval=lock_poll_interval,
                stale_after=lock_stale_after,
                logger=self.logger,
            )

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        logger: Optional[logging.Logger] = None,
        adapter: Optional[Any] = None,
    ) -> "MigrationManager":
        """
        Build a manager from MigrationSettings.

        Args:
            settings: MigrationSettings instance
            logger: Optional logger instance
            adapter: Adapter to use instead of one created from settings.database_url
        """
        if adapter is None:
            adapter = create_adapter(settings.database_url, logger=logger)

        return cls(
            adapter,
            settings.migrations_dir,
            logger=logger,
            history_table=settings.history_table,
            history_collection=settings.history_collection,
            transactional=settings.transactional,
            lock_enabled=settings.lock_enabled,
            lock_timeout=settings.lock_timeout,
            lock_poll_interval=settings.lock_poll_interval,
            lock_stale_after=settings.lock_stale_after,
        )

    def discover(self) -> List[MigrationFile]:
        """
        Find all migration files, oldest first.

        Files whose names do not follow ``<timestamp>_<name>.py`` are ignored.

        Raises:
            DuplicateMigrationError: If two files resolve to the same name
        """
        if not self.migrations_dir.is_dir():
            return []

        migrations: Dict[str, MigrationFile] = {}

        for path in self.migrations_dir.glob(f"*{MIGRATION_FILE_EXTENSION}"):
            if not path.is_file() or path.stem.startswith("__"):
                continue

            info = parse_migration_filename(path.name)
            if info is None:
                continue

            if info.name in migrations:
                raise DuplicateMigrationError(
                    f"Migration name {info.name} is used by more than one file",
                    migration_name=info.name,
                    context={"files": sorted([migrations[info.name].filename, path.name])},
                )

            migrations[info.name] = MigrationFile(timestamp=info.timestamp, name=info.name, path=path)

        return sorted(migrations.values(), key=lambda m: (m.timestamp, m.filename))

    async def get_executed(self) -> List[MigrationFile]:
        """Migration files that are recorded as applied, oldest first."""
        executed = set(await self.history.get_executed_names())
        return [migration for migration in self.discover() if migration.name in executed]

    async def get_pending(self) -> List[MigrationFile]:
        """Migration files not yet applied, oldest first."""
        executed = set(await self.history.get_executed_names())
        return [migration for migration in self.discover() if migration.name not in executed]

    async def run_forward(self, count: Optional[int] = None) -> List[str]:
        """
        Apply pending migrations.

        All migrations applied by one call share a batch number.

        Args:
            count: Apply at most this many (all pending when None)

        Returns:
            Names of the applied migrations, in order

        Raises:
            MigrationError: If a migration fails; earlier ones stay applied
        """
        if count is not None and count < 1:
            raise ValueError("count must be a positive integer")

        async with self._locked():
            pending = await self.get_pending()

            if not pending:
                self.logger.info("No pending migrations to run")
                return []

            to_run = pending[:count] if count is not None else pending
            batch = await self.history.next_batch()

            applied = []
            for migration in to_run:
                await self._apply(migration, batch)
                applied.append(migration.name)

            self.logger.info(f"Applied {len(applied)} migration(s) in batch {batch}", extra={"batch": batch})
            return applied

    async def run_backward(self, count: int = 1, order: RollbackOrder = RollbackOrder.CREATED) -> List[str]:
        """
        Roll back the most recent migrations.

        Args:
            count: Number of migrations to roll back
            order: Whether "most recent" means newest file or latest applied

        Returns:
            Names of the rolled back migrations, in rollback order

        Raises:
            MigrationError: If a rollback fails; earlier ones stay rolled back
        """
        if count < 1:
            raise ValueError("count must be a positive integer")

        async with self._locked():
            entries = await self.history.get_executed()

            if not entries:
                self.logger.info("No migrations to rollback")
                return []

            candidates = self._order_for_rollback(entries, order)
            return await self._revert_all(candidates[:count])

    async def rollback_batch(self) -> List[str]:
        """
        Roll back every migration of the most recent batch, newest file first.

        Returns:
            Names of the rolled back migrations, in rollback order
        """
        async with self._locked():
            entries = await self.history.get_executed()

            if not entries:
                self.logger.info("No migrations to rollback")
                return []

            last_batch = max(entry.batch for entry in entries)
            in_batch = [entry for entry in entries if entry.batch == last_batch]
            self.logger.info(f"Rolling back batch {last_batch}", extra={"batch": last_batch})

            return await self._revert_all(self._order_for_rollback(in_batch, RollbackOrder.CREATED))

    async def up(self, count: Optional[int] = None) -> List[str]:
        """Alias of run_forward."""
        return await self.run_forward(count)

    async def down(self, count: int = 1, order: RollbackOrder = RollbackOrder.CREATED) -> List[str]:
        """Alias of run_backward."""
        return await self.run_backward(count, order)

    async def status(self) -> List[MigrationStatus]:
        """
        Report every known migration and whether it is applied.

        Files are listed oldest first. Ledger entries without a matching
        file (deleted or renamed after being applied) follow at the end
        with ``file`` set to None.
        """
        entries = {entry.name: entry for entry in await self.history.get_executed()}
        files = self.discover()
        statuses = []

        for migration in files:
            entry = entries.pop(migration.name, None)
            statuses.append(MigrationStatus(
                name=migration.name,
                file=migration.filename,
                applied=entry is not None,
                applied_at=entry.executed_at if entry else None,
                batch=entry.batch if entry else None,
                timestamp=migration.timestamp,
            ))

        for entry in entries.values():
            self.logger.warning(f"Applied migration {entry.name} has no file in {self.migrations_dir}")
            statuses.append(MigrationStatus(
                name=entry.name,
                file=None,
                applied=True,
                applied_at=entry.executed_at,
                batch=entry.batch,
            ))

        return statuses

    async def create(self, name: str, backend: Optional[Union[DatabaseType, BackendFamily, str]] = None) -> Path:
        """
        Create a new migration file from the boilerplate template.

        Args:
            name: Human-readable migration name
            backend: Database type or family selecting the template
                (defaults to the adapter's)

        Returns:
            Path of the created file
        """
        sanitized = sanitize_migration_name(name)
        if not sanitized:
            raise ValueError("Migration name must not be empty")

        ensure_migrations_dir(self.migrations_dir)

        filename = generate_migration_filename(sanitized)
        migration_file = self.migrations_dir / filename

        if migration_file.exists():
            raise MigrationError(f"Migration file {filename} already exists", migration_name=sanitized)

        content = render_migration_template(self._template_family(backend), generate_class_name(sanitized), sanitized)
        migration_file.write_text(content, encoding="utf-8")

        self.logger.info(f"Created migration: {migration_file}")
        return migration_file

    def load_migration(self, migration: MigrationFile) -> BaseMigration:
        """
        Import a migration file and instantiate its migration class.

        Raises:
            MigrationLoadError: If the file cannot be imported or does not
                define exactly one BaseMigration subclass
        """
        try:
            spec = importlib.util.spec_from_file_location(
                f"dbshift_migrations.{migration.path.stem}",
                migration.path,
            )
            if spec is None or spec.loader is None:
                raise ImportError(f"cannot load {migration.path}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
        except Exception as e:
            raise MigrationLoadError(
                f"Failed to load migration {migration.name}",
                migration_name=migration.name,
                context={"file": migration.filename},
                cause=e,
            ) from e

        classes = [
            attr for attr in vars(module).values()
            if isinstance(attr, type)
            and issubclass(attr, BaseMigration)
            and attr is not BaseMigration
            and attr.__module__ == module.__name__
        ]

        if len(classes) != 1:
            raise MigrationLoadError(
                f"Migration file {migration.filename} must define exactly one BaseMigration subclass, found {len(classes)}",
                migration_name=migration.name,
                context={"file": migration.filename},
            )

        instance = classes[0]()
        if not instance.name:
            instance.name = migration.name
        elif instance.name != migration.name:
            self.logger.warning(
                f"Migration class name attribute '{instance.name}' differs from file name '{migration.name}'; "
                "the file name is used for tracking"
            )
        return instance

    async def _apply(self, migration: MigrationFile, batch: int) -> None:
        """Run one migration forward and record it."""
        extra = {"migration": migration.name, "batch": batch}
        self.logger.info(f"Running migration: {migration.name}", extra=extra)

        try:
            instance = self.load_migration(migration)
            async with self._unit_scope():
                await instance.up(self.adapter)
                await self.history.record(migration.name, batch)
        except MigrationError as e:
            self.logger.error(f"Migration {migration.name} failed: {e}", extra=extra)
            raise
        except Exception as e:
            self.logger.error(f"Migration {migration.name} failed: {e}", extra=extra)
            raise MigrationExecutionError(
                f"Migration {migration.name} failed: {e}",
                migration_name=migration.name,
                direction="up",
                context={"batch": batch},
                cause=e,
            ) from e

        self.logger.info(f"Migration {migration.name} completed", extra=extra)

    async def _revert(self, migration: MigrationFile) -> None:
        """Run one migration backward and remove its record."""
        extra = {"migration": migration.name}
        self.logger.info(f"Rolling back migration: {migration.name}", extra=extra)

        try:
            instance = self.load_migration(migration)
            async with self._unit_scope():
                await instance.down(self.adapter)
                await self.history.remove(migration.name)
        except MigrationError as e:
            self.logger.error(f"Rollback {migration.name} failed: {e}", extra=extra)
            raise
        except Exception as e:
            self.logger.error(f"Rollback {migration.name} failed: {e}", extra=extra)
            raise MigrationExecutionError(
                f"Rollback {migration.name} failed: {e}",
                migration_name=migration.name,
                direction="down",
                cause=e,
            ) from e

        self.logger.info(f"Migration {migration.name} rolled back", extra=extra)

    async def _revert_all(self, migrations: List[MigrationFile]) -> List[str]:
        rolled_back = []
        for migration in migrations:
            await self._revert(migration)
            rolled_back.append(migration.name)
        return rolled_back

    def _order_for_rollback(self, entries: List[HistoryEntry], order: RollbackOrder) -> List[MigrationFile]:
        """
        Match ledger entries to files and sort them most recent first.

        Entries without a file cannot be rolled back and are skipped.
        """
        files = {migration.name: migration for migration in self.discover()}

        for entry in entries:
            if entry.name not in files:
                self.logger.warning(f"Skipping applied migration {entry.name}: no file in {self.migrations_dir}")

        if RollbackOrder(order) == RollbackOrder.APPLIED:
            return [files[entry.name] for entry in reversed(entries) if entry.name in files]

        executed = [files[entry.name] for entry in entries if entry.name in files]
        return sorted(executed, key=lambda m: (m.timestamp, m.filename), reverse=True)

    def _template_family(self, backend: Optional[Union[DatabaseType, BackendFamily, str]]) -> BackendFamily:
        if backend is None:
            return self.db_type.family
        if isinstance(backend, BackendFamily):
            return backend
        if isinstance(backend, DatabaseType):
            return backend.family
        try:
            return DatabaseType(backend.lower()).family
        except ValueError:
            return BackendFamily(backend.lower())

    def _locked(self) -> AsyncContextManager[Any]:
        return self.lock if self.lock is not None else nullcontext()

    def _unit_scope(self) -> AsyncContextManager[Any]:
        if self.transactional and getattr(self.adapter, "supports_transactions", False):
            return self.adapter.transaction()
        return nullcontext()
