"""
Tests for the migration manager.

Relational scenarios run against a real SQLite file; document scenarios
run against the in-memory document adapter from conftest.
"""

import asyncio
import logging
from unittest.mock import Mock, patch

import pytest

from dbshift import MigrationManager, MigrationStatus, RollbackOrder
from dbshift.config.settings import MigrationSettings
from dbshift.core.exceptions import (
    AdapterTypeError,
    DuplicateMigrationError,
    LockError,
    MigrationError,
    MigrationExecutionError,
    MigrationLoadError,
)
from dbshift.database.adapters.sql import SQLAlchemyAdapter
from dbshift.database.migrations.base import BaseMigration
from dbshift.database.migrations.history import DocumentHistoryStore, SQLHistoryStore


@pytest.fixture
def sql_manager(sqlite_adapter, migrations_dir):
    return MigrationManager(sqlite_adapter, migrations_dir, lock_poll_interval=0.05)


@pytest.fixture
def document_manager(document_adapter, migrations_dir):
    return MigrationManager(document_adapter, migrations_dir, lock_poll_interval=0.05)


class TestManagerConstruction:
    """Test manager setup and backend selection."""

    @pytest.mark.asyncio
    async def test_sql_backend(self, sql_manager):
        assert isinstance(sql_manager.history, SQLHistoryStore)
        assert sql_manager.lock is not None

    def test_document_backend(self, document_manager):
        assert isinstance(document_manager.history, DocumentHistoryStore)

    def test_lock_can_be_disabled(self, document_adapter, migrations_dir):
        manager = MigrationManager(document_adapter, migrations_dir, lock_enabled=False)

        assert manager.lock is None

    @pytest.mark.parametrize("names", [
        {"history_table": "schema history"},
        {"history_collection": "history;drop"},
    ])
    def test_invalid_ledger_name_rejected(self, document_adapter, migrations_dir, names):
        """Test that ledger names passed directly are checked like configured ones."""
        with pytest.raises(ValueError):
            MigrationManager(document_adapter, migrations_dir, **names)

        assert document_adapter.operations == []

    def test_unknown_adapter_fails_before_any_access(self, migrations_dir):
        """Test that an adapter without a type is rejected up front."""
        adapter = Mock(spec=["execute", "query"])

        with pytest.raises(AdapterTypeError):
            MigrationManager(adapter, migrations_dir)

        adapter.execute.assert_not_called()
        adapter.query.assert_not_called()

    @pytest.mark.asyncio
    async def test_from_settings(self, tmp_path, migrations_dir):
        """Test building a manager from settings."""
        settings = MigrationSettings(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'settings.db'}",
            migrations_dir=migrations_dir,
            history_table="schema_history",
            lock_enabled=False,
        )

        manager = MigrationManager.from_settings(settings)
        try:
            assert isinstance(manager.adapter, SQLAlchemyAdapter)
            assert manager.history.name == "schema_history"
            assert manager.lock is None
            assert manager.migrations_dir == migrations_dir
            assert await manager.run_forward() == []
        finally:
            await manager.adapter.close()

    def test_from_settings_with_adapter(self, document_adapter, migrations_dir):
        """Test that an explicit adapter wins over the database URL."""
        settings = MigrationSettings(migrations_dir=migrations_dir, history_collection="history")

        manager = MigrationManager.from_settings(settings, adapter=document_adapter)

        assert manager.adapter is document_adapter
        assert manager.history.name == "history"


class TestDiscovery:
    """Test migration file discovery."""

    @pytest.mark.asyncio
    async def test_missing_directory(self, sqlite_adapter, tmp_path):
        manager = MigrationManager(sqlite_adapter, tmp_path / "does-not-exist")

        assert manager.discover() == []

    def test_sorted_by_numeric_timestamp(self, document_manager, write_migration):
        """Test that order follows the timestamp value, not the listing."""
        write_migration(1000, "third")
        write_migration(20, "first")
        write_migration(100, "second")

        assert [m.name for m in document_manager.discover()] == ["first", "second", "third"]

    def test_malformed_files_ignored(self, document_manager, migrations_dir, write_migration):
        write_migration(1, "real")
        (migrations_dir / "__init__.py").write_text("")
        (migrations_dir / "helpers.py").write_text("x = 1\n")
        (migrations_dir / "notes.txt").write_text("hello")
        (migrations_dir / "2_readme.md").write_text("hello")

        assert [m.name for m in document_manager.discover()] == ["real"]

    def test_duplicate_names_raise(self, document_manager, write_migration):
        write_migration(1, "create_users")
        write_migration(2, "create_users")

        with pytest.raises(DuplicateMigrationError) as exc_info:
            document_manager.discover()

        assert exc_info.value.migration_name == "create_users"


@pytest.mark.integration
class TestRunForwardSQL:
    """Test applying migrations against SQLite."""

    @pytest.mark.asyncio
    async def test_applies_in_timestamp_order(self, sql_manager, sqlite_adapter, write_table_migration, table_exists):
        write_table_migration(1000, "c_orders")
        write_table_migration(20, "a_users")
        write_table_migration(100, "b_products")

        applied = await sql_manager.run_forward()

        assert applied == ["a_users", "b_products", "c_orders"]
        assert await sql_manager.history.get_executed_names() == applied
        for name in applied:
            assert await table_exists(sqlite_adapter, name)

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, sql_manager, write_table_migration):
        write_table_migration(1, "users")

        assert await sql_manager.run_forward() == ["users"]
        assert await sql_manager.run_forward() == []
        assert await sql_manager.history.get_executed_names() == ["users"]

    @pytest.mark.asyncio
    async def test_batches(self, sql_manager, write_table_migration):
        """Test that one run shares a batch and the next run gets a new one."""
        write_table_migration(1, "one")
        write_table_migration(2, "two")
        await sql_manager.run_forward()

        write_table_migration(3, "three")
        await sql_manager.run_forward()

        entries = await sql_manager.history.get_executed()
        assert [(e.name, e.batch) for e in entries] == [("one", 1), ("two", 1), ("three", 2)]

    @pytest.mark.asyncio
    async def test_partial_run(self, sql_manager, write_table_migration):
        write_table_migration(1, "one")
        write_table_migration(2, "two")
        write_table_migration(3, "three")

        assert await sql_manager.run_forward(2) == ["one", "two"]
        assert [m.name for m in await sql_manager.get_pending()] == ["three"]
        assert [m.name for m in await sql_manager.get_executed()] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_invalid_count(self, sql_manager):
        with pytest.raises(ValueError):
            await sql_manager.run_forward(0)
        with pytest.raises(ValueError):
            await sql_manager.run_backward(-1)

    @pytest.mark.asyncio
    async def test_first_failure_stops_run(self, sql_manager, write_migration, write_table_migration):
        """Test that nothing after a failing migration runs or is recorded."""
        write_migration(1, "broken", up='raise RuntimeError("boom")')
        write_table_migration(2, "two")
        write_table_migration(3, "three")

        with pytest.raises(MigrationExecutionError) as exc_info:
            await sql_manager.run_forward()

        error = exc_info.value
        assert error.migration_name == "broken"
        assert error.direction == "up"
        assert isinstance(error.cause, RuntimeError)
        assert "Migration broken failed" in str(error)
        assert await sql_manager.history.get_executed_names() == []
        assert len(await sql_manager.get_pending()) == 3

    @pytest.mark.asyncio
    async def test_earlier_migrations_stay_applied(self, sql_manager, write_migration, write_table_migration):
        write_table_migration(1, "one")
        write_migration(2, "broken", up='raise RuntimeError("boom")')
        write_table_migration(3, "three")

        with pytest.raises(MigrationExecutionError):
            await sql_manager.run_forward()

        assert await sql_manager.history.get_executed_names() == ["one"]
        assert [m.name for m in await sql_manager.get_pending()] == ["broken", "three"]

    @pytest.mark.asyncio
    async def test_failed_migration_is_rolled_back(self, sql_manager, sqlite_adapter, write_migration, write_table_migration):
        """Test that a failing migration's writes are undone with its ledger entry."""
        write_table_migration(1, "items")
        write_migration(
            2,
            "seed_items",
            up='await db.execute("INSERT INTO items (id) VALUES (1)")\nraise RuntimeError("boom")',
        )

        with pytest.raises(MigrationExecutionError):
            await sql_manager.run_forward()

        assert await sqlite_adapter.query("SELECT id FROM items") == []
        assert await sql_manager.history.get_executed_names() == ["items"]

    @pytest.mark.asyncio
    async def test_non_transactional_keeps_partial_writes(self, sqlite_adapter, migrations_dir, write_migration, write_table_migration):
        write_table_migration(1, "items")
        write_migration(
            2,
            "seed_items",
            up='await db.execute("INSERT INTO items (id) VALUES (1)")\nraise RuntimeError("boom")',
        )
        manager = MigrationManager(sqlite_adapter, migrations_dir, transactional=False)

        with pytest.raises(MigrationExecutionError):
            await manager.run_forward()

        assert await sqlite_adapter.query("SELECT id FROM items") == [{"id": 1}]
        assert await manager.history.get_executed_names() == ["items"]

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, sql_manager, sqlite_adapter, write_migration):
        write_migration(1, "broken", up='raise RuntimeError("boom")')

        with pytest.raises(MigrationExecutionError):
            await sql_manager.run_forward()

        rows = await sqlite_adapter.query("SELECT locked_by FROM migrations_lock WHERE id = 1")
        assert rows[0]["locked_by"] is None

    @pytest.mark.asyncio
    async def test_run_waits_for_lock(self, sqlite_adapter, migrations_dir, write_table_migration):
        """Test that a run fails when another process holds the lock."""
        write_table_migration(1, "users")
        holder = MigrationManager(sqlite_adapter, migrations_dir)
        waiter = MigrationManager(sqlite_adapter, migrations_dir, lock_timeout=0.2, lock_poll_interval=0.05)

        async with holder.lock:
            with pytest.raises(LockError):
                await waiter.run_forward()

        assert await waiter.history.get_executed_names() == []

    @pytest.mark.asyncio
    async def test_run_longer_than_stale_after_applies_once(self, sqlite_adapter, migrations_dir, write_migration):
        """Test that a concurrent run waits out a slow migration instead of repeating it."""
        await sqlite_adapter.execute("CREATE TABLE runs (id INTEGER PRIMARY KEY AUTOINCREMENT)")
        write_migration(
            1,
            "slow",
            up='import asyncio\nawait db.execute("INSERT INTO runs DEFAULT VALUES")\nawait asyncio.sleep(0.6)',
        )

        def make_manager():
            return MigrationManager(
                sqlite_adapter,
                migrations_dir,
                transactional=False,
                lock_timeout=5.0,
                lock_poll_interval=0.05,
                lock_stale_after=0.3,
            )

        async def start_later(manager):
            await asyncio.sleep(0.1)
            return await manager.run_forward()

        first, second = await asyncio.gather(make_manager().run_forward(), start_later(make_manager()))

        assert first == ["slow"]
        assert second == []
        assert await sqlite_adapter.query("SELECT COUNT(*) AS n FROM runs") == [{"n": 1}]


class TestMigrationLoading:
    """Test importing migration files."""

    @pytest.mark.asyncio
    async def test_file_without_class(self, document_manager, migrations_dir):
        (migrations_dir / "1_empty.py").write_text("VALUE = 1\n")

        with pytest.raises(MigrationLoadError) as exc_info:
            await document_manager.run_forward()

        assert exc_info.value.migration_name == "empty"

    @pytest.mark.asyncio
    async def test_file_with_two_classes(self, document_manager, migrations_dir):
        (migrations_dir / "1_double.py").write_text(
            "from dbshift import BaseMigration\n"
            "\n"
            "class A(BaseMigration):\n"
            "    async def up(self, db): pass\n"
            "    async def down(self, db): pass\n"
            "\n"
            "class B(BaseMigration):\n"
            "    async def up(self, db): pass\n"
            "    async def down(self, db): pass\n"
        )

        with pytest.raises(MigrationLoadError):
            await document_manager.run_forward()

    @pytest.mark.asyncio
    async def test_syntax_error(self, document_manager, document_adapter, migrations_dir):
        (migrations_dir / "1_broken.py").write_text("def oops(:\n")

        with pytest.raises(MigrationLoadError) as exc_info:
            await document_manager.run_forward()

        assert isinstance(exc_info.value.cause, SyntaxError)
        assert document_adapter.names_in("migrations") == []

    def test_name_filled_from_filename(self, document_manager, migrations_dir):
        (migrations_dir / "1_unnamed.py").write_text(
            "from dbshift import BaseMigration\n"
            "\n"
            "class Unnamed(BaseMigration):\n"
            "    async def up(self, db): pass\n"
            "    async def down(self, db): pass\n"
        )

        instance = document_manager.load_migration(document_manager.discover()[0])

        assert isinstance(instance, BaseMigration)
        assert instance.name == "unnamed"

    def test_name_mismatch_warns(self, document_manager, migrations_dir, caplog):
        (migrations_dir / "1_file_name.py").write_text(
            "from dbshift import BaseMigration\n"
            "\n"
            "class Renamed(BaseMigration):\n"
            "    name = 'class_name'\n"
            "    async def up(self, db): pass\n"
            "    async def down(self, db): pass\n"
        )

        with caplog.at_level(logging.WARNING):
            document_manager.load_migration(document_manager.discover()[0])

        assert "differs from file name" in caplog.text


@pytest.mark.integration
class TestRunBackwardSQL:
    """Test rolling back migrations against SQLite."""

    @pytest.mark.asyncio
    async def test_rollback_two_of_three(self, sql_manager, sqlite_adapter, write_table_migration, table_exists):
        write_table_migration(1, "m1")
        write_table_migration(2, "m2")
        write_table_migration(3, "m3")
        await sql_manager.run_forward()

        rolled_back = await sql_manager.run_backward(2)

        assert rolled_back == ["m3", "m2"]
        assert await sql_manager.history.get_executed_names() == ["m1"]
        assert await table_exists(sqlite_adapter, "m1")
        assert not await table_exists(sqlite_adapter, "m2")
        assert not await table_exists(sqlite_adapter, "m3")

    @pytest.mark.asyncio
    async def test_default_rolls_back_one(self, sql_manager, write_table_migration):
        write_table_migration(1, "m1")
        write_table_migration(2, "m2")
        await sql_manager.run_forward()

        assert await sql_manager.run_backward() == ["m2"]

    @pytest.mark.asyncio
    async def test_nothing_to_roll_back(self, sql_manager):
        assert await sql_manager.run_backward() == []

    @pytest.mark.asyncio
    async def test_count_larger_than_applied(self, sql_manager, write_table_migration):
        write_table_migration(1, "m1")
        await sql_manager.run_forward()

        assert await sql_manager.run_backward(5) == ["m1"]
        assert await sql_manager.history.get_executed_names() == []

    @pytest.mark.asyncio
    async def test_created_versus_applied_order(self, sql_manager, write_table_migration):
        """Test both meanings of "most recent" when files were applied out of order."""
        write_table_migration(200, "newer_file")
        await sql_manager.run_forward()
        write_table_migration(100, "older_file")
        await sql_manager.run_forward()

        assert await sql_manager.history.get_executed_names() == ["newer_file", "older_file"]

        assert await sql_manager.run_backward(1, order=RollbackOrder.APPLIED) == ["older_file"]
        await sql_manager.run_forward()
        assert await sql_manager.run_backward(1, order=RollbackOrder.CREATED) == ["newer_file"]

    @pytest.mark.asyncio
    async def test_rollback_batch(self, sql_manager, write_table_migration):
        write_table_migration(1, "a")
        write_table_migration(2, "b")
        await sql_manager.run_forward()
        write_table_migration(3, "c")
        write_table_migration(4, "d")
        await sql_manager.run_forward()

        assert await sql_manager.rollback_batch() == ["d", "c"]
        assert await sql_manager.history.get_executed_names() == ["a", "b"]
        assert await sql_manager.rollback_batch() == ["b", "a"]
        assert await sql_manager.rollback_batch() == []

    @pytest.mark.asyncio
    async def test_failed_rollback_keeps_entry(self, sql_manager, write_migration):
        write_migration(1, "stubborn", down='raise RuntimeError("nope")')
        await sql_manager.run_forward()

        with pytest.raises(MigrationExecutionError) as exc_info:
            await sql_manager.run_backward()

        assert exc_info.value.direction == "down"
        assert "Rollback stubborn failed" in str(exc_info.value)
        assert await sql_manager.history.get_executed_names() == ["stubborn"]

    @pytest.mark.asyncio
    async def test_applied_entry_without_file_is_skipped(self, sql_manager, write_table_migration):
        write_table_migration(1, "m1")
        await sql_manager.run_forward()
        await sql_manager.history.record("ghost", 2)

        assert await sql_manager.run_backward() == ["m1"]
        assert await sql_manager.history.get_executed_names() == ["ghost"]

    @pytest.mark.asyncio
    async def test_up_and_down_aliases(self, sql_manager, write_table_migration):
        write_table_migration(1, "m1")

        assert await sql_manager.up() == ["m1"]
        assert await sql_manager.down() == ["m1"]


class TestDocumentBackend:
    """Test the manager against the document adapter."""

    @pytest.mark.asyncio
    async def test_run_forward_and_ledger(self, document_manager, document_adapter, write_collection_migration):
        write_collection_migration(300, "orders")
        write_collection_migration(100, "users")
        write_collection_migration(200, "products")

        applied = await document_manager.run_forward()

        assert applied == ["users", "products", "orders"]
        assert document_adapter.names_in("migrations") == applied
        assert {"users", "products", "orders"} <= set(document_adapter.collections)

    @pytest.mark.asyncio
    async def test_second_run_touches_nothing(self, document_manager, document_adapter, write_collection_migration):
        write_collection_migration(1, "users")
        await document_manager.run_forward()
        before = [op for op in document_adapter.operations if op[0] == "createCollection"]

        assert await document_manager.run_forward() == []

        after = [op for op in document_adapter.operations if op[0] == "createCollection"]
        assert after == before

    @pytest.mark.asyncio
    async def test_rollback(self, document_manager, document_adapter, write_collection_migration):
        write_collection_migration(1, "users")
        write_collection_migration(2, "products")
        await document_manager.run_forward()

        assert await document_manager.run_backward() == ["products"]
        assert "products" not in document_adapter.collections
        assert document_adapter.names_in("migrations") == ["users"]

    @pytest.mark.asyncio
    async def test_failure_leaves_no_entry(self, document_manager, document_adapter, write_migration, write_collection_migration):
        write_migration(1, "broken", up='raise ValueError("bad")')
        write_collection_migration(2, "users")

        with pytest.raises(MigrationExecutionError):
            await document_manager.run_forward()

        assert document_adapter.names_in("migrations") == []
        assert "users" not in document_adapter.collections


class TestStatus:
    """Test status reporting."""

    @pytest.mark.asyncio
    async def test_status_reports_applied_and_pending(self, document_manager, write_collection_migration):
        write_collection_migration(1, "users")
        write_collection_migration(2, "products")
        await document_manager.run_forward(1)

        statuses = await document_manager.status()

        assert [s.name for s in statuses] == ["users", "products"]
        users, products = statuses
        assert users.applied and users.batch == 1 and users.file == "1_users.py"
        assert users.applied_at is not None and users.applied_at.tzinfo is not None
        assert not products.applied and products.applied_at is None and products.batch is None

    @pytest.mark.asyncio
    async def test_orphaned_entry_listed_last(self, document_manager, write_collection_migration):
        write_collection_migration(1, "users")
        await document_manager.history.record("ghost", 1)

        statuses = await document_manager.status()

        assert statuses[-1] == MigrationStatus(
            name="ghost",
            file=None,
            applied=True,
            applied_at=statuses[-1].applied_at,
            batch=1,
        )
        assert statuses[0].name == "users" and not statuses[0].applied

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_sql_status_uses_recorded_time(self, sql_manager, write_table_migration):
        write_table_migration(1, "users")
        await sql_manager.run_forward()

        status = (await sql_manager.status())[0]
        entry = (await sql_manager.history.get_executed())[0]

        assert status.applied_at == entry.executed_at
        assert status.to_dict()["applied_at"] == entry.executed_at.isoformat()


class TestCreate:
    """Test migration file creation."""

    @pytest.mark.asyncio
    async def test_creates_loadable_sql_migration(self, sql_manager):
        path = await sql_manager.create("create users")

        assert path.exists()
        assert path.name.endswith("_create_users.py")
        content = path.read_text()
        assert "class CreateUsers(BaseMigration):" in content
        assert "DROP TABLE" in content

        migration = sql_manager.discover()[0]
        instance = sql_manager.load_migration(migration)
        assert type(instance).__name__ == "CreateUsers"
        assert instance.name == "create_users"

    @pytest.mark.asyncio
    async def test_created_migration_runs(self, sql_manager):
        await sql_manager.create("noop")

        assert await sql_manager.run_forward() == ["noop"]

    @pytest.mark.asyncio
    async def test_document_template(self, document_manager):
        path = await document_manager.create("add_users")

        assert '"createCollection"' in path.read_text()

    @pytest.mark.asyncio
    async def test_backend_override(self, sql_manager):
        path = await sql_manager.create("add_users", backend="mongodb")

        assert '"createCollection"' in path.read_text()

    @pytest.mark.asyncio
    async def test_creates_missing_directory(self, sqlite_adapter, tmp_path):
        manager = MigrationManager(sqlite_adapter, tmp_path / "new" / "migrations")

        path = await manager.create("init")

        assert path.parent == tmp_path / "new" / "migrations"

    @pytest.mark.asyncio
    async def test_existing_file_is_not_overwritten(self, sql_manager):
        with patch("dbshift.database.migrations.utils.current_timestamp_ms", return_value=123):
            path = await sql_manager.create("init")
            path.write_text("# edited\n")

            with pytest.raises(MigrationError):
                await sql_manager.create("init")

        assert path.read_text() == "# edited\n"

    @pytest.mark.asyncio
    async def test_empty_name(self, sql_manager):
        with pytest.raises(ValueError):
            await sql_manager.create("")
