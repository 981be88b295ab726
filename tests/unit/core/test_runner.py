"""
Testes do MigrationRunner contra um banco SQLite real em arquivo temporário.
"""

import time
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, text

from difmigrate.core.connection import build_engine
from difmigrate.core.ledger import LedgerStore
from difmigrate.core.runner import MigrationRunner, RunnerState
from difmigrate.core.source import RegistrySource
from difmigrate.core.status import MigrationState
from difmigrate.utils.exceptions import (
    ConnectionError,
    DifMigrateError,
    DriftDetected,
    DuplicateApplication,
    InvalidRunnerState,
    LockLost,
    LockTimeout,
    MigrationFailed,
    RunTimeout,
)

from tests.samples import ALL_IDS, BADGES_SQL, INIT_SQL, STREAKS_SQL, make_definition


class TestRunnerLifecycle:
    """Máquina de estados e inicialização."""

    def test_initialize_connects_and_creates_ledger(self, runner, inspect_db):
        assert runner.state is RunnerState.CONNECTED
        assert "schema_migrations" in inspect_db.tables()
        assert inspect_db.ledger_ids() == []

    def test_operations_require_initialize(self, database_url, source):
        runner = MigrationRunner(database_url, source)
        assert runner.state is RunnerState.UNINITIALIZED
        with pytest.raises(InvalidRunnerState):
            runner.run_migrations()
        with pytest.raises(InvalidRunnerState):
            runner.check_status()

    @pytest.mark.parametrize("url", [None, "", "not-a-url", "sqlite:////nonexistent/dir/difmigrate.db"])
    def test_unreachable_database(self, url, source):
        runner = MigrationRunner(url, source)
        with pytest.raises(ConnectionError):
            runner.initialize()
        assert runner.state is RunnerState.FAILED
        with pytest.raises(InvalidRunnerState, match="failed"):
            runner.run_migrations()

    def test_close_resets_state(self, runner):
        runner.close()
        assert runner.state is RunnerState.UNINITIALIZED
        with pytest.raises(InvalidRunnerState):
            runner.check_status()

    def test_context_manager(self, database_url, source, inspect_db):
        with MigrationRunner(database_url, source) as runner:
            assert runner.run_migrations().executed == 3
        assert runner.state is RunnerState.UNINITIALIZED
        assert inspect_db.ledger_ids() == ALL_IDS

    def test_from_config(self, database_url, migrations_dir):
        config = {
            "database_url": database_url,
            "ssl_mode": None,
            "table": "app_migrations",
            "migrations_dir": str(migrations_dir),
            "lock_timeout": 3.0,
            "lock_ttl": 60.0,
        }
        runner = MigrationRunner.from_config(config)
        assert runner.table_name == "app_migrations"
        assert runner.lock_timeout == 3.0
        assert [d.id for d in runner.source.list()] == ALL_IDS


class TestStatus:
    """check_status é somente leitura."""

    def test_fresh_database(self, runner, inspect_db):
        status = runner.check_status()
        assert (status.total, status.executed, status.pending) == (3, 0, 3)
        assert all(m.state is MigrationState.PENDING for m in status.migrations)
        assert inspect_db.ledger_ids() == []
        assert "users" not in inspect_db.tables()

    def test_after_run(self, runner):
        runner.run_migrations()
        status = runner.check_status()
        assert (status.total, status.executed, status.pending) == (3, 3, 0)
        assert status.is_current
        assert all(m.applied_at is not None for m in status.migrations)


class TestRunMigrations:
    """Aplicação das migrações pendentes."""

    def test_applies_everything_in_order(self, runner, inspect_db):
        result = runner.run_migrations()
        assert (result.executed, result.total) == (3, 3)
        assert [m.id for m in result.applied] == ALL_IDS
        assert all(m.execution_time_ms >= 0 for m in result.applied)
        assert runner.state is RunnerState.IDLE
        assert inspect_db.ledger_ids() == ALL_IDS
        assert {"users", "activity_logs", "badges", "user_badges", "daily_completions"} <= inspect_db.tables()
        assert inspect_db.lock_rows() == []

    def test_second_run_is_a_no_op(self, runner, inspect_db):
        runner.run_migrations()
        rows_before = inspect_db.ledger_rows()
        result = runner.run_migrations()
        assert (result.executed, result.total) == (0, 3)
        assert result.applied == []
        assert inspect_db.ledger_rows() == rows_before

    def test_order_does_not_depend_on_registration_order(self, make_runner, definitions, inspect_db):
        runner = make_runner(RegistrySource(reversed(definitions)))
        runner.run_migrations()
        assert inspect_db.ledger_ids() == ALL_IDS

    def test_checksum_is_recorded(self, runner, inspect_db, definitions):
        runner.run_migrations()
        recorded = {row.id: row.checksum for row in inspect_db.ledger_rows()}
        assert recorded == {d.id: d.checksum for d in definitions}

    def test_only_new_migrations_are_applied(self, make_runner, definitions, inspect_db):
        make_runner(RegistrySource(definitions[:2])).run_migrations()
        result = make_runner(RegistrySource(definitions)).run_migrations()
        assert (result.executed, result.total) == (1, 3)
        assert [m.id for m in result.applied] == ["003_add_streaks"]
        assert inspect_db.ledger_ids() == ALL_IDS

    def test_empty_source(self, make_runner):
        result = make_runner(RegistrySource([])).run_migrations()
        assert (result.executed, result.total) == (0, 0)

    def test_result_to_dict(self, runner):
        data = runner.run_migrations().to_dict()
        assert data["executed"] == 3
        assert data["total"] == 3
        assert [m["id"] for m in data["applied"]] == ALL_IDS


class TestFailures:
    """Falhas durante a aplicação: atomicidade por migração."""

    def broken_source(self):
        return RegistrySource([
            make_definition("001_init", INIT_SQL),
            make_definition(
                "002_add_badges",
                "CREATE TABLE badges (id INTEGER PRIMARY KEY);\nINSERT INTO missing_table VALUES (1);",
            ),
            make_definition("003_add_streaks", STREAKS_SQL),
        ])

    def test_failing_migration_is_rolled_back(self, make_runner, inspect_db):
        runner = make_runner(self.broken_source())
        with pytest.raises(MigrationFailed) as excinfo:
            runner.run_migrations()

        assert excinfo.value.migration_id == "002_add_badges"
        assert "missing_table" in excinfo.value.cause
        assert "002_add_badges" in str(excinfo.value)
        assert runner.state is RunnerState.FAILED
        # 001 continua aplicada; 002 foi desfeita por inteiro, inclusive o DDL
        assert inspect_db.ledger_ids() == ["001_init"]
        tables = inspect_db.tables()
        assert "users" in tables
        assert "badges" not in tables
        assert "daily_completions" not in tables
        assert inspect_db.lock_rows() == []

    def test_failed_runner_must_be_reinitialized(self, make_runner, source, inspect_db):
        runner = make_runner(self.broken_source())
        with pytest.raises(MigrationFailed):
            runner.run_migrations()
        with pytest.raises(InvalidRunnerState):
            runner.check_status()

        runner.source = source
        runner.initialize()
        result = runner.run_migrations()
        assert (result.executed, result.total) == (2, 3)
        assert inspect_db.ledger_ids() == ALL_IDS

    def test_interrupted_migration_is_rolled_back(self, runner, inspect_db):
        with patch.object(runner.ledger, "record_applied", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                runner.run_migrations()
        assert runner.state is RunnerState.FAILED
        assert inspect_db.ledger_ids() == []
        assert "users" not in inspect_db.tables()
        assert inspect_db.lock_rows() == []

    def test_duplicate_application(self, make_runner, inspect_db):
        source = RegistrySource([make_definition("001_init", "CREATE TABLE IF NOT EXISTS users (id INTEGER);")])
        runner = make_runner(source)
        runner.run_migrations()

        # simula outro processo que aplicou a migração entre o diff e o registro
        with patch.object(runner.ledger, "list_applied", return_value=[]):
            with pytest.raises(DuplicateApplication) as excinfo:
                runner.run_migrations()
        assert excinfo.value.migration_id == "001_init"
        assert runner.state is RunnerState.FAILED
        assert inspect_db.ledger_ids() == ["001_init"]

    def test_run_timeout(self, runner, inspect_db):
        with pytest.raises(RunTimeout) as excinfo:
            runner.run_migrations(timeout=0)
        assert excinfo.value.executed == 0
        assert runner.state is RunnerState.FAILED
        assert inspect_db.ledger_ids() == []
        assert inspect_db.lock_rows() == []

    def test_lock_timeout(self, make_runner, source, inspect_db):
        runner = make_runner(source, lock_timeout=0.2)
        holder = LedgerStore(runner.engine, owner="outro-deploy")
        with runner.engine.connect() as conn:
            holder.acquire_deployment_lock(conn, timeout=1)
            with pytest.raises(LockTimeout):
                runner.run_migrations()
            holder.release_deployment_lock(conn)

        assert runner.state is RunnerState.FAILED
        assert inspect_db.ledger_ids() == []

    def test_lock_timeout_while_another_writer_holds_the_database(self, make_runner, source, database_url, inspect_db):
        runner = make_runner(source, lock_timeout=0.5)
        engine = build_engine(database_url)
        try:
            with engine.connect() as writer, writer.begin():
                started = time.monotonic()
                with pytest.raises(LockTimeout):
                    runner.run_migrations()
                assert time.monotonic() - started < 5
        finally:
            engine.dispose()

        assert runner.state is RunnerState.FAILED
        assert inspect_db.ledger_ids() == []

    def test_lock_is_renewed_before_each_migration(self, runner):
        ledger = runner.ledger
        with patch.object(ledger, "renew_deployment_lock", wraps=ledger.renew_deployment_lock) as renew:
            runner.run_migrations()
        assert renew.call_count == len(ALL_IDS)

    def test_lost_lock_stops_the_run(self, runner, inspect_db):
        with patch.object(runner.ledger, "renew_deployment_lock", side_effect=[None, LockLost("test-a")]):
            with pytest.raises(LockLost):
                runner.run_migrations()
        assert runner.state is RunnerState.FAILED
        assert inspect_db.ledger_ids() == ALL_IDS[:1]


class TestDrift:
    """Migrações alteradas depois de aplicadas."""

    def edited_source(self):
        return RegistrySource([
            make_definition("001_init", INIT_SQL),
            make_definition("002_add_badges", BADGES_SQL + "\n-- editada depois do deploy\n"),
            make_definition("003_add_streaks", STREAKS_SQL),
        ])

    def test_status_reports_drift(self, make_runner, source):
        make_runner(source).run_migrations()
        status = make_runner(self.edited_source()).check_status()
        assert [m.id for m in status.drifted] == ["002_add_badges"]
        assert status.executed == 3
        assert not status.is_current

    def test_run_refuses_to_continue(self, make_runner, definitions, inspect_db):
        make_runner(RegistrySource(definitions[:2])).run_migrations()
        runner = make_runner(self.edited_source())
        with pytest.raises(DriftDetected) as excinfo:
            runner.run_migrations()
        assert excinfo.value.ids == ["002_add_badges"]
        assert runner.state is RunnerState.FAILED
        # 003 estava pendente mas não é aplicada
        assert inspect_db.ledger_ids() == ["001_init", "002_add_badges"]
        assert inspect_db.lock_rows() == []

    def test_line_endings_are_not_drift(self, make_runner, source):
        make_runner(source).run_migrations()
        crlf = RegistrySource([
            make_definition("001_init", INIT_SQL.replace("\n", "\r\n")),
            make_definition("002_add_badges", BADGES_SQL),
            make_definition("003_add_streaks", STREAKS_SQL),
        ])
        assert make_runner(crlf).check_status().is_current


class TestLedgerAnomalies:
    """Entradas sem definição e migrações fora de ordem."""

    def test_missing_definition_is_reported_not_fatal(self, make_runner, definitions):
        make_runner(RegistrySource(definitions)).run_migrations()
        runner = make_runner(RegistrySource(definitions[1:]))

        status = runner.check_status()
        assert status.total == 2
        assert [m.id for m in status.missing] == ["001_init"]

        result = runner.run_migrations()
        assert (result.executed, result.total) == (0, 2)

    def test_out_of_order_migration_is_applied(self, make_runner, definitions, inspect_db):
        make_runner(RegistrySource([definitions[0], definitions[2]])).run_migrations()
        result = make_runner(RegistrySource(definitions)).run_migrations()
        assert [m.id for m in result.applied] == ["002_add_badges"]
        assert sorted(inspect_db.ledger_ids()) == ALL_IDS


class TestDatabaseErrors:
    """Erros de banco depois do initialize()."""

    def drop_ledger(self, database_url):
        engine = create_engine(database_url)
        try:
            with engine.begin() as conn:
                conn.execute(text("DROP TABLE schema_migrations"))
        finally:
            engine.dispose()

    def test_check_status_with_ledger_dropped(self, runner, database_url):
        self.drop_ledger(database_url)
        with pytest.raises(ConnectionError, match="schema_migrations") as excinfo:
            runner.check_status()
        assert isinstance(excinfo.value, DifMigrateError)
        assert runner.state is RunnerState.FAILED

    def test_run_migrations_with_ledger_dropped(self, runner, database_url, inspect_db):
        self.drop_ledger(database_url)
        with pytest.raises(ConnectionError, match="schema_migrations"):
            runner.run_migrations()
        assert runner.state is RunnerState.FAILED
        assert inspect_db.lock_rows() == []
