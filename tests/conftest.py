import pytest
from sqlalchemy import create_engine, inspect, text

from difmigrate.core.runner import MigrationRunner
from difmigrate.core.source import RegistrySource
from tests.samples import SAMPLE_MIGRATIONS, make_definition

ENV_VARS = (
    "DATABASE_URL",
    "PGSSLMODE",
    "DIFMIGRATE_TABLE",
    "DIFMIGRATE_MIGRATIONS_DIR",
    "DIFMIGRATE_LOCK_TIMEOUT",
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Isola cada teste de variáveis de ambiente, .env e difmigrate.toml reais."""
    for var in ENV_VARS:
        # setenv + delenv garante que o valor carregado por load_dotenv seja desfeito
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'difmigrate.db'}"


@pytest.fixture
def definitions():
    return [make_definition(name[:-4], sql) for name, sql in SAMPLE_MIGRATIONS.items()]


@pytest.fixture
def source(definitions):
    return RegistrySource(definitions)


@pytest.fixture
def make_runner(database_url):
    """Fábrica de runners já inicializados; todos são fechados no final do teste."""
    created = []

    def _make(source, **kwargs):
        kwargs.setdefault("lock_timeout", 5.0)
        kwargs.setdefault("lock_poll_interval", 0.05)
        runner = MigrationRunner(database_url, source, **kwargs)
        runner.initialize()
        created.append(runner)
        return runner

    yield _make
    for runner in created:
        runner.close()


@pytest.fixture
def runner(make_runner, source):
    return make_runner(source)


@pytest.fixture
def migrations_dir(tmp_path):
    """Diretório com as três migrações de exemplo em arquivos .sql."""
    directory = tmp_path / "migrations"
    directory.mkdir()
    for name, sql in SAMPLE_MIGRATIONS.items():
        (directory / name).write_text(sql, encoding="utf-8")
    return directory


@pytest.fixture
def inspect_db(database_url):
    """Consultas diretas ao banco, por fora do runner."""

    class _Inspector:
        def ledger_ids(self, table="schema_migrations"):
            engine = create_engine(database_url)
            try:
                with engine.connect() as conn:
                    rows = conn.execute(
                        text(f"SELECT id FROM {table} ORDER BY applied_at, id")
                    ).fetchall()
                return [row[0] for row in rows]
            finally:
                engine.dispose()

        def ledger_rows(self, table="schema_migrations"):
            engine = create_engine(database_url)
            try:
                with engine.connect() as conn:
                    return conn.execute(
                        text(f"SELECT id, checksum, applied_at FROM {table} ORDER BY applied_at, id")
                    ).fetchall()
            finally:
                engine.dispose()

        def lock_rows(self, table="schema_migrations"):
            engine = create_engine(database_url)
            try:
                with engine.connect() as conn:
                    return conn.execute(text(f"SELECT lock_key, owner FROM {table}_lock")).fetchall()
            finally:
                engine.dispose()

        def tables(self):
            engine = create_engine(database_url)
            try:
                return set(inspect(engine).get_table_names())
            finally:
                engine.dispose()

    return _Inspector()
