"""
Migration Runner.

Aplica as migrações pendentes uma transação por vez, em ordem crescente de
versão, sob o lock de deploy. Se a migração k falha, as migrações 1..k-1 desta
execução continuam aplicadas e a k é desfeita por inteiro.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..utils.exceptions import (
    ConnectionError,
    DriftDetected,
    InvalidRunnerState,
    MigrationFailed,
    RunTimeout,
)
from .connection import ConnectionManager
from .ledger import DEFAULT_LOCK_TTL, DEFAULT_POLL_INTERVAL, DEFAULT_TABLE_NAME, LedgerEntry, LedgerStore, utcnow
from .source import MigrationDefinition, MigrationSource, source_from_config
from .status import MigrationPlan, MigrationStatus, compute_status, diff

logger = logging.getLogger(__name__)


class RunnerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTED = "connected"
    IDLE = "idle"
    DIFFING = "diffing"
    APPLYING = "applying"
    FAILED = "failed"


# Estados em que o runner está conectado e livre para uma nova operação
READY_STATES = (RunnerState.CONNECTED, RunnerState.IDLE)


def _database_error(operation: str, error: SQLAlchemyError) -> ConnectionError:
    """Erro de banco depois do initialize(): conexão caiu ou o ledger sumiu."""
    cause = str(getattr(error, "orig", None) or error).strip()
    return ConnectionError(f"Erro de banco de dados ao {operation}: {cause}")


@dataclass(frozen=True)
class AppliedMigration:
    id: str
    execution_time_ms: int


@dataclass(frozen=True)
class MigrationResult:
    executed: int
    total: int
    applied: List[AppliedMigration] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executed": self.executed,
            "total": self.total,
            "applied": [
                {"id": m.id, "execution_time_ms": m.execution_time_ms} for m in self.applied
            ],
        }


class MigrationRunner:
    """
    Orquestra conexão, diff, aplicação transacional e lock de deploy.

    Estados: uninitialized → connected → {idle, diffing, applying, failed}.
    Um runner em ``failed`` precisa de um novo ``initialize()`` antes de ser
    reutilizado.

    Exemplo::

        runner = MigrationRunner("postgresql://...", bundled_source())
        runner.initialize()
        result = runner.run_migrations()
        print(f"{result.executed}/{result.total}")
        runner.close()
    """

    def __init__(
        self,
        database_url: Optional[str],
        source: MigrationSource,
        *,
        ssl_mode: Optional[str] = None,
        table_name: str = DEFAULT_TABLE_NAME,
        lock_timeout: float = 30.0,
        lock_ttl: float = DEFAULT_LOCK_TTL,
        lock_poll_interval: float = DEFAULT_POLL_INTERVAL,
        connection: Optional[ConnectionManager] = None,
    ):
        self.database_url = database_url
        self.source = source
        self.ssl_mode = ssl_mode
        self.table_name = table_name
        self.lock_timeout = lock_timeout
        self.lock_ttl = lock_ttl
        self.lock_poll_interval = lock_poll_interval
        self.connection = connection or ConnectionManager()
        self.ledger: Optional[LedgerStore] = None
        self._state = RunnerState.UNINITIALIZED

    @classmethod
    def from_config(cls, config: Dict[str, Any], source: Optional[MigrationSource] = None) -> "MigrationRunner":
        return cls(
            config.get("database_url"),
            source if source is not None else source_from_config(config),
            ssl_mode=config.get("ssl_mode"),
            table_name=config.get("table") or DEFAULT_TABLE_NAME,
            lock_timeout=config.get("lock_timeout", 30.0),
            lock_ttl=config.get("lock_ttl", DEFAULT_LOCK_TTL),
        )

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def engine(self) -> Engine:
        if self.connection.engine is None:
            raise InvalidRunnerState("Runner não inicializado; chame initialize() primeiro")
        return self.connection.engine

    def __enter__(self) -> "MigrationRunner":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # --- Ciclo de vida ---

    def initialize(self) -> None:
        """
        Abre a conexão e garante a tabela de ledger.

        Raises:
            ConnectionError: banco inacessível, credenciais inválidas ou
                tabela de ledger impossível de criar. Sem retry.
        """
        try:
            engine = self.connection.connect(self.database_url, ssl_mode=self.ssl_mode)
            self.ledger = LedgerStore(
                engine,
                self.table_name,
                lock_ttl=self.lock_ttl,
                poll_interval=self.lock_poll_interval,
            )
            try:
                self.ledger.ensure_schema()
            except SQLAlchemyError as e:
                cause = getattr(e, "orig", None) or e
                raise ConnectionError(
                    f"Não foi possível preparar a tabela de migrações '{self.table_name}': {cause}"
                ) from e
        except BaseException:
            self.connection.disconnect()
            self._state = RunnerState.FAILED
            raise
        self._state = RunnerState.CONNECTED

    def close(self) -> None:
        self.connection.disconnect()
        self.ledger = None
        self._state = RunnerState.UNINITIALIZED

    def _require_ready(self, operation: str) -> None:
        if self._state is RunnerState.FAILED:
            raise InvalidRunnerState(
                f"{operation}() chamado com o runner em estado 'failed'; chame initialize() novamente"
            )
        if self._state not in READY_STATES:
            raise InvalidRunnerState(
                f"{operation}() requer um runner conectado (estado atual: '{self._state.value}')"
            )

    # --- Status ---

    def check_status(self) -> MigrationStatus:
        """Status atual, calculado do zero. Somente leitura e sem lock; pode estar defasado."""
        self._require_ready("check_status")
        try:
            definitions = self.source.list()
            entries = self.ledger.list_applied()
        except SQLAlchemyError as e:
            self._state = RunnerState.FAILED
            logger.error("Falha ao verificar o status das migrações: %s", e)
            raise _database_error("verificar o status", e) from e
        except BaseException:
            self._state = RunnerState.FAILED
            logger.error("Falha ao verificar o status das migrações", exc_info=True)
            raise
        return compute_status(definitions, entries)

    # --- Aplicação ---

    def run_migrations(self, timeout: Optional[float] = None) -> MigrationResult:
        """
        Aplica as migrações pendentes sob o lock de deploy.

        Args:
            timeout: prazo total opcional (segundos) imposto pelo driver.

        Raises:
            LockTimeout, LockLost, DriftDetected, MigrationFailed, DuplicateApplication,
            RunTimeout, SourceUnavailable, ConnectionError (erro de banco fora de uma migração).
        """
        self._require_ready("run_migrations")
        deadline = time.monotonic() + timeout if timeout is not None else None

        try:
            definitions = self.source.list()
            with self.engine.connect() as conn:
                lock_timeout = self.lock_timeout
                if deadline is not None:
                    lock_timeout = max(min(lock_timeout, deadline - time.monotonic()), 0.0)
                self.ledger.acquire_deployment_lock(conn, timeout=lock_timeout)
                try:
                    result = self._run_locked(conn, definitions, deadline, timeout)
                finally:
                    self.ledger.release_deployment_lock(conn)
        except SQLAlchemyError as e:
            self._state = RunnerState.FAILED
            logger.error("Erro de banco de dados durante a execução das migrações: %s", e)
            raise _database_error("executar as migrações", e) from e
        except BaseException:
            self._state = RunnerState.FAILED
            raise

        self._state = RunnerState.IDLE
        return result

    def _run_locked(
        self,
        conn: Connection,
        definitions: List[MigrationDefinition],
        deadline: Optional[float],
        timeout: Optional[float],
    ) -> MigrationResult:
        self._state = RunnerState.DIFFING
        # Recalcula dentro do lock: outro processo pode ter aplicado migrações
        entries = self.ledger.list_applied(conn)
        conn.commit()
        plan = diff(definitions, entries)
        self._warn_about(plan)

        if plan.drifted:
            for item in plan.drifted:
                logger.error(
                    "Conteúdo da migração '%s' mudou após a aplicação (registrado %s, atual %s)",
                    item.id,
                    item.recorded_checksum,
                    item.checksum,
                )
            raise DriftDetected(plan.drifted)

        total = len(definitions)
        if not plan.pending:
            logger.info("Nenhuma migração pendente (%d no total)", total)
            return MigrationResult(executed=0, total=total)

        logger.info("Aplicando %d migração(ões) pendente(s) de %d", len(plan.pending), total)
        self._state = RunnerState.APPLYING
        applied: List[AppliedMigration] = []
        for definition in plan.pending:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.error("Prazo esgotado antes de aplicar '%s'", definition.id)
                    raise RunTimeout(timeout, len(applied))
            self.ledger.renew_deployment_lock(conn)
            applied.append(self._apply(conn, definition, remaining))

        logger.info("Todas as migrações concluídas (%d/%d)", len(applied), total)
        return MigrationResult(executed=len(applied), total=total, applied=applied)

    def _apply(
        self, conn: Connection, definition: MigrationDefinition, remaining: Optional[float]
    ) -> AppliedMigration:
        logger.info("Executando migração %s", definition.id)
        started = time.monotonic()
        try:
            with conn.begin():
                if remaining is not None and self.ledger.uses_advisory_lock:
                    conn.execute(text(f"SET LOCAL statement_timeout = {max(int(remaining * 1000), 1)}"))
                for statement in definition.statements:
                    conn.exec_driver_sql(statement)
                elapsed_ms = int((time.monotonic() - started) * 1000)
                self.ledger.record_applied(
                    LedgerEntry(
                        id=definition.id,
                        checksum=definition.checksum,
                        applied_at=utcnow(),
                        execution_time_ms=elapsed_ms,
                    ),
                    conn,
                )
        except SQLAlchemyError as e:
            cause = str(getattr(e, "orig", None) or e).strip()
            logger.error("Migração %s falhou: %s", definition.id, cause)
            raise MigrationFailed(definition.id, cause) from e

        logger.info("Migração %s concluída em %dms", definition.id, elapsed_ms)
        return AppliedMigration(id=definition.id, execution_time_ms=elapsed_ms)

    def _warn_about(self, plan: MigrationPlan) -> None:
        for entry in plan.missing:
            logger.warning(
                "Migração '%s' registrada no ledger não tem definição correspondente", entry.id
            )
        for definition in plan.out_of_order:
            logger.warning(
                "Migração '%s' é anterior à última versão aplicada; será aplicada fora de ordem",
                definition.id,
            )
