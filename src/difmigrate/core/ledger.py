"""
Ledger de migrações aplicadas e lock de deploy.

O ledger é uma tabela no próprio banco alvo (``schema_migrations`` por padrão)
com uma linha por migração aplicada. A linha é inserida na mesma transação que
executa a migração e nunca é alterada ou removida pelo runner.

O lock de deploy serializa execuções concorrentes de ``run_migrations``:

- PostgreSQL: advisory lock de sessão (``pg_try_advisory_lock``).
- Outros bancos: uma linha na tabela ``<ledger>_lock`` com expiração, para que
  o lock de um processo que morreu se libere sozinho. A expiração é renovada
  antes de cada migração.
"""

import hashlib
import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, delete, insert, select, text, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.schema import CreateTable

from ..utils.exceptions import DuplicateApplication, LockLost, LockTimeout

logger = logging.getLogger(__name__)

DEFAULT_TABLE_NAME = "schema_migrations"
DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_LOCK_TTL = 3600.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def advisory_lock_key(name: str) -> int:
    """Chave estável (bigint com sinal) para ``pg_advisory_lock`` derivada de um nome."""
    digest = hashlib.sha256(f"difmigrate:{name}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


@dataclass(frozen=True)
class LedgerEntry:
    """Registro de uma migração aplicada."""

    id: str
    checksum: str
    applied_at: datetime
    execution_time_ms: Optional[int] = None


class LedgerStore:
    """Acesso à tabela de ledger e ao lock de deploy."""

    def __init__(
        self,
        engine: Engine,
        table_name: str = DEFAULT_TABLE_NAME,
        lock_ttl: float = DEFAULT_LOCK_TTL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        owner: Optional[str] = None,
    ):
        self.engine = engine
        self.table_name = table_name
        self.lock_ttl = lock_ttl
        self.poll_interval = poll_interval
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.lock_key = advisory_lock_key(table_name)
        self._lock_held = False

        self.metadata = MetaData()
        self.table = Table(
            table_name,
            self.metadata,
            Column("id", String(255), primary_key=True),
            Column("checksum", String(64), nullable=False),
            Column("applied_at", DateTime(timezone=True), nullable=False),
            Column("execution_time_ms", Integer, nullable=True),
        )
        self.lock_table = Table(
            f"{table_name}_lock",
            self.metadata,
            Column("lock_key", String(255), primary_key=True),
            Column("owner", String(255), nullable=False),
            Column("acquired_at", DateTime(timezone=True), nullable=False),
            Column("expires_at", DateTime(timezone=True), nullable=False),
        )

    @property
    def uses_advisory_lock(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    @property
    def lock_held(self) -> bool:
        return self._lock_held

    # --- Schema ---

    def ensure_schema(self) -> None:
        """Cria a tabela de ledger (e a de lock, fora do PostgreSQL) se não existirem."""
        with self.engine.begin() as conn:
            conn.execute(CreateTable(self.table, if_not_exists=True))
            if not self.uses_advisory_lock:
                conn.execute(CreateTable(self.lock_table, if_not_exists=True))
        logger.debug("Tabela de migrações '%s' garantida", self.table_name)

    # --- Leitura / escrita ---

    def list_applied(self, conn: Optional[Connection] = None) -> List[LedgerEntry]:
        """Migrações aplicadas, em ordem de aplicação (applied_at, depois id)."""
        if conn is None:
            with self.engine.connect() as own_conn:
                return self._select_applied(own_conn)
        return self._select_applied(conn)

    def _select_applied(self, conn: Connection) -> List[LedgerEntry]:
        t = self.table
        rows = conn.execute(
            select(t.c.id, t.c.checksum, t.c.applied_at, t.c.execution_time_ms).order_by(
                t.c.applied_at, t.c.id
            )
        )
        return [
            LedgerEntry(
                id=row.id,
                checksum=row.checksum,
                applied_at=row.applied_at,
                execution_time_ms=row.execution_time_ms,
            )
            for row in rows
        ]

    def record_applied(self, entry: LedgerEntry, conn: Connection) -> None:
        """
        Registra a migração usando a transação do chamador.

        Raises:
            DuplicateApplication: o id já existe no ledger.
        """
        try:
            conn.execute(
                insert(self.table).values(
                    id=entry.id,
                    checksum=entry.checksum,
                    applied_at=entry.applied_at,
                    execution_time_ms=entry.execution_time_ms,
                )
            )
        except IntegrityError as e:
            logger.critical(
                "Migração '%s' já existe no ledger: outro processo aplicou sem o lock de deploy",
                entry.id,
            )
            raise DuplicateApplication(entry.id) from e

    # --- Lock de deploy ---

    def acquire_deployment_lock(self, conn: Connection, timeout: float) -> None:
        """
        Bloqueia até obter o lock de deploy ou até ``timeout`` segundos.

        Raises:
            LockTimeout: o lock continua com outro processo após o prazo.
        """
        started = time.monotonic()
        while True:
            remaining = max(timeout - (time.monotonic() - started), 0.0)
            if self._try_lock(conn, remaining):
                self._lock_held = True
                logger.info("Lock de migração obtido (%s)", self.owner)
                return

            elapsed = time.monotonic() - started
            if elapsed >= timeout:
                logger.error(
                    "Lock de migração não obtido após %.1fs; outra migração pode estar em andamento",
                    elapsed,
                )
                raise LockTimeout(timeout)

            logger.debug("Lock de migração ocupado, nova tentativa em %ss", self.poll_interval)
            time.sleep(min(self.poll_interval, max(timeout - elapsed, 0.0)))

    def _try_lock(self, conn: Connection, wait: float) -> bool:
        if self.uses_advisory_lock:
            acquired = conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": self.lock_key}
            ).scalar()
            conn.commit()
            return bool(acquired)

        with self._busy_timeout(conn, wait):
            return self._insert_lock_row(conn)

    @contextmanager
    def _busy_timeout(self, conn: Connection, seconds: float) -> Iterator[None]:
        """
        No SQLite, o BEGIN IMMEDIATE espera pelo escritor atual até o busy
        timeout da conexão; durante a tentativa de lock ele fica limitado ao
        que resta do prazo.
        """
        if self.engine.dialect.name != "sqlite":
            yield
            return
        raw = conn.connection.driver_connection
        previous = raw.execute("PRAGMA busy_timeout").fetchone()[0]
        raw.execute(f"PRAGMA busy_timeout = {max(int(seconds * 1000), 0)}")
        try:
            yield
        finally:
            raw.execute(f"PRAGMA busy_timeout = {int(previous)}")

    def _insert_lock_row(self, conn: Connection) -> bool:
        now = utcnow()
        lock = self.lock_table
        try:
            with conn.begin():
                # Limpa locks expirados de processos que morreram
                conn.execute(
                    delete(lock).where(lock.c.lock_key == self.table_name, lock.c.expires_at < now)
                )
                conn.execute(
                    insert(lock).values(
                        lock_key=self.table_name,
                        owner=self.owner,
                        acquired_at=now,
                        expires_at=now + timedelta(seconds=self.lock_ttl),
                    )
                )
        except IntegrityError:
            return False
        except OperationalError as e:
            # Outro processo está no meio de uma transação de escrita
            if "locked" not in str(getattr(e, "orig", None) or e):
                raise
            logger.debug("Banco ocupado por outro escritor: %s", e.orig)
            return False
        return True

    def renew_deployment_lock(self, conn: Connection) -> None:
        """
        Estende a expiração da linha de lock deste processo por mais ``lock_ttl``.

        No PostgreSQL o advisory lock dura a sessão e não há o que renovar.

        Raises:
            LockLost: a linha de lock não pertence mais a este processo.
        """
        if self.uses_advisory_lock:
            return
        lock = self.lock_table
        with conn.begin():
            renewed = conn.execute(
                update(lock)
                .where(lock.c.lock_key == self.table_name, lock.c.owner == self.owner)
                .values(expires_at=utcnow() + timedelta(seconds=self.lock_ttl))
            ).rowcount
        if renewed != 1:
            self._lock_held = False
            logger.error("Lock de migração perdido (%s): expirou e foi tomado por outro processo", self.owner)
            raise LockLost(self.owner)

    def release_deployment_lock(self, conn: Connection) -> None:
        """Libera o lock se este processo o detém. Falhas são registradas, não propagadas."""
        if not self._lock_held:
            return
        try:
            if conn.in_transaction():
                conn.rollback()
            if self.uses_advisory_lock:
                conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self.lock_key})
                conn.commit()
            else:
                lock = self.lock_table
                with conn.begin():
                    conn.execute(
                        delete(lock).where(
                            lock.c.lock_key == self.table_name, lock.c.owner == self.owner
                        )
                    )
            logger.info("Lock de migração liberado (%s)", self.owner)
        except SQLAlchemyError as e:
            # O advisory lock cai com a sessão; a linha de lock expira pelo TTL
            logger.warning("Falha ao liberar o lock de migração: %s", e)
        finally:
            self._lock_held = False
