"""
Diferença entre as definições de migração e o ledger, e o status derivado dela.

Tudo aqui é puro: nada é lido do banco nem guardado entre chamadas.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .ledger import LedgerEntry
from .source import MigrationDefinition


class MigrationState(str, Enum):
    APPLIED = "applied"
    PENDING = "pending"
    DRIFTED = "drifted"
    MISSING = "missing"  # registrada no ledger, sem definição atual


@dataclass(frozen=True)
class MigrationStatusItem:
    id: str
    state: MigrationState
    checksum: Optional[str] = None
    recorded_checksum: Optional[str] = None
    applied_at: Optional[datetime] = None

    @property
    def executed(self) -> bool:
        return self.state is not MigrationState.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "executed": self.executed,
            "status": self.state.value,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
        }


@dataclass(frozen=True)
class MigrationPlan:
    """Resultado do diff: o que falta aplicar e o que não confere."""

    pending: List[MigrationDefinition] = field(default_factory=list)
    drifted: List[MigrationStatusItem] = field(default_factory=list)
    missing: List[LedgerEntry] = field(default_factory=list)
    out_of_order: List[MigrationDefinition] = field(default_factory=list)


def diff(definitions: Sequence[MigrationDefinition], entries: Sequence[LedgerEntry]) -> MigrationPlan:
    """
    Compara as definições (ordenadas) com o ledger.

    - pending: definições sem entrada no ledger, em ordem crescente de versão.
    - drifted: aplicadas cujo checksum registrado difere do atual.
    - missing: entradas do ledger sem definição correspondente.
    - out_of_order: pendentes com versão menor que a maior versão já aplicada.
    """
    recorded = {entry.id: entry for entry in entries}
    known_ids = {definition.id for definition in definitions}

    pending = []
    drifted = []
    highest_applied = None
    for definition in definitions:
        entry = recorded.get(definition.id)
        if entry is None:
            pending.append(definition)
            continue
        if highest_applied is None or definition.version > highest_applied:
            highest_applied = definition.version
        if entry.checksum != definition.checksum:
            drifted.append(
                MigrationStatusItem(
                    id=definition.id,
                    state=MigrationState.DRIFTED,
                    checksum=definition.checksum,
                    recorded_checksum=entry.checksum,
                    applied_at=entry.applied_at,
                )
            )

    out_of_order = [
        d for d in pending if highest_applied is not None and d.version < highest_applied
    ]
    missing = [entry for entry in entries if entry.id not in known_ids]
    return MigrationPlan(pending=pending, drifted=drifted, missing=missing, out_of_order=out_of_order)


@dataclass(frozen=True)
class MigrationStatus:
    total: int
    executed: int
    pending: int
    migrations: List[MigrationStatusItem] = field(default_factory=list)

    @property
    def drifted(self) -> List[MigrationStatusItem]:
        return [m for m in self.migrations if m.state is MigrationState.DRIFTED]

    @property
    def missing(self) -> List[MigrationStatusItem]:
        return [m for m in self.migrations if m.state is MigrationState.MISSING]

    @property
    def pending_ids(self) -> List[str]:
        return [m.id for m in self.migrations if m.state is MigrationState.PENDING]

    @property
    def is_current(self) -> bool:
        """Schema em dia: nada pendente e nada com drift."""
        return self.pending == 0 and not self.drifted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "executed": self.executed,
            "pending": self.pending,
            "migrations": [m.to_dict() for m in self.migrations],
        }


def compute_status(
    definitions: Sequence[MigrationDefinition], entries: Sequence[LedgerEntry]
) -> MigrationStatus:
    """Status por migração, na ordem das definições; entradas órfãs do ledger ao final."""
    recorded = {entry.id: entry for entry in entries}
    drifted = {item.id: item for item in diff(definitions, entries).drifted}

    items: List[MigrationStatusItem] = []
    executed = 0
    for definition in definitions:
        entry = recorded.get(definition.id)
        if entry is None:
            items.append(
                MigrationStatusItem(
                    id=definition.id, state=MigrationState.PENDING, checksum=definition.checksum
                )
            )
            continue
        executed += 1
        if definition.id in drifted:
            items.append(drifted[definition.id])
        else:
            items.append(
                MigrationStatusItem(
                    id=definition.id,
                    state=MigrationState.APPLIED,
                    checksum=definition.checksum,
                    recorded_checksum=entry.checksum,
                    applied_at=entry.applied_at,
                )
            )

    known_ids = {definition.id for definition in definitions}
    for entry in entries:
        if entry.id not in known_ids:
            items.append(
                MigrationStatusItem(
                    id=entry.id,
                    state=MigrationState.MISSING,
                    recorded_checksum=entry.checksum,
                    applied_at=entry.applied_at,
                )
            )

    total = len(definitions)
    return MigrationStatus(total=total, executed=executed, pending=total - executed, migrations=items)
