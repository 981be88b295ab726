"""
Exceções do difmigrate.

Toda falha que o runner expõe para o driver (CLI/deploy) herda de
``DifMigrateError``, de modo que o driver pode traduzir qualquer uma delas em
exit code 1 sem conhecer os detalhes.
"""

from typing import List, Optional, Sequence


class DifMigrateError(Exception):
    """Exceção base do difmigrate."""


class ConfigurationError(DifMigrateError):
    """Configuração ausente ou inválida."""

    def __init__(self, message: str, errors: Optional[Sequence[str]] = None):
        self.errors: List[str] = list(errors or [])
        if self.errors:
            message = message + "\n" + "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(message)


class ConnectionError(DifMigrateError):
    """Banco de dados inacessível ou credenciais inválidas. Fatal, sem retry."""


class SourceUnavailable(DifMigrateError):
    """O local das definições de migração não pôde ser lido."""


class InvalidMigration(SourceUnavailable):
    """Uma definição de migração é inválida (nome fora do padrão, id ou versão duplicados)."""


class InvalidRunnerState(DifMigrateError):
    """Operação chamada em um estado do runner que não a permite."""


class LockTimeout(DifMigrateError):
    """O lock de deploy não foi obtido dentro do tempo limite. Transitório."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Lock de migração não obtido após {timeout:.1f}s. "
            "Outro processo de deploy pode estar aplicando migrações; tente novamente."
        )


class LockLost(DifMigrateError):
    """A linha de lock expirou e foi tomada por outro processo durante a execução."""

    def __init__(self, owner: str):
        self.owner = owner
        super().__init__(
            f"Lock de migração perdido por '{owner}': outro processo assumiu o deploy. "
            "Nenhuma migração adicional foi aplicada."
        )


class RunTimeout(DifMigrateError):
    """O prazo total da execução expirou antes de todas as migrações serem aplicadas."""

    def __init__(self, timeout: float, executed: int):
        self.timeout = timeout
        self.executed = executed
        super().__init__(
            f"Prazo de {timeout:.1f}s esgotado após {executed} migração(ões) aplicada(s)."
        )


class DriftDetected(DifMigrateError):
    """Uma migração já aplicada teve seu conteúdo alterado depois da aplicação."""

    def __init__(self, drifted: Sequence):
        # drifted: itens de status com id, checksum registrado e checksum atual
        self.drifted = list(drifted)
        details = ", ".join(
            f"{item.id} (registrado {item.recorded_checksum[:12]}, atual {item.checksum[:12]})"
            for item in self.drifted
        )
        super().__init__(
            f"Drift detectado em {len(self.drifted)} migração(ões) já aplicada(s): {details}. "
            "Intervenção manual necessária."
        )

    @property
    def ids(self) -> List[str]:
        return [item.id for item in self.drifted]


class MigrationFailed(DifMigrateError):
    """A execução (ou o registro) de uma migração falhou; a transação dela foi desfeita."""

    def __init__(self, migration_id: str, cause: str):
        self.migration_id = migration_id
        self.cause = cause
        super().__init__(f"Migração '{migration_id}' falhou: {cause}")


class DuplicateApplication(DifMigrateError):
    """O id já existe no ledger: outro processo aplicou a mesma migração sem o lock."""

    def __init__(self, migration_id: str):
        self.migration_id = migration_id
        super().__init__(
            f"Migração '{migration_id}' já registrada no ledger por outro processo "
            "(lock de deploy contornado?)"
        )
