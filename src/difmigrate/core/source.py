"""
Fonte das definições de migração.

As definições são enumeradas uma única vez, no carregamento, em um
``RegistrySource``: uma sequência tipada e validada de ``MigrationDefinition``
ordenada pela versão. A ordem em que o sistema de arquivos lista os arquivos
nunca importa.
"""

import hashlib
import importlib.resources
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from ..utils.exceptions import InvalidMigration, SourceUnavailable
from ..utils.sql import split_statements

logger = logging.getLogger(__name__)

# Ex: "001_init.sql", "20250706035805__create_users_table.sql"
MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d+)_{1,2}(?P<name>[A-Za-z0-9_]+)\.sql$")
MIGRATION_SUFFIX = ".sql"
BUNDLED_PACKAGE = "difmigrate.migrations"


def compute_checksum(content: str) -> str:
    """SHA-256 do conteúdo, com quebras de linha normalizadas para '\\n'."""
    normalized = content.replace("\r\n", "\n").replace("\r", "\n")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MigrationDefinition:
    """Uma mudança de schema, ordenada e aplicada uma única vez."""

    id: str
    version: int
    sql: str = field(repr=False)
    name: str = ""
    checksum: str = ""

    def __post_init__(self):
        if not self.id:
            raise InvalidMigration("Migração sem id")
        if self.version < 0:
            raise InvalidMigration(f"Versão negativa na migração '{self.id}'")
        if not self.name:
            object.__setattr__(self, "name", self.id)
        if not self.checksum:
            object.__setattr__(self, "checksum", compute_checksum(self.sql))

    @property
    def statements(self) -> List[str]:
        return split_statements(self.sql)

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.version, self.id)

    @classmethod
    def from_filename(cls, filename: str, sql: str) -> "MigrationDefinition":
        """Cria a definição a partir de um nome de arquivo no padrão ``<número>_<nome>.sql``."""
        match = MIGRATION_FILE_PATTERN.match(filename)
        if not match:
            raise InvalidMigration(
                f"Nome de arquivo de migração inválido: '{filename}' "
                "(esperado '<número>_<nome>.sql', ex: '001_init.sql')"
            )
        return cls(
            id=filename[: -len(MIGRATION_SUFFIX)],
            version=int(match.group("version")),
            name=match.group("name").strip("_"),
            sql=sql,
        )


class MigrationSource:
    """Contrato da fonte de migrações: somente leitura."""

    def list(self) -> List[MigrationDefinition]:
        raise NotImplementedError

    def get(self, migration_id: str) -> Optional[MigrationDefinition]:
        raise NotImplementedError


class RegistrySource(MigrationSource):
    """Registro explícito de migrações, validado e ordenado na construção."""

    def __init__(self, definitions: Iterable[MigrationDefinition], origin: str = "<registry>"):
        self.origin = origin
        by_id: Dict[str, MigrationDefinition] = {}
        by_version: Dict[int, MigrationDefinition] = {}
        for definition in definitions:
            if definition.id in by_id:
                raise InvalidMigration(f"Id de migração duplicado em {origin}: '{definition.id}'")
            other = by_version.get(definition.version)
            if other is not None:
                raise InvalidMigration(
                    f"Versão {definition.version} duplicada em {origin}: "
                    f"'{other.id}' e '{definition.id}'"
                )
            by_id[definition.id] = definition
            by_version[definition.version] = definition
        self._by_id = by_id
        self._ordered = sorted(by_id.values(), key=lambda d: d.sort_key)

    def list(self) -> List[MigrationDefinition]:
        return list(self._ordered)

    def get(self, migration_id: str) -> Optional[MigrationDefinition]:
        return self._by_id.get(migration_id)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} origin={self.origin!r} migrations={len(self._ordered)}>"


def _load_definitions(directory, origin: str) -> List[MigrationDefinition]:
    """Lê os arquivos .sql de um diretório (Path ou Traversable de importlib.resources)."""
    try:
        entries = list(directory.iterdir())
    except (OSError, TypeError) as e:
        raise SourceUnavailable(f"Não foi possível ler o diretório de migrações '{origin}': {e}")

    definitions = []
    for entry in entries:
        if not entry.name.endswith(MIGRATION_SUFFIX) or not entry.is_file():
            continue
        try:
            sql = entry.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SourceUnavailable(f"Não foi possível ler a migração '{entry.name}': {e}")
        definitions.append(MigrationDefinition.from_filename(entry.name, sql))

    logger.debug("%d migração(ões) encontrada(s) em %s", len(definitions), origin)
    return definitions


class SqlDirectorySource(RegistrySource):
    """Registro carregado de um diretório fixo de arquivos ``.sql``."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        if not self.directory.is_dir():
            raise SourceUnavailable(f"Diretório de migrações não encontrado: '{self.directory}'")
        super().__init__(
            _load_definitions(self.directory, str(self.directory)), origin=str(self.directory)
        )


def bundled_source() -> RegistrySource:
    """Migrações da aplicação distribuídas como dados do pacote ``difmigrate.migrations``."""
    try:
        directory = importlib.resources.files(BUNDLED_PACKAGE)
    except ModuleNotFoundError as e:
        raise SourceUnavailable(f"Pacote de migrações '{BUNDLED_PACKAGE}' indisponível: {e}")
    return RegistrySource(_load_definitions(directory, BUNDLED_PACKAGE), origin=BUNDLED_PACKAGE)


def source_from_config(config: Dict) -> MigrationSource:
    """Escolhe a fonte conforme a configuração: diretório explícito ou migrações embutidas."""
    if config.get("migrations_dir"):
        return SqlDirectorySource(config["migrations_dir"])
    return bundled_source()
