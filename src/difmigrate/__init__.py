"""
difmigrate - Runner de migrações de schema do Doing is Fun.

Aplica migrações SQL exatamente uma vez, em ordem, registrando cada uma em um
ledger no próprio banco e serializando deploys concorrentes com um lock.
"""

__version__ = "0.1.0"

from .core import (
    MigrationDefinition, MigrationRunner, MigrationResult, MigrationStatus,
    RegistrySource, SqlDirectorySource, bundled_source
)
from .utils.exceptions import (
    DifMigrateError, ConfigurationError, ConnectionError, SourceUnavailable, InvalidMigration,
    InvalidRunnerState, LockLost, LockTimeout, RunTimeout, DriftDetected, MigrationFailed, DuplicateApplication
)

__all__ = [
    '__version__',
    'MigrationDefinition', 'MigrationRunner', 'MigrationResult', 'MigrationStatus',
    'RegistrySource', 'SqlDirectorySource', 'bundled_source',
    'DifMigrateError', 'ConfigurationError', 'ConnectionError', 'SourceUnavailable', 'InvalidMigration',
    'InvalidRunnerState', 'LockLost', 'LockTimeout', 'RunTimeout', 'DriftDetected', 'MigrationFailed',
    'DuplicateApplication',
]
