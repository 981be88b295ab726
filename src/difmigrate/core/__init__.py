"""
Core functionality for difmigrate.

This module contains the migration source, the ledger store, the status
computation and the runner that applies migrations to the database.
"""

from .source import (
    MigrationDefinition, MigrationSource, RegistrySource, SqlDirectorySource,
    bundled_source, compute_checksum, source_from_config
)
from .ledger import LedgerEntry, LedgerStore
from .status import MigrationPlan, MigrationState, MigrationStatus, MigrationStatusItem, compute_status, diff
from .connection import ConnectionManager
from .runner import AppliedMigration, MigrationResult, MigrationRunner, RunnerState

__all__ = [
    'MigrationDefinition', 'MigrationSource', 'RegistrySource', 'SqlDirectorySource',
    'bundled_source', 'compute_checksum', 'source_from_config',
    'LedgerEntry', 'LedgerStore',
    'MigrationPlan', 'MigrationState', 'MigrationStatus', 'MigrationStatusItem', 'compute_status', 'diff',
    'ConnectionManager',
    'AppliedMigration', 'MigrationResult', 'MigrationRunner', 'RunnerState',
]
