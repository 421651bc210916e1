"""
Backup module for the NMP platform.

This module handles the core backup functionality including:
- Component adapters (PostgreSQL, InfluxDB, config and plugin trees)
- Archive packing and extraction
- Orchestration of backup and restore operations
- Retention policy enforcement
"""

from .components import (
    ComponentAdapter,
    ComponentRegistry,
    DirectoryAdapter,
    InfluxDBAdapter,
    PostgresAdapter,
    create_default_registry
)
from .compression import create_archive, extract_archive
from .errors import (
    ArchiveCorrupt,
    ArchiveError,
    ArchiveNotFound,
    BackupError,
    ComponentBackupFailed,
    ComponentRestoreFailed,
    OperationCancelled,
    OperationInProgress,
    ProcessInvocationFailed,
    SchedulerError,
    UnknownComponentError
)
from .models import BackupRecord, BackupStatus, RestoreResult, ScheduleConfig
from .orchestrator import BackupOrchestrator
from .retention import (
    AgeRetentionPolicy,
    CountRetentionPolicy,
    KeepAllRetentionPolicy,
    RetentionManager
)

__all__ = [
    'AgeRetentionPolicy',
    'ArchiveCorrupt',
    'ArchiveError',
    'ArchiveNotFound',
    'BackupError',
    'BackupOrchestrator',
    'BackupRecord',
    'BackupStatus',
    'ComponentAdapter',
    'ComponentBackupFailed',
    'ComponentRegistry',
    'ComponentRestoreFailed',
    'CountRetentionPolicy',
    'DirectoryAdapter',
    'InfluxDBAdapter',
    'KeepAllRetentionPolicy',
    'OperationCancelled',
    'OperationInProgress',
    'PostgresAdapter',
    'ProcessInvocationFailed',
    'RestoreResult',
    'RetentionManager',
    'ScheduleConfig',
    'SchedulerError',
    'UnknownComponentError',
    'create_archive',
    'create_default_registry',
    'extract_archive'
]
