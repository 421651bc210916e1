"""
Exception types raised by the backup subsystem.

Everything derives from BackupError so callers (CLI, scheduler jobs) can catch
the whole family in one place. Errors that end a backup attempt carry the
terminal BackupRecord on `record`.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for backup and restore failures."""

    def __init__(self, message: str, record=None):
        super().__init__(message)
        self.record = record


class OperationInProgress(BackupError):
    """Raised when another backup or restore already holds the orchestrator."""

    def __init__(self, message: str = "Another backup or restore operation is in progress"):
        super().__init__(message)


class OperationCancelled(BackupError):
    """Raised when an operation is cancelled or runs past its deadline."""
    pass


class UnknownComponentError(BackupError, ValueError):
    """Raised when a component name has no registered adapter."""

    def __init__(self, component: str):
        super().__init__(f"Unknown backup component: {component}")
        self.component = component


class ComponentBackupFailed(BackupError):
    """A mandatory component failed during backup; the backup was aborted."""

    def __init__(self, component: str, cause: Exception, record=None):
        super().__init__(f"Backup of component '{component}' failed: {cause}", record)
        self.component = component
        self.cause = cause


class ComponentRestoreFailed(BackupError):
    """A mandatory component failed during restore."""

    def __init__(self, component: str, cause: Exception):
        super().__init__(f"Restore of component '{component}' failed: {cause}")
        self.component = component
        self.cause = cause


class ArchiveNotFound(BackupError):
    """Lookup by id or name matched no archive."""

    def __init__(self, id_or_name: str):
        super().__init__(f"Backup not found: {id_or_name}")
        self.id_or_name = id_or_name


class ArchiveCorrupt(BackupError):
    """Archive could not be decoded."""
    pass


class ArchiveError(BackupError):
    """Archive could not be written, moved or removed."""
    pass


class ProcessInvocationFailed(BackupError):
    """An external tool exited non-zero, timed out or could not be started."""

    def __init__(self, tool: str, exit_code: Optional[int], output: str = '', reason: str = ''):
        detail = reason or f"exit code {exit_code}"
        message = f"{tool} failed ({detail})"
        if output:
            message = f"{message}: {output.strip()}"
        super().__init__(message)
        self.tool = tool
        self.exit_code = exit_code
        self.output = output


class SchedulerError(BackupError):
    """Raised for invalid scheduler state transitions or configuration."""
    pass
