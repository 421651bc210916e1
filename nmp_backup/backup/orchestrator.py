"""
Backup orchestrator - coordinates one backup or restore end to end.

Backup workflow:
1. Take the orchestrator guard (one backup/restore at a time)
2. Create BackupRecord (status: in_progress) and staging dir temp_<id>/
3. Run each component adapter into the staging dir, in canonical order
4. Write backup_meta.json and pack the staging dir into <name>.tar.gz
5. Mark the record completed and apply the retention policy
6. Remove the staging dir and release the guard (on every exit path)

Restore is the mirror image: extract into restore_temp/ and run each
adapter's restore from there.
"""

import logging
import os
import shutil
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .components import (
    ComponentRegistry,
    DEFAULT_BACKUP_COMPONENTS,
    DEFAULT_RESTORE_COMPONENTS
)
from .compression import (
    ARCHIVE_EXTENSION,
    METADATA_FILENAME,
    create_archive,
    extract_archive,
    get_archive_size,
    is_archive_filename,
    read_archive_metadata,
    safe_archive_name,
    verify_archive,
    write_metadata
)
from .errors import (
    ArchiveCorrupt,
    ArchiveError,
    ArchiveNotFound,
    BackupError,
    ComponentBackupFailed,
    ComponentRestoreFailed,
    OperationCancelled,
    OperationInProgress
)
from .models import ID_FORMAT, BackupRecord, RestoreResult, backup_type_for, utcnow
from .process import OperationContext
from .retention import RetentionManager, RetentionPolicy


logger = logging.getLogger(__name__)

STAGING_PREFIX = 'temp_'
RESTORE_DIRNAME = 'restore_temp'


class BackupOrchestrator:
    """
    Owns a backup root and runs backups and restores against it.

    All mutating operations on the root (staging dirs, archives, retention
    deletes) go through this object. create_backup, restore_backup and
    enforce_retention share a single non-blocking guard: a second caller gets
    OperationInProgress instead of waiting.
    """

    def __init__(self, backup_dir: str, registry: ComponentRegistry,
                 retention_policy: Optional[RetentionPolicy] = None,
                 compress: bool = True, default_timeout: Optional[float] = None):
        """
        Initialize the orchestrator.

        Args:
            backup_dir: Backup root (created if missing)
            registry: Component adapters in canonical order
            retention_policy: Policy applied after every successful backup
            compress: Default gzip compression for archives
            default_timeout: Default operation timeout in seconds
        """
        self.backup_dir = os.path.abspath(backup_dir)
        self.registry = registry
        self.compress = compress
        self.default_timeout = default_timeout
        self.retention = RetentionManager(self.list_backups, retention_policy)

        self._guard = threading.Lock()
        self._id_base = None
        self._id_seq = 0

        os.makedirs(self.backup_dir, exist_ok=True)

    @property
    def in_progress(self) -> bool:
        return self._guard.locked()

    @contextmanager
    def _exclusive(self, operation: str):
        if not self._guard.acquire(blocking=False):
            logger.warning(f"Refusing {operation}: another operation is in progress")
            raise OperationInProgress()
        try:
            yield
        finally:
            self._guard.release()

    def _new_id(self) -> str:
        # Called under the guard; same-second ids get a numeric suffix
        base = utcnow().strftime(ID_FORMAT)
        if base == self._id_base:
            self._id_seq += 1
            return f"{base}_{self._id_seq}"
        self._id_base = base
        self._id_seq = 0
        return base

    def default_backup_components(self) -> List[str]:
        return [name for name in DEFAULT_BACKUP_COMPONENTS if name in self.registry]

    # Backup

    def create_backup(self, name: Optional[str] = None, description: str = '',
                      components: Optional[Iterable[str]] = None,
                      timeout: Optional[float] = None,
                      cancel_event: Optional[threading.Event] = None,
                      retention: Optional[RetentionPolicy] = None,
                      compress: Optional[bool] = None) -> BackupRecord:
        """
        Create a backup archive.

        Args:
            name: Archive base name (default: backup_<id>)
            description: Free-form description stored in the metadata
            components: Components to include (default: postgres, influxdb, config)
            timeout: Operation timeout in seconds (default: orchestrator default)
            cancel_event: Event that aborts the operation when set
            retention: Retention policy to apply instead of the default one
            compress: Override the default compression setting

        Returns:
            BackupRecord with status completed

        Raises:
            UnknownComponentError: If a component is not registered
            OperationInProgress: If another backup or restore is running
            ComponentBackupFailed: If a mandatory component failed
            OperationCancelled: If cancelled or past the timeout
            ArchiveError: If the archive could not be written

            Every error raised after the record was created carries the
            failed record on its `record` attribute.
        """
        requested = self.registry.validate(components or self.default_backup_components())

        with self._exclusive('backup'):
            backup_id = self._new_id()
            record = BackupRecord(
                id=backup_id,
                name=safe_archive_name(name) if name else f"backup_{backup_id}",
                description=description or '',
                type=backup_type_for(requested),
                components=list(requested)
            )
            context = OperationContext(
                timeout if timeout is not None else self.default_timeout,
                cancel_event
            )
            use_compression = self.compress if compress is None else compress

            self._run_backup(record, context, use_compression)
            self._apply_retention(retention)

        logger.info(
            f"Backup created successfully: id={record.id} path={record.file_path} "
            f"size={record.size_human}"
        )
        return record

    def _run_backup(self, record: BackupRecord, context: OperationContext, compress: bool):
        staging_dir = os.path.join(self.backup_dir, f"{STAGING_PREFIX}{record.id}")
        archive_path = os.path.join(self.backup_dir, f"{record.name}{ARCHIVE_EXTENSION}")

        logger.info(
            f"Starting backup {record.id} ({record.name}): components={record.components}"
        )

        try:
            self._remove_dir(staging_dir)
            os.makedirs(staging_dir)

            record.components = self._backup_components(record, staging_dir, context)
            write_metadata(staging_dir, record.to_meta())

            context.check()
            if os.path.exists(archive_path):
                logger.warning(f"Replacing existing archive {os.path.basename(archive_path)}")
            create_archive(staging_dir, archive_path, compress=compress)

            record.mark_completed(archive_path, get_archive_size(archive_path))

        except BackupError as e:
            record.mark_failed(e)
            e.record = record
            logger.error(f"Backup {record.id} failed: {e}")
            raise
        except OSError as e:
            record.mark_failed(e)
            logger.error(f"Backup {record.id} failed: {e}")
            raise ArchiveError(f"Backup {record.id} failed: {e}", record) from e
        finally:
            self._remove_dir(staging_dir)

    def _backup_components(self, record: BackupRecord, staging_dir: str,
                           context: OperationContext) -> List[str]:
        """
        Run the adapters for the record's components.

        Returns:
            The components actually carried by the archive, in request order
        """
        carried = set()

        for adapter in self.registry.ordered(record.components):
            context.check()
            try:
                written = adapter.backup(staging_dir, context)
            except OperationCancelled:
                raise
            except Exception as e:
                if adapter.mandatory:
                    logger.error(f"Backup component failed: {adapter.name}: {e}")
                    raise ComponentBackupFailed(adapter.name, e) from e
                logger.warning(f"Optional component {adapter.name} failed, continuing: {e}")
                continue

            if written:
                carried.add(adapter.name)
            else:
                logger.warning(f"Component {adapter.name} produced no data")

        return [name for name in record.components if name in carried]

    def _apply_retention(self, policy: Optional[RetentionPolicy]):
        # Runs under the guard taken by create_backup
        try:
            self.retention.enforce(policy)
        except BackupError as e:
            logger.warning(f"Retention after backup failed: {e}")

    # Listing and lookup

    def list_backups(self) -> List[BackupRecord]:
        """
        List completed archives under the backup root, newest first.

        Only visible regular *.tar.gz files are considered; staging dirs,
        the restore dir and .partial files are never returned.
        Archives whose metadata cannot be read are listed under their file
        name with error_message set.

        Raises:
            ArchiveError: If the backup root cannot be read
        """
        try:
            entries = list(os.scandir(self.backup_dir))
        except OSError as e:
            raise ArchiveError(f"Failed to read backup directory: {e}") from e

        backups = []
        for entry in entries:
            if not is_archive_filename(entry.name):
                continue
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                stat = entry.stat(follow_symlinks=False)
            except OSError as e:
                logger.warning(f"Failed to get file info for {entry.name}: {e}")
                continue
            if stat.st_size == 0:
                continue

            created_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            try:
                meta = read_archive_metadata(entry.path)
            except ArchiveCorrupt as e:
                # Still listed so it can be deleted or pruned
                logger.warning(f"Unreadable archive {entry.name}: {e}")
                record = BackupRecord.from_meta({}, entry.path, stat.st_size, created_at)
                record.error_message = str(e)
                backups.append(record)
                continue

            backups.append(BackupRecord.from_meta(meta, entry.path, stat.st_size, created_at))

        backups.sort(key=lambda b: (b.created_at, b.name), reverse=True)
        return backups

    def get_backup(self, id_or_name: str) -> BackupRecord:
        """
        Look up a backup by id, then by name.

        An id of one backup can equal the name of another; ids are matched
        over the whole listing first, so the id wins. Within each pass the
        most recent archive wins.

        Raises:
            ArchiveNotFound: If nothing matches
        """
        backups = self.list_backups()

        for backup in backups:
            if backup.id == id_or_name:
                return backup
        for backup in backups:
            if backup.name == id_or_name:
                return backup

        raise ArchiveNotFound(id_or_name)

    def get_backup_file_path(self, backup_id: str) -> str:
        """Path of the archive for download."""
        return self.get_backup(backup_id).file_path

    def delete_backup(self, backup_id: str) -> BackupRecord:
        """
        Delete a backup archive.

        Raises:
            ArchiveNotFound: If nothing matches
            ArchiveError: If the file cannot be removed
        """
        backup = self.get_backup(backup_id)
        try:
            os.remove(backup.file_path)
        except FileNotFoundError:
            raise ArchiveNotFound(backup_id)
        except OSError as e:
            raise ArchiveError(f"Failed to delete backup file: {e}") from e

        logger.info(f"Backup deleted: {backup.id} ({os.path.basename(backup.file_path)})")
        return backup

    def validate_backup(self, backup_id: str) -> BackupRecord:
        """
        Check that an archive decodes end to end and carries its metadata.

        Raises:
            ArchiveNotFound: If nothing matches
            ArchiveCorrupt: If the archive is damaged or has no metadata
        """
        backup = self.get_backup(backup_id)
        if not backup.size:
            raise ArchiveCorrupt(f"Backup file is empty: {backup.file_path}")

        names = verify_archive(backup.file_path)
        if METADATA_FILENAME not in names:
            raise ArchiveCorrupt(f"Backup {backup.id} has no {METADATA_FILENAME}")

        logger.info(f"Backup file validation passed: {backup.file_path} ({backup.size_human})")
        return backup

    # Restore

    def restore_backup(self, backup_id: str, components: Optional[Iterable[str]] = None,
                       timeout: Optional[float] = None,
                       cancel_event: Optional[threading.Event] = None) -> RestoreResult:
        """
        Restore components from a backup archive.

        Args:
            backup_id: Backup id or name
            components: Components to restore (default: postgres and config,
                limited to what the archive carries)
            timeout: Operation timeout in seconds
            cancel_event: Event that aborts the operation when set

        Returns:
            RestoreResult

        Raises:
            UnknownComponentError: If a component is not registered
            OperationInProgress: If another backup or restore is running
            ArchiveNotFound: If the backup does not exist
            ArchiveCorrupt: If the archive cannot be decoded
            ComponentRestoreFailed: If a mandatory component failed
            OperationCancelled: If cancelled or past the timeout
        """
        requested = self.registry.validate(components) if components else None

        with self._exclusive('restore'):
            backup = self.get_backup(backup_id)
            context = OperationContext(
                timeout if timeout is not None else self.default_timeout,
                cancel_event
            )
            if requested is None:
                requested = self._default_restore_components(backup)

            return self._run_restore(backup, requested, context)

    def _default_restore_components(self, backup: BackupRecord) -> List[str]:
        names = [name for name in DEFAULT_RESTORE_COMPONENTS if name in self.registry]
        if backup.components:
            names = [name for name in names if name in backup.components]
        return names

    def _run_restore(self, backup: BackupRecord, requested: List[str],
                     context: OperationContext) -> RestoreResult:
        restore_dir = os.path.join(self.backup_dir, RESTORE_DIRNAME)
        result = RestoreResult(backup_id=backup.id)
        started = time.monotonic()

        logger.info(f"Restoring backup {backup.id}: components={requested}")

        try:
            self._remove_dir(restore_dir)
            extract_archive(backup.file_path, restore_dir)

            for adapter in self.registry.ordered(requested):
                context.check()
                try:
                    restored = adapter.restore(restore_dir, context)
                except OperationCancelled:
                    raise
                except Exception as e:
                    if adapter.mandatory:
                        logger.error(f"Restore component failed: {adapter.name}: {e}")
                        raise ComponentRestoreFailed(adapter.name, e) from e
                    logger.warning(f"Optional component {adapter.name} restore failed: {e}")
                    result.skipped.append(adapter.name)
                    continue

                if restored:
                    result.components.append(adapter.name)
                else:
                    result.skipped.append(adapter.name)
        finally:
            self._remove_dir(restore_dir)

        result.duration = time.monotonic() - started
        logger.info(
            f"Backup restored successfully: {backup.id} "
            f"(restored={result.components}, skipped={result.skipped})"
        )
        return result

    # Retention

    def enforce_retention(self, policy: Optional[RetentionPolicy] = None) -> dict:
        """
        Apply a retention policy under the orchestrator guard.

        Raises:
            OperationInProgress: If a backup or restore is running
        """
        with self._exclusive('retention'):
            return self.retention.enforce(policy)

    def _remove_dir(self, path: str):
        if not os.path.lexists(path):
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.error(f"Failed to remove temporary directory {path}: {e}")
