"""
Plain data types shared by the backup subsystem.

BackupRecord describes one archive (and the attempt that produced it),
ScheduleConfig a recurring backup policy, RestoreResult the outcome of a
restore and BackupStatus the scheduler's status snapshot.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


STATUS_IN_PROGRESS = 'in_progress'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'

TYPE_FULL = 'full'
TYPE_DATABASE = 'database'
TYPE_CONFIG = 'config'

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

ID_FORMAT = '%Y%m%d_%H%M%S'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_size(size: Optional[int]) -> str:
    """
    Format a byte count for humans (binary units, two decimals).

    Args:
        size: Size in bytes

    Returns:
        String such as '512 B', '1.50 KB' or '2.00 GB'
    """
    if size is None:
        return ''

    kb = 1024
    mb = kb * 1024
    gb = mb * 1024

    if size >= gb:
        return f"{size / gb:.2f} GB"
    if size >= mb:
        return f"{size / mb:.2f} MB"
    if size >= kb:
        return f"{size / kb:.2f} KB"
    return f"{size} B"


def backup_type_for(components) -> str:
    """Classify a component list as a database, config or full backup."""
    names = set(components)
    if names == {'postgres'}:
        return TYPE_DATABASE
    if names and names <= {'config', 'plugins'}:
        return TYPE_CONFIG
    return TYPE_FULL


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


@dataclass
class BackupRecord:
    """
    One backup archive and the attempt that produced it.

    A record starts in_progress and moves exactly once to completed or failed.
    size, created_at and file_path are only filled in on that transition.
    """

    id: str
    name: str
    description: str = ''
    type: str = TYPE_FULL
    status: str = STATUS_IN_PROGRESS
    components: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    created_at: Optional[datetime] = None
    size: Optional[int] = None
    file_path: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def size_human(self) -> str:
        return format_size(self.size)

    def mark_completed(self, file_path: str, size: int, created_at: Optional[datetime] = None):
        """Move the record to completed. Raises ValueError if already terminal."""
        self._ensure_not_terminal()
        self.status = STATUS_COMPLETED
        self.file_path = file_path
        self.size = size
        self.created_at = created_at or utcnow()

    def mark_failed(self, error: Any):
        """Move the record to failed. Raises ValueError if already terminal."""
        self._ensure_not_terminal()
        self.status = STATUS_FAILED
        self.error_message = str(error)
        self.created_at = utcnow()

    def _ensure_not_terminal(self):
        if self.is_terminal:
            raise ValueError(f"Backup {self.id} is already {self.status}")

    def to_meta(self) -> Dict[str, Any]:
        """Metadata stored as backup_meta.json inside the archive."""
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'type': self.type,
            'components': list(self.components),
            'started_at': _isoformat(self.started_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_meta()
        data.update({
            'status': self.status,
            'size': self.size,
            'size_human': self.size_human,
            'created_at': _isoformat(self.created_at),
            'file_path': self.file_path,
            'error_message': self.error_message,
        })
        return data

    @classmethod
    def from_meta(cls, meta: Dict[str, Any], file_path: str, size: int,
                  created_at: datetime) -> 'BackupRecord':
        """
        Build a completed record from archive metadata and file stats.

        Args:
            meta: Parsed backup_meta.json (may be empty for foreign archives)
            file_path: Full path of the archive
            size: Archive size in bytes
            created_at: Archive modification time

        Returns:
            BackupRecord with status completed
        """
        stem = _archive_stem(file_path)
        components = meta.get('components') or []
        return cls(
            id=str(meta.get('id') or stem),
            name=str(meta.get('name') or stem),
            description=meta.get('description') or '',
            type=meta.get('type') or backup_type_for(components),
            status=STATUS_COMPLETED,
            components=list(components),
            started_at=_parse_datetime(meta.get('started_at')) or created_at,
            created_at=created_at,
            size=size,
            file_path=file_path,
        )


def _archive_stem(file_path: str) -> str:
    name = file_path.replace('\\', '/').rsplit('/', 1)[-1]
    if name.endswith('.tar.gz'):
        return name[:-7]
    return name


@dataclass(frozen=True)
class ScheduleConfig:
    """
    Recurring backup policy handed to BackupScheduler.start().

    cron_expression accepts a 5-field crontab or a 6-field expression with a
    leading seconds field. Set either retention_days (age based) or
    max_backups (count based); retention_days wins when both are set. With
    neither set, scheduled runs keep every archive.
    """

    cron_expression: str = '0 0 1 * * *'
    backup_dir: Optional[str] = None
    retention_days: Optional[int] = 30
    max_backups: Optional[int] = None
    compress: bool = True
    timeout: float = 30 * 60
    components: Tuple[str, ...] = ()

    def __post_init__(self):
        # Frozen: normalize list input to a tuple so the config stays hashable
        object.__setattr__(self, 'components', tuple(self.components or ()))
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.retention_days is not None and self.retention_days < 0:
            raise ValueError("retention_days must not be negative")
        if self.max_backups is not None and self.max_backups < 0:
            raise ValueError("max_backups must not be negative")


@dataclass
class RestoreResult:
    """Outcome of a successful restore."""

    backup_id: str
    components: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'backup_id': self.backup_id,
            'components': list(self.components),
            'skipped': list(self.skipped),
            'started_at': _isoformat(self.started_at),
            'duration': round(self.duration, 3),
        }


@dataclass
class BackupStatus:
    """Scheduler status with aggregate statistics over the backup root."""

    is_scheduler_running: bool = False
    next_backup_time: Optional[datetime] = None
    last_backup_time: Optional[datetime] = None
    last_backup_file: Optional[str] = None
    last_backup_size: Optional[int] = None
    total_backups: int = 0
    total_backup_size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_scheduler_running': self.is_scheduler_running,
            'next_backup_time': _isoformat(self.next_backup_time),
            'last_backup_time': _isoformat(self.last_backup_time),
            'last_backup_file': self.last_backup_file,
            'last_backup_size': self.last_backup_size,
            'total_backups': self.total_backups,
            'total_backup_size': self.total_backup_size,
            'total_backup_size_human': format_size(self.total_backup_size),
        }
