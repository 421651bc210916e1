"""
Retention policy enforcement for backup archives.

Two interchangeable policies decide which archives under the backup root to
delete:
- CountRetentionPolicy: keep the N most recent archives
- AgeRetentionPolicy: delete archives older than N days

Both are idempotent. A file that cannot be deleted is logged and the rest of
the cleanup still runs.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .models import BackupRecord, utcnow


logger = logging.getLogger(__name__)


class RetentionPolicy:
    """Selects the archives to delete from a listing."""

    name = 'none'

    def select(self, backups: List[BackupRecord], now: Optional[datetime] = None) -> List[BackupRecord]:
        raise NotImplementedError

    def describe(self) -> str:
        return self.name


class KeepAllRetentionPolicy(RetentionPolicy):
    """Delete nothing. Overrides a default policy for one run."""

    name = 'keep-all'

    def select(self, backups: List[BackupRecord], now: Optional[datetime] = None) -> List[BackupRecord]:
        return []

    def describe(self) -> str:
        return 'keep all'


class CountRetentionPolicy(RetentionPolicy):
    """Keep the `max_backups` most recently created archives."""

    name = 'count'

    def __init__(self, max_backups: int):
        if max_backups < 1:
            raise ValueError("max_backups must be at least 1")
        self.max_backups = max_backups

    def select(self, backups: List[BackupRecord], now: Optional[datetime] = None) -> List[BackupRecord]:
        ordered = sorted(backups, key=_created_at, reverse=True)
        return ordered[self.max_backups:]

    def describe(self) -> str:
        return f"keep newest {self.max_backups}"


class AgeRetentionPolicy(RetentionPolicy):
    """Delete archives last modified more than `days` days ago, whatever their count."""

    name = 'age'

    def __init__(self, days: int):
        if days < 1:
            raise ValueError("retention days must be at least 1")
        self.days = days

    def select(self, backups: List[BackupRecord], now: Optional[datetime] = None) -> List[BackupRecord]:
        cutoff = (now or utcnow()) - timedelta(days=self.days)
        return [backup for backup in backups if _created_at(backup) < cutoff]

    def describe(self) -> str:
        return f"delete older than {self.days} days"


def _created_at(backup: BackupRecord) -> datetime:
    return backup.created_at or backup.started_at


def policy_from_settings(max_backups: Optional[int] = None,
                         retention_days: Optional[int] = None) -> Optional[RetentionPolicy]:
    """
    Build a retention policy from configuration values.

    Age based retention wins when both values are set. Zero or None disables
    the corresponding policy.

    Returns:
        RetentionPolicy, or None when retention is disabled
    """
    if retention_days:
        return AgeRetentionPolicy(retention_days)
    if max_backups:
        return CountRetentionPolicy(max_backups)
    return None


def schedule_policy(max_backups: Optional[int] = None,
                    retention_days: Optional[int] = None) -> RetentionPolicy:
    """
    Like policy_from_settings, but disabled retention is explicit.

    A schedule with both values unset keeps every archive instead of
    falling back to the orchestrator default.
    """
    return policy_from_settings(max_backups, retention_days) or KeepAllRetentionPolicy()


class RetentionManager:
    """
    Applies a retention policy to the archives under a backup root.

    Args:
        list_backups: Callable returning the current completed archives
        policy: Default policy used when enforce() gets none
    """

    def __init__(self, list_backups: Callable[[], List[BackupRecord]],
                 policy: Optional[RetentionPolicy] = None):
        self.list_backups = list_backups
        self.policy = policy

    def enforce(self, policy: Optional[RetentionPolicy] = None,
                now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Delete the archives the policy selects.

        Returns:
            Dict with summary of the cleanup:
            {
                'policy': str,
                'deleted': List[str],
                'kept': int,
                'errors': List[str]
            }
        """
        policy = policy or self.policy
        summary = {
            'policy': policy.describe() if policy else 'none',
            'deleted': [],
            'kept': 0,
            'errors': []
        }

        backups = self.list_backups()

        if policy is None:
            logger.info("Retention: no policy configured, skipping")
            summary['kept'] = len(backups)
            return summary

        to_delete = policy.select(backups, now=now)
        logger.info(
            f"Retention ({summary['policy']}): {len(backups)} archive(s), "
            f"{len(to_delete)} to delete"
        )

        for backup in to_delete:
            try:
                os.remove(backup.file_path)
                summary['deleted'].append(backup.file_path)
                logger.info(f"Deleted old backup: {os.path.basename(backup.file_path)}")
            except FileNotFoundError:
                # Already gone (operator or a concurrent run); nothing left to do
                logger.info(f"Old backup already removed: {backup.file_path}")
            except OSError as e:
                error_msg = f"Failed to delete old backup {backup.file_path}: {e}"
                logger.warning(error_msg)
                summary['errors'].append(error_msg)

        # Files that could not be removed are still on disk
        summary['kept'] = len(backups) - len(to_delete) + len(summary['errors'])

        logger.info(
            f"Retention complete. Deleted: {len(summary['deleted'])}, "
            f"Kept: {summary['kept']}, Errors: {len(summary['errors'])}"
        )
        return summary
