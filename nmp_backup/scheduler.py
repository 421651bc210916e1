"""
APScheduler integration for recurring backups.

Manages:
- The scheduled backup job (user supplied cron expression)
- Daily retention cleanup (02:00)
- Manual backup triggers and status reporting
"""

import logging
import os
import re
import threading
from datetime import datetime
from typing import List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from nmp_backup.backup.errors import BackupError, OperationInProgress, SchedulerError
from nmp_backup.backup.models import BackupRecord, BackupStatus, ScheduleConfig
from nmp_backup.backup.orchestrator import BackupOrchestrator
from nmp_backup.backup.retention import schedule_policy


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'
CLEANUP_JOB_ID = 'retention_cleanup'

# Crontab counts weekdays from Sunday (0 or 7); APScheduler from Monday.
# Numeric fields are rewritten to names, which both agree on.
_WEEKDAY_NAMES = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun']
_WEEKDAY_NUMBER = re.compile(r'(?<![/\d])\d+')
_RANGE_FROM_SUNDAY = re.compile(r'^0-(\d+)$')


def _translate_day_of_week(field: str) -> str:
    def _name(match):
        value = int(match.group(0))
        if value > 7:
            raise ValueError(f"day of week out of range: {value}")
        return _WEEKDAY_NAMES[value]

    items = []
    for item in field.split(','):
        # Sunday is the last APScheduler weekday, so 0-N becomes sun,mon-N
        match = _RANGE_FROM_SUNDAY.match(item)
        if match and match.group(1) not in ('0', '7'):
            item = f"7,1-{match.group(1)}"
        items.append(_WEEKDAY_NUMBER.sub(_name, item))
    return ','.join(items)


def parse_cron_expression(expression: str, timezone: str = 'UTC') -> CronTrigger:
    """
    Parse a cron expression into an APScheduler trigger.

    Accepts standard 5-field crontab syntax and 6-field syntax with a leading
    seconds field (e.g. '0 0 1 * * *' = every day at 01:00:00).

    Raises:
        SchedulerError: If the expression is invalid
    """
    fields = (expression or '').split()

    if len(fields) == 5:
        second = '0'
        minute, hour, day, month, day_of_week = fields
    elif len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
    else:
        raise SchedulerError(
            f"Invalid cron expression '{expression}': expected 5 or 6 fields"
        )

    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(day_of_week),
            timezone=timezone
        )
    except ValueError as e:
        raise SchedulerError(f"Invalid cron expression '{expression}': {e}") from e


class BackupScheduler:
    """
    Runs backups on a cron schedule on top of a BackupOrchestrator.

    States: stopped -> start() -> running -> stop() -> stopped. Every start()
    builds a fresh APScheduler instance from an immutable ScheduleConfig.
    Job functions run on the APScheduler thread pool, so the trigger loop is
    never blocked by a long backup.
    """

    def __init__(self, orchestrator: BackupOrchestrator, timezone: str = 'UTC',
                 max_workers: int = 2):
        self.orchestrator = orchestrator
        self.timezone = timezone
        self.max_workers = max_workers
        self.config: Optional[ScheduleConfig] = None
        self._scheduler = None
        self._state_lock = threading.Lock()

    def _create_scheduler(self) -> BackgroundScheduler:
        jobstores = {
            'default': MemoryJobStore()
        }

        executors = {
            'default': ThreadPoolExecutor(max_workers=self.max_workers)
        }

        job_defaults = {
            'coalesce': True,  # Combine multiple pending instances into one
            'max_instances': 1,  # Only one instance of a job at a time
            'misfire_grace_time': 300  # 5 minutes grace period for misfires
        }

        return BackgroundScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone=self.timezone
        )

    def start(self, config: ScheduleConfig):
        """
        Start scheduled backups.

        Args:
            config: Schedule to run; kept until stop()

        Raises:
            SchedulerError: If already running or the config is invalid
        """
        with self._state_lock:
            if self.is_running():
                raise SchedulerError("Scheduler is already running")

            self._check_backup_dir(config)
            backup_trigger = parse_cron_expression(config.cron_expression, self.timezone)

            scheduler = self._create_scheduler()

            scheduler.add_job(
                func=self._execute_backup,
                args=[config],
                trigger=backup_trigger,
                id=BACKUP_JOB_ID,
                name='Scheduled Backup',
                replace_existing=True
            )

            # Retention cleanup runs daily at 2 AM
            scheduler.add_job(
                func=self._execute_cleanup,
                args=[config],
                trigger=CronTrigger(hour=2, minute=0, timezone=self.timezone),
                id=CLEANUP_JOB_ID,
                name='Daily Retention Cleanup',
                replace_existing=True
            )

            scheduler.start()
            self._scheduler = scheduler
            self.config = config

        logger.info(
            f"Backup scheduler started (cron={config.cron_expression}, "
            f"backup_dir={self.orchestrator.backup_dir}, "
            f"retention_days={config.retention_days}, max_backups={config.max_backups})"
        )

    def stop(self):
        """
        Stop scheduled backups, waiting for a running job to finish.

        Calling stop() on a stopped scheduler does nothing.
        """
        with self._state_lock:
            scheduler = self._scheduler
            if scheduler is None:
                return

            if scheduler.running:
                scheduler.shutdown(wait=True)

            self._scheduler = None
            self.config = None

        logger.info("Backup scheduler stopped")

    def is_running(self) -> bool:
        return self._scheduler is not None and bool(self._scheduler.running)

    def _check_backup_dir(self, config: ScheduleConfig):
        if not config.backup_dir:
            return
        if os.path.abspath(config.backup_dir) != self.orchestrator.backup_dir:
            raise SchedulerError(
                f"Schedule backup_dir {config.backup_dir} does not match "
                f"orchestrator root {self.orchestrator.backup_dir}"
            )

    def _run_backup(self, config: ScheduleConfig, description: str) -> BackupRecord:
        return self.orchestrator.create_backup(
            description=description,
            components=list(config.components) or None,
            timeout=config.timeout,
            retention=schedule_policy(config.max_backups, config.retention_days),
            compress=config.compress
        )

    def _execute_backup(self, config: ScheduleConfig):
        """Scheduled backup job. Runs on a worker thread, so errors are logged, not raised."""
        logger.info("Starting scheduled backup")
        try:
            record = self._run_backup(config, 'Scheduled backup')
            logger.info(
                f"Scheduled backup completed successfully: {record.file_path} ({record.size_human})"
            )
        except OperationInProgress:
            logger.warning("Scheduled backup skipped: another operation is in progress")
        except BackupError as e:
            logger.error(f"Scheduled backup failed: {e}")
        except Exception:
            logger.exception("Scheduled backup crashed")

    def _execute_cleanup(self, config: ScheduleConfig):
        """Scheduled retention job."""
        logger.info("Starting scheduled backup cleanup")
        policy = schedule_policy(config.max_backups, config.retention_days)
        try:
            summary = self.orchestrator.enforce_retention(policy)
            logger.info(f"Scheduled cleanup completed: {len(summary['deleted'])} archive(s) deleted")
        except OperationInProgress:
            logger.warning("Scheduled cleanup skipped: a backup or restore is in progress")
        except BackupError as e:
            logger.error(f"Scheduled cleanup failed: {e}")
        except Exception:
            logger.exception("Scheduled cleanup crashed")

    def trigger_backup(self, config: ScheduleConfig) -> BackupRecord:
        """
        Run a backup now, outside the schedule.

        Uses the same orchestrator guard as scheduled runs.

        Raises:
            OperationInProgress: If a backup or restore is running
            BackupError: If the backup fails
        """
        self._check_backup_dir(config)
        logger.info("Triggering manual backup")

        record = self._run_backup(config, 'Manual backup')

        logger.info(f"Manual backup completed successfully: {record.file_path} ({record.size_human})")
        return record

    def get_next_backup_time(self) -> Optional[datetime]:
        """Earliest upcoming trigger time, or None when stopped."""
        if not self.is_running():
            return None

        run_times = [
            job.next_run_time for job in self._scheduler.get_jobs()
            if job.next_run_time is not None
        ]
        return min(run_times) if run_times else None

    def get_scheduled_jobs(self) -> List[dict]:
        """
        Get list of all scheduled jobs.

        Returns:
            List of dicts with job information
        """
        if not self.is_running():
            return []

        jobs = []
        for job in self._scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'trigger': str(job.trigger)
            })
        return jobs

    def get_backup_status(self) -> BackupStatus:
        """
        Scheduler state plus aggregate statistics over the backup root.

        Raises:
            ArchiveError: If the backup root cannot be read
        """
        backups = self.orchestrator.list_backups()

        status = BackupStatus(
            is_scheduler_running=self.is_running(),
            next_backup_time=self.get_next_backup_time(),
            total_backups=len(backups),
            total_backup_size=sum(backup.size or 0 for backup in backups)
        )

        if backups:
            latest = backups[0]
            status.last_backup_time = latest.created_at
            status.last_backup_file = os.path.basename(latest.file_path)
            status.last_backup_size = latest.size

        return status
