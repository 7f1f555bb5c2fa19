"""
APScheduler configuration and job scheduling for drivebackup.

Manages:
- The background retention sweep started alongside each backup job
- Periodic backup jobs (based on a cron expression)
"""

import atexit
import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from drivebackup.backup.executor import BackupError, BackupExecutor, execute_backup_job
from drivebackup.backup.retention import sweep_old_backups


logger = logging.getLogger(__name__)

# Global background scheduler instance
scheduler = None

JOB_DEFAULTS = {
    'coalesce': True,  # Combine multiple pending instances into one
    'max_instances': 1,  # Only one instance of a job at a time
    'misfire_grace_time': 300  # 5 minutes grace period for misfires
}


def init_scheduler() -> BackgroundScheduler:
    """
    Initialize and start the background scheduler.

    The scheduler is stopped (waiting for running jobs) at interpreter exit.
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    scheduler = BackgroundScheduler(
        executors={'default': ThreadPoolExecutor(max_workers=2)},
        job_defaults=JOB_DEFAULTS,
        timezone='UTC'
    )
    scheduler.start()
    atexit.register(stop_scheduler)
    logger.info("Background scheduler started")

    return scheduler


def stop_scheduler(wait: bool = True):
    """Stop the background scheduler, waiting for running jobs by default."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=wait)
        logger.info("Background scheduler stopped")
    scheduler = None


def start_retention_sweep(
    backup_dir: str,
    retention_days: int,
    not_after: Optional[datetime] = None
):
    """
    Run the retention sweep once, in the background.

    Returns immediately; the sweep never blocks or fails the backup.

    Args:
        backup_dir: Local backup directory
        retention_days: Entries older than this many days are deleted
        not_after: Start of the current backup run, newer entries are kept

    Returns:
        The scheduled APScheduler job
    """
    background = init_scheduler()

    now = datetime.now(timezone.utc)
    job = background.add_job(
        func=_sweep_wrapper,
        args=[backup_dir, retention_days, not_after],
        trigger=DateTrigger(run_date=now),
        id=f"retention_{int(now.timestamp() * 1000)}",
        name='Local Retention Sweep',
        replace_existing=True
    )

    logger.info(f"Retention sweep scheduled for {backup_dir} ({retention_days} days)")
    return job


def _sweep_wrapper(backup_dir: str, retention_days: int, not_after: Optional[datetime]):
    """Run the sweep in scheduler context, never letting an error escape."""
    try:
        sweep_old_backups(backup_dir, retention_days, not_after=not_after)
    except Exception as e:
        logger.error(f"Retention sweep of {backup_dir} failed: {e}")


def _scheduled_backup_wrapper(
    executor: BackupExecutor,
    database_names: Sequence[str],
    backup_kind,
    retention_days: int
):
    """
    Wrapper function for executing backup jobs in scheduler context.

    A failed run is logged and the schedule continues.
    """
    try:
        logger.info(f"Scheduler executing {backup_kind} backup of {', '.join(database_names)}")
        results = execute_backup_job(executor, database_names, backup_kind, retention_days)
        for remote_file in results:
            logger.info(f"Scheduled backup uploaded: {remote_file.name} ({remote_file.web_view_link})")
    except (BackupError, ValueError) as e:
        logger.error(f"Scheduled backup failed: {e}")


def create_backup_scheduler(
    executor: BackupExecutor,
    database_names: Sequence[str],
    backup_kind,
    retention_days: int,
    cron_expression: str,
    run_now: bool = False
) -> BlockingScheduler:
    """
    Create a blocking scheduler that runs backups on a cron schedule.

    All runs go through the single 'scheduled_backup' job, so with
    max_instances=1 two backups never overlap.

    Args:
        executor: Configured BackupExecutor
        database_names: Databases to back up on each run
        backup_kind: BackupKind or its value
        retention_days: Local retention period (0 disables the sweep)
        cron_expression: Standard 5-field crontab expression (UTC)
        run_now: Run the first backup as soon as the scheduler starts

    Raises:
        ValueError: If the cron expression is invalid
    """
    periodic = BlockingScheduler(job_defaults=JOB_DEFAULTS, timezone='UTC')
    trigger = CronTrigger.from_crontab(cron_expression, timezone='UTC')

    job_options = {}
    if run_now:
        job_options['next_run_time'] = datetime.now(timezone.utc)

    periodic.add_job(
        func=_scheduled_backup_wrapper,
        args=[executor, list(database_names), backup_kind, retention_days],
        trigger=trigger,
        id='scheduled_backup',
        name=f"Backup: {', '.join(database_names)}",
        replace_existing=True,
        **job_options
    )

    logger.info(f"Scheduled backup job ({cron_expression})")
    return periodic


def run_scheduled(
    executor: BackupExecutor,
    database_names: Sequence[str],
    backup_kind,
    retention_days: int,
    cron_expression: str,
    run_now: bool = False
):
    """
    Run backups on a cron schedule until interrupted.

    Args:
        run_now: Also run one backup immediately at startup

    Raises:
        ValueError: If the cron expression is invalid
    """
    periodic = create_backup_scheduler(
        executor, database_names, backup_kind, retention_days, cron_expression, run_now=run_now
    )

    try:
        periodic.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler interrupted, shutting down")
