"""
APScheduler configuration for automated backups.

Runs the backup on CRON_SCHEDULE in the foreground. A run that is still
going when the next one fires is not started twice: the scheduler
coalesces missed fires and the single-flight lock turns any overlap into
a skip.
"""

import logging
import threading
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from dumpstream.config import Config
from dumpstream.errors import ConfigError
from dumpstream.backup.executor import run_backup


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'database_backup'

# Global scheduler instance
scheduler = None

# Set on shutdown so a backup in progress stops and releases the lock
cancel_event = threading.Event()


def _execute_backup_wrapper(config: Config):
    """
    Run one backup from the scheduler thread.

    The report is logged; a failed run must not stop the scheduler.
    """
    logger.info("Scheduler starting backup run")
    report = run_backup(config, cancel_event=cancel_event)
    if report.exit_code:
        logger.error(f"Scheduled backup finished with exit code {report.exit_code}: {report.error}")
    else:
        logger.info(f"Scheduled backup finished: {report.outcome}")
    return report


def init_scheduler(config: Optional[Config] = None) -> BlockingScheduler:
    """
    Initialize and configure APScheduler.

    Args:
        config: Settings (default: read from the environment)

    Returns:
        The configured scheduler

    Raises:
        ConfigError: If CRON_SCHEDULE is not a valid crontab expression
    """
    global scheduler

    config = config or Config()

    if scheduler is not None:
        return scheduler

    cancel_event.clear()

    try:
        trigger = CronTrigger.from_crontab(config.schedule, timezone=config.SCHEDULER_TIMEZONE)
    except (ValueError, KeyError) as e:
        raise ConfigError(f"Invalid CRON_SCHEDULE {config.schedule!r}: {e}")

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(job_defaults=job_defaults, timezone=config.SCHEDULER_TIMEZONE)

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[config],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name=f"Backup: {config.DB_TYPE or '?'}/{config.DB_NAME or '?'}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup with cron expression '{config.schedule}' ({config.SCHEDULER_TIMEZONE})")
    return scheduler


def start_scheduler():
    """
    Start the APScheduler. Blocks until stop_scheduler() is called.
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    for job in get_scheduled_jobs():
        logger.info(f"  - {job['id']}: {job['name']} (trigger: {job['trigger']})")

    logger.info("Scheduler started, waiting for the next run")
    scheduler.start()


def stop_scheduler():
    """
    Stop the APScheduler.

    A backup that is still running is cancelled: its dump is terminated,
    the staged upload aborted and the lock released.
    """
    global scheduler

    cancel_event.set()

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    scheduler = None


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs
