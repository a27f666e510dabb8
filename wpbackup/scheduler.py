"""
APScheduler configuration for recurring backups.

Manages:
- The scheduled backup job (cron expression from BACKUP_SCHEDULE_CRON)
- Manual "run now" triggers
- Guarding against overlapping sessions in this process
"""

import logging
import threading
from datetime import datetime, timedelta, timezone

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from wpbackup.config import SettingsError, load_settings
from wpbackup.runner import run_backup


logger = logging.getLogger(__name__)

SCHEDULED_JOB_ID = 'scheduled_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

# Held while a session runs; a second trigger is skipped, not queued
_run_lock = threading.Lock()


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    cron = app.config.get('BACKUP_SCHEDULE_CRON')
    if cron:
        schedule_backups(cron)
    else:
        logger.info("BACKUP_SCHEDULE_CRON not set, no recurring backup scheduled")

    return scheduler


def schedule_backups(cron_expression: str):
    """
    Add or replace the recurring backup job.

    Args:
        cron_expression: Standard 5-field crontab expression

    Raises:
        ValueError: If the expression is invalid
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    tz = flask_app.config.get('SCHEDULER_TIMEZONE', 'UTC') if flask_app else 'UTC'
    trigger = CronTrigger.from_crontab(cron_expression, timezone=tz)

    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=trigger,
        id=SCHEDULED_JOB_ID,
        name='Scheduled WordPress Backup',
        replace_existing=True
    )

    logger.info(f"Scheduled backups: {cron_expression} ({tz})")


def start_scheduler():
    """Start the APScheduler."""
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        for job in scheduler.get_jobs():
            next_run = _next_run(job) or 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info("Scheduler already running")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _execute_backup_wrapper():
    """
    Run one backup session in scheduler context.

    Skips the run if another session is still in progress.
    """
    if not _run_lock.acquire(blocking=False):
        logger.warning("Backup already in progress, skipping this run")
        return

    try:
        with flask_app.app_context():
            try:
                settings = load_settings(flask_app.config)
            except SettingsError as e:
                logger.error(f"Scheduled backup skipped: {e}")
                return

            session = run_backup(settings)
            logger.info(f"Backup {session.token} finished with exit code {session.exit_code}")
    finally:
        _run_lock.release()


def trigger_backup_now():
    """
    Run a backup once, as soon as possible.

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{int(now.timestamp())}",
        name='Manual WordPress Backup',
        replace_existing=False
    )


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': _next_run(job),
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running


def _next_run(job):
    # Jobs added before the scheduler starts have no next_run_time yet
    next_run_time = getattr(job, 'next_run_time', None)
    return next_run_time.isoformat() if next_run_time else None
