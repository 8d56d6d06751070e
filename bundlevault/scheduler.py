"""
APScheduler configuration and job scheduling for bundlevault.

Manages:
- Scheduled backup jobs (based on cron expressions)
- Daily retention policy enforcement
- Manual job triggers

Backups run on a single worker thread, so two jobs never share the
temporary workspace root or an SFTP session at the same time.
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from bundlevault import db
from bundlevault.models import BackupJob
from bundlevault.jobs import execute_backup_job, enforce_retention_policies

logger = logging.getLogger(__name__)


# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

RETENTION_JOB_ID = 'retention_cleanup'


def _backup_job_id(backup_job_id: int) -> str:
    return f"backup_{backup_job_id}"


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
    tz = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=tz
    )

    # Retention sweep runs daily at 3 AM
    scheduler.add_job(
        func=_enforce_retention_wrapper,
        trigger=CronTrigger(hour=3, minute=0, timezone=tz),
        id=RETENTION_JOB_ID,
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    jobs = scheduler.get_jobs()
    if not jobs:
        logger.info("No scheduled jobs loaded")
    for job in jobs:
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
    scheduler = None


def sync_backup_jobs():
    """
    Synchronize backup jobs from database to scheduler.

    This function should be called:
    - After scheduler startup
    - After creating/updating/deleting backup jobs
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for backup_job in BackupJob.query.all():
        job_id = _backup_job_id(backup_job.id)

        if backup_job.enabled and backup_job.schedule_cron:
            if job_id in scheduled_job_ids:
                _update_scheduled_job(backup_job)
                scheduled_job_ids.remove(job_id)
            else:
                _add_scheduled_job(backup_job)
        elif job_id in scheduled_job_ids:
            # Disabled or no schedule
            _remove_scheduled_job(backup_job.id)
            scheduled_job_ids.remove(job_id)

    # Jobs deleted from the database
    for leftover_id in scheduled_job_ids:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed orphaned scheduled job: {leftover_id}")
        except JobLookupError:
            logger.debug(f"Orphaned job already gone: {leftover_id}")


def _cron_trigger(backup_job: BackupJob) -> CronTrigger:
    tz = flask_app.config.get('SCHEDULER_TIMEZONE', 'UTC') if flask_app else 'UTC'
    return CronTrigger.from_crontab(backup_job.schedule_cron, timezone=tz)


def _add_scheduled_job(backup_job: BackupJob):
    """
    Add a backup job to the scheduler.

    An invalid cron expression is logged and the job stays unscheduled.
    """
    try:
        trigger = _cron_trigger(backup_job)
    except ValueError as e:
        logger.error(f"Invalid schedule for backup job {backup_job.name} ({backup_job.schedule_cron}): {e}")
        return

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[backup_job.id],
        trigger=trigger,
        id=_backup_job_id(backup_job.id),
        name=f"Backup: {backup_job.name}",
        replace_existing=True
    )
    logger.info(f"Scheduled backup job: {backup_job.name} ({backup_job.schedule_cron})")


def _update_scheduled_job(backup_job: BackupJob):
    """
    Reschedule an already scheduled backup job.
    """
    job = scheduler.get_job(_backup_job_id(backup_job.id))
    if not job:
        _add_scheduled_job(backup_job)
        return

    try:
        trigger = _cron_trigger(backup_job)
    except ValueError as e:
        logger.error(f"Invalid schedule for backup job {backup_job.name} ({backup_job.schedule_cron}): {e}")
        _remove_scheduled_job(backup_job.id)
        return

    job.modify(name=f"Backup: {backup_job.name}")
    job.reschedule(trigger=trigger)
    logger.info(f"Updated scheduled backup job: {backup_job.name}")


def _remove_scheduled_job(backup_job_id: int):
    """
    Remove a backup job from the scheduler.

    Args:
        backup_job_id: BackupJob ID
    """
    try:
        scheduler.remove_job(_backup_job_id(backup_job_id))
        logger.info(f"Removed scheduled backup job ID: {backup_job_id}")
    except JobLookupError:
        logger.debug(f"Backup job {backup_job_id} was not scheduled")


def _execute_backup_wrapper(job_id: int, allow_disabled: bool = False):
    """
    Wrapper function for executing backup jobs in scheduler context.

    Scheduled runs never prompt: there is no confirmation gate, so uploads
    proceed whenever a remote target is configured.

    Args:
        job_id: BackupJob ID to execute
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)
    """
    with flask_app.app_context():
        logger.info(f"Scheduler executing backup job ID: {job_id} (allow_disabled={allow_disabled})")
        try:
            history = execute_backup_job(job_id, allow_disabled=allow_disabled)
            logger.info(f"Backup job {job_id} completed with status: {history.status}")
        except ValueError as e:
            logger.warning(f"Scheduler skipped backup job {job_id}: {e}")
        finally:
            db.session.remove()


def _enforce_retention_wrapper():
    """Run the daily retention sweep inside an app context."""
    with flask_app.app_context():
        try:
            enforce_retention_policies()
        finally:
            db.session.remove()


def trigger_backup_now(job_id: int):
    """
    Manually trigger a backup job immediately.

    Args:
        job_id: BackupJob ID to execute

    Raises:
        ValueError: If job not found
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    backup_job = db.session.get(BackupJob, job_id)
    if not backup_job:
        raise ValueError(f"Backup job not found: {job_id}")

    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[job_id, True],  # True = allow_disabled for manual triggers
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{job_id}_{int(now.timestamp())}",
        name=f"Manual: {backup_job.name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup job: {backup_job.name}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
