"""
Running stored backup jobs.

Turns a BackupJob row into the engine's explicit settings, runs it, and
records the outcome as BackupHistory.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from flask import current_app

from bundlevault import db
from bundlevault.models import BackupJob, BackupHistory
from bundlevault.backup.errors import BackupError, ConfigurationError
from bundlevault.backup.executor import BackupExecutor
from bundlevault.backup.retention import RetentionManager
from bundlevault.backup.storage import LocalStorage, SFTPStorage

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_executor(job: BackupJob, confirm_upload=None, progress=None) -> BackupExecutor:
    """
    Build an executor for a stored job.

    Raises:
        ConfigurationError: If the job's stored settings are invalid
    """
    config = current_app.config

    return BackupExecutor(
        spec=job.to_spec(config['LOCAL_BACKUP_DIR']),
        temp_root=config['TEMP_DIR'],
        local_retention=job.to_local_policy(),
        remote_target=job.to_remote_target(),
        remote_retention=job.to_remote_policy(),
        delete_after_upload=job.delete_after_upload,
        confirm_upload=confirm_upload,
        progress=progress,
        chunk_size=config['SFTP_CHUNK_SIZE'],
        connect_timeout=config['SFTP_CONNECT_TIMEOUT'],
        verify_timeout=config.get('SFTP_VERIFY_TIMEOUT')
    )


def run_job(job: BackupJob, confirm_upload=None, progress=None) -> BackupHistory:
    """
    Execute a backup job and record its history.

    Args:
        job: BackupJob to run
        confirm_upload: Optional gate called before any network transfer
        progress: Optional upload progress callback

    Returns:
        BackupHistory record with execution results
    """
    history = BackupHistory(
        job_id=job.id,
        status='running',
        started_at=_utcnow()
    )
    db.session.add(history)
    db.session.commit()

    try:
        executor = build_executor(job, confirm_upload, progress)
    except ConfigurationError as e:
        history.status = 'failed'
        history.error_code = e.code
        history.error_message = str(e)
        history.completed_at = _utcnow()
        db.session.commit()
        logger.error(f"Backup job {job.name} has invalid settings: {e}")
        return history

    try:
        report = executor.execute()
    except Exception as e:
        # Never leave the record at running
        history.status = 'failed'
        history.completed_at = _utcnow()
        history.error_message = f"{type(e).__name__}: {e}"
        history.logs = '\n'.join(executor.logs)
        db.session.commit()
        logger.exception(f"Backup job {job.name} failed unexpectedly")
        return history

    history.status = report.status
    history.completed_at = _utcnow()
    history.error_code = report.error_code
    history.error_message = report.error_message or ('; '.join(report.warnings) or None)
    history.logs = '\n'.join(report.logs)
    if report.bundle:
        history.file_name = report.bundle.file_name
        history.file_path = None if report.local_bundle_deleted else report.bundle.file_path
        history.sha256_hash = report.bundle.sha256_hash
        history.file_size_bytes = report.bundle.size_bytes
    history.remote_path = report.remote_path
    db.session.commit()

    return history


def execute_backup_job(job_id: int, allow_disabled: bool = False, **kwargs) -> BackupHistory:
    """
    Execute a backup job by ID.

    Args:
        job_id: ID of BackupJob to execute
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)

    Raises:
        ValueError: If job not found, or if disabled and not allowed
    """
    job = db.session.get(BackupJob, job_id)

    if not job:
        raise ValueError(f"Backup job not found: {job_id}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Backup job is disabled: {job.name}")

    return run_job(job, **kwargs)


def execute_backup_job_by_name(job_name: str, allow_disabled: bool = False, **kwargs) -> BackupHistory:
    """
    Execute a backup job by name.

    Raises:
        ValueError: If job not found or disabled
    """
    job = BackupJob.query.filter_by(name=job_name).first()

    if not job:
        raise ValueError(f"Backup job not found: {job_name}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Backup job is disabled: {job_name}")

    return run_job(job, **kwargs)


def prune_job(job: BackupJob) -> Dict[str, Any]:
    """
    Enforce a job's retention policies without creating a backup.

    Returns:
        Dict with counts: {'local_deleted': int, 'remote_deleted': int, 'errors': [...], 'logs': [...]}

    Raises:
        ConfigurationError: If the job's retention settings are invalid
        StorageError: If a location cannot be listed or reached
    """
    config = current_app.config
    result = {'local_deleted': 0, 'remote_deleted': 0, 'errors': [], 'logs': []}

    local_policy = job.to_local_policy()
    if local_policy is not None:
        manager = RetentionManager(job.name, local_policy)
        storage = LocalStorage(job.backup_directory or config['LOCAL_BACKUP_DIR'])
        summary = manager.prune(storage)
        result['local_deleted'] = len(summary.deleted)
        result['errors'].extend(summary.errors)
        result['logs'].extend(manager.logs)

    remote_policy = job.to_remote_policy()
    remote_target = job.to_remote_target()
    if remote_policy is not None and remote_target is not None:
        manager = RetentionManager(job.name, remote_policy)
        storage = SFTPStorage(
            remote_target,
            chunk_size=config['SFTP_CHUNK_SIZE'],
            timeout=config['SFTP_CONNECT_TIMEOUT']
        )
        with storage:
            summary = manager.prune(storage)
        result['remote_deleted'] = len(summary.deleted)
        result['errors'].extend(summary.errors)
        result['logs'].extend(manager.logs)

    return result


def enforce_retention_policies() -> Dict[str, Any]:
    """
    Enforce retention policies for all jobs.

    Called by the scheduler once a day. A failing job is recorded in the
    summary and does not stop the others.

    Returns:
        Dict with summary of cleanup operations:
        {
            'jobs_processed': int,
            'local_deleted': int,
            'remote_deleted': int,
            'errors': List[str]
        }
    """
    summary = {
        'jobs_processed': 0,
        'local_deleted': 0,
        'remote_deleted': 0,
        'errors': []
    }

    for job in BackupJob.query.all():
        if not job.local_retention and not job.remote_retention:
            continue

        try:
            result = prune_job(job)
        except BackupError as e:
            error_msg = f"Failed to enforce policy for job {job.name}: {e}"
            logger.warning(error_msg)
            summary['errors'].append(error_msg)
            continue

        summary['jobs_processed'] += 1
        summary['local_deleted'] += result['local_deleted']
        summary['remote_deleted'] += result['remote_deleted']
        summary['errors'].extend(result['errors'])

    logger.info(
        f"Retention enforcement complete. "
        f"Jobs: {summary['jobs_processed']}, "
        f"Local deleted: {summary['local_deleted']}, "
        f"Remote deleted: {summary['remote_deleted']}, "
        f"Errors: {len(summary['errors'])}"
    )
    return summary
