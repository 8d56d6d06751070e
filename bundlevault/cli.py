"""
Command line interface.

Registered on the Flask app as the ``backup`` command group, so it is
available both as ``flask --app bundlevault backup ...`` and through the
``bundlevault`` console script.
"""

import json
import time

import click
from flask import current_app
from flask.cli import AppGroup, FlaskGroup

from bundlevault import db
from bundlevault.models import BackupJob, BackupHistory
from bundlevault.backup.errors import BackupError, ConfigurationError
from bundlevault.backup.types import BackupFormat

backup_cli = AppGroup('backup', help='Manage and run backup jobs.')


class UploadProgress:
    """Progress callback that draws a click progress bar once the size is known."""

    def __init__(self, label: str = 'Uploading'):
        self.label = label
        self._bar = None
        self._sent = 0

    def __call__(self, sent: int, total: int):
        if self._bar is None:
            self._bar = click.progressbar(length=total, label=self.label)
            self._bar.__enter__()
        self._bar.update(sent - self._sent)
        self._sent = sent
        if sent >= total:
            self.close()

    def close(self):
        if self._bar is not None:
            self._bar.__exit__(None, None, None)
            self._bar = None


def _confirm_upload(bundle) -> bool:
    return click.confirm(f"Upload {bundle.file_name} to the remote server?", default=True)


def _get_job(name: str) -> BackupJob:
    job = BackupJob.query.filter_by(name=name).first()
    if job is None:
        raise click.ClickException(f"Backup job not found: {name}")
    return job


@backup_cli.command('add-job')
@click.argument('name')
@click.option('--source', 'sources', multiple=True, required=True, help='File or directory to back up (repeatable).')
@click.option('--backup-dir', help='Directory for finished bundles (default: LOCAL_BACKUP_DIR).')
@click.option('--source-root', help='Directory the archiver runs in; relative sources resolve against it.')
@click.option('--format', 'backup_format', default='tar.gz', show_default=True,
              type=click.Choice([f.value for f in BackupFormat]))
@click.option('--exclude', 'excludes', multiple=True, help='Exclude pattern passed to the archiver (repeatable).')
@click.option('--level', type=int, help='Compression level.')
@click.option('--compressor', help='Compressor program for tar, e.g. "xz -9".')
@click.option('--schedule', help='Cron expression, e.g. "0 2 * * *".')
@click.option('--local-retention', help='Local retention, e.g. 7d, 2w, 1m.')
@click.option('--remote-retention', help='Remote retention, e.g. 7d, 2w, 1m.')
@click.option('--keep-at-least', type=int, help='Newest backups never pruned.')
@click.option('--sftp-target', help='"user@host[:port] [key_file] remote_dir"')
@click.option('--delete-after-upload', is_flag=True, help='Remove the local bundle after a verified upload.')
@click.option('--description')
@click.option('--disabled', is_flag=True, help='Create the job disabled.')
def add_job(name, sources, backup_dir, source_root, backup_format, excludes, level, compressor,
            schedule, local_retention, remote_retention, keep_at_least, sftp_target,
            delete_after_upload, description, disabled):
    """Create a backup job."""
    if BackupJob.query.filter_by(name=name).first():
        raise click.ClickException(f"Backup job already exists: {name}")

    job = BackupJob(
        name=name,
        description=description,
        enabled=not disabled,
        sources=json.dumps(list(sources)),
        source_root=source_root,
        backup_directory=backup_dir,
        backup_format=backup_format,
        exclude_patterns=json.dumps(list(excludes)) if excludes else None,
        compression_level=level,
        compressor_override=compressor,
        schedule_cron=schedule,
        local_retention=local_retention,
        remote_retention=remote_retention,
        keep_at_least=keep_at_least,
        sftp_target=sftp_target,
        delete_after_upload=delete_after_upload
    )

    try:
        job.to_spec(current_app.config['LOCAL_BACKUP_DIR']).validate()
        job.to_local_policy()
        job.to_remote_policy()
        if job.to_remote_target() is None and (remote_retention or delete_after_upload):
            raise ConfigurationError("Remote retention and --delete-after-upload need an --sftp-target")
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    db.session.add(job)
    db.session.commit()
    click.echo(f"Created backup job: {name}")


@backup_cli.command('remove-job')
@click.argument('name')
def remove_job(name):
    """Delete a backup job and its history."""
    job = _get_job(name)
    db.session.delete(job)
    db.session.commit()
    click.echo(f"Removed backup job: {name}")


@backup_cli.command('jobs')
def list_jobs():
    """List backup jobs."""
    jobs = BackupJob.query.order_by(BackupJob.name).all()
    if not jobs:
        click.echo("No backup jobs configured")
        return

    for job in jobs:
        state = 'enabled' if job.enabled else 'disabled'
        schedule = job.schedule_cron or 'manual'
        remote = job.sftp_target or '-'
        click.echo(f"{job.name}\t{job.backup_format}\t{state}\t{schedule}\t{remote}")


@backup_cli.command('run')
@click.argument('name')
@click.option('--yes', '-y', is_flag=True, help='Upload without asking for confirmation.')
def run_backup(name, yes):
    """Run a backup job now."""
    from bundlevault.jobs import run_job

    job = _get_job(name)
    progress = UploadProgress()
    try:
        history = run_job(
            job,
            confirm_upload=None if yes else _confirm_upload,
            progress=progress
        )
    finally:
        progress.close()

    if history.file_path or history.file_name:
        click.echo(f"Bundle: {history.file_path or history.file_name}")
        click.echo(f"SHA-256: {history.sha256_hash}")
    if history.remote_path:
        click.echo(f"Uploaded: {history.remote_path}")
    if history.error_message:
        click.echo(f"{history.error_code or 'warning'}: {history.error_message}", err=True)

    click.echo(f"Status: {history.status}")
    # A partial run with an error code still failed to reach its destination
    if history.status == 'failed' or history.error_code:
        raise SystemExit(1)


@backup_cli.command('prune')
@click.argument('name')
def prune(name):
    """Apply a job's retention policies without creating a backup."""
    from bundlevault.jobs import prune_job

    job = _get_job(name)
    try:
        result = prune_job(job)
    except BackupError as e:
        raise click.ClickException(str(e))

    for line in result['logs']:
        click.echo(line)
    click.echo(f"Local deleted: {result['local_deleted']}, remote deleted: {result['remote_deleted']}")
    if result['errors']:
        raise SystemExit(1)


@backup_cli.command('history')
@click.argument('name')
@click.option('--limit', default=10, show_default=True)
@click.option('--logs', 'show_logs', is_flag=True, help='Print the execution log of each run.')
def history(name, limit, show_logs):
    """Show recent runs of a backup job."""
    job = _get_job(name)
    runs = (BackupHistory.query
            .filter_by(job_id=job.id)
            .order_by(BackupHistory.started_at.desc(), BackupHistory.id.desc())
            .limit(limit)
            .all())

    if not runs:
        click.echo(f"No history for {name}")
        return

    for run in runs:
        started = run.started_at.isoformat(sep=' ', timespec='seconds')
        click.echo(f"{started}\t{run.status}\t{run.file_name or '-'}\t{run.error_code or ''}")
        if show_logs and run.logs:
            click.echo(run.logs)


@backup_cli.command('daemon')
def daemon():
    """Run scheduled backups until interrupted."""
    from bundlevault.scheduler import init_scheduler, start_scheduler, stop_scheduler, sync_backup_jobs

    init_scheduler(current_app._get_current_object())
    start_scheduler()
    sync_backup_jobs()
    click.echo("Scheduler running, press Ctrl+C to stop")

    try:
        while True:
            time.sleep(60)
            sync_backup_jobs()
    except KeyboardInterrupt:
        click.echo("Stopping scheduler")
    finally:
        stop_scheduler()


def main():
    from bundlevault import create_app

    cli = FlaskGroup(create_app=create_app, help='bundlevault backup manager.')
    cli.main()


if __name__ == '__main__':
    main()
