"""
Shared pytest fixtures for bundlevault tests.

This module provides fixtures for:
- Flask app and CLI runner
- Database setup with in-memory SQLite
- Backup job fixtures
- Fake command runner and SSH client for the backup engine
- Temporary source trees
"""

import json
import os
import shutil
from unittest.mock import MagicMock, patch

import pytest

from bundlevault import create_app, db as _db
from bundlevault.backup.commands import CommandResult
from bundlevault.models import BackupJob


def has_programs(*programs):
    return all(shutil.which(program) for program in programs)


requires_tar_gzip = pytest.mark.skipif(
    not has_programs('tar', 'gzip', 'sha256sum'),
    reason='tar, gzip and sha256sum are required'
)

requires_zip = pytest.mark.skipif(
    not has_programs('zip', 'sha256sum'),
    reason='zip and sha256sum are required'
)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and per-test directories for workspaces,
    bundles and logs.
    """
    app = create_app('testing', test_config={
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'SFTP_CHUNK_SIZE': 1024,
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a small source tree.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    - data/test_file.pyc (excluded in tests)
    """
    data_dir = tmp_path / 'data'
    nested_dir = data_dir / 'nested'
    nested_dir.mkdir(parents=True)

    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')
    (nested_dir / 'test_file3.txt').write_text('Nested test content')
    (data_dir / 'test_file.pyc').write_bytes(b'compiled python')

    return data_dir


@pytest.fixture(scope='function')
def local_backup_job(db, temp_files):
    """
    Create a backup job that only writes local bundles.
    """
    job = BackupJob(
        name='testing-backup',
        description='Test local backup job',
        enabled=True,
        sources=json.dumps([str(temp_files)]),
        backup_format='tar.gz',
        exclude_patterns=json.dumps(['*.pyc']),
        schedule_cron='0 2 * * *',  # Daily at 2 AM
        local_retention='7d'
    )
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture(scope='function')
def sftp_backup_job(db, temp_files):
    """
    Create a backup job that uploads to an SFTP server.
    """
    job = BackupJob(
        name='remote-backup',
        description='Test SFTP backup job',
        enabled=True,
        sources=json.dumps([str(temp_files)]),
        backup_format='zip',
        schedule_cron='0 3 * * *',  # Daily at 3 AM
        remote_retention='2w',
        keep_at_least=3,
        sftp_target='backup@test.example.com:2222 /srv/backups'
    )
    db.session.add(job)
    db.session.commit()
    return job


class FakeRunner:
    """
    Stand-in for CommandRunner that records calls instead of spawning processes.

    ``results`` maps a program name to the CommandResult it returns;
    ``side_effects`` maps a program name to a callable run before returning,
    which tests use to create the files a real archiver would write.
    """

    def __init__(self, missing=()):
        self.calls = []
        self.missing_programs = set(missing)
        self.results = {}
        self.side_effects = {}

    def exists(self, program):
        return program not in self.missing_programs

    def missing(self, programs):
        return [program for program in programs if program in self.missing_programs]

    def run(self, program, args, cwd=None, captured=True):
        self.calls.append((program, list(args), cwd))
        if program in self.side_effects:
            self.side_effects[program](list(args), cwd)
        return self.results.get(program, CommandResult(status=0))

    def programs(self):
        return [program for program, _, _ in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns the patched class; the SFTP client is
    ``mock_ssh_client.return_value.open_sftp.return_value``.
    """
    with patch('bundlevault.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def private_key(tmp_path):
    """A dummy private key file with mode 0600."""
    key_path = tmp_path / 'id_ed25519'
    key_path.write_text('not a real key')
    os.chmod(key_path, 0o600)
    return key_path


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('bundlevault.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
