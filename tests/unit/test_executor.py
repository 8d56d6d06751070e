"""
Unit tests for backup executor (bundlevault/backup/executor.py).

Tests BackupExecutor for orchestrating complete backup workflows. External
programs go through a fake runner and SFTP through a mocked storage
factory, except in the end-to-end test that uses the real tar.
"""

import os
import tarfile
from datetime import date
from unittest.mock import MagicMock

import pytest

from bundlevault.backup.commands import CommandResult
from bundlevault.backup.errors import StorageError, TransferError
from bundlevault.backup.executor import BackupExecutor, workspace_path
from bundlevault.backup.types import BackupSpec, RemoteTarget, RetentionPolicy

from conftest import requires_tar_gzip

DIGEST = 'd' * 64
TODAY = date(2024, 1, 15)


def _fake_tar(args, cwd):
    output = args[args.index('-czf') + 1]
    with open(output, 'wb') as f:
        f.write(b'archive bytes')


@pytest.fixture
def spec(tmp_path, temp_files):
    return BackupSpec(
        name='testing-backup',
        sources=[str(temp_files)],
        backup_directory=str(tmp_path / 'backups'),
        exclude_patterns=['*.pyc']
    )


@pytest.fixture
def tools(fake_runner):
    fake_runner.side_effects['tar'] = _fake_tar
    fake_runner.results['sha256sum'] = CommandResult(status=0, stdout=f"{DIGEST}  file\n")
    return fake_runner


@pytest.fixture
def remote_storage():
    storage = MagicMock()
    storage.location = 'backup@example.com:/srv/backups'
    storage.upload.return_value = '/srv/backups/testing-backup-1-15-2024-1-bundle.tar.gz'
    storage.list_files.return_value = []
    return storage


@pytest.fixture
def storage_factory(remote_storage):
    return MagicMock(return_value=remote_storage)


@pytest.fixture
def target():
    return RemoteTarget.parse('backup@example.com /srv/backups')


class TestLocalBackup:
    """Backups without a remote target."""

    def test_successful_backup(self, tmp_path, spec, tools):
        executor = BackupExecutor(spec, str(tmp_path / 'temp'), runner=tools, today=TODAY)

        report = executor.execute()

        assert report.status == 'success'
        assert report.succeeded
        assert report.bundle.file_name == 'testing-backup-1-15-2024-1-bundle.tar.gz'
        assert os.path.exists(report.bundle.file_path)
        assert report.bundle.sha256_hash == DIGEST
        assert not report.uploaded
        assert not os.path.exists(executor.workspace)
        assert report.logs

    def test_archiver_gets_excludes_and_sources(self, tmp_path, spec, tools):
        BackupExecutor(spec, str(tmp_path / 'temp'), runner=tools, today=TODAY).execute()

        program, args, _ = tools.calls[0]
        assert program == 'tar'
        assert args[0] == '--exclude=*.pyc'
        assert args[-1] == spec.sources[0]

    def test_creates_backup_directory(self, tmp_path, spec, tools):
        assert not os.path.exists(spec.backup_directory)

        report = BackupExecutor(spec, str(tmp_path / 'temp'), runner=tools, today=TODAY).execute()

        assert report.status == 'success'
        assert os.path.isdir(spec.backup_directory)

    def test_same_day_runs_get_sequence_numbers(self, tmp_path, spec, tools):
        names = [
            BackupExecutor(spec, str(tmp_path / 'temp'), runner=tools, today=TODAY).execute().bundle.file_name
            for _ in range(3)
        ]

        assert names == [
            'testing-backup-1-15-2024-1-bundle.tar.gz',
            'testing-backup-1-15-2024-2-bundle.tar.gz',
            'testing-backup-1-15-2024-3-bundle.tar.gz',
        ]

    def test_local_retention(self, tmp_path, spec, tools):
        os.makedirs(spec.backup_directory)
        old = os.path.join(spec.backup_directory, 'testing-backup-1-1-2024-1-bundle.tar.gz')
        with open(old, 'w') as f:
            f.write('old')

        report = BackupExecutor(
            spec, str(tmp_path / 'temp'),
            local_retention=RetentionPolicy.from_string('7d'),
            runner=tools, today=TODAY
        ).execute()

        assert report.status == 'success'
        assert report.local_retention.deleted == [os.path.basename(old)]
        assert not os.path.exists(old)


class TestFailures:
    """Failures before and after the bundle exists."""

    def test_stale_workspace(self, tmp_path, spec, tools):
        temp_root = tmp_path / 'temp'
        stale = workspace_path(str(temp_root), spec.name)
        os.makedirs(stale)

        report = BackupExecutor(spec, str(temp_root), runner=tools, today=TODAY).execute()

        assert report.status == 'failed'
        assert report.error_code == 'stale_workspace'
        assert stale in report.error_message
        # Left alone for inspection
        assert os.path.isdir(stale)
        assert tools.calls == []

    def test_tool_missing(self, tmp_path, spec, tools):
        tools.missing_programs.add('gzip')

        report = BackupExecutor(spec, str(tmp_path / 'temp'), runner=tools, today=TODAY).execute()

        assert report.status == 'failed'
        assert report.error_code == 'tool_missing'
        assert 'gzip command does not exist' in report.error_message
        assert not os.path.exists(workspace_path(str(tmp_path / 'temp'), spec.name))
        assert tools.calls == []

    def test_invalid_spec(self, tmp_path, tools):
        spec = BackupSpec(name='x', sources=['/a'], backup_directory=str(tmp_path), format='tar.zst',
                          compression_level=30)

        report = BackupExecutor(spec, str(tmp_path / 'temp'), runner=tools, today=TODAY).execute()

        assert report.status == 'failed'
        assert report.error_code == 'configuration'
        assert tools.calls == []

    def test_remote_retention_needs_target(self, tmp_path, spec, tools):
        report = BackupExecutor(
            spec, str(tmp_path / 'temp'),
            remote_retention=RetentionPolicy.from_string('7d'),
            runner=tools, today=TODAY
        ).execute()

        assert report.error_code == 'configuration'

    def test_backup_directory_is_a_file(self, tmp_path, temp_files, tools):
        blocker = tmp_path / 'backups'
        blocker.write_text('not a directory')
        spec = BackupSpec(name='testing-backup', sources=[str(temp_files)], backup_directory=str(blocker))

        executor = BackupExecutor(spec, str(tmp_path / 'temp'), runner=tools, today=TODAY)
        report = executor.execute()

        assert report.status == 'failed'
        assert report.error_code == 'storage'
        assert str(blocker) in report.error_message
        assert not os.path.exists(executor.workspace)
        assert tools.calls == []

    def test_temp_root_is_a_file(self, tmp_path, spec, tools):
        temp_root = tmp_path / 'temp'
        temp_root.write_text('not a directory')

        report = BackupExecutor(spec, str(temp_root), runner=tools, today=TODAY).execute()

        assert report.status == 'failed'
        assert report.error_code == 'storage'
        assert temp_root.read_text() == 'not a directory'

    def test_override_program_missing(self, tmp_path, temp_files, tools):
        tools.missing_programs.add('pigz')
        spec = BackupSpec(
            name='testing-backup',
            sources=[str(temp_files)],
            backup_directory=str(tmp_path / 'backups'),
            compressor_override='pigz -9'
        )

        executor = BackupExecutor(spec, str(tmp_path / 'temp'), runner=tools, today=TODAY)
        report = executor.execute()

        assert report.error_code == 'tool_missing'
        assert 'pigz' in report.error_message
        assert not os.path.exists(executor.workspace)
        assert tools.calls == []

    def test_archive_failure_cleans_workspace(self, tmp_path, spec, tools):
        tools.results['tar'] = CommandResult(status=2, stderr='tar: Cannot open: Permission denied')

        executor = BackupExecutor(spec, str(tmp_path / 'temp'), runner=tools, today=TODAY)
        report = executor.execute()

        assert report.status == 'failed'
        assert report.error_code == 'archive_failure'
        assert 'Permission denied' in report.error_message
        assert not os.path.exists(executor.workspace)


class TestRemoteUpload:
    """Upload, confirmation gate and remote retention."""

    def test_upload(self, tmp_path, spec, tools, target, storage_factory, remote_storage):
        report = BackupExecutor(
            spec, str(tmp_path / 'temp'),
            remote_target=target,
            runner=tools,
            chunk_size=1024,
            connect_timeout=5,
            storage_factory=storage_factory,
            today=TODAY
        ).execute()

        assert report.status == 'success'
        assert report.uploaded
        assert report.remote_path == remote_storage.upload.return_value
        storage_factory.assert_called_once_with(target, chunk_size=1024, timeout=5, verify_timeout=None)
        remote_storage.upload.assert_called_once_with(report.bundle.file_path, DIGEST, None)

    def test_declined_upload(self, tmp_path, spec, tools, target, storage_factory):
        seen = []

        def decline(bundle):
            seen.append(bundle.file_name)
            return False

        report = BackupExecutor(
            spec, str(tmp_path / 'temp'),
            remote_target=target,
            remote_retention=RetentionPolicy.from_string('7d'),
            confirm_upload=decline,
            runner=tools,
            storage_factory=storage_factory,
            today=TODAY
        ).execute()

        assert seen == ['testing-backup-1-15-2024-1-bundle.tar.gz']
        assert report.status == 'success'
        assert report.upload_skipped
        assert report.remote_retention is None
        storage_factory.assert_not_called()

    def test_upload_failure_is_partial(self, tmp_path, spec, tools, target, storage_factory, remote_storage):
        remote_storage.upload.side_effect = TransferError('Connection lost')

        report = BackupExecutor(
            spec, str(tmp_path / 'temp'),
            remote_target=target,
            delete_after_upload=True,
            runner=tools,
            storage_factory=storage_factory,
            today=TODAY
        ).execute()

        assert report.status == 'partial'
        assert report.error_code == 'transfer_failure'
        assert not report.uploaded
        # The bundle is the only good copy, keep it
        assert os.path.exists(report.bundle.file_path)

    def test_delete_after_upload(self, tmp_path, spec, tools, target, storage_factory):
        report = BackupExecutor(
            spec, str(tmp_path / 'temp'),
            remote_target=target,
            delete_after_upload=True,
            runner=tools,
            storage_factory=storage_factory,
            today=TODAY
        ).execute()

        assert report.status == 'success'
        assert report.local_bundle_deleted
        assert not os.path.exists(report.bundle.file_path)

    def test_remote_retention(self, tmp_path, spec, tools, target, storage_factory, remote_storage):
        remote_storage.list_files.return_value = [
            'testing-backup-1-1-2024-1-bundle.tar.gz',
            'testing-backup-1-15-2024-1-bundle.tar.gz',
        ]

        report = BackupExecutor(
            spec, str(tmp_path / 'temp'),
            remote_target=target,
            remote_retention=RetentionPolicy.from_string('1w'),
            runner=tools,
            storage_factory=storage_factory,
            today=TODAY
        ).execute()

        assert report.status == 'success'
        remote_storage.delete.assert_called_once_with('testing-backup-1-1-2024-1-bundle.tar.gz')
        assert report.remote_retention.kept == ['testing-backup-1-15-2024-1-bundle.tar.gz']

    def test_remote_listing_failure_is_partial(self, tmp_path, spec, tools, target, storage_factory,
                                               remote_storage):
        remote_storage.list_files.side_effect = StorageError('listing failed')

        report = BackupExecutor(
            spec, str(tmp_path / 'temp'),
            remote_target=target,
            remote_retention=RetentionPolicy.from_string('1w'),
            runner=tools,
            storage_factory=storage_factory,
            today=TODAY
        ).execute()

        assert report.status == 'partial'
        assert report.uploaded
        assert report.error_code is None
        assert any('listing failed' in warning for warning in report.warnings)


@requires_tar_gzip
def test_end_to_end_local_backup(tmp_path, temp_files):
    spec = BackupSpec(
        name='testing-backup',
        sources=[temp_files.name],
        backup_directory=str(tmp_path / 'backups'),
        exclude_patterns=['*.pyc'],
        source_root=str(temp_files.parent)
    )

    report = BackupExecutor(spec, str(tmp_path / 'temp')).execute()

    assert report.status == 'success', report.error_message
    with tarfile.open(report.bundle.file_path, 'r:gz') as bundle:
        members = sorted(bundle.getnames())
    today = date.today()
    stamp = f"{today.month}-{today.day}-{today.year}"
    assert members == [f'testing-backup-{stamp}.tar.gz', f'testing-backup-{stamp}_hash.txt']
    assert os.listdir(tmp_path / 'temp') == []
