"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Check that the archiver, compressor and sha256sum exist
2. Refuse to run if a previous run left its temp workspace behind
3. Create the payload archive inside the workspace
4. Hash it and combine payload + hash file into the bundle
5. Prune local backups (if a local policy is set)
6. Ask for confirmation before any network transfer (if a gate is set)
7. Upload the bundle over SFTP and verify it remotely
8. Prune remote backups (if a remote policy is set)
9. Delete the local bundle (if requested after a verified upload)
10. Remove the temp workspace
"""

import logging
import os
import shutil
from datetime import date, datetime, timezone
from typing import Callable, Optional

from .bundle import BundleAssembler, payload_file_name
from .commands import CommandRunner
from .compression import create_archive
from .errors import BackupError, ConfigurationError, StaleWorkspaceError, StorageError, ToolMissingError
from .retention import RetentionManager
from .storage import DEFAULT_CHUNK_SIZE, LocalStorage, SFTPStorage, ProgressCallback
from .types import BackupReport, BackupSpec, BundleResult, RemoteTarget, RetentionPolicy

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = 'bundlevault-'


def workspace_path(temp_root: str, name: str) -> str:
    """
    Temp workspace for a backup name.

    The path is stable across runs on purpose: finding it at startup means
    the previous run for this name never reached its cleanup.
    """
    return os.path.join(temp_root, f"{WORKSPACE_PREFIX}{name}")


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one BackupSpec.
    """

    def __init__(
        self,
        spec: BackupSpec,
        temp_root: str,
        local_retention: Optional[RetentionPolicy] = None,
        remote_target: Optional[RemoteTarget] = None,
        remote_retention: Optional[RetentionPolicy] = None,
        delete_after_upload: bool = False,
        confirm_upload: Optional[Callable[[BundleResult], bool]] = None,
        progress: Optional[ProgressCallback] = None,
        runner: Optional[CommandRunner] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        connect_timeout: int = 30,
        verify_timeout: Optional[float] = None,
        storage_factory=SFTPStorage,
        today: Optional[date] = None
    ):
        """
        Initialize backup executor.

        Args:
            spec: What to back up and where
            temp_root: Parent directory of the instance temp workspace
            local_retention: Policy applied to spec.backup_directory
            remote_target: SFTP destination; no upload when None
            remote_retention: Policy applied to remote_target.remote_dir
            delete_after_upload: Remove the local bundle after a verified upload
            confirm_upload: Called with the bundle before any network transfer;
                returning False skips upload and remote retention
            progress: Upload progress callback (bytes_sent, total_bytes)
            runner: CommandRunner for all external programs
            chunk_size: SFTP upload chunk size in bytes
            connect_timeout: SSH connect timeout in seconds
            verify_timeout: Limit for the remote digest command (None: no limit)
            storage_factory: Builds the SFTP storage handler from a RemoteTarget
            today: Date stamped into file names and used by retention
        """
        self.spec = spec
        self.temp_root = temp_root
        self.local_retention = local_retention
        self.remote_target = remote_target
        self.remote_retention = remote_retention
        self.delete_after_upload = delete_after_upload
        self.confirm_upload = confirm_upload
        self.progress = progress
        self.runner = runner or CommandRunner()
        self.chunk_size = chunk_size
        self.connect_timeout = connect_timeout
        self.verify_timeout = verify_timeout
        self.storage_factory = storage_factory
        self.today = today or date.today()

        self.workspace = workspace_path(temp_root, spec.name)
        self.report = None
        self.logs = []
        self._owns_workspace = False
        self._degraded = False

    def execute(self) -> BackupReport:
        """
        Execute the backup.

        Backup errors never escape; they are recorded on the returned report.

        Returns:
            BackupReport describing what happened
        """
        self.report = BackupReport()
        self._log(f"Starting backup: {self.spec.name}")

        try:
            self._execute_workflow()
        except BackupError as e:
            self.report.error_code = e.code
            self.report.error_message = str(e)
            self._log(f"Backup failed ({e.code}): {e}", level=logging.ERROR)
        finally:
            self._cleanup()

        if self.report.bundle is None:
            self.report.status = 'failed'
        elif self.report.error_code or self._degraded:
            self.report.status = 'partial'
        else:
            self.report.status = 'success'

        self._log(f"Backup finished with status: {self.report.status}")
        self.report.logs = list(self.logs)
        return self.report

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Validate settings and required tools before touching anything
        self._validate()
        self._check_tools()

        # Step 2: Claim the workspace
        self._create_workspace()

        # Step 3: Create the payload archive
        payload_path = os.path.join(
            self.workspace,
            payload_file_name(self.spec.name, self.today, self.spec.format)
        )
        self._log(f"Creating archive (format: {self.spec.format.value})")
        create_archive(self.spec, payload_path, self.runner)
        self._log(f"Archive created: {os.path.basename(payload_path)}")

        # Step 4: Hash and bundle
        assembler = BundleAssembler(self.spec, self.workspace, self.runner, self.today)
        bundle = assembler.assemble(payload_path)
        self.report.bundle = bundle
        self._log(
            f"Bundle created: {bundle.file_path} "
            f"({bundle.size_bytes / 1024 / 1024:.2f} MB, sha256 {bundle.sha256_hash})"
        )

        # Step 5: Local retention
        if self.local_retention is not None:
            self.report.local_retention = self._prune(LocalStorage(self.spec.backup_directory), self.local_retention)
        else:
            self._log("Local retention not configured, skipping")

        if self.remote_target is None:
            self._log("No remote target configured, skipping upload")
            return

        # Step 6: Confirmation gate
        if self.confirm_upload is not None and not self.confirm_upload(bundle):
            self.report.upload_skipped = True
            self._log("Upload declined, skipping transfer and remote retention")
            return

        # Steps 7-9
        self._upload_and_prune(bundle)

    def _validate(self):
        self.spec.validate()

        if self.remote_retention is not None and self.remote_target is None:
            raise ConfigurationError("Remote retention requires a remote target")

        if self.delete_after_upload and self.remote_target is None:
            raise ConfigurationError("delete_after_upload requires a remote target")

    def _check_tools(self):
        """
        Raises:
            ToolMissingError: For the first required program that is missing
        """
        missing = self.runner.missing(self.spec.required_tools())
        if missing:
            self._log(f"Missing required programs: {', '.join(missing)}", level=logging.ERROR)
            raise ToolMissingError(missing[0])

    def _create_workspace(self):
        """
        Raises:
            StaleWorkspaceError: If the workspace already exists
            StorageError: If the workspace or backup directory cannot be created
        """
        if os.path.exists(self.workspace):
            raise StaleWorkspaceError(self.workspace)

        try:
            os.makedirs(self.temp_root, exist_ok=True)
            os.makedirs(self.workspace)
        except OSError as e:
            raise StorageError(f"Failed to create temporary workspace {self.workspace}: {e}")
        self._owns_workspace = True
        self._log(f"Temporary workspace: {self.workspace}")

        if not os.path.isdir(self.spec.backup_directory):
            try:
                os.makedirs(self.spec.backup_directory, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to create backup directory {self.spec.backup_directory}: {e}")
            self._log(f"The backup directory did not exist, so it was created at {self.spec.backup_directory}")

    def _prune(self, storage, policy: RetentionPolicy):
        """Run retention on one location; listing failures degrade the run."""
        manager = RetentionManager(self.spec.name, policy, self.today)
        try:
            summary = manager.prune(storage)
        except StorageError as e:
            self._degraded = True
            self.report.warnings.append(f"Retention on {storage.location} failed: {e}")
            self._log(f"Retention on {storage.location} failed: {e}", level=logging.WARNING)
            return None
        finally:
            self.logs.extend(manager.logs)

        self.report.warnings.extend(summary.errors)
        return summary

    def _upload_and_prune(self, bundle: BundleResult):
        """
        Raises:
            AuthenticationError, ConnectError, TransferError,
            IntegrityMismatchError, HashError: Upload failures
        """
        storage = self.storage_factory(
            self.remote_target,
            chunk_size=self.chunk_size,
            timeout=self.connect_timeout,
            verify_timeout=self.verify_timeout
        )

        self._log(f"Uploading {bundle.file_name} to {self.remote_target}")
        with storage:
            self.report.remote_path = storage.upload(bundle.file_path, bundle.sha256_hash, self.progress)
            self.report.uploaded = True
            self._log(f"Uploaded and verified: {self.report.remote_path}")

            if self.remote_retention is not None:
                self.report.remote_retention = self._prune(storage, self.remote_retention)
            else:
                self._log("Remote retention not configured, skipping")

        if self.delete_after_upload:
            try:
                os.remove(bundle.file_path)
            except OSError as e:
                self._degraded = True
                self.report.warnings.append(f"Failed to delete local bundle: {e}")
                self._log(f"Failed to delete local bundle {bundle.file_path}: {e}", level=logging.WARNING)
                return
            self.report.local_bundle_deleted = True
            self._log(f"Deleted local bundle after upload: {bundle.file_path}")

    def _cleanup(self):
        """Remove the temp workspace if this run created it."""
        if self._owns_workspace and os.path.exists(self.workspace):
            try:
                shutil.rmtree(self.workspace)
                self._log("Cleaned up temporary workspace")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp workspace: {e}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
