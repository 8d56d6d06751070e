"""
Storage handlers for backup bundles.

Supports:
- LocalStorage: The local backup directory
- SFTPStorage: A remote directory reached over SSH/SFTP

Both expose the same list_files()/delete() pair so retention runs the same
way against either location.
"""

import logging
import os
import posixpath
import shlex
import socket
import stat
from pathlib import Path
from typing import Callable, List, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .errors import (
    AuthenticationError,
    ConnectError,
    HashError,
    IntegrityMismatchError,
    RetentionDeleteError,
    StorageError,
    TransferError,
)
from .hashing import parse_digest
from .types import RemoteTarget

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024  # 4MB
DEFAULT_SSH_PORT = 22
REQUIRED_KEY_MODE = 0o600

ProgressCallback = Callable[[int, int], None]


class LocalStorage:
    """
    Handler for the local backup directory.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory holding finished bundles
        """
        self.base_path = Path(base_path)

    @property
    def location(self) -> str:
        return str(self.base_path)

    def list_files(self) -> List[str]:
        """
        List the names of regular files in the backup directory.

        Raises:
            StorageError: If the directory cannot be read
        """
        if not self.base_path.exists():
            return []

        try:
            return sorted(entry.name for entry in self.base_path.iterdir() if entry.is_file())
        except OSError as e:
            raise StorageError(f"Failed to list local files in {self.base_path}: {e}")

    def delete(self, file_name: str):
        """
        Delete one file from the backup directory.

        Raises:
            RetentionDeleteError: If deletion fails
        """
        full_path = self.base_path / file_name

        try:
            full_path.unlink()
        except PermissionError as e:
            raise RetentionDeleteError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise RetentionDeleteError(f"Failed to delete local file {full_path}: {e}")


def check_key_permissions(key_file: str):
    """
    Refuse private keys that are readable by anyone but the owner.

    Raises:
        AuthenticationError: If the key is missing or its mode is not 0600
        OSError: If the key's metadata cannot be read for another reason
    """
    key_path = Path(key_file).expanduser()

    try:
        mode = stat.S_IMODE(os.stat(key_path).st_mode)
    except FileNotFoundError:
        raise AuthenticationError(f"Private key not found: {key_file}")

    if mode != REQUIRED_KEY_MODE:
        raise AuthenticationError(
            f"Private key {key_file} has permissions {oct(mode)}; "
            f"it must be {oct(REQUIRED_KEY_MODE)} (chmod 600 {key_file})"
        )


class SFTPStorage:
    """
    Handler for uploading bundles to, and pruning them from, an SFTP server.

    Session states: disconnected -> authenticated -> session_open ->
    transferring -> verified | failed.
    """

    def __init__(
        self,
        target: RemoteTarget,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: int = 30,
        verify_timeout: Optional[float] = None
    ):
        """
        Initialize SFTP storage handler.

        Args:
            target: Remote user, host, port, key file and directory
            chunk_size: Bytes read and written per upload step
            timeout: SSH connect timeout in seconds
            verify_timeout: Seconds to wait for the remote digest; None waits as
                long as sha256sum needs to read the whole bundle
        """
        self.target = target
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.verify_timeout = verify_timeout

        self.ssh_client = None
        self.sftp_client = None
        self.state = 'disconnected'

    @property
    def location(self) -> str:
        return str(self.target)

    def connect(self):
        """
        Establish SSH connection and open an SFTP session.

        Key file permissions are checked before any network traffic.

        Raises:
            AuthenticationError: If the key is unusable or credentials are rejected
            ConnectError: If the host cannot be reached
        """
        if self.target.key_file:
            check_key_permissions(self.target.key_file)

        connect_kwargs = {
            'hostname': self.target.host,
            'port': self.target.port or DEFAULT_SSH_PORT,
            'username': self.target.user,
            'timeout': self.timeout
        }
        if self.target.key_file:
            connect_kwargs['key_filename'] = str(Path(self.target.key_file).expanduser())

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(**connect_kwargs)
            self.state = 'authenticated'

            self.sftp_client = self.ssh_client.open_sftp()
            self.state = 'session_open'

        except paramiko.AuthenticationException as e:
            self.close()
            raise AuthenticationError(f"SSH authentication failed for {self.location}: {e}")
        except paramiko.SSHException as e:
            self.close()
            raise ConnectError(f"SSH connection to {self.target.host} failed: {e}")
        except OSError as e:
            self.close()
            raise ConnectError(f"Failed to connect to {self.target.host}: {e}")

        logger.info("Connected to %s", self.location)

    def close(self):
        """Close SFTP session and SSH connection."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug("Ignoring error while closing SFTP session: %s", e)
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug("Ignoring error while closing SSH connection: %s", e)
            self.ssh_client = None

        if self.state not in ('verified', 'failed'):
            self.state = 'disconnected'

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _require_session(self):
        if self.sftp_client is None:
            raise StorageError("SFTP session is not open; call connect() first")

    def ensure_remote_dir(self):
        """
        Create the remote directory (and its parents) if missing.

        A failed mkdir is accepted only if the path turns out to be a
        directory already.

        Raises:
            TransferError: If a path component cannot be created
        """
        self._require_session()

        remote_dir = self.target.remote_dir.rstrip('/') or '/'
        parts = []
        head = remote_dir
        while head not in ('', '/', '.'):
            parts.append(head)
            head = posixpath.dirname(head)

        for path in reversed(parts):
            try:
                self.sftp_client.mkdir(path)
                logger.debug("Created remote directory %s", path)
            except IOError as e:
                try:
                    attrs = self.sftp_client.stat(path)
                except IOError:
                    raise TransferError(f"Failed to create remote directory {path}: {e}")
                if not stat.S_ISDIR(attrs.st_mode):
                    raise TransferError(f"Remote path {path} exists and is not a directory")

    def upload(
        self,
        local_path: str,
        expected_hash: str,
        progress: Optional[ProgressCallback] = None
    ) -> str:
        """
        Upload a bundle in fixed-size chunks and verify it remotely.

        There is no resume; a failed upload must be retried from scratch.

        Args:
            local_path: Bundle to upload
            expected_hash: Local sha256 of the bundle
            progress: Called as progress(bytes_sent, total_bytes) after each chunk

        Returns:
            Remote path of the uploaded file

        Raises:
            TransferError: If writing fails
            IntegrityMismatchError: If the remote digest differs from expected_hash
        """
        self._require_session()

        if not os.path.exists(local_path):
            raise TransferError(f"Local file not found: {local_path}")

        self.ensure_remote_dir()
        remote_path = self.target.remote_path_for(os.path.basename(local_path))

        self.state = 'transferring'
        try:
            self._transfer(local_path, remote_path, progress)
            self.verify(remote_path, expected_hash)
        except Exception:
            self.state = 'failed'
            raise

        self.state = 'verified'
        return remote_path

    def _transfer(self, local_path: str, remote_path: str, progress: Optional[ProgressCallback]):
        total = os.path.getsize(local_path)
        sent = 0

        try:
            with open(local_path, 'rb') as local_file, \
                    self.sftp_client.open(remote_path, 'wb') as remote_file:
                while True:
                    data = local_file.read(self.chunk_size)
                    if not data:
                        break

                    remote_file.write(data)
                    sent += len(data)

                    if progress:
                        progress(sent, total)

        except (IOError, paramiko.SSHException) as e:
            raise TransferError(f"Upload of {local_path} to {remote_path} failed: {e}")

        logger.info("Uploaded %s bytes to %s", sent, remote_path)

    def remote_sha256(self, remote_path: str) -> str:
        """
        Run sha256sum on the server.

        Raises:
            HashError: If the remote command fails or times out
            ConnectError: If the command cannot be started
        """
        command = f"sha256sum {shlex.quote(remote_path)}"

        try:
            _, stdout, stderr = self.ssh_client.exec_command(command, timeout=self.verify_timeout)
            output = stdout.read().decode('utf-8', 'replace')
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout:
            raise HashError(f"Remote hash of {remote_path} timed out after {self.verify_timeout}s")
        except (OSError, paramiko.SSHException) as e:
            raise ConnectError(f"Failed to run remote hash command: {e}")

        if exit_status != 0:
            raise HashError(
                f"Remote hash of {remote_path} failed (exit {exit_status})",
                stderr.read().decode('utf-8', 'replace')
            )

        return parse_digest(output)

    def verify(self, remote_path: str, expected_hash: str):
        """
        Compare the remote digest with the local one.

        Raises:
            IntegrityMismatchError: If they differ
        """
        remote_hash = self.remote_sha256(remote_path)
        if remote_hash != expected_hash:
            raise IntegrityMismatchError(remote_path, expected_hash, remote_hash)

        logger.info("Remote hash verified for %s", remote_path)

    def list_files(self) -> List[str]:
        """
        List file names in the remote directory.

        Raises:
            StorageError: If listing fails
        """
        self._require_session()

        try:
            return sorted(self.sftp_client.listdir(self.target.remote_dir))
        except IOError as e:
            raise StorageError(f"Failed to list remote directory {self.target.remote_dir}: {e}")

    def delete(self, file_name: str):
        """
        Delete one file from the remote directory.

        Raises:
            RetentionDeleteError: If deletion fails
        """
        self._require_session()
        remote_path = self.target.remote_path_for(file_name)

        try:
            self.sftp_client.remove(remote_path)
        except IOError as e:
            raise RetentionDeleteError(f"Failed to delete remote file {remote_path}: {e}")
