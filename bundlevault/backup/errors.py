"""
Error hierarchy for backup operations.

Every error carries a stable ``code`` that the executor uses to tag
failed or partial run reports.
"""


class BackupError(Exception):
    """Base exception for backup related failures."""
    code = 'backup_error'


class ConfigurationError(BackupError):
    """Raised when a backup, retention or remote target setting is invalid."""
    code = 'configuration'


class ToolMissingError(BackupError):
    """Raised when a required external program is not installed."""
    code = 'tool_missing'

    def __init__(self, program: str):
        self.program = program
        super().__init__(
            f"The {program} command does not exist. Please install it and try again."
        )


class StaleWorkspaceError(BackupError):
    """Raised when a previous run left its temp workspace behind."""
    code = 'stale_workspace'

    def __init__(self, workspace: str):
        self.workspace = workspace
        super().__init__(
            f"Temporary workspace {workspace} already exists. A previous backup "
            f"probably crashed while archiving. Inspect it and delete it manually "
            f"before running this backup again."
        )


class CommandError(BackupError):
    """Raised when an external command exits with a non-zero status."""
    code = 'command_failure'

    def __init__(self, message: str, stderr: str = ''):
        self.stderr = stderr
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class ArchiveError(CommandError):
    """Raised when archive or bundle creation fails."""
    code = 'archive_failure'


class HashError(CommandError):
    """Raised when computing a digest fails."""
    code = 'hash_failure'


class NamingCollisionError(BackupError):
    """Raised when the computed bundle name already exists on disk."""
    code = 'naming_collision'


class StorageError(BackupError):
    """Raised when a storage location cannot be listed or prepared."""
    code = 'storage'


class AuthenticationError(StorageError):
    """Raised when SFTP credentials are unusable or rejected."""
    code = 'auth_failure'


class ConnectError(StorageError):
    """Raised when the SFTP host cannot be reached."""
    code = 'connect_failure'


class TransferError(StorageError):
    """Raised when an upload fails part way through."""
    code = 'transfer_failure'


class IntegrityMismatchError(StorageError):
    """Raised when the uploaded file's digest differs from the local one."""
    code = 'integrity_mismatch'

    def __init__(self, remote_path: str, local_hash: str, remote_hash: str):
        self.remote_path = remote_path
        self.local_hash = local_hash
        self.remote_hash = remote_hash
        super().__init__(
            f"Hash mismatch after uploading {remote_path}: "
            f"local={local_hash} remote={remote_hash}"
        )


class RetentionDeleteError(StorageError):
    """Raised when a single backup file cannot be deleted."""
    code = 'retention_delete'


__all__ = [
    'BackupError',
    'ConfigurationError',
    'ToolMissingError',
    'StaleWorkspaceError',
    'CommandError',
    'ArchiveError',
    'HashError',
    'NamingCollisionError',
    'StorageError',
    'AuthenticationError',
    'ConnectError',
    'TransferError',
    'IntegrityMismatchError',
    'RetentionDeleteError',
]
