"""
Backup engine for bundlevault.

This package handles:
- Running external archivers and digest tools
- Payload archive creation (tar.gz, tar.zst, zip)
- Bundling payload + hash sidecar
- SFTP upload with remote verification
- Date-based retention for local and remote backups
- Execution orchestration
"""

from .executor import BackupExecutor
from .commands import CommandRunner
from .compression import create_archive
from .bundle import BundleAssembler
from .storage import LocalStorage, SFTPStorage
from .retention import RetentionManager
from .types import BackupFormat, BackupReport, BackupSpec, BundleResult, RemoteTarget, RetentionPolicy

__all__ = [
    'BackupExecutor',
    'CommandRunner',
    'create_archive',
    'BundleAssembler',
    'LocalStorage',
    'SFTPStorage',
    'RetentionManager',
    'BackupFormat',
    'BackupReport',
    'BackupSpec',
    'BundleResult',
    'RemoteTarget',
    'RetentionPolicy',
]
