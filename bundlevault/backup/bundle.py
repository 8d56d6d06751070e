"""
Bundle assembly: payload archive + hash sidecar combined into one file.

Bundle names look like ``<name>-<M-D-YYYY>-<seq>-bundle.<ext>`` where
``seq`` counts same-day bundles of the same name, starting at 1.
"""

import logging
import os
import re
import shutil
from datetime import date
from pathlib import Path
from typing import Optional

from .commands import CommandRunner
from .compression import combine_archive, get_archive_size
from .errors import ArchiveError, HashError, NamingCollisionError, StorageError
from .hashing import sha256, sha256_with_output
from .types import BackupFormat, BackupSpec, BundleResult, format_backup_date

logger = logging.getLogger(__name__)


def payload_file_name(name: str, day: date, backup_format: BackupFormat) -> str:
    return f"{name}-{format_backup_date(day)}.{backup_format.extension}"


def hash_file_name(name: str, day: date) -> str:
    return f"{name}-{format_backup_date(day)}_hash.txt"


def bundle_file_name(name: str, day: date, sequence: int, backup_format: BackupFormat) -> str:
    return f"{name}-{format_backup_date(day)}-{sequence}-bundle.{backup_format.extension}"


def next_sequence_number(backup_directory: str, name: str, day: date) -> int:
    """
    Return 1 + the number of bundles already made for this name and day.

    Args:
        backup_directory: Directory holding finished bundles
        name: Backup name
        day: Calendar day embedded in the bundle name
    """
    directory = Path(backup_directory)
    if not directory.exists():
        return 1

    pattern = re.compile(
        rf"^{re.escape(name)}-{re.escape(format_backup_date(day))}-\d+-bundle\."
    )
    count = sum(
        1 for entry in directory.iterdir()
        if entry.is_file() and pattern.match(entry.name)
    )
    return count + 1


class BundleAssembler:
    """
    Combines a payload archive and its hash file into the final bundle.
    """

    def __init__(
        self,
        spec: BackupSpec,
        workspace: str,
        runner: Optional[CommandRunner] = None,
        today: Optional[date] = None
    ):
        """
        Initialize bundle assembler.

        Args:
            spec: Backup settings (name, backup_directory, format)
            workspace: Instance temp directory holding the payload
            runner: CommandRunner for archiver and digest calls
            today: Date stamped into file names (defaults to the local date)
        """
        self.spec = spec
        self.workspace = workspace
        self.runner = runner or CommandRunner()
        self.today = today or date.today()

    def write_hash_file(self, payload_path: str) -> str:
        """
        Hash the payload and write the digest tool's output next to it.

        Returns:
            Path to the hash sidecar

        Raises:
            HashError: If hashing fails
            ArchiveError: If the sidecar cannot be written
        """
        digest, raw_output = sha256_with_output(payload_path, self.runner)
        hash_path = os.path.join(self.workspace, hash_file_name(self.spec.name, self.today))

        try:
            with open(hash_path, 'w') as f:
                f.write(raw_output)
        except OSError as e:
            raise ArchiveError(f"Failed to write hash file {hash_path}: {e}")

        logger.info("Payload sha256: %s", digest)
        return hash_path

    def bundle_path(self) -> str:
        """
        Compute the next free bundle path.

        Raises:
            NamingCollisionError: If the computed name already exists
            StorageError: If the backup directory cannot be read
        """
        try:
            sequence = next_sequence_number(self.spec.backup_directory, self.spec.name, self.today)
        except OSError as e:
            raise StorageError(f"Failed to list {self.spec.backup_directory}: {e}")
        file_name = bundle_file_name(self.spec.name, self.today, sequence, self.spec.format)
        path = os.path.join(self.spec.backup_directory, file_name)

        if os.path.exists(path):
            raise NamingCollisionError(
                f"Bundle {file_name} already exists in {self.spec.backup_directory}; "
                f"refusing to overwrite it"
            )

        return path

    def assemble(self, payload_path: str) -> BundleResult:
        """
        Build the bundle from a payload archive.

        Args:
            payload_path: Archive produced by create_archive inside the workspace

        Returns:
            BundleResult for the new bundle

        Raises:
            HashError: If hashing the payload or bundle fails (the bundle is removed)
            StorageError: If the backup directory cannot be read
            NamingCollisionError: If the bundle name is already taken
            ArchiveError: If the archiver fails
        """
        hash_path = self.write_hash_file(payload_path)
        target = self.bundle_path()

        combine_archive(
            self.spec.format,
            target,
            self.workspace,
            [os.path.basename(payload_path), os.path.basename(hash_path)],
            self.runner
        )

        # Intermediate files are inside the bundle now
        try:
            shutil.rmtree(self.workspace)
        except OSError as e:
            logger.warning("Failed to remove intermediate files in %s: %s", self.workspace, e)

        try:
            bundle_hash = sha256(target, self.runner)
            size_bytes = get_archive_size(target)
        except (HashError, ArchiveError):
            # An unhashed bundle cannot be verified or recorded
            if os.path.exists(target):
                os.remove(target)
            raise

        return BundleResult(
            file_name=os.path.basename(target),
            file_path=target,
            sha256_hash=bundle_hash,
            size_bytes=size_bytes
        )
