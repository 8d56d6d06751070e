"""
Value types shared by the backup engine.

These are immutable and built once per run, either by the CLI or from a
stored BackupJob, then handed down explicitly to every component.
"""

import posixpath
import re
import shlex
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional, Tuple

from .errors import ConfigurationError


class BackupFormat(Enum):
    """Archive container and compressor for payloads and bundles."""

    TAR_GZ = 'tar.gz'
    TAR_ZST = 'tar.zst'
    ZIP = 'zip'

    @classmethod
    def from_string(cls, value: str) -> 'BackupFormat':
        normalized = (value or '').strip().lower()
        aliases = {'tgz': 'tar.gz', 'targz': 'tar.gz', 'gz': 'tar.gz', 'tarzst': 'tar.zst', 'zst': 'tar.zst'}
        normalized = aliases.get(normalized, normalized)
        for fmt in cls:
            if fmt.value == normalized:
                return fmt
        raise ConfigurationError(
            f"Invalid backup format: {value}. "
            f"Valid options: {[fmt.value for fmt in cls]}"
        )

    @property
    def extension(self) -> str:
        return self.value

    @property
    def archiver(self) -> str:
        return 'zip' if self is BackupFormat.ZIP else 'tar'

    @property
    def compressor(self) -> Optional[str]:
        """External compressor tar delegates to, if any."""
        return {
            BackupFormat.TAR_GZ: 'gzip',
            BackupFormat.TAR_ZST: 'zstd',
        }.get(self)

    @property
    def level_range(self) -> Tuple[int, int]:
        if self is BackupFormat.TAR_ZST:
            return 1, 22
        return 1, 9

    def required_tools(self) -> Tuple[str, ...]:
        """Programs that must exist before a backup in this format starts."""
        tools = [self.archiver]
        if self.compressor:
            tools.append(self.compressor)
        tools.append('sha256sum')
        return tuple(tools)


def format_backup_date(day: date) -> str:
    """Render the M-D-YYYY token embedded in backup file names."""
    return f"{day.month}-{day.day}-{day.year}"


@dataclass(frozen=True)
class BackupSpec:
    """What to back up, where to put it and how to compress it."""

    name: str
    sources: Tuple[str, ...]
    backup_directory: str
    format: BackupFormat = BackupFormat.TAR_GZ
    exclude_patterns: Tuple[str, ...] = ()
    compression_level: Optional[int] = None
    compressor_override: Optional[str] = None
    source_root: Optional[str] = None

    def __post_init__(self):
        # Accept any iterable for the list fields but store tuples
        if isinstance(self.sources, str):
            object.__setattr__(self, 'sources', (self.sources,))
        object.__setattr__(self, 'sources', tuple(self.sources or ()))
        object.__setattr__(self, 'exclude_patterns', tuple(self.exclude_patterns or ()))
        if isinstance(self.format, str):
            object.__setattr__(self, 'format', BackupFormat.from_string(self.format))

    def validate(self):
        """
        Check the fields without touching the filesystem or spawning processes.

        Raises:
            ConfigurationError: If any setting is invalid
        """
        if not self.name or not self.name.strip():
            raise ConfigurationError("Backup name is required")

        if '/' in self.name or self.name.startswith('.'):
            raise ConfigurationError(f"Invalid backup name: {self.name}")

        if not self.sources:
            raise ConfigurationError("No source paths provided")

        if not self.backup_directory:
            raise ConfigurationError("Backup directory is required")

        if self.compression_level is not None and self.compressor_override:
            raise ConfigurationError(
                "Compression level and compressor override are mutually exclusive"
            )

        if self.compression_level is not None:
            low, high = self.format.level_range
            if not low <= self.compression_level <= high:
                raise ConfigurationError(
                    f"Compression level {self.compression_level} is out of range for "
                    f"{self.format.value} (valid: {low}-{high})"
                )

        if self.compressor_override and self.format is BackupFormat.ZIP:
            raise ConfigurationError("Compressor override is only supported for tar formats")

        if self.compressor_override:
            try:
                words = shlex.split(self.compressor_override)
            except ValueError as e:
                raise ConfigurationError(f"Invalid compressor override {self.compressor_override!r}: {e}")
            if not words:
                raise ConfigurationError("Compressor override is empty")

    def required_tools(self) -> Tuple[str, ...]:
        """
        Programs that must exist before this backup starts.

        The bundle is always written with the format's default compressor,
        so an override program is checked in addition to it.
        """
        tools = list(self.format.required_tools())
        if self.compressor_override:
            program = shlex.split(self.compressor_override)[0]
            if program not in tools:
                tools.insert(-1, program)
        return tuple(tools)


@dataclass(frozen=True)
class BundleResult:
    """The finished bundle handed back to the caller."""

    file_name: str
    file_path: str
    sha256_hash: str
    size_bytes: int = 0


_DURATION_PATTERN = re.compile(r'^(\d+)([dwm])$')
_UNIT_DAYS = {'d': 1, 'w': 7, 'm': 30}


@dataclass(frozen=True)
class RetentionPolicy:
    """Age limit for backups plus an optional floor of newest backups to keep."""

    amount: int
    unit: str
    keep_at_least: Optional[int] = None

    @classmethod
    def from_string(cls, expression: str, keep_at_least: Optional[int] = None) -> 'RetentionPolicy':
        """
        Parse a duration such as ``7d``, ``2w`` or ``1m``.

        Raises:
            ConfigurationError: If the expression or floor is invalid
        """
        match = _DURATION_PATTERN.match((expression or '').strip())
        if not match:
            raise ConfigurationError(
                f"Invalid retention duration: {expression!r} (expected e.g. 7d, 2w, 1m)"
            )

        if keep_at_least is not None and keep_at_least < 0:
            raise ConfigurationError("keep_at_least must not be negative")

        return cls(int(match.group(1)), match.group(2), keep_at_least)

    @property
    def threshold_days(self) -> int:
        return self.amount * _UNIT_DAYS[self.unit]

    def __str__(self):
        return f"{self.amount}{self.unit}"


@dataclass(frozen=True)
class RemoteTarget:
    """SFTP destination for bundle uploads and remote retention."""

    user: str
    host: str
    remote_dir: str
    port: Optional[int] = None
    key_file: Optional[str] = None

    @classmethod
    def parse(cls, target: str) -> 'RemoteTarget':
        """
        Parse ``user@host[:port] [key_file] remote_dir``.

        Raises:
            ConfigurationError: If the string does not match that shape
        """
        tokens = (target or '').split()
        if len(tokens) == 2:
            address, remote_dir = tokens
            key_file = None
        elif len(tokens) == 3:
            address, key_file, remote_dir = tokens
        else:
            raise ConfigurationError(
                f"Invalid SFTP target: {target!r} "
                f"(expected 'user@host[:port] [key_file] remote_dir')"
            )

        user, sep, host_port = address.partition('@')
        if not sep or not user or not host_port:
            raise ConfigurationError(f"Invalid SFTP address: {address!r} (expected user@host)")

        host, sep, port_text = host_port.partition(':')
        port = None
        if sep:
            if not port_text.isdigit() or not 0 < int(port_text) <= 65535:
                raise ConfigurationError(f"Invalid SFTP port: {port_text!r}")
            port = int(port_text)

        if not host:
            raise ConfigurationError(f"Invalid SFTP address: {address!r} (missing host)")

        return cls(user=user, host=host, remote_dir=remote_dir, port=port, key_file=key_file)

    def remote_path_for(self, file_name: str) -> str:
        return posixpath.join(self.remote_dir, file_name)

    def __str__(self):
        port = f":{self.port}" if self.port else ''
        return f"{self.user}@{self.host}{port}:{self.remote_dir}"


@dataclass
class RetentionSummary:
    """Outcome of one retention pass over one storage location."""

    location: str
    deleted: list = field(default_factory=list)
    kept: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    errors: list = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            'location': self.location,
            'deleted': list(self.deleted),
            'kept': list(self.kept),
            'skipped': list(self.skipped),
            'errors': list(self.errors),
        }


@dataclass
class BackupReport:
    """
    Result of one orchestrated run, returned instead of raising.

    status is 'failed' when no bundle exists, 'partial' when a bundle exists
    but a later step failed, and 'success' otherwise.
    """

    status: str = 'running'
    bundle: Optional[BundleResult] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    uploaded: bool = False
    remote_path: Optional[str] = None
    upload_skipped: bool = False
    local_retention: Optional[RetentionSummary] = None
    remote_retention: Optional[RetentionSummary] = None
    local_bundle_deleted: bool = False
    warnings: list = field(default_factory=list)
    logs: list = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'
