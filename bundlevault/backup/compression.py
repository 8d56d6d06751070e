"""
Archive creation through the system archivers.

Supports:
- tar.gz: tar with gzip (plain -czf, or -I "gzip -<level>")
- tar.zst: tar with zstd (--zstd, or -I "zstd [--ultra] -<level>")
- zip: Info-ZIP zip, with an optional leading -<level>
"""

import os
from typing import List, Optional, Sequence

from .commands import CommandRunner
from .errors import ArchiveError
from .types import BackupFormat, BackupSpec

# zstd refuses levels above 19 unless --ultra is given
ZSTD_ULTRA_THRESHOLD = 20


def compressor_program(
    backup_format: BackupFormat,
    compression_level: Optional[int] = None,
    compressor_override: Optional[str] = None
) -> Optional[str]:
    """
    Build the value for tar's -I option, if the defaults are not enough.

    Returns:
        Compressor command line, or None to use tar's built-in flag
    """
    if compressor_override:
        return compressor_override

    if compression_level is None:
        return None

    if backup_format is BackupFormat.TAR_ZST:
        if compression_level >= ZSTD_ULTRA_THRESHOLD:
            return f"zstd --ultra -{compression_level}"
        return f"zstd -{compression_level}"

    return f"gzip -{compression_level}"


def build_tar_args(
    backup_format: BackupFormat,
    output_path: str,
    members: Sequence[str],
    exclude_patterns: Sequence[str] = (),
    compression_level: Optional[int] = None,
    compressor_override: Optional[str] = None,
    directory: Optional[str] = None
) -> List[str]:
    """
    Build tar arguments for a compressed archive.

    Args:
        backup_format: TAR_GZ or TAR_ZST
        output_path: Archive to create
        members: Paths to add, in order
        exclude_patterns: Each becomes one --exclude=<pattern>
        compression_level: Explicit level, routed through -I
        compressor_override: Full -I value, used as given
        directory: If set, tar changes into it first (-C) so only relative
            member names end up in the archive

    Returns:
        Argument list (without the program name)
    """
    args = [f"--exclude={pattern}" for pattern in exclude_patterns]

    program = compressor_program(backup_format, compression_level, compressor_override)
    if program:
        args += ['-I', program, '-cf', output_path]
    elif backup_format is BackupFormat.TAR_ZST:
        args += ['--zstd', '-cf', output_path]
    else:
        args += ['-czf', output_path]

    if directory:
        args += ['-C', directory]

    args += list(members)
    return args


def build_zip_args(
    output_path: str,
    members: Sequence[str],
    exclude_patterns: Sequence[str] = (),
    compression_level: Optional[int] = None
) -> List[str]:
    """
    Build zip arguments.

    The level goes first, members are added recursively and every exclude
    pattern is appended after the members as ``-x <pattern>``.
    """
    args = []
    if compression_level is not None:
        args.append(f"-{compression_level}")

    args += ['-r', output_path]
    args += list(members)

    for pattern in exclude_patterns:
        args += ['-x', pattern]

    return args


def create_archive(
    spec: BackupSpec,
    output_path: str,
    runner: Optional[CommandRunner] = None
) -> str:
    """
    Create the payload archive for a backup.

    Every source is passed to the archiver as its own argument, so several
    directories end up side by side in one archive.

    Args:
        spec: Backup settings (sources, format, excludes, level)
        output_path: Full path of the archive to create
        runner: CommandRunner to use (a default one is created if omitted)

    Returns:
        Path to the created archive

    Raises:
        ConfigurationError: If the BackupSpec is invalid (checked before running anything)
        ArchiveError: If the archiver cannot start or exits with a non-zero status
    """
    spec.validate()
    runner = runner or CommandRunner()
    output_path = os.path.abspath(output_path)

    if spec.format is BackupFormat.ZIP:
        args = build_zip_args(
            output_path,
            spec.sources,
            spec.exclude_patterns,
            spec.compression_level
        )
    else:
        args = build_tar_args(
            spec.format,
            output_path,
            spec.sources,
            spec.exclude_patterns,
            spec.compression_level,
            spec.compressor_override
        )

    try:
        result = runner.run(spec.format.archiver, args, cwd=spec.source_root, captured=True)
    except OSError as e:
        # e.g. source_root does not exist
        raise ArchiveError(f"Failed to start the archiver in {spec.source_root}: {e}")

    if not result.ok:
        # Clean up partial archive on failure
        if os.path.exists(output_path):
            os.remove(output_path)
        raise ArchiveError(
            f"Failed to create backup archive (exit {result.status})",
            result.stderr
        )

    return output_path


def combine_archive(
    backup_format: BackupFormat,
    output_path: str,
    directory: str,
    members: Sequence[str],
    runner: Optional[CommandRunner] = None
) -> str:
    """
    Archive files from one directory using only their base names.

    Used for bundles: the payload and its hash file are stored flat.

    Raises:
        ArchiveError: If the archiver exits with a non-zero status
    """
    runner = runner or CommandRunner()
    output_path = os.path.abspath(output_path)

    if backup_format is BackupFormat.ZIP:
        args = build_zip_args(output_path, members)
        result = runner.run('zip', args, cwd=directory, captured=True)
    else:
        args = build_tar_args(backup_format, output_path, members, directory=directory)
        result = runner.run('tar', args, captured=True)

    if not result.ok:
        if os.path.exists(output_path):
            os.remove(output_path)
        raise ArchiveError(
            f"Failed to create combined backup archive (exit {result.status})",
            result.stderr
        )

    return output_path


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}")
