"""
SHA-256 digests via the system sha256sum utility.
"""

from typing import Optional, Tuple

from .commands import CommandRunner
from .errors import HashError


def parse_digest(output: str) -> str:
    """Return the first whitespace-delimited token of a digest tool's output."""
    tokens = output.split()
    if not tokens:
        raise HashError("Digest tool produced no output")
    return tokens[0]


def sha256_with_output(path: str, runner: Optional[CommandRunner] = None) -> Tuple[str, str]:
    """
    Compute the digest of a file.

    Returns:
        Tuple of (hex digest, raw stdout of the digest tool)

    Raises:
        HashError: If sha256sum fails or prints nothing
        ToolMissingError: If sha256sum is not installed
    """
    runner = runner or CommandRunner()
    result = runner.run('sha256sum', [path], captured=True)

    if not result.ok:
        raise HashError(f"Failed to compute hash of {path} (exit {result.status})", result.stderr)

    return parse_digest(result.stdout), result.stdout


def sha256(path: str, runner: Optional[CommandRunner] = None) -> str:
    """Compute the hex SHA-256 digest of a file."""
    digest, _ = sha256_with_output(path, runner)
    return digest


def verify_sha256(path: str, expected: str, runner: Optional[CommandRunner] = None) -> bool:
    """Check a previously produced file against a known digest."""
    return sha256(path, runner).lower() == expected.strip().lower()
