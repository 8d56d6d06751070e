"""
Thin wrapper around external programs (tar, zip, zstd, gzip, sha256sum).
"""

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import ToolMissingError

logger = logging.getLogger(__name__)

# zip has no --version; -v with no other arguments prints its banner
VERSION_FLAGS = {
    'zip': '-v',
}


@dataclass
class CommandResult:
    """Exit status and captured output of one command."""

    status: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.status == 0


class CommandRunner:
    """
    Runs external programs synchronously, one at a time.
    """

    def exists(self, program: str) -> bool:
        """
        Check whether a program is installed by running its version flag.

        Args:
            program: Program name looked up on PATH

        Returns:
            True if the version command exits with status 0
        """
        flag = VERSION_FLAGS.get(program, '--version')
        try:
            completed = subprocess.run(
                [program, flag],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False
            )
        except OSError:
            return False
        return completed.returncode == 0

    def missing(self, programs: Sequence[str]) -> List[str]:
        """Return the subset of programs that are not installed."""
        return [program for program in programs if not self.exists(program)]

    def run(
        self,
        program: str,
        args: Sequence[str],
        cwd: Optional[str] = None,
        captured: bool = True
    ) -> CommandResult:
        """
        Run a program and wait for it to finish.

        Args:
            program: Program name looked up on PATH
            args: Arguments passed verbatim (no shell)
            cwd: Working directory for the child process
            captured: Capture stdout/stderr instead of inheriting them

        Returns:
            CommandResult with status and decoded output

        Raises:
            ToolMissingError: If the program cannot be executed at all
        """
        cmd = [program] + [str(arg) for arg in args]
        logger.debug("Running: %s (cwd=%s)", ' '.join(shlex.quote(c) for c in cmd), cwd)

        try:
            if captured:
                completed = subprocess.run(
                    cmd,
                    cwd=cwd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    check=False
                )
                return CommandResult(
                    status=completed.returncode,
                    stdout=completed.stdout.decode('utf-8', 'replace'),
                    stderr=completed.stderr.decode('utf-8', 'replace')
                )

            completed = subprocess.run(cmd, cwd=cwd, check=False)
            return CommandResult(status=completed.returncode)

        except FileNotFoundError as e:
            # A missing cwd also surfaces as FileNotFoundError
            if cwd is not None and e.filename == cwd:
                raise
            raise ToolMissingError(program)
