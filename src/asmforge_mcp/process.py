"""Spawning of external tools (assemblers, linker, debugger)."""

import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int


class ProcessRunner:
    """
    Runs external executables with an argument vector.

    Spawn failures are not caught here: ``run`` and ``spawn`` raise ``OSError``
    (e.g. FileNotFoundError for a missing tool) and callers decide how to
    report it.
    """

    def run(
        self,
        executable: str,
        args: List[str],
        cwd: Optional[str] = None,
        timeout_sec: Optional[float] = None,
    ) -> ProcessResult:
        """
        Run a tool to completion and capture its output.

        Args:
            executable: Program name or path
            args: Arguments (no shell interpretation)
            cwd: Working directory
            timeout_sec: Kill the tool after this many seconds (None waits forever)

        Returns:
            ProcessResult with decoded stdout/stderr and the exit code
        """
        command = [executable, *args]
        logger.debug(f"Running: {' '.join(command)}")
        completed = subprocess.run(
            command,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout_sec,
        )
        logger.debug(f"{executable} exited with code {completed.returncode}")
        return ProcessResult(
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
        )

    def spawn(
        self, executable: str, args: List[str], cwd: Optional[str] = None
    ) -> subprocess.Popen:
        """Start a long-lived tool with unbuffered binary pipes on all standard streams."""
        command = [executable, *args]
        logger.info(f"Spawning: {' '.join(command)}")
        return subprocess.Popen(
            command,
            cwd=cwd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
