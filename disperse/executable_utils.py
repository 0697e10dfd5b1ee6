"""Executable discovery and invocation for Disperse.

Transform plugins and the WebP encoder are external programs, usually
installed with npm. They are looked up in the system PATH first and then in
the project's ``node_modules/.bin``.

Functions:
    find_executable: Locate an executable in PATH or node_modules.
    run_executable: Run a located executable and raise on failure.
"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path


class ExecutableError(Exception):
    """Error raised when an external program exits with a non-zero status.

    Attributes:
        command: The command line that was run.
        returncode: Exit status of the program.
        stderr: Captured standard error.
    """

    def __init__(self, command: Sequence[str], returncode: int, stderr: str):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        name = Path(self.command[0]).name if self.command else "?"
        super().__init__(f"{name} exited with status {returncode}: {stderr.strip()}")


def find_executable(name: str, project_root: Path | None = None) -> str | None:
    """Find an executable in PATH or local node_modules.

    Args:
        name: Name of the executable to find (e.g. 'terser', 'cwebp').
        project_root: Optional directory holding a node_modules folder.

    Returns:
        Full path to the executable if found, None otherwise.
    """
    found = shutil.which(name)
    if found:
        return found

    if project_root is not None:
        local = project_root / "node_modules" / ".bin" / name
        if local.exists():
            return str(local)

    return None


def run_executable(command: Sequence[str], cwd: Path | None = None) -> str:
    """Run an external program and return its standard output.

    Raises:
        ExecutableError: If the program exits with a non-zero status.
    """
    result = subprocess.run(
        list(command), capture_output=True, text=True, cwd=str(cwd) if cwd else None
    )
    if result.returncode != 0:
        raise ExecutableError(command, result.returncode, result.stderr or "")
    return result.stdout or ""
