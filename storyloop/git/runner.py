"""Run git non-interactively with a timeout."""

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TIMEOUT = 30

# A credential prompt would block an unattended run until the timeout
_NON_INTERACTIVE = {"GIT_TERMINAL_PROMPT": "0", "GIT_ASKPASS": "true"}


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def error(self) -> str:
        """Best available failure text for logs and exceptions."""
        return (self.stderr or self.stdout).strip() or f"git exited with code {self.returncode}"


def run_git(args: list[str], cwd: Path, timeout: int = DEFAULT_TIMEOUT) -> GitResult:
    """
    git -C <cwd> <args>. Never raises for git failures or timeouts; check
    .success on the result.
    """
    try:
        proc = subprocess.run(
            ["git", "-C", str(cwd), *args],
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **_NON_INTERACTIVE},
        )
    except subprocess.TimeoutExpired:
        return GitResult(-1, "", f"git {args[0]} timed out after {timeout}s", timed_out=True)
    return GitResult(proc.returncode, proc.stdout, proc.stderr)
