"""Local branches."""

from pathlib import Path
from typing import Callable, Optional

from storyloop.git.runner import GitResult, run_git


def branch_exists(repo: Path, branch: str) -> bool:
    return run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], repo).success


def get_commit_sha(repo: Path, ref: str = "HEAD") -> Optional[str]:
    result = run_git(["rev-parse", "--verify", ref], repo)
    return result.stdout.strip() if result.success else None


def create_branch(repo: Path, branch: str, base: str) -> GitResult:
    """Create branch at base and switch the working tree to it."""
    return run_git(["checkout", "-b", branch, base], repo)


def unique_branch_name(base_name: str, exists: Callable[[str], bool], limit: int = 100) -> str:
    """
    base_name if free, else the first free of base_name-2 ... base_name-<limit>.

    Raises:
        ValueError: If every candidate is taken
    """
    candidates = [base_name] + [f"{base_name}-{n}" for n in range(2, limit + 1)]
    for candidate in candidates:
        if not exists(candidate):
            return candidate
    raise ValueError(f"No free branch name for '{base_name}' after {limit} attempts")
