"""Remotes: discovery, ls-remote and push."""

from pathlib import Path

from storyloop.git.runner import GitResult, run_git

NETWORK_TIMEOUT = 60


def has_remote(repo: Path) -> bool:
    return bool(run_git(["remote"], repo).stdout.strip())


def remote_branch_exists(repo: Path, branch: str, remote: str = "origin") -> GitResult:
    """ls-remote for one branch; stdout is empty when the remote lacks it."""
    return run_git(["ls-remote", "--heads", remote, branch], repo, timeout=NETWORK_TIMEOUT)


def push_set_upstream(repo: Path, remote: str, branch: str) -> GitResult:
    return run_git(["push", "-u", remote, branch], repo, timeout=NETWORK_TIMEOUT)
