"""
Source-control provider backed by git and the GitHub CLI.

Every failure is raised as ScmError carrying a transient flag. Transient
errors (network, timeouts, rate limits, anything we don't recognise) are
retried by the Prefect tasks in storyloop.workflow.tasks; permanent ones
(auth, permissions, missing repository) fail the run straight away.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from storyloop.git import (
    branch_exists as local_branch_exists,
    create_branch as git_create_branch,
    get_commit_sha,
    has_remote,
    push_set_upstream,
    remote_branch_exists,
)
from storyloop.git.runner import GitResult

logger = logging.getLogger(__name__)


# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

DEFAULT_REMOTE = "origin"

# gh pr create refuses a second PR for the same head branch with this text
PR_EXISTS_HINT = "already exists"

# Substrings of git/gh output that no amount of retrying will fix
PERMANENT_ERROR_HINTS = (
    "authentication failed",
    "authentication required",
    "could not read username",
    "permission denied",
    "permission to",
    "not authenticated",
    "gh auth login",
    "http 401",
    "http 403",
    "403 forbidden",
    "401 unauthorized",
    "repository not found",
    "already exists",
    "not a git repository",
    "invalid reference",
    "not a valid object name",
)


class ScmError(Exception):
    """Source-control operation failed."""

    def __init__(self, message: str, transient: bool = True):
        self.transient = transient
        # Both args kept so the error survives pickling across task boundaries
        super().__init__(message, transient)

    def __str__(self) -> str:
        return self.args[0]


@dataclass
class BranchRef:
    """A branch the run works on."""
    name: str
    base: str
    sha: Optional[str] = None


class ScmProvider(Protocol):
    """What the branch manager needs from source control."""

    def branch_exists(self, name: str) -> bool: ...

    def create_branch(self, name: str, base: str) -> BranchRef: ...

    def push(self, ref: BranchRef) -> None: ...

    def open_pull_request(self, ref: BranchRef, title: str, body: str) -> tuple[int, str]:
        """Returns the branch's open PR instead of failing if one exists."""
        ...

    def merge_pull_request(self, number: int) -> None: ...


def classify_error(text: str) -> bool:
    """True if the failure text looks transient (worth retrying)."""
    lowered = text.lower()
    return not any(hint in lowered for hint in PERMANENT_ERROR_HINTS)


def _git_error(action: str, result: GitResult) -> ScmError:
    if result.timed_out:
        return ScmError(f"{action} timed out", transient=True)
    detail = result.error
    return ScmError(f"{action} failed: {detail}", transient=classify_error(detail))


def parse_pr_number(pr_url: str) -> Optional[int]:
    """https://github.com/o/r/pull/42 -> 42"""
    try:
        return int(pr_url.rstrip("/").split("/")[-1])
    except (ValueError, IndexError):
        return None


class GitHubProvider:
    """git for branches and pushes, gh for pull requests."""

    def __init__(self, repo_path: Path, remote: str = DEFAULT_REMOTE):
        self.repo_path = Path(repo_path)
        self.remote = remote

    def _gh(self, args: list[str], action: str) -> str:
        try:
            result = subprocess.run(
                ["gh"] + args,
                capture_output=True,
                text=True,
                cwd=str(self.repo_path),
                timeout=GH_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as e:
            raise ScmError("GitHub CLI (gh) not found", transient=False) from e
        except subprocess.TimeoutExpired as e:
            raise ScmError(f"{action} timed out", transient=True) from e
        except subprocess.SubprocessError as e:
            raise ScmError(f"{action} failed: {e}", transient=True) from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise ScmError(f"{action} failed: {detail}", transient=classify_error(detail))
        return result.stdout.strip()

    def branch_exists(self, name: str) -> bool:
        if local_branch_exists(self.repo_path, name):
            return True
        if not has_remote(self.repo_path):
            return False
        result = remote_branch_exists(self.repo_path, name, self.remote)
        if not result.success:
            raise _git_error(f"ls-remote {name}", result)
        return bool(result.stdout.strip())

    def create_branch(self, name: str, base: str) -> BranchRef:
        result = git_create_branch(self.repo_path, name, base)
        if not result.success:
            raise _git_error(f"create branch {name}", result)
        logger.info(f"[SCM] Created branch {name} from {base}")
        return BranchRef(name=name, base=base, sha=get_commit_sha(self.repo_path, name))

    def push(self, ref: BranchRef) -> None:
        result = push_set_upstream(self.repo_path, self.remote, ref.name)
        if not result.success:
            raise _git_error(f"push {ref.name}", result)
        logger.info(f"[SCM] Pushed {ref.name} to {self.remote}")

    def find_open_pull_request(self, branch: str) -> Optional[tuple[int, str]]:
        """(number, url) of the open PR whose head is branch, or None."""
        output = self._gh(["pr", "view", branch, "--json", "number,url,state"], f"look up PR for {branch}")
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise ScmError(f"Could not parse gh pr view output: {output[:100]!r}", transient=False) from e
        if data.get("state") != "OPEN":
            return None
        return int(data["number"]), data["url"]

    def open_pull_request(self, ref: BranchRef, title: str, body: str) -> tuple[int, str]:
        """Open the run PR, or return the one already open for the branch."""
        try:
            pr_url = self._gh(
                ["pr", "create", "--base", ref.base, "--head", ref.name, "--title", title, "--body", body],
                f"open PR for {ref.name}",
            )
        except ScmError as e:
            if PR_EXISTS_HINT not in str(e).lower():
                raise
            existing = self.find_open_pull_request(ref.name)
            if existing is None:
                raise
            logger.info(f"[SCM] Reusing open PR #{existing[0]} for {ref.name}")
            return existing
        pr_number = parse_pr_number(pr_url)
        if pr_number is None:
            raise ScmError(f"Could not parse PR number from gh output: {pr_url!r}", transient=False)
        logger.info(f"[SCM] Opened PR #{pr_number}: {pr_url}")
        return pr_number, pr_url

    def merge_pull_request(self, number: int) -> None:
        self._gh(["pr", "merge", str(number), "--merge"], f"merge PR #{number}")
        logger.info(f"[SCM] Merged PR #{number}")


def check_gh_available() -> tuple[bool, str]:
    """Check gh CLI is installed and authenticated.

    Returns: (ok, error_message)
    """
    try:
        result = subprocess.run(
            ["gh", "--version"],
            capture_output=True,
            timeout=5,
        )
        if result.returncode != 0:
            return False, "GitHub CLI (gh) not installed\n  Install: https://cli.github.com/"

        result = subprocess.run(
            ["gh", "auth", "status"],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            return False, "GitHub CLI not authenticated\n  Run: gh auth login"

        return True, ""

    except FileNotFoundError:
        return False, "GitHub CLI (gh) not found\n  Install: https://cli.github.com/"
    except subprocess.TimeoutExpired:
        return False, "GitHub CLI timed out"
