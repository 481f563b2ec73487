"""Thin git wrappers used by the GitHub provider.

Commands that change something return GitResult and leave it to the
caller to check .success; queries return a bool or the parsed value
(None when git fails).
"""

from storyloop.git.runner import GitResult, run_git
from storyloop.git.branch import (
    branch_exists,
    create_branch,
    get_commit_sha,
    unique_branch_name,
)
from storyloop.git.remote import (
    has_remote,
    remote_branch_exists,
    push_set_upstream,
)

__all__ = [
    "GitResult",
    "run_git",
    "branch_exists",
    "create_branch",
    "get_commit_sha",
    "unique_branch_name",
    "has_remote",
    "remote_branch_exists",
    "push_set_upstream",
]
