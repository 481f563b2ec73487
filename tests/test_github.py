"""Tests for storyloop.lib.github module."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from storyloop.git.runner import GitResult
from storyloop.lib.github import (
    GH_TIMEOUT_SECONDS,
    BranchRef,
    GitHubProvider,
    ScmError,
    check_gh_available,
    classify_error,
    parse_pr_number,
)

REPO = Path("/src/app")


def ok(stdout=""):
    return GitResult(returncode=0, stdout=stdout, stderr="")


def failed(stderr, timed_out=False):
    return GitResult(returncode=1 if not timed_out else -1, stdout="", stderr=stderr, timed_out=timed_out)


class TestConstants:

    def test_gh_timeout_is_reasonable(self):
        assert 10 <= GH_TIMEOUT_SECONDS <= 120


class TestClassifyError:

    def test_network_errors_are_transient(self):
        assert classify_error("fatal: unable to access: Could not resolve host: github.com")
        assert classify_error("error: RPC failed; HTTP 502")
        assert classify_error("API rate limit exceeded")

    def test_auth_errors_are_permanent(self):
        assert not classify_error("remote: Permission to acme/app.git denied to bot.")
        assert not classify_error("fatal: Authentication failed for 'https://github.com/acme/app'")
        assert not classify_error("To get started with GitHub CLI, please run:  gh auth login")

    def test_missing_repository_is_permanent(self):
        assert not classify_error("ERROR: Repository not found.")


class TestScmError:

    def test_str_is_message(self):
        assert str(ScmError("push failed", transient=False)) == "push failed"

    def test_defaults_to_transient(self):
        assert ScmError("x").transient is True


class TestParsePrNumber:

    def test_parses_url(self):
        assert parse_pr_number("https://github.com/acme/app/pull/42") == 42

    def test_trailing_slash(self):
        assert parse_pr_number("https://github.com/acme/app/pull/42/") == 42

    def test_garbage(self):
        assert parse_pr_number("Creating pull request...") is None


class TestBranchExists:

    @patch("storyloop.lib.github.local_branch_exists", return_value=True)
    def test_local_branch(self, _local):
        assert GitHubProvider(REPO).branch_exists("feature/x") is True

    @patch("storyloop.lib.github.remote_branch_exists")
    @patch("storyloop.lib.github.has_remote", return_value=True)
    @patch("storyloop.lib.github.local_branch_exists", return_value=False)
    def test_remote_branch(self, _local, _has_remote, mock_ls_remote):
        mock_ls_remote.return_value = ok("abc123\trefs/heads/feature/x\n")
        assert GitHubProvider(REPO).branch_exists("feature/x") is True
        mock_ls_remote.assert_called_once_with(REPO, "feature/x", "origin")

    @patch("storyloop.lib.github.remote_branch_exists", return_value=ok(""))
    @patch("storyloop.lib.github.has_remote", return_value=True)
    @patch("storyloop.lib.github.local_branch_exists", return_value=False)
    def test_free_name(self, *_mocks):
        assert GitHubProvider(REPO).branch_exists("feature/x") is False

    @patch("storyloop.lib.github.has_remote", return_value=False)
    @patch("storyloop.lib.github.local_branch_exists", return_value=False)
    def test_no_remote(self, *_mocks):
        assert GitHubProvider(REPO).branch_exists("feature/x") is False

    @patch("storyloop.lib.github.remote_branch_exists",
           return_value=failed("fatal: unable to access: Connection timed out"))
    @patch("storyloop.lib.github.has_remote", return_value=True)
    @patch("storyloop.lib.github.local_branch_exists", return_value=False)
    def test_ls_remote_failure_is_transient(self, *_mocks):
        with pytest.raises(ScmError) as exc_info:
            GitHubProvider(REPO).branch_exists("feature/x")
        assert exc_info.value.transient


class TestCreateBranchAndPush:

    @patch("storyloop.lib.github.get_commit_sha", return_value="abc123")
    @patch("storyloop.lib.github.git_create_branch", return_value=ok())
    def test_create_branch(self, mock_create, _sha):
        ref = GitHubProvider(REPO).create_branch("feature/x", "main")
        assert ref == BranchRef(name="feature/x", base="main", sha="abc123")
        mock_create.assert_called_once_with(REPO, "feature/x", "main")

    @patch("storyloop.lib.github.git_create_branch",
           return_value=failed("fatal: a branch named 'feature/x' already exists"))
    def test_create_existing_branch_is_permanent(self, _create):
        with pytest.raises(ScmError) as exc_info:
            GitHubProvider(REPO).create_branch("feature/x", "main")
        assert not exc_info.value.transient

    @patch("storyloop.lib.github.push_set_upstream", return_value=ok())
    def test_push(self, mock_push):
        GitHubProvider(REPO, remote="upstream").push(BranchRef(name="feature/x", base="main"))
        mock_push.assert_called_once_with(REPO, "upstream", "feature/x")

    @patch("storyloop.lib.github.push_set_upstream", return_value=failed("", timed_out=True))
    def test_push_timeout_is_transient(self, _push):
        with pytest.raises(ScmError, match="timed out") as exc_info:
            GitHubProvider(REPO).push(BranchRef(name="feature/x", base="main"))
        assert exc_info.value.transient

    @patch("storyloop.lib.github.push_set_upstream",
           return_value=failed("remote: Permission to acme/app.git denied to bot."))
    def test_push_denied_is_permanent(self, _push):
        with pytest.raises(ScmError) as exc_info:
            GitHubProvider(REPO).push(BranchRef(name="feature/x", base="main"))
        assert not exc_info.value.transient


class TestPullRequests:

    @patch("storyloop.lib.github.subprocess.run")
    def test_open_pull_request(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="https://github.com/acme/app/pull/7\n", stderr="")
        number, url = GitHubProvider(REPO).open_pull_request(
            BranchRef(name="feature/x", base="main"), "acme: feature/x", "body"
        )
        assert (number, url) == (7, "https://github.com/acme/app/pull/7")
        cmd = mock_run.call_args[0][0]
        assert cmd[:3] == ["gh", "pr", "create"]
        assert "--head" in cmd and "feature/x" in cmd
        assert mock_run.call_args.kwargs["timeout"] == GH_TIMEOUT_SECONDS

    @patch("storyloop.lib.github.subprocess.run")
    def test_existing_open_pr_is_reused(self, mock_run):
        mock_run.side_effect = [
            MagicMock(returncode=1, stdout="",
                      stderr='a pull request for branch "feature/x" into branch "main" already exists:\n'
                             "https://github.com/acme/app/pull/7"),
            MagicMock(returncode=0, stderr="",
                      stdout='{"number": 7, "state": "OPEN", "url": "https://github.com/acme/app/pull/7"}'),
        ]
        number, url = GitHubProvider(REPO).open_pull_request(
            BranchRef(name="feature/x", base="main"), "t", "b"
        )
        assert (number, url) == (7, "https://github.com/acme/app/pull/7")
        assert mock_run.call_args[0][0][:4] == ["gh", "pr", "view", "feature/x"]

    @patch("storyloop.lib.github.subprocess.run")
    def test_closed_pr_for_branch_is_not_reused(self, mock_run):
        mock_run.side_effect = [
            MagicMock(returncode=1, stdout="", stderr="pull request already exists"),
            MagicMock(returncode=0, stderr="",
                      stdout='{"number": 3, "state": "MERGED", "url": "https://github.com/acme/app/pull/3"}'),
        ]
        with pytest.raises(ScmError, match="already exists") as exc_info:
            GitHubProvider(REPO).open_pull_request(BranchRef(name="feature/x", base="main"), "t", "b")
        assert not exc_info.value.transient

    @patch("storyloop.lib.github.subprocess.run")
    def test_unparseable_output_is_permanent(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="something odd", stderr="")
        with pytest.raises(ScmError) as exc_info:
            GitHubProvider(REPO).open_pull_request(BranchRef(name="x", base="main"), "t", "b")
        assert not exc_info.value.transient

    @patch("storyloop.lib.github.subprocess.run")
    def test_gh_failure_classified(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="HTTP 502: Bad Gateway")
        with pytest.raises(ScmError) as exc_info:
            GitHubProvider(REPO).merge_pull_request(7)
        assert exc_info.value.transient

    @patch("storyloop.lib.github.subprocess.run")
    def test_gh_timeout_is_transient(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="gh", timeout=30)
        with pytest.raises(ScmError, match="timed out") as exc_info:
            GitHubProvider(REPO).merge_pull_request(7)
        assert exc_info.value.transient

    @patch("storyloop.lib.github.subprocess.run")
    def test_gh_missing_is_permanent(self, mock_run):
        mock_run.side_effect = FileNotFoundError("gh")
        with pytest.raises(ScmError) as exc_info:
            GitHubProvider(REPO).merge_pull_request(7)
        assert not exc_info.value.transient

    @patch("storyloop.lib.github.subprocess.run")
    def test_merge_command(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        GitHubProvider(REPO).merge_pull_request(7)
        assert mock_run.call_args[0][0] == ["gh", "pr", "merge", "7", "--merge"]


class TestCheckGhAvailable:

    @patch("storyloop.lib.github.subprocess.run")
    def test_available(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0)
        assert check_gh_available() == (True, "")

    @patch("storyloop.lib.github.subprocess.run")
    def test_not_authenticated(self, mock_run):
        mock_run.side_effect = [MagicMock(returncode=0), MagicMock(returncode=1)]
        ok_, message = check_gh_available()
        assert not ok_
        assert "gh auth login" in message

    @patch("storyloop.lib.github.subprocess.run", side_effect=FileNotFoundError)
    def test_not_installed(self, _run):
        ok_, message = check_gh_available()
        assert not ok_
        assert "not found" in message
