"""Shared fixtures and fake collaborators for storyloop tests."""

import json
import threading
from pathlib import Path

import pytest
from prefect.testing.utilities import prefect_test_harness

from storyloop.agents.executor import (
    ExecutorError,
    FatalExecutorError,
    TextChunk,
    ToolInvocation,
    Verdict,
)
from storyloop.lib.config import RunOptions
from storyloop.lib.github import BranchRef, ScmError


@pytest.fixture(autouse=True, scope="session")
def prefect_harness():
    """Run every Prefect task against a throwaway local API."""
    with prefect_test_harness():
        yield


class ScriptedExecutor:
    """
    Executor whose behaviour per call comes from a script.

    Script entries:
        "success"      text, one Bash tool call, successful verdict
        "fail"         failed (retryable) verdict
        "fatal"        failed verdict flagged fatal
        "error"        raises ExecutorError
        "fatal_error"  raises FatalExecutorError
        "hang"         blocks until abort() (i.e. times out)
        "gate"         blocks until release is set, then succeeds
    Calls past the end of the script use `default`.
    """

    def __init__(self, script=None, default="success", cost=0.25, tokens=100):
        self.script = list(script or [])
        self.default = default
        self.cost = cost
        self.tokens = tokens
        self.contexts = []
        self.credentials = []
        self.aborts = 0
        self.started = threading.Event()
        self.release = threading.Event()
        self._aborted = threading.Event()

    def execute(self, context, credential):
        self.contexts.append(context)
        self.credentials.append(credential)
        step = self.script.pop(0) if self.script else self.default
        self._aborted.clear()
        self.started.set()

        if step == "hang":
            self._aborted.wait(timeout=10)
            return
        if step == "gate":
            self.release.wait(timeout=10)
            step = "success"
        if step == "error":
            raise ExecutorError("agent crashed", cost=0.05)
        if step == "fatal_error":
            raise FatalExecutorError("invalid credential")

        yield TextChunk(text=f"Working on {context.story_id}")
        yield ToolInvocation(tool="Bash", detail="pytest")
        if step == "success":
            yield Verdict(success=True, cost=self.cost, tokens=self.tokens)
        elif step == "fail":
            yield Verdict(success=False, reason="tests still failing", cost=self.cost, tokens=self.tokens)
        elif step == "fatal":
            yield Verdict(success=False, reason="story is contradictory", fatal=True, cost=self.cost)
        else:
            raise ValueError(f"Unknown script step: {step}")

    def abort(self):
        self.aborts += 1
        self._aborted.set()

    @property
    def story_order(self):
        return [c.story_id for c in self.contexts]


class FakeProvider:
    """In-memory source-control provider with scriptable failures."""

    def __init__(self, existing=None, failures=None):
        self.branches = set(existing or [])
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls = []
        self.pushed = []
        self.prs = {}
        self.merged = []
        self._next_pr = 1

    def _maybe_fail(self, method):
        self.calls.append(method)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def branch_exists(self, name):
        self._maybe_fail("branch_exists")
        return name in self.branches

    def create_branch(self, name, base):
        self._maybe_fail("create_branch")
        self.branches.add(name)
        return BranchRef(name=name, base=base)

    def push(self, ref):
        self._maybe_fail("push")
        self.pushed.append(ref.name)

    def open_pull_request(self, ref, title, body):
        self._maybe_fail("open_pull_request")
        for number, (branch, _, _) in self.prs.items():
            if branch == ref.name:
                return number, f"https://github.com/acme/app/pull/{number}"
        number = self._next_pr
        self._next_pr += 1
        url = f"https://github.com/acme/app/pull/{number}"
        self.prs[number] = (ref.name, title, body)
        return number, url

    def merge_pull_request(self, number):
        self._maybe_fail("merge_pull_request")
        self.merged.append(number)


def transient(message="connection reset by peer"):
    return ScmError(message, transient=True)


def permanent(message="remote: Permission to acme/app.git denied (HTTP 403)"):
    return ScmError(message, transient=False)


def backlog_document(priorities=(1,), branch="feature/login", **extra):
    """Backlog document with one story per priority, ids S1, S2, ..."""
    doc = {
        "branchName": branch,
        "project": "acme",
        "userStories": [
            {
                "id": f"S{i}",
                "title": f"Story {i}",
                "acceptanceCriteria": [f"criterion {i}"],
                "priority": p,
                "passes": False,
            }
            for i, p in enumerate(priorities, 1)
        ],
    }
    doc.update(extra)
    return doc


@pytest.fixture
def ops_dir(tmp_path):
    d = tmp_path / "ops"
    d.mkdir()
    return d


@pytest.fixture
def fast_options():
    """Defaults with tiny timeouts and no SCM backoff."""
    return RunOptions(iteration_timeout=0.5, scm_backoff_base=0)


@pytest.fixture
def write_backlog(tmp_path):
    def _write(doc, name="prd.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(doc))
        return path
    return _write
