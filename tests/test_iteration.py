"""Tests for storyloop.runner.iteration."""

import pytest

from conftest import ScriptedExecutor
from storyloop.lib.github import BranchRef
from storyloop.runner.events import EventBus
from storyloop.runner.iteration import IterationDriver
from storyloop.runner.models import (
    Backlog,
    BudgetConfig,
    Iteration,
    IterationOutcome,
    Run,
    Story,
)

BRANCH = BranchRef(name="feature/login", base="main")


@pytest.fixture
def run():
    return Run(
        id="r1",
        project_id="acme",
        source_id="/tmp/prd.json",
        backlog=Backlog(branch_name="feature/login", project="acme", stories=[
            Story(id="S1", title="Login", priority=1, acceptance_criteria=["form renders"]),
            Story(id="S2", title="Logout", priority=2, passes=True),
        ]),
        budget=BudgetConfig(max_iterations=5),
        system_prompt="Use tabs.",
    )


def drive(run, executor, max_story_attempts=3, timeout=2.0, credential=None):
    bus = EventBus()
    driver = IterationDriver(executor, bus, timeout=timeout,
                             max_story_attempts=max_story_attempts, credential=credential)
    story = run.backlog.get("S1")
    result = driver.run(run, story, run.iterations_used + 1, BRANCH)
    return result, bus.events(run.id)


def types(events):
    return [e.type for e in events]


class TestSuccess:

    def test_success_outcome_and_accounting(self, run):
        result, events = drive(run, ScriptedExecutor(["success"], cost=0.4, tokens=250))
        assert result.succeeded
        assert result.iteration.cost == pytest.approx(0.4)
        assert result.iteration.tokens == 250
        assert result.iteration.error is None
        assert result.iteration.tools == {"Bash": 1}
        assert result.attempt == 1

    def test_events_in_order(self, run):
        _, events = drive(run, ScriptedExecutor(["success"]))
        assert types(events) == ["iteration_started", "agent_text", "agent_tool", "iteration_completed"]
        assert all(e.iteration == 1 for e in events)
        assert events[0].payload.attempt == 1

    def test_does_not_mutate_run(self, run):
        drive(run, ScriptedExecutor(["success"]))
        story = run.backlog.get("S1")
        assert story.passes is False
        assert story.attempts == 0
        assert run.iterations_used == 0

    def test_credential_passed_through(self, run):
        executor = ScriptedExecutor(["success"])
        drive(run, executor, credential="tok-123")
        assert executor.credentials == ["tok-123"]


class TestContext:

    def test_context_carries_story_and_run(self, run):
        executor = ScriptedExecutor(["success"])
        drive(run, executor)
        ctx = executor.contexts[0]
        assert ctx.story_id == "S1"
        assert ctx.acceptance_criteria == ["form renders"]
        assert ctx.branch == "feature/login"
        assert ctx.completed_stories == ["S2: Logout"]
        assert ctx.system_prompt == "Use tabs."
        assert ctx.epic == "Ungrouped"
        assert ctx.project == "acme"

    def test_previous_error_from_last_attempt(self, run):
        run.iterations.append(Iteration(
            number=1, story_id="S1", outcome=IterationOutcome.RETRYABLE_FAILURE, cost=0.1,
            duration_seconds=1.0, started_at="a", ended_at="b", error="tests still failing",
        ))
        run.iterations_used = 1
        run.backlog.get("S1").attempts = 1
        executor = ScriptedExecutor(["success"])
        result, _ = drive(run, executor)
        assert executor.contexts[0].previous_error == "tests still failing"
        assert executor.contexts[0].attempt == 2
        assert result.iteration.number == 2


class TestFailures:

    def test_failed_verdict_is_retryable(self, run):
        result, events = drive(run, ScriptedExecutor(["fail"]))
        assert result.outcome == IterationOutcome.RETRYABLE_FAILURE
        assert result.iteration.error == "tests still failing"
        assert types(events)[-1] == "iteration_failed"
        assert events[-1].payload.retryable is True

    def test_fatal_verdict(self, run):
        result, events = drive(run, ScriptedExecutor(["fatal"]))
        assert result.fatal
        assert events[-1].payload.retryable is False

    def test_executor_error_is_retryable_and_keeps_cost(self, run):
        result, _ = drive(run, ScriptedExecutor(["error"]))
        assert result.outcome == IterationOutcome.RETRYABLE_FAILURE
        assert "agent crashed" in result.iteration.error
        assert result.iteration.cost == pytest.approx(0.05)

    def test_fatal_executor_error(self, run):
        result, _ = drive(run, ScriptedExecutor(["fatal_error"]))
        assert result.fatal
        assert "invalid credential" in result.iteration.error

    def test_last_attempt_becomes_fatal(self, run):
        run.backlog.get("S1").attempts = 2
        result, events = drive(run, ScriptedExecutor(["fail"]), max_story_attempts=3)
        assert result.fatal
        assert result.attempt == 3
        assert "gave up after 3 attempts" in result.iteration.error
        assert events[-1].payload.retryable is False

    def test_single_attempt_story(self, run):
        result, _ = drive(run, ScriptedExecutor(["error"]), max_story_attempts=1)
        assert result.fatal

    def test_exactly_one_terminal_event(self, run):
        for step in ("success", "fail", "fatal", "error", "fatal_error"):
            _, events = drive(run, ScriptedExecutor([step]))
            kinds = types(events)
            assert kinds.count("iteration_started") == 1
            assert kinds.count("iteration_completed") + kinds.count("iteration_failed") == 1


class TestTimeout:

    def test_hung_executor_times_out_and_is_aborted(self, run):
        executor = ScriptedExecutor(["hang"])
        result, events = drive(run, executor, timeout=0.3)
        assert result.timed_out
        assert result.outcome == IterationOutcome.RETRYABLE_FAILURE
        assert "timed out" in result.iteration.error
        assert result.iteration.cost == 0.0
        assert executor.aborts == 1
        assert types(events) == ["iteration_started", "iteration_failed"]

    def test_completed_execution_is_not_aborted(self, run):
        executor = ScriptedExecutor(["success"])
        drive(run, executor)
        assert executor.aborts == 0

    def test_executor_without_abort(self, run):
        class NoAbort:
            def __init__(self):
                self.inner = ScriptedExecutor(["hang"])

            def execute(self, context, credential):
                return self.inner.execute(context, credential)

        no_abort = NoAbort()
        result, _ = drive(run, no_abort, timeout=0.2)
        assert result.timed_out
        no_abort.inner.abort()  # let the relay thread finish
