"""
Iteration driver: one attempt at one story.

The executor's stream is read on a dedicated relay thread and handed to
the driver through a queue, so the driver can enforce the iteration
timeout while still forwarding every text chunk and tool call to the
event bus in arrival order. On timeout the executor is aborted and
anything it sends afterwards is dropped.

Outcome classification:
- Verdict(success=True)                      -> success
- Verdict(success=False, fatal=True)         -> fatal
- FatalExecutorError                         -> fatal
- Verdict(success=False), ExecutorError,
  executor crash, missing verdict, timeout   -> retryable
- retryable on the story's last allowed attempt -> fatal
"""

import logging
import queue
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from storyloop.agents.executor import (
    AgentExecutor,
    ExecutorError,
    FatalExecutorError,
    StoryContext,
    TextChunk,
    ToolInvocation,
    Verdict,
)
from storyloop.lib.config import DEFAULT_ITERATION_TIMEOUT, DEFAULT_MAX_STORY_ATTEMPTS
from storyloop.lib.github import BranchRef
from storyloop.runner.events import (
    AgentText,
    AgentTool,
    EventBus,
    IterationCompleted,
    IterationFailed,
    IterationStarted,
)
from storyloop.runner.models import Iteration, IterationOutcome, Run, Story, utc_now
from storyloop.workflow.fsm import IterationFSM

logger = logging.getLogger(__name__)

# Relay queue item kinds
_MESSAGE = "message"
_ERROR = "error"
_DONE = "done"


@dataclass
class IterationResult:
    iteration: Iteration
    attempt: int
    timed_out: bool = False

    @property
    def outcome(self) -> IterationOutcome:
        return self.iteration.outcome

    @property
    def succeeded(self) -> bool:
        return self.outcome == IterationOutcome.SUCCESS

    @property
    def fatal(self) -> bool:
        return self.outcome == IterationOutcome.FATAL_FAILURE


@dataclass
class _Execution:
    """What came back from the executor within the deadline."""
    verdict: Optional[Verdict] = None
    error: Optional[BaseException] = None
    timed_out: bool = False
    finished: bool = False


class IterationDriver:

    def __init__(
        self,
        executor: AgentExecutor,
        bus: EventBus,
        timeout: float = DEFAULT_ITERATION_TIMEOUT,
        max_story_attempts: int = DEFAULT_MAX_STORY_ATTEMPTS,
        credential: Optional[str] = None,
    ):
        self.executor = executor
        self.bus = bus
        self.timeout = timeout
        self.max_story_attempts = max_story_attempts
        self.credential = credential

    def build_context(self, run: Run, story: Story, number: int, branch: BranchRef) -> StoryContext:
        """Story fields plus what the agent should know about the rest of the run."""
        previous_error = None
        for past in reversed(run.iterations):
            if past.story_id == story.id:
                previous_error = past.error
                break

        return StoryContext(
            run_id=run.id,
            iteration=number,
            story_id=story.id,
            title=story.title,
            epic=story.epic_label,
            description=story.description,
            acceptance_criteria=list(story.acceptance_criteria),
            branch=branch.name,
            attempt=story.attempts + 1,
            max_attempts=self.max_story_attempts,
            completed_stories=[f"{s.id}: {s.title}" for s in run.backlog.stories if s.passes],
            previous_error=previous_error,
            system_prompt=run.system_prompt,
            project=run.backlog.project or run.project_id,
        )

    def run(self, run: Run, story: Story, number: int, branch: BranchRef) -> IterationResult:
        """
        Execute one iteration and publish its events.

        Emits exactly one iteration_started and exactly one of
        iteration_completed / iteration_failed. Does not mutate the run;
        the caller applies the result.

        Raises:
            PersistenceError: If an event cannot be recorded (the executor
                is aborted first)
        """
        fsm = IterationFSM(run.id, number)
        attempt = story.attempts + 1
        started_at = utc_now()
        t0 = time.monotonic()

        fsm.prepare()
        self.bus.publish(
            run.id,
            IterationStarted(story_id=story.id, story_title=story.title, attempt=attempt),
            iteration=number,
        )
        logger.info(f"[ITER] {run.id} #{number}: {story.id} '{story.title}' (attempt {attempt})")
        context = self.build_context(run, story, number, branch)

        fsm.execute()
        tools: Counter = Counter()
        execution = self._execute(run.id, number, context, tools)
        duration = time.monotonic() - t0

        outcome, error, cost, tokens = self._classify(fsm, execution)
        if outcome == IterationOutcome.RETRYABLE_FAILURE and attempt >= self.max_story_attempts:
            outcome = IterationOutcome.FATAL_FAILURE
            error = f"{error} (gave up after {attempt} attempts)"
            fsm.fail_fatal()
        elif outcome == IterationOutcome.RETRYABLE_FAILURE:
            fsm.fail_retryable()
        elif outcome == IterationOutcome.FATAL_FAILURE:
            fsm.fail_fatal()
        else:
            fsm.succeed()

        iteration = Iteration(
            number=number,
            story_id=story.id,
            outcome=outcome,
            cost=cost,
            duration_seconds=duration,
            started_at=started_at,
            ended_at=utc_now(),
            error=error,
            tokens=tokens,
            tools=dict(tools),
        )

        if outcome == IterationOutcome.SUCCESS:
            self.bus.publish(
                run.id,
                IterationCompleted(story_id=story.id, cost=cost, duration_secs=duration, tools=dict(tools)),
                iteration=number,
            )
            logger.info(f"[ITER] {run.id} #{number}: {story.id} succeeded in {duration:.1f}s (${cost:.4f})")
        else:
            retryable = outcome == IterationOutcome.RETRYABLE_FAILURE
            self.bus.publish(
                run.id,
                IterationFailed(
                    story_id=story.id,
                    error=error,
                    retryable=retryable,
                    attempt=attempt,
                    cost=cost,
                    duration_secs=duration,
                ),
                iteration=number,
            )
            level = logging.WARNING if retryable else logging.ERROR
            logger.log(level, f"[ITER] {run.id} #{number}: {story.id} failed ({outcome.value}): {error}")

        return IterationResult(iteration=iteration, attempt=attempt, timed_out=execution.timed_out)

    def _execute(self, run_id: str, number: int, context: StoryContext, tools: Counter) -> _Execution:
        """Relay executor messages to the bus until done, error, or deadline."""
        relay_queue: queue.Queue = queue.Queue()

        def relay():
            try:
                for message in self.executor.execute(context, self.credential):
                    relay_queue.put((_MESSAGE, message))
            except Exception as e:
                relay_queue.put((_ERROR, e))
            finally:
                relay_queue.put((_DONE, None))

        relay_thread = threading.Thread(target=relay, name=f"relay-{run_id}-{number}", daemon=True)
        relay_thread.start()

        execution = _Execution()
        deadline = time.monotonic() + self.timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    execution.timed_out = True
                    break
                try:
                    kind, item = relay_queue.get(timeout=remaining)
                except queue.Empty:
                    execution.timed_out = True
                    break

                if kind == _DONE:
                    execution.finished = True
                    break
                if kind == _ERROR:
                    execution.error = item
                elif isinstance(item, TextChunk):
                    self.bus.publish(run_id, AgentText(text=item.text), iteration=number)
                elif isinstance(item, ToolInvocation):
                    tools[item.tool] += 1
                    self.bus.publish(run_id, AgentTool(tool=item.tool, detail=item.detail), iteration=number)
                elif isinstance(item, Verdict):
                    if execution.verdict is None:
                        execution.verdict = item
                    else:
                        logger.warning(f"[ITER] {run_id} #{number}: ignoring extra verdict")
        finally:
            if not execution.finished:
                self._abort(run_id, number)

        if execution.timed_out:
            logger.warning(f"[ITER] {run_id} #{number}: timed out after {self.timeout}s")
        return execution

    def _abort(self, run_id: str, number: int) -> None:
        abort = getattr(self.executor, "abort", None)
        if abort is None:
            return
        logger.warning(f"[ITER] {run_id} #{number}: aborting executor")
        try:
            abort()
        except Exception as e:
            logger.warning(f"[ITER] {run_id} #{number}: executor abort failed: {e}")

    def _classify(self, fsm: IterationFSM, execution: _Execution) -> tuple[IterationOutcome, Optional[str], float, int]:
        """(outcome, error, cost, tokens). Leaves the FSM in executing or evaluating."""
        if execution.verdict is not None:
            verdict = execution.verdict
            fsm.evaluate()
            if verdict.success:
                return IterationOutcome.SUCCESS, None, verdict.cost, verdict.tokens
            reason = verdict.reason or "agent reported failure"
            if verdict.fatal:
                return IterationOutcome.FATAL_FAILURE, reason, verdict.cost, verdict.tokens
            return IterationOutcome.RETRYABLE_FAILURE, reason, verdict.cost, verdict.tokens

        if execution.timed_out:
            return IterationOutcome.RETRYABLE_FAILURE, f"Iteration timed out after {self.timeout}s", 0.0, 0

        error = execution.error
        if isinstance(error, FatalExecutorError):
            return IterationOutcome.FATAL_FAILURE, str(error), error.cost, 0
        if isinstance(error, ExecutorError):
            return IterationOutcome.RETRYABLE_FAILURE, str(error), error.cost, 0
        if error is not None:
            return IterationOutcome.RETRYABLE_FAILURE, f"Executor crashed: {error!r}", 0.0, 0
        return IterationOutcome.RETRYABLE_FAILURE, "Executor finished without a verdict", 0.0, 0
