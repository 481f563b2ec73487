"""Workflow engine for agent runs.

Contains the main loop that drives one run from its checkpoint to a
terminal (or paused) state:

1. Honour cancel/pause requests (only ever between iterations)
2. SELECT the next eligible story; none left -> completed
3. BUDGET check; a ceiling reached -> exhausted
4. BRANCH: make sure the run branch exists
5. ITERATE: checkpoint, run the agent, apply the outcome
6. CHARGE the budget and CHECKPOINT before the next iteration

Source-control and persistence failures are fatal to the run. The loop is
also exposed as a Prefect @flow for observability when runs are started
from the CLI.
"""

import contextvars
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Optional

from prefect import flow, get_run_logger

from storyloop.agents.executor import AgentExecutor
from storyloop.lib.config import POLICY_SKIP_STORY, RunOptions
from storyloop.lib.errors import BranchError, PersistenceError
from storyloop.lib.github import ScmProvider
from storyloop.runner.branches import BranchManager
from storyloop.runner.budget import BudgetTracker
from storyloop.runner.events import (
    EventBus,
    RunCompleted,
    RunFailed,
    RunPaused,
    RunResumed,
    RunStarted,
    StoryCompleted,
)
from storyloop.runner.iteration import IterationDriver
from storyloop.runner.models import Run, RunStatus, Story
from storyloop.runner.selector import select_next
from storyloop.runner.store import FileRunStore
from storyloop.workflow.fsm import RunFSM

logger = logging.getLogger(__name__)

CONTROL_CANCEL = "cancel"
CONTROL_PAUSE = "pause"


class RunWorker:
    """Drives one run on its own thread.

    The persisted checkpoint is the source of truth: a worker is built from
    whatever the store last saw, and get_snapshot() only ever returns state
    that has been checkpointed (or the final state if the last write failed).
    """

    def __init__(
        self,
        run: Run,
        store: FileRunStore,
        bus: EventBus,
        executor: AgentExecutor,
        provider: ScmProvider,
        options: RunOptions,
        credential: Optional[str] = None,
        on_exit: Optional[Callable[["RunWorker"], None]] = None,
    ):
        self.run = run
        self.store = store
        self.bus = bus
        self.options = options
        self.on_exit = on_exit
        self.fsm = RunFSM(run)
        self.budget = BudgetTracker()
        self.branches = BranchManager(
            provider,
            bus,
            base_branch=options.base_branch,
            scm_attempts=options.scm_attempts,
            scm_backoff_base=options.scm_backoff_base,
            merge_on_complete=options.merge_on_complete,
        )
        self.driver = IterationDriver(
            executor,
            bus,
            timeout=options.iteration_timeout,
            max_story_attempts=options.max_story_attempts,
            credential=credential,
        )
        self._cancel_requested = threading.Event()
        self._pause_requested = threading.Event()
        # Held while pausing so a cancel cannot slip in after the last check
        self._control_lock = threading.Lock()
        self._paused = False
        self._snapshot_lock = threading.Lock()
        self._snapshot = run.snapshot()
        self.thread: Optional[threading.Thread] = None

    # --- control -------------------------------------------------------

    def request_cancel(self) -> bool:
        """False once the worker has paused and will not see the request."""
        with self._control_lock:
            if self._paused:
                return False
            self._cancel_requested.set()
            return True

    def request_pause(self) -> None:
        self._pause_requested.set()

    def get_snapshot(self) -> Run:
        with self._snapshot_lock:
            return self._snapshot.snapshot()

    @property
    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self, as_flow: bool = False) -> None:
        target = (lambda: run_flow(self.run.id, self)) if as_flow else self.execute
        # Carry the caller's context (Prefect settings) into the worker thread
        ctx = contextvars.copy_context()
        self.thread = threading.Thread(target=ctx.run, args=(self._thread_main, target),
                                       name=f"run-{self.run.id}", daemon=True)
        self.thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self.thread is not None:
            self.thread.join(timeout)

    def _thread_main(self, target: Callable) -> None:
        try:
            target()
        finally:
            if self.on_exit:
                self.on_exit(self)

    # --- main loop -----------------------------------------------------

    def execute(self) -> Run:
        """Run the loop until the run is terminal or paused."""
        try:
            self._enter()
            while not self.run.is_terminal:
                self._poll_control()
                if self._cancel_requested.is_set():
                    self._finish(RunStatus.CANCELLED, reason="cancelled by request")
                    break
                if self._pause_requested.is_set():
                    self._pause()
                    break

                story = select_next(self.run.backlog)
                if story is None:
                    self._complete()
                    break

                limit = self.budget.exceeded(self.run)
                if limit:
                    logger.info(f"[RUN] {self.run.id}: budget reached ({limit})")
                    self._finish(RunStatus.EXHAUSTED, reason=limit)
                    break

                self._iterate(story)
        except BranchError as e:
            self._fail(f"Source control: {e}")
        except PersistenceError as e:
            self._fail(f"Persistence: {e}")
        except Exception as e:
            logger.exception(f"[RUN] {self.run.id}: unexpected error")
            self._fail(f"Internal error: {e}")
        finally:
            # Nothing more will be published until a worker resumes the run
            self.bus.close(self.run.id)
        return self.run

    def _poll_control(self) -> None:
        """Pick up pause/cancel requests left by another process."""
        action = self.store.take_control(self.run.id)
        if action == CONTROL_CANCEL:
            self.request_cancel()
        elif action == CONTROL_PAUSE:
            self.request_pause()
        elif action:
            logger.warning(f"[RUN] {self.run.id}: ignoring unknown control request '{action}'")

    def _enter(self) -> None:
        run = self.run
        if run.status == RunStatus.PENDING:
            self.fsm.start()
            self.bus.publish(run.id, RunStarted(
                total_stories=run.stories_total,
                completed_stories=run.stories_completed,
            ))
        elif run.status == RunStatus.PAUSED:
            self.fsm.resume()
            self.bus.publish(run.id, RunResumed())
        elif run.status == RunStatus.RUNNING:
            # Worker died mid-run; the interrupted iteration was never charged
            # and is re-run under the same number.
            if run.current_story_id:
                logger.warning(
                    f"[RUN] {run.id}: discarding interrupted iteration "
                    f"{run.iterations_used + 1} ({run.current_story_id})"
                )
                run.current_story_id = None
            self.bus.publish(run.id, RunStarted(
                total_stories=run.stories_total,
                completed_stories=run.stories_completed,
                resumed=True,
            ))
        self._checkpoint()

    def _iterate(self, story: Story) -> None:
        run = self.run
        number = run.iterations_used + 1

        with self._wall_clock():
            ref = self.branches.ensure_run_branch(run, iteration=number)
        run.current_story_id = story.id
        self._checkpoint()

        result = self.driver.run(run, story, number, ref)

        story.attempts += 1
        run.current_story_id = None
        fatal_error = None
        if result.succeeded:
            story.passes = True
        elif result.fatal:
            if self.options.fatal_story_policy == POLICY_SKIP_STORY:
                story.blocked = True
                logger.warning(f"[RUN] {run.id}: skipping blocked story {story.id}")
            else:
                fatal_error = f"Story {story.id} failed: {result.iteration.error}"

        self.budget.charge(run, result.iteration)

        if result.succeeded:
            self.bus.publish(
                run.id,
                StoryCompleted(story_id=story.id, passed=run.stories_completed, total=run.stories_total),
                iteration=number,
            )
            with self._wall_clock():
                self.branches.on_story_success(run, story, iteration=number)

        self._checkpoint()
        if fatal_error:
            self._fail(fatal_error)

    @contextmanager
    def _wall_clock(self):
        started = time.monotonic()
        try:
            yield
        finally:
            self.budget.charge_overhead(self.run, time.monotonic() - started)

    # --- terminal states -----------------------------------------------

    def _complete(self) -> None:
        blocked = [s.id for s in self.run.backlog.stories if s.blocked]
        if blocked:
            self._fail(f"Stories blocked by fatal failures: {', '.join(blocked)}")
            return
        with self._wall_clock():
            self.branches.finish(self.run)
        self._finish(RunStatus.COMPLETED)

    def _finish(self, status: RunStatus, reason: str = "") -> None:
        run = self.run
        self.fsm.transition_to(status)
        self.bus.publish(run.id, RunCompleted(
            status=status.value,
            total_cost=run.total_cost,
            stories_completed=run.stories_completed,
            duration_secs=run.elapsed_seconds,
            remaining_story_ids=run.remaining_story_ids,
            reason=reason,
        ))
        self._checkpoint()
        logger.info(
            f"[RUN] {run.id}: {status.value} after {run.iterations_used} iterations "
            f"({run.stories_completed}/{run.stories_total} stories, ${run.total_cost:.4f})"
        )

    def _pause(self) -> None:
        with self._control_lock:
            if self._cancel_requested.is_set():
                self._finish(RunStatus.CANCELLED, reason="cancelled by request")
                return
            self.fsm.pause()
            self.bus.publish(self.run.id, RunPaused(reason="paused by request"))
            self._checkpoint()
            self._paused = True

    def _fail(self, error: str) -> None:
        """Move to failed and make a best-effort final write."""
        run = self.run
        logger.error(f"[RUN] {run.id}: failed: {error}")
        run.error = error
        if not run.is_terminal:
            self.fsm.transition_to(RunStatus.FAILED)
        try:
            self.bus.publish(run.id, RunFailed(error=error))
        except PersistenceError as e:
            logger.error(f"[RUN] {run.id}: could not record run_failed event: {e}")
        try:
            self._checkpoint()
        except PersistenceError as e:
            logger.error(f"[RUN] {run.id}: final checkpoint failed: {e}")
            with self._snapshot_lock:
                self._snapshot = run.snapshot()

    def _checkpoint(self) -> None:
        self.run.last_sequence = self.bus.last_sequence(self.run.id)
        self.store.save(self.run)
        with self._snapshot_lock:
            self._snapshot = self.run.snapshot()


@flow(name="storyloop_run", flow_run_name="run-{run_id}", validate_parameters=False)
def run_flow(run_id: str, worker: RunWorker) -> str:
    """Prefect flow wrapper around RunWorker.execute.

    Returns the run's final (or paused) status.
    """
    log = get_run_logger()
    log.info(f"Starting run flow: {run_id}")
    run = worker.execute()
    log.info(f"Run {run_id} finished as {run.status.value}")
    return run.status.value
