"""
Run registry: the control surface for agent runs.

Owns the store, the event bus and one RunWorker per live run. Runs are
created by start_run and leave the registry only through forget() (once
terminal) or delete_run(). A paused run has no worker; resume_run builds
a new one from the last checkpoint, which is also how a run left
"running" by a dead process is recovered.

Usage:
    registry = RunRegistry(ops_dir, executor_factory, provider_factory)
    run_id = registry.start_run("acme", Path("prd.json"))
    for event in registry.subscribe_events(run_id):
        print(event.type)
"""

import json
import logging
import threading
import uuid
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from storyloop.agents.executor import AgentExecutor
from storyloop.lib.config import RunOptions, load_run_options
from storyloop.lib.errors import BacklogError, BacklogInUse, InvalidTransition, RunNotFound
from storyloop.lib.github import ScmProvider
from storyloop.lib.validate import ValidationError, validate
from storyloop.runner.budget import validate_budget
from storyloop.runner.events import Event, EventBus, RunCompleted
from storyloop.runner.locking import LockTimeout, backlog_lock
from storyloop.runner.models import Backlog, BudgetConfig, Run, RunStatus, RunSummary
from storyloop.runner.store import FileRunStore
from storyloop.workflow.engine import CONTROL_CANCEL, CONTROL_PAUSE, RunWorker
from storyloop.workflow.fsm import RunFSM

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50

ExecutorFactory = Callable[[Run], AgentExecutor]
ProviderFactory = Callable[[Run], ScmProvider]


@dataclass
class BacklogRef:
    """A backlog document plus the id of where it came from."""
    source_id: str
    document: dict


def load_backlog_ref(path: Union[str, Path]) -> BacklogRef:
    """Read a backlog JSON file. The resolved path is its source id."""
    path = Path(path).resolve()
    try:
        document = json.loads(path.read_text())
    except OSError as e:
        raise BacklogError(f"Cannot read backlog {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise BacklogError(f"Invalid JSON in backlog {path}: {e}") from e
    return BacklogRef(source_id=str(path), document=document)


def parse_backlog(ref: BacklogRef) -> Backlog:
    """Validate the document and build the run's backlog.

    Raises:
        BacklogError: Schema violation, no stories, or duplicate story ids
    """
    try:
        validate(ref.document, "backlog")
    except ValidationError as e:
        raise BacklogError(str(e)) from e

    backlog = Backlog.from_document(ref.document)
    if not backlog.stories:
        raise BacklogError(f"Backlog {ref.source_id} has no stories")

    seen = set()
    dupes = []
    for story in backlog.stories:
        if story.id in seen:
            dupes.append(story.id)
        seen.add(story.id)
    if dupes:
        raise BacklogError(f"Duplicate story ids in {ref.source_id}: {', '.join(dupes)}")
    return backlog


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class RunRegistry:

    def __init__(
        self,
        ops_dir: Path,
        executor_factory: ExecutorFactory,
        provider_factory: ProviderFactory,
        options: Optional[RunOptions] = None,
        store: Optional[FileRunStore] = None,
        as_flow: bool = False,
    ):
        self.ops_dir = Path(ops_dir)
        self.options = options or load_run_options(self.ops_dir)
        self.store = store or FileRunStore(self.ops_dir)
        self.bus = EventBus(sink=self.store.append_event, loader=self.store.load_events)
        self.executor_factory = executor_factory
        self.provider_factory = provider_factory
        self.as_flow = as_flow
        self._workers: dict[str, RunWorker] = {}
        self._lock = threading.RLock()

    # --- lifecycle -----------------------------------------------------

    def start_run(
        self,
        project_id: str,
        backlog_ref: Union[BacklogRef, str, Path],
        max_iterations: Optional[int] = None,
        budget_config: Optional[BudgetConfig] = None,
        credential: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> str:
        """
        Validate inputs, persist a pending run and start its worker.

        Raises:
            BacklogError: Invalid or empty backlog
            BudgetError: Unusable budget
            BacklogInUse: Another active run owns this backlog
            PersistenceError: The initial checkpoint could not be written
        """
        if not isinstance(backlog_ref, BacklogRef):
            backlog_ref = load_backlog_ref(backlog_ref)
        backlog = parse_backlog(backlog_ref)

        budget = budget_config or self.options.budget()
        if max_iterations is not None:
            budget = BudgetConfig(
                max_iterations=max_iterations,
                max_cost_usd=budget.max_cost_usd,
                max_wall_clock_seconds=budget.max_wall_clock_seconds,
            )
        validate_budget(budget)

        with self._lock:
            claim = self._claim_backlog(backlog_ref.source_id)
            try:
                run = Run(
                    id=new_run_id(),
                    project_id=project_id,
                    source_id=backlog_ref.source_id,
                    backlog=backlog,
                    budget=budget,
                    system_prompt=system_prompt,
                )
                self.store.save(run)
                self._spawn(run, credential, claim)
            except BaseException:
                claim.close()
                raise

        logger.info(
            f"[RUN] Started {run.id} for {project_id}: {run.stories_total} stories, "
            f"max {budget.max_iterations} iterations"
        )
        return run.id

    def _claim_backlog(self, source_id: str) -> ExitStack:
        """Take the backlog claim. Caller must hold self._lock."""
        for worker in self._workers.values():
            if worker.run.source_id == source_id and not worker.run.is_terminal:
                raise BacklogInUse(source_id, worker.run.id)
        holder = self.store.find_active_for_source(source_id)
        if holder is not None:
            raise BacklogInUse(source_id, holder.id)

        claim = ExitStack()
        try:
            claim.enter_context(backlog_lock(self.ops_dir, source_id))
        except LockTimeout as e:
            raise BacklogInUse(source_id) from e
        return claim

    def _held_elsewhere(self, source_id: str) -> bool:
        """True if some other worker (any process) holds the backlog claim."""
        try:
            with backlog_lock(self.ops_dir, source_id):
                return False
        except LockTimeout:
            return True

    def _spawn(self, run: Run, credential: Optional[str], claim: ExitStack) -> RunWorker:
        def on_exit(worker: RunWorker) -> None:
            claim.close()
            logger.debug(f"[RUN] {worker.run.id}: worker exited ({worker.run.status.value})")

        worker = RunWorker(
            run,
            self.store,
            self.bus,
            executor=self.executor_factory(run),
            provider=self.provider_factory(run),
            options=self.options,
            credential=credential,
            on_exit=on_exit,
        )
        self._workers[run.id] = worker
        worker.start(as_flow=self.as_flow)
        return worker

    def pause_run(self, run_id: str) -> None:
        """Ask a running run to pause at the next iteration boundary."""
        with self._lock:
            worker = self._live_worker(run_id)
            if worker is None:
                run = self.store.load(run_id)
                if run.status == RunStatus.RUNNING and self._held_elsewhere(run.source_id):
                    self.store.request_control(run_id, CONTROL_PAUSE)
                    logger.info(f"[RUN] {run_id}: pause requested from another process")
                    return
                raise InvalidTransition(run.status.value, RunStatus.PAUSED.value, run_id)
            worker.request_pause()
        logger.info(f"[RUN] {run_id}: pause requested")

    def resume_run(self, run_id: str, credential: Optional[str] = None) -> None:
        """
        Continue a paused run, or recover one left running by a dead worker.

        Raises:
            InvalidTransition: Run is terminal or its worker is still alive
            BacklogInUse: The backlog claim is held elsewhere
        """
        with self._lock:
            if self._live_worker(run_id) is not None:
                raise InvalidTransition(RunStatus.RUNNING.value, RunStatus.RUNNING.value, run_id)
            run = self.store.load(run_id)
            if run.status not in (RunStatus.PAUSED, RunStatus.RUNNING):
                raise InvalidTransition(run.status.value, RunStatus.RUNNING.value, run_id)

            claim = ExitStack()
            try:
                claim.enter_context(backlog_lock(self.ops_dir, run.source_id))
            except LockTimeout as e:
                raise BacklogInUse(run.source_id, run_id) from e
            try:
                self.bus.reopen(run_id)
                self._spawn(run, credential, claim)
            except BaseException:
                claim.close()
                raise
        logger.info(f"[RUN] {run_id}: resumed from {run.status.value}")

    def cancel_run(self, run_id: str) -> None:
        """
        Cancel a run. A live run stops after its in-flight iteration; a
        paused (or orphaned) run is cancelled immediately.
        """
        with self._lock:
            worker = self._live_worker(run_id)
            if worker is not None and worker.request_cancel():
                logger.info(f"[RUN] {run_id}: cancel requested")
                return

            # No worker, or it already paused and checkpointed
            run = self.store.load(run_id)
            if run.status in (RunStatus.PENDING, RunStatus.RUNNING) and self._held_elsewhere(run.source_id):
                self.store.request_control(run_id, CONTROL_CANCEL)
                logger.info(f"[RUN] {run_id}: cancel requested from another process")
                return

            fsm = RunFSM(run)
            fsm.transition_to(RunStatus.CANCELLED)
            self.bus.publish(run_id, RunCompleted(
                status=RunStatus.CANCELLED.value,
                total_cost=run.total_cost,
                stories_completed=run.stories_completed,
                duration_secs=run.elapsed_seconds,
                remaining_story_ids=run.remaining_story_ids,
                reason="cancelled by request",
            ))
            run.last_sequence = self.bus.last_sequence(run_id)
            self.store.save(run)
            self.bus.close(run_id)
            # The exited worker's snapshot is stale now
            self._workers.pop(run_id, None)
        logger.info(f"[RUN] {run_id}: cancelled")

    def delete_run(self, run_id: str) -> None:
        """Remove a terminal run and its event log."""
        with self._lock:
            run = self.get_run(run_id)
            if not run.is_terminal:
                raise InvalidTransition(run.status.value, "deleted", run_id)
            self._workers.pop(run_id, None)
            self.bus.forget(run_id)
            self.store.delete(run_id)
        logger.info(f"[RUN] {run_id}: deleted")

    def forget(self, run_id: str) -> None:
        """Drop a terminal run from memory. Its checkpoint stays on disk."""
        with self._lock:
            worker = self._workers.get(run_id)
            if worker is not None and (worker.alive or not worker.run.is_terminal):
                raise InvalidTransition(worker.run.status.value, "forgotten", run_id)
            self._workers.pop(run_id, None)
            self.bus.forget(run_id)

    # --- queries -------------------------------------------------------

    def _live_worker(self, run_id: str) -> Optional[RunWorker]:
        worker = self._workers.get(run_id)
        if worker is not None and worker.alive:
            return worker
        return None

    def get_run(self, run_id: str) -> Run:
        """Snapshot of the run as of its last checkpoint."""
        with self._lock:
            worker = self._workers.get(run_id)
        if worker is not None:
            return worker.get_snapshot()
        return self.store.load(run_id)

    def list_runs(
        self,
        project_id: Optional[str] = None,
        status: Optional[Union[RunStatus, str]] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[RunSummary]:
        """Newest first."""
        if isinstance(status, str):
            status = RunStatus(status)

        runs = {run.id: run for run in self.store.list()}
        with self._lock:
            workers = list(self._workers.values())
        for worker in workers:
            runs[worker.run.id] = worker.get_snapshot()

        selected = [
            run for run in runs.values()
            if (project_id is None or run.project_id == project_id)
            and (status is None or run.status == status)
        ]
        selected.sort(key=lambda r: r.created_at, reverse=True)
        return [RunSummary.from_run(run) for run in selected[:limit]]

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Run:
        """Block until the run's worker exits (terminal or paused)."""
        with self._lock:
            worker = self._workers.get(run_id)
        if worker is None:
            return self.get_run(run_id)
        worker.join(timeout)
        return worker.get_snapshot()

    def subscribe_events(
        self,
        run_id: str,
        from_sequence: int = 0,
        timeout: Optional[float] = None,
    ) -> Iterator[Event]:
        """Replay events after from_sequence, then follow the run live.

        For runs with no live worker the iterator ends after the replay.
        """
        with self._lock:
            if self._live_worker(run_id) is None:
                if run_id not in self._workers and not self.store.exists(run_id):
                    raise RunNotFound(run_id)
                self.bus.close(run_id)
        return self.bus.subscribe(run_id, from_sequence=from_sequence, timeout=timeout)

    def join_all(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            workers = list(self._workers.values())
        for worker in workers:
            worker.join(timeout)
