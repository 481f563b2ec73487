"""
Run and iteration state machines using the transitions library.

Run lifecycle:
    pending -> running <-> paused -> {completed, exhausted, failed, cancelled}

Iteration lifecycle:
    idle -> preparing -> executing -> evaluating
         -> {succeeded, retryable_failed, fatally_failed}

Usage:
    from storyloop.workflow.fsm import RunFSM

    fsm = RunFSM(run)
    fsm.start()      # pending -> running
    fsm.pause()      # running -> paused
    fsm.resume()     # paused -> running
    fsm.complete()   # running -> completed
"""

import logging
from typing import Callable

from transitions import Machine, MachineError

from storyloop.lib.errors import InvalidTransition
from storyloop.runner.models import Run, RunStatus, utc_now

logger = logging.getLogger(__name__)


# State values must match RunStatus
RUN_STATES = [s.value for s in RunStatus]

RUN_TRANSITIONS = [
    {"trigger": "start", "source": "pending", "dest": "running"},

    # Pause/resume only between iterations
    {"trigger": "pause", "source": "running", "dest": "paused"},
    {"trigger": "resume", "source": "paused", "dest": "running"},

    # Terminal outcomes of the main loop
    {"trigger": "complete", "source": "running", "dest": "completed"},
    {"trigger": "exhaust", "source": "running", "dest": "exhausted"},

    # Failure can happen before the loop starts (validation) or while paused (resume failed)
    {"trigger": "fail", "source": ["pending", "running", "paused"], "dest": "failed"},

    {"trigger": "cancel", "source": ["pending", "running", "paused"], "dest": "cancelled"},
]


def _build_trigger_lookup(transitions: list[dict]) -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in transitions:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            lookup.setdefault((source, t["dest"]), t["trigger"])
    return lookup


RUN_TRIGGER_FOR = _build_trigger_lookup(RUN_TRANSITIONS)


class RunFSM:
    """State machine for run status management.

    Wraps the transitions library with run-specific logic:
    - Initial state taken from run.status (so a checkpoint resumes in place)
    - Every transition writes run.status and timestamps back to the Run
    - Logs all transitions
    """

    def __init__(self, run: Run, on_transition: Callable[[str, str, str], None] | None = None):
        """Initialize FSM for a run.

        Args:
            run: Run whose status this machine owns
            on_transition: Optional callback(from_state, to_state, trigger) called after transitions
        """
        self.run = run
        self.on_transition = on_transition

        self.machine = Machine(
            model=self,
            states=RUN_STATES,
            transitions=RUN_TRANSITIONS,
            initial=run.status.value,
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        """Callback after any state transition. Mirrors state onto the Run."""
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        self.run.status = RunStatus(to_state)
        now = utc_now()
        if to_state == "running" and self.run.started_at is None:
            self.run.started_at = now
        if self.run.status.is_terminal:
            self.run.completed_at = now
            self.run.current_story_id = None
        self.run.touch()

        logger.info(f"[FSM] {self.run.id}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def transition_to(self, to_state: RunStatus) -> None:
        """Destination-based API: fire the trigger that leads to to_state.

        Raises:
            InvalidTransition: If no transition from the current state leads there
        """
        current = self.state
        trigger = RUN_TRIGGER_FOR.get((current, to_state.value))
        if trigger is None:
            raise InvalidTransition(current, to_state.value, self.run.id)
        try:
            getattr(self, trigger)()
        except MachineError as e:
            raise InvalidTransition(current, to_state.value, self.run.id) from e

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        """Get list of triggers available in current state."""
        return self.machine.get_triggers(self.state)


ITERATION_STATES = [
    "idle",
    "preparing",
    "executing",
    "evaluating",
    "succeeded",
    "retryable_failed",
    "fatally_failed",
]

ITERATION_TRANSITIONS = [
    {"trigger": "prepare", "source": "idle", "dest": "preparing"},
    {"trigger": "execute", "source": "preparing", "dest": "executing"},
    {"trigger": "evaluate", "source": "executing", "dest": "evaluating"},
    {"trigger": "succeed", "source": "evaluating", "dest": "succeeded"},

    # Executor crash, network error or timeout surface from executing;
    # a failed verdict surfaces from evaluating
    {"trigger": "fail_retryable", "source": ["executing", "evaluating"], "dest": "retryable_failed"},

    # Branch preparation can fail fatally before the executor is ever called
    {"trigger": "fail_fatal", "source": ["preparing", "executing", "evaluating"], "dest": "fatally_failed"},
]

ITERATION_FINAL_STATES = frozenset({"succeeded", "retryable_failed", "fatally_failed"})


class IterationFSM:
    """State machine for a single iteration. Lives only for that iteration."""

    def __init__(self, run_id: str, number: int):
        self.run_id = run_id
        self.number = number
        self.machine = Machine(
            model=self,
            states=ITERATION_STATES,
            transitions=ITERATION_TRANSITIONS,
            initial="idle",
            auto_transitions=False,
            after_state_change="on_state_change",
        )

    def on_state_change(self) -> None:
        logger.debug(f"[ITER] {self.run_id} #{self.number}: -> {self.state}")

    @property
    def finished(self) -> bool:
        return self.state in ITERATION_FINAL_STATES
