"""
Run events and the per-run event bus.

Events form a closed tagged union (pydantic models discriminated on
``type``). The bus assigns each published event the next sequence number
for its run under a per-run lock, keeps the log in memory, optionally
forwards it to a durable sink, and lets any number of subscribers replay
from any earlier sequence number and then follow live.

Usage:
    bus = EventBus()
    bus.publish(run_id, IterationStarted(story_id="S1", story_title="Login"), iteration=1)
    for event in bus.subscribe(run_id, from_sequence=0):
        print(event.type, event.sequence)
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Annotated, Callable, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

logger = logging.getLogger(__name__)


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class AgentText(_Payload):
    type: Literal["agent_text"] = "agent_text"
    text: str


class AgentTool(_Payload):
    type: Literal["agent_tool"] = "agent_tool"
    tool: str
    detail: str = ""


class IterationStarted(_Payload):
    type: Literal["iteration_started"] = "iteration_started"
    story_id: str
    story_title: str
    attempt: int


class IterationCompleted(_Payload):
    type: Literal["iteration_completed"] = "iteration_completed"
    story_id: str
    cost: float
    duration_secs: float
    tools: dict[str, int] = Field(default_factory=dict)


class IterationFailed(_Payload):
    type: Literal["iteration_failed"] = "iteration_failed"
    story_id: str
    error: str
    retryable: bool
    attempt: int
    cost: float = 0.0
    duration_secs: float = 0.0


class BranchCreated(_Payload):
    type: Literal["branch_created"] = "branch_created"
    branch: str


class PrCreated(_Payload):
    type: Literal["pr_created"] = "pr_created"
    pr_number: int
    pr_url: str = ""


class PrMerged(_Payload):
    type: Literal["pr_merged"] = "pr_merged"
    pr_number: int


class StoryCompleted(_Payload):
    type: Literal["story_completed"] = "story_completed"
    story_id: str
    passed: int
    total: int


class RunStarted(_Payload):
    type: Literal["run_started"] = "run_started"
    total_stories: int
    completed_stories: int
    resumed: bool = False


class RunPaused(_Payload):
    type: Literal["run_paused"] = "run_paused"
    reason: str = ""


class RunResumed(_Payload):
    type: Literal["run_resumed"] = "run_resumed"


class RunCompleted(_Payload):
    type: Literal["run_completed"] = "run_completed"
    status: Literal["completed", "exhausted", "cancelled"]
    total_cost: float
    stories_completed: int
    duration_secs: float
    remaining_story_ids: list[str] = Field(default_factory=list)
    reason: str = ""


class RunFailed(_Payload):
    type: Literal["run_failed"] = "run_failed"
    error: str


EventPayload = Annotated[
    Union[
        AgentText,
        AgentTool,
        IterationStarted,
        IterationCompleted,
        IterationFailed,
        BranchCreated,
        PrCreated,
        PrMerged,
        StoryCompleted,
        RunStarted,
        RunPaused,
        RunResumed,
        RunCompleted,
        RunFailed,
    ],
    Field(discriminator="type"),
]

EVENT_TYPES = (
    "agent_text",
    "agent_tool",
    "iteration_started",
    "iteration_completed",
    "iteration_failed",
    "branch_created",
    "pr_created",
    "pr_merged",
    "story_completed",
    "run_started",
    "run_paused",
    "run_resumed",
    "run_completed",
    "run_failed",
)


class Event(BaseModel):
    """An emitted event. Immutable; sequence is unique within its run."""
    model_config = ConfigDict(frozen=True)

    run_id: str
    sequence: int
    timestamp: datetime
    iteration: Optional[int] = None
    payload: EventPayload

    @property
    def type(self) -> str:
        return self.payload.type

    def to_record(self) -> dict:
        """Wire form: {type, run_id, iteration, sequence, timestamp, payload}."""
        payload = self.payload.model_dump(mode="json")
        payload.pop("type")
        return {
            "type": self.type,
            "run_id": self.run_id,
            "iteration": self.iteration,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "payload": payload,
        }

    @classmethod
    def from_record(cls, record: dict) -> "Event":
        payload = dict(record.get("payload") or {})
        payload["type"] = record["type"]
        return cls(
            run_id=record["run_id"],
            sequence=record["sequence"],
            timestamp=record["timestamp"],
            iteration=record.get("iteration"),
            payload=_payload_adapter.validate_python(payload),
        )


_payload_adapter = TypeAdapter(EventPayload)


class _RunLog:
    """Events for one run plus the condition subscribers wait on."""

    def __init__(self, events: list[Event]):
        self.events = events
        self.closed = False
        self.cond = threading.Condition()

    @property
    def last_sequence(self) -> int:
        return self.events[-1].sequence if self.events else 0


EventSink = Callable[[Event], None]
EventLoader = Callable[[str], list[Event]]


class EventBus:
    """
    Ordered, append-only, replayable fan-out of run events.

    Args:
        sink: Optional callable invoked with every event before it becomes
            visible to subscribers (e.g. RunStore.append_event). If the sink
            raises, the event is not published and the error propagates.
        loader: Optional callable returning previously persisted events for
            a run; consulted the first time a run is touched so sequence
            numbers continue across process restarts.
    """

    def __init__(self, sink: Optional[EventSink] = None, loader: Optional[EventLoader] = None):
        self._sink = sink
        self._loader = loader
        self._logs: dict[str, _RunLog] = {}
        self._lock = threading.Lock()

    def _log_for(self, run_id: str) -> _RunLog:
        with self._lock:
            log = self._logs.get(run_id)
            if log is None:
                existing = self._loader(run_id) if self._loader else []
                log = _RunLog(sorted(existing, key=lambda e: e.sequence))
                self._logs[run_id] = log
            return log

    def publish(self, run_id: str, payload: _Payload, iteration: Optional[int] = None) -> Event:
        """Append an event to the run's log and wake subscribers."""
        log = self._log_for(run_id)
        with log.cond:
            if log.closed:
                log.closed = False  # A resumed run reopens its log
            event = Event(
                run_id=run_id,
                sequence=log.last_sequence + 1,
                timestamp=datetime.now(timezone.utc),
                iteration=iteration,
                payload=payload,
            )
            if self._sink:
                self._sink(event)
            log.events.append(event)
            log.cond.notify_all()
        logger.debug(f"[BUS] {run_id} #{event.sequence} {event.type}")
        return event

    def subscribe(
        self,
        run_id: str,
        from_sequence: int = 0,
        timeout: Optional[float] = None,
    ) -> Iterator[Event]:
        """
        Yield events with sequence > from_sequence, in order, then follow live.

        The iterator ends once the run's log is closed and drained, or when
        no new event arrives within ``timeout`` seconds (if given).
        """
        log = self._log_for(run_id)
        cursor = from_sequence
        while True:
            with log.cond:
                pending = [e for e in log.events if e.sequence > cursor]
                if not pending:
                    if log.closed:
                        return
                    if not log.cond.wait(timeout=timeout) and timeout is not None:
                        return
                    continue
            for event in pending:
                cursor = event.sequence
                yield event

    def events(self, run_id: str, from_sequence: int = 0) -> list[Event]:
        """Snapshot of the log (no blocking)."""
        log = self._log_for(run_id)
        with log.cond:
            return [e for e in log.events if e.sequence > from_sequence]

    def last_sequence(self, run_id: str) -> int:
        log = self._log_for(run_id)
        with log.cond:
            return log.last_sequence

    def close(self, run_id: str) -> None:
        """Mark a run's log finished; subscribers drain and stop."""
        log = self._log_for(run_id)
        with log.cond:
            log.closed = True
            log.cond.notify_all()

    def reopen(self, run_id: str) -> None:
        """Mark a run's log live again (run resumed)."""
        log = self._log_for(run_id)
        with log.cond:
            log.closed = False

    def is_closed(self, run_id: str) -> bool:
        log = self._log_for(run_id)
        with log.cond:
            return log.closed

    def forget(self, run_id: str) -> None:
        """Drop the in-memory log (run archived or deleted)."""
        with self._lock:
            log = self._logs.pop(run_id, None)
        if log is not None:
            with log.cond:
                log.closed = True
                log.cond.notify_all()
