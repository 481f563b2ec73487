"""
Data models for agent runs.

A Run owns a private copy of its backlog, its iteration history and
(through the event bus) its event log. Everything here is plain data;
the state machine and loop live in storyloop.workflow.
"""

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

UNGROUPED_EPIC = "Ungrouped"

DEFAULT_MAX_ITERATIONS = 10


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class RunStatus(Enum):
    """All valid run states.

    Values match the FSM state strings in storyloop.workflow.fsm.
    """

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"

    # Terminal states
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.EXHAUSTED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
})


class IterationOutcome(Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass
class Story:
    """One unit of work with acceptance criteria and a priority."""
    id: str
    title: str
    priority: int
    acceptance_criteria: list[str] = field(default_factory=list)
    epic: Optional[str] = None                 # None -> "Ungrouped"
    description: str = ""
    passes: bool = False                       # Set only by the run loop
    attempts: int = 0                          # Bumped on every iteration outcome
    blocked: bool = False                      # Fatal failure under skip_story policy

    @property
    def epic_label(self) -> str:
        return self.epic or UNGROUPED_EPIC

    @classmethod
    def from_dict(cls, data: dict) -> "Story":
        """Build from either the camelCase input document or a checkpoint."""
        criteria = data.get("acceptance_criteria", data.get("acceptanceCriteria", []))
        return cls(
            id=str(data["id"]),
            title=data["title"],
            priority=int(data.get("priority", 0)),
            acceptance_criteria=list(criteria or []),
            epic=data.get("epic") or None,
            description=data.get("description", "") or "",
            passes=bool(data.get("passes", False)),
            attempts=int(data.get("attempts", 0)),
            blocked=bool(data.get("blocked", False)),
        )


@dataclass
class Backlog:
    """Ordered stories for one run plus the declared integration branch."""
    branch_name: str
    stories: list[Story] = field(default_factory=list)
    project: str = ""
    description: str = ""

    def get(self, story_id: str) -> Optional[Story]:
        for story in self.stories:
            if story.id == story_id:
                return story
        return None

    @property
    def remaining(self) -> list[Story]:
        return [s for s in self.stories if not s.passes]

    def by_epic(self) -> dict[str, list[Story]]:
        """Group stories by epic label, preserving backlog order."""
        groups: dict[str, list[Story]] = {}
        for story in self.stories:
            groups.setdefault(story.epic_label, []).append(story)
        return groups

    def copy(self) -> "Backlog":
        return copy.deepcopy(self)

    @classmethod
    def from_document(cls, doc: dict) -> "Backlog":
        """Parse the story-source document (camelCase keys)."""
        return cls(
            branch_name=doc.get("branchName") or doc.get("branch_name") or "",
            stories=[Story.from_dict(s) for s in doc.get("userStories", doc.get("stories", []))],
            project=doc.get("project", "") or "",
            description=doc.get("description", "") or "",
        )

    @classmethod
    def from_dict(cls, data: dict) -> "Backlog":
        return cls(
            branch_name=data["branch_name"],
            stories=[Story.from_dict(s) for s in data.get("stories", [])],
            project=data.get("project", ""),
            description=data.get("description", ""),
        )


@dataclass
class BudgetConfig:
    """Run limits. None disables a ceiling."""
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_cost_usd: Optional[float] = None
    max_wall_clock_seconds: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict) -> "BudgetConfig":
        return cls(
            max_iterations=int(data.get("max_iterations", DEFAULT_MAX_ITERATIONS)),
            max_cost_usd=data.get("max_cost_usd"),
            max_wall_clock_seconds=data.get("max_wall_clock_seconds"),
        )


@dataclass
class Iteration:
    """One attempt at one story. Immutable once appended to a run."""
    number: int
    story_id: str
    outcome: IterationOutcome
    cost: float
    duration_seconds: float
    started_at: str
    ended_at: str
    error: Optional[str] = None                # Present iff outcome != success
    tokens: int = 0
    tools: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Iteration":
        return cls(
            number=data["number"],
            story_id=data["story_id"],
            outcome=IterationOutcome(data["outcome"]),
            cost=float(data.get("cost", 0.0)),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
            started_at=data["started_at"],
            ended_at=data["ended_at"],
            error=data.get("error"),
            tokens=int(data.get("tokens", 0)),
            tools=dict(data.get("tools", {})),
        )


@dataclass
class Run:
    """One execution of a backlog."""
    id: str
    project_id: str
    source_id: str
    backlog: Backlog
    budget: BudgetConfig
    status: RunStatus = RunStatus.PENDING
    iterations_used: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0
    elapsed_seconds: float = 0.0
    branch_name: Optional[str] = None          # Actual run branch once created
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    current_story_id: Optional[str] = None     # Only while an iteration is in flight
    iterations: list[Iteration] = field(default_factory=list)
    system_prompt: Optional[str] = None
    error: Optional[str] = None
    last_sequence: int = 0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def max_iterations(self) -> int:
        return self.budget.max_iterations

    @property
    def stories_total(self) -> int:
        return len(self.backlog.stories)

    @property
    def stories_completed(self) -> int:
        return sum(1 for s in self.backlog.stories if s.passes)

    @property
    def remaining_story_ids(self) -> list[str]:
        return [s.id for s in self.backlog.remaining]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self) -> None:
        self.updated_at = utc_now()

    def snapshot(self) -> "Run":
        """Deep copy safe to hand to callers."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "version": 1,
            "id": self.id,
            "project_id": self.project_id,
            "source_id": self.source_id,
            "status": self.status.value,
            "budget": asdict(self.budget),
            "iterations_used": self.iterations_used,
            "total_cost": self.total_cost,
            "total_tokens": self.total_tokens,
            "elapsed_seconds": self.elapsed_seconds,
            "branch_name": self.branch_name,
            "pr_number": self.pr_number,
            "pr_url": self.pr_url,
            "current_story_id": self.current_story_id,
            "backlog": asdict(self.backlog),
            "iterations": [it.to_dict() for it in self.iterations],
            "system_prompt": self.system_prompt,
            "error": self.error,
            "last_sequence": self.last_sequence,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Run":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            source_id=data["source_id"],
            backlog=Backlog.from_dict(data["backlog"]),
            budget=BudgetConfig.from_dict(data.get("budget", {})),
            status=RunStatus(data["status"]),
            iterations_used=int(data.get("iterations_used", 0)),
            total_cost=float(data.get("total_cost", 0.0)),
            total_tokens=int(data.get("total_tokens", 0)),
            elapsed_seconds=float(data.get("elapsed_seconds", 0.0)),
            branch_name=data.get("branch_name"),
            pr_number=data.get("pr_number"),
            pr_url=data.get("pr_url"),
            current_story_id=data.get("current_story_id"),
            iterations=[Iteration.from_dict(i) for i in data.get("iterations", [])],
            system_prompt=data.get("system_prompt"),
            error=data.get("error"),
            last_sequence=int(data.get("last_sequence", 0)),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class RunSummary:
    """Row returned by list_runs."""
    id: str
    project_id: str
    source_id: str
    status: str
    iterations_used: int
    max_iterations: int
    stories_completed: int
    stories_total: int
    total_cost: float
    created_at: str
    updated_at: str
    error: Optional[str] = None

    @classmethod
    def from_run(cls, run: Run) -> "RunSummary":
        return cls(
            id=run.id,
            project_id=run.project_id,
            source_id=run.source_id,
            status=run.status.value,
            iterations_used=run.iterations_used,
            max_iterations=run.max_iterations,
            stories_completed=run.stories_completed,
            stories_total=run.stories_total,
            total_cost=run.total_cost,
            created_at=run.created_at,
            updated_at=run.updated_at,
            error=run.error,
        )
