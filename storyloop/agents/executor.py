"""
Agent executor contract.

An executor receives one story's context plus an opaque credential and
streams back text chunks and tool invocations, finishing with exactly one
Verdict. Executors report infrastructure trouble by raising:

- ExecutorError: crash, network failure, malformed output. Retryable.
- FatalExecutorError: the executor cannot proceed at all (bad credential,
  malformed story). Not retried.
"""

from dataclasses import dataclass, field
from typing import Iterator, Optional, Protocol, Union


@dataclass
class StoryContext:
    """Everything the agent needs to work on one story."""
    run_id: str
    iteration: int
    story_id: str
    title: str
    epic: str
    description: str
    acceptance_criteria: list[str]
    branch: str
    attempt: int
    max_attempts: int
    completed_stories: list[str] = field(default_factory=list)  # Titles already passing
    previous_error: Optional[str] = None
    system_prompt: Optional[str] = None
    project: str = ""


@dataclass
class TextChunk:
    text: str


@dataclass
class ToolInvocation:
    tool: str
    detail: str = ""


@dataclass
class Verdict:
    """Terminal message of an execution."""
    success: bool
    reason: str = ""
    fatal: bool = False                        # Executor says retrying is pointless
    cost: float = 0.0
    tokens: int = 0


ExecutorMessage = Union[TextChunk, ToolInvocation, Verdict]


class ExecutorError(Exception):
    """Transient executor failure (crash, network, bad output)."""

    def __init__(self, message: str, cost: float = 0.0):
        self.cost = cost
        super().__init__(message, cost)

    def __str__(self) -> str:
        return self.args[0]


class FatalExecutorError(ExecutorError):
    """The executor cannot proceed; retrying the story will not help."""
    pass


class AgentExecutor(Protocol):
    """What the iteration driver needs from an agent executor."""

    def execute(self, context: StoryContext, credential: Optional[str]) -> Iterator[ExecutorMessage]:
        ...

    def abort(self) -> None:
        """Stop an in-flight execution (called only on timeout)."""
        ...
