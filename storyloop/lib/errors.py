"""
Exception types shared across storyloop.

Executor errors live in storyloop.agents.executor, source-control errors in
storyloop.lib.github and schema errors in storyloop.lib.validate.
"""


class StoryloopError(Exception):
    """Base class for storyloop errors."""
    pass


class ConfigError(StoryloopError):
    """Invalid configuration value."""
    pass


class BacklogError(StoryloopError):
    """Backlog document is malformed or empty."""
    pass


class BacklogInUse(StoryloopError):
    """Another active run already owns this backlog."""

    def __init__(self, source_id: str, run_id: str | None = None):
        self.source_id = source_id
        self.run_id = run_id
        holder = f" (held by run {run_id})" if run_id else ""
        super().__init__(f"Backlog '{source_id}' is in use by an active run{holder}")


class RunNotFound(StoryloopError):
    """No run with this id exists."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class InvalidTransition(StoryloopError):
    """Raised when attempting an invalid run state transition."""

    def __init__(self, from_state: str, to_state: str, run_id: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.run_id = run_id
        super().__init__(
            f"Invalid transition: {from_state} -> {to_state}"
            + (f" (run: {run_id})" if run_id else "")
        )


class BudgetError(StoryloopError):
    """Budget accounting was misused (e.g. charging an iteration twice)."""
    pass


class PersistenceError(StoryloopError):
    """A checkpoint could not be written or read."""
    pass


class BranchError(StoryloopError):
    """Source-control failure that is fatal to the run."""
    pass
