"""
Run statistics for display.

Aggregates a run's iteration history into totals per story and per tool.
"""

from collections import Counter
from dataclasses import dataclass, field

from storyloop.runner.models import IterationOutcome, Run


@dataclass
class StoryStats:
    """Totals for one story across all its iterations."""
    story_id: str
    iterations: int = 0
    failures: int = 0
    cost: float = 0.0
    elapsed_seconds: float = 0.0


@dataclass
class RunStats:
    """Aggregated stats summary."""
    iterations: int
    successes: int
    retryable_failures: int
    fatal_failures: int
    total_cost: float
    total_tokens: int
    elapsed_seconds: float
    by_story: dict[str, StoryStats] = field(default_factory=dict)
    tools: Counter = field(default_factory=Counter)


def get_run_stats(run: Run) -> RunStats:
    outcomes = Counter(it.outcome for it in run.iterations)
    by_story: dict[str, StoryStats] = {}
    tools: Counter = Counter()

    for it in run.iterations:
        s = by_story.setdefault(it.story_id, StoryStats(story_id=it.story_id))
        s.iterations += 1
        s.cost += it.cost
        s.elapsed_seconds += it.duration_seconds
        if it.outcome != IterationOutcome.SUCCESS:
            s.failures += 1
        tools.update(it.tools)

    return RunStats(
        iterations=len(run.iterations),
        successes=outcomes[IterationOutcome.SUCCESS],
        retryable_failures=outcomes[IterationOutcome.RETRYABLE_FAILURE],
        fatal_failures=outcomes[IterationOutcome.FATAL_FAILURE],
        total_cost=run.total_cost,
        total_tokens=run.total_tokens,
        elapsed_seconds=run.elapsed_seconds,
        by_story=by_story,
        tools=tools,
    )


def format_duration(seconds: float) -> str:
    """Format seconds as human-readable duration."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes < 60:
        return f"{minutes}m {secs:.0f}s"
    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"


def format_cost(cost: float) -> str:
    return f"${cost:.2f}" if cost >= 0.01 or cost == 0 else f"${cost:.4f}"


def format_stats_summary(stats: RunStats, top_tools: int = 5) -> list[str]:
    """Format stats summary as list of lines for display."""
    lines = [
        f"  Iterations:    {stats.iterations} ({stats.successes} ok, "
        f"{stats.retryable_failures} retried, {stats.fatal_failures} fatal)",
        f"  Agent time:    {format_duration(stats.elapsed_seconds)}",
        f"  Cost:          {format_cost(stats.total_cost)}",
    ]
    if stats.total_tokens:
        lines.append(f"  Tokens:        {stats.total_tokens:,}")
    if stats.tools:
        used = ", ".join(f"{name} x{count}" for name, count in stats.tools.most_common(top_tools))
        lines.append(f"  Tools:         {used}")
    return lines
