"""
storyloop show - Show run details.
"""

from pathlib import Path

from storyloop.lib.errors import PersistenceError, RunNotFound
from storyloop.lib.stats import format_cost, format_duration, format_stats_summary, get_run_stats


def cmd_show(args, ops_dir: Path, registry) -> int:
    """Show run status, backlog progress and iteration history."""
    try:
        run = registry.get_run(args.id)
    except RunNotFound:
        print(f"ERROR: Run '{args.id}' not found")
        return 1
    except PersistenceError as e:
        print(f"ERROR: {e}")
        return 1

    print(f"Run: {run.id}")
    print("=" * 60)
    print(f"Project:    {run.project_id}")
    print(f"Backlog:    {run.source_id}")
    print(f"Status:     {run.status.value}")
    print(f"Branch:     {run.branch_name or '(not created)'}")
    if run.pr_number:
        print(f"PR:         #{run.pr_number} {run.pr_url or ''}")
    if run.current_story_id:
        print(f"Working on: {run.current_story_id}")
    if run.error:
        print(f"Error:      {run.error}")
    print()

    print("Stories")
    print("-" * 40)
    print(f"  Progress: {run.stories_completed}/{run.stories_total}")
    for epic, stories in run.backlog.by_epic().items():
        print(f"  {epic}")
        for story in stories:
            marker = "[x]" if story.passes else "[!]" if story.blocked else "[ ]"
            attempts = f" ({story.attempts} attempts)" if story.attempts > 1 else ""
            print(f"    {marker} {story.id}: {story.title}{attempts}")
    print()

    stats = get_run_stats(run)
    print("Budget")
    print("-" * 40)
    print(f"  Iterations:  {run.iterations_used}/{run.max_iterations}")
    if run.budget.max_cost_usd is not None:
        print(f"  Cost cap:    {format_cost(run.budget.max_cost_usd)}")
    if run.budget.max_wall_clock_seconds is not None:
        print(f"  Time cap:    {format_duration(run.budget.max_wall_clock_seconds)}")
    for line in format_stats_summary(stats):
        print(line)
    print()

    if run.iterations and args.iterations:
        print("Iterations")
        print("-" * 40)
        symbol = {"success": "+", "retryable_failure": "~", "fatal_failure": "x"}
        for it in run.iterations:
            error = f" - {it.error[:50]}" if it.error else ""
            print(f"  [{symbol.get(it.outcome.value, '?')}] #{it.number} {it.story_id} "
                  f"{format_duration(it.duration_seconds)} {format_cost(it.cost)}{error}")
        print()

    return 0
