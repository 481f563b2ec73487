"""
storyloop run / resume - Drive a backlog to completion in the foreground.

Events stream to the terminal as the run progresses. Ctrl-C requests
cancellation; the in-flight iteration is allowed to finish first.
"""

import os
from pathlib import Path

from storyloop.commands.events import format_event
from storyloop.lib.errors import (
    BacklogError,
    BacklogInUse,
    BudgetError,
    InvalidTransition,
    PersistenceError,
    RunNotFound,
)
from storyloop.lib.stats import format_cost, format_duration
from storyloop.runner.locking import count_running_runs
from storyloop.runner.models import BudgetConfig, RunStatus

CREDENTIAL_ENV_DEFAULT = "CLAUDE_CODE_OAUTH_TOKEN"
CONCURRENCY_WARNING_THRESHOLD = 3

EXIT_CODES = {
    RunStatus.COMPLETED: 0,
    RunStatus.FAILED: 1,
    RunStatus.EXHAUSTED: 3,
    RunStatus.CANCELLED: 4,
    RunStatus.PAUSED: 5,
}


def _credential(args) -> str | None:
    return os.environ.get(args.credential_env or CREDENTIAL_ENV_DEFAULT)


def _follow(registry, run_id: str, quiet: bool) -> int:
    """Print events until the worker stops; Ctrl-C cancels once."""
    cursor = 0
    cancelled = False
    while True:
        try:
            for event in registry.subscribe_events(run_id, from_sequence=cursor):
                cursor = event.sequence
                if quiet and event.type == "agent_text":
                    continue
                print(format_event(event), flush=True)
            break
        except KeyboardInterrupt:
            if cancelled:
                print("\nStill waiting for the current iteration to finish...")
                continue
            cancelled = True
            print("\nCancelling after the current iteration (Ctrl-C again to keep waiting)")
            registry.cancel_run(run_id)

    run = registry.wait(run_id)
    print()
    print(f"Run {run.id}: {run.status.value}")
    print(f"  Stories:    {run.stories_completed}/{run.stories_total}")
    print(f"  Iterations: {run.iterations_used}/{run.max_iterations}")
    print(f"  Cost:       {format_cost(run.total_cost)}")
    print(f"  Agent time: {format_duration(run.elapsed_seconds)}")
    if run.pr_url:
        print(f"  PR:         {run.pr_url}")
    if run.error:
        print(f"  Error:      {run.error}")
    if run.status == RunStatus.EXHAUSTED:
        print(f"  Remaining:  {', '.join(run.remaining_story_ids)}")
    return EXIT_CODES.get(run.status, 1)


def cmd_run(args, ops_dir: Path, registry) -> int:
    """Start a run for a backlog file and follow it."""
    running = count_running_runs(ops_dir)
    if running >= CONCURRENCY_WARNING_THRESHOLD:
        print(f"WARNING: {running} runs already active in {ops_dir}")

    budget = registry.options.budget()
    budget = BudgetConfig(
        max_iterations=args.max_iterations or budget.max_iterations,
        max_cost_usd=args.max_cost if args.max_cost is not None else budget.max_cost_usd,
        max_wall_clock_seconds=(
            args.max_wall_clock if args.max_wall_clock is not None else budget.max_wall_clock_seconds
        ),
    )

    system_prompt = None
    if args.system_prompt_file:
        system_prompt = Path(args.system_prompt_file).read_text()

    project_id = args.project or Path(args.backlog).resolve().parent.name
    try:
        run_id = registry.start_run(
            project_id,
            Path(args.backlog),
            budget_config=budget,
            credential=_credential(args),
            system_prompt=system_prompt,
        )
    except (BacklogError, BacklogInUse, BudgetError, PersistenceError) as e:
        print(f"ERROR: {e}")
        return 2

    print(f"Run {run_id} started (project {project_id})")
    return _follow(registry, run_id, args.quiet)


def cmd_resume(args, ops_dir: Path, registry) -> int:
    """Resume a paused run (or recover one whose process died) and follow it."""
    try:
        registry.resume_run(args.id, credential=_credential(args))
    except RunNotFound:
        print(f"ERROR: Run '{args.id}' not found")
        return 1
    except (InvalidTransition, BacklogInUse) as e:
        print(f"ERROR: Cannot resume: {e}")
        return 2

    print(f"Run {args.id} resumed")
    return _follow(registry, args.id, args.quiet)
