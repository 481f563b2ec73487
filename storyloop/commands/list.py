"""
storyloop list - List runs, newest first.
"""

from pathlib import Path

from storyloop.lib.stats import format_cost


def cmd_list(args, ops_dir: Path, registry) -> int:
    summaries = registry.list_runs(project_id=args.project, status=args.status, limit=args.limit)

    if not summaries:
        print("Runs: none")
        print()
        print("Get started:")
        print("  storyloop run prd.json --project <name>")
        return 0

    print("Runs")
    print("-" * 72)
    for s in summaries:
        stories = f"{s.stories_completed}/{s.stories_total}"
        iterations = f"{s.iterations_used}/{s.max_iterations}"
        print(f"  {s.id:<14} {s.project_id[:14]:<14} {s.status:<10} "
              f"stories {stories:<7} iter {iterations:<7} {format_cost(s.total_cost)}")
        if s.error:
            error = s.error[:60] + "..." if len(s.error) > 60 else s.error
            print(f"  {'':<14} {error}")
    print()
    print(f"{len(summaries)} run(s)")
    return 0
