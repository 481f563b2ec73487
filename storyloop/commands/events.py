"""
storyloop events - Replay (and optionally follow) a run's event log.
"""

import json
from pathlib import Path

from storyloop.lib.errors import RunNotFound
from storyloop.lib.stats import format_cost, format_duration
from storyloop.runner.events import Event

MAX_TEXT_PREVIEW = 160


def format_event(event: Event) -> str:
    """One terminal line per event."""
    p = event.payload
    it = f"#{event.iteration} " if event.iteration is not None else ""
    prefix = f"[{event.sequence:>4}] {it}"

    if event.type == "agent_text":
        text = " ".join(p.text.split())
        if len(text) > MAX_TEXT_PREVIEW:
            text = text[:MAX_TEXT_PREVIEW] + "..."
        return f"{prefix}  {text}"
    if event.type == "agent_tool":
        detail = f" {p.detail}" if p.detail else ""
        return f"{prefix}  > {p.tool}{detail}"
    if event.type == "iteration_started":
        return f"{prefix}Story {p.story_id}: {p.story_title} (attempt {p.attempt})"
    if event.type == "iteration_completed":
        return (f"{prefix}[+] {p.story_id} done in {format_duration(p.duration_secs)} "
                f"({format_cost(p.cost)})")
    if event.type == "iteration_failed":
        kind = "will retry" if p.retryable else "fatal"
        return f"{prefix}[x] {p.story_id} failed ({kind}): {p.error}"
    if event.type == "branch_created":
        return f"{prefix}Branch {p.branch}"
    if event.type == "pr_created":
        return f"{prefix}PR #{p.pr_number} {p.pr_url}"
    if event.type == "pr_merged":
        return f"{prefix}PR #{p.pr_number} merged"
    if event.type == "story_completed":
        return f"{prefix}Story {p.story_id} complete ({p.passed}/{p.total})"
    if event.type == "run_started":
        verb = "Resumed" if p.resumed else "Started"
        return f"{prefix}{verb} run: {p.completed_stories}/{p.total_stories} stories done"
    if event.type == "run_paused":
        return f"{prefix}Paused: {p.reason}"
    if event.type == "run_resumed":
        return f"{prefix}Resumed"
    if event.type == "run_completed":
        line = (f"{prefix}Run {p.status}: {p.stories_completed} stories, "
                f"{format_cost(p.total_cost)}, {format_duration(p.duration_secs)}")
        if p.remaining_story_ids:
            line += f" (remaining: {', '.join(p.remaining_story_ids)})"
        return line
    if event.type == "run_failed":
        return f"{prefix}Run failed: {p.error}"
    return f"{prefix}{event.type}"


def print_events(events, as_json: bool = False, show_text: bool = True) -> int:
    """Print events as they arrive. Returns the last sequence printed."""
    last = 0
    for event in events:
        last = event.sequence
        if as_json:
            print(json.dumps(event.to_record()), flush=True)
            continue
        if not show_text and event.type == "agent_text":
            continue
        print(format_event(event), flush=True)
    return last


def cmd_events(args, ops_dir: Path, registry) -> int:
    """Print a run's events, following live ones with --follow."""
    try:
        events = registry.subscribe_events(args.id, from_sequence=args.from_sequence)
    except RunNotFound:
        print(f"ERROR: Run '{args.id}' not found")
        return 1

    print_events(events, as_json=args.json, show_text=not args.quiet)
    return 0
