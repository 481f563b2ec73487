"""
storyloop cancel / pause - Stop a run between iterations.

The in-flight iteration is never interrupted: the run stops once it
finishes (or times out).
"""

from pathlib import Path

from storyloop.lib.errors import InvalidTransition, RunNotFound


def cmd_cancel(args, ops_dir: Path, registry) -> int:
    try:
        registry.cancel_run(args.id)
    except RunNotFound:
        print(f"ERROR: Run '{args.id}' not found")
        return 1
    except InvalidTransition as e:
        print(f"ERROR: Cannot cancel: {e}")
        return 1
    print(f"Cancel requested for {args.id}")
    return 0


def cmd_pause(args, ops_dir: Path, registry) -> int:
    try:
        registry.pause_run(args.id)
    except RunNotFound:
        print(f"ERROR: Run '{args.id}' not found")
        return 1
    except InvalidTransition as e:
        print(f"ERROR: Cannot pause: {e}")
        return 1
    print(f"Pause requested for {args.id}")
    print(f"  Continue with: storyloop resume {args.id}")
    return 0
