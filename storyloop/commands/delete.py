"""
storyloop delete - Permanently delete a finished run and its event log.
"""

from pathlib import Path

from storyloop.lib.errors import InvalidTransition, PersistenceError, RunNotFound


def cmd_delete(args, ops_dir: Path, registry) -> int:
    if not args.confirm:
        print(f"Refusing to delete {args.id} without --confirm")
        return 2
    try:
        registry.delete_run(args.id)
    except RunNotFound:
        print(f"ERROR: Run '{args.id}' not found")
        return 1
    except InvalidTransition as e:
        print(f"ERROR: Only finished runs can be deleted ({e})")
        return 1
    except PersistenceError as e:
        print(f"ERROR: {e}")
        return 1
    print(f"Deleted run {args.id}")
    return 0
