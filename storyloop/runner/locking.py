"""
Lock management for storyloop.

Uses flock for per-run checkpoint locking and for claiming a backlog
document for the lifetime of a run. flock locks belong to the open file
description, so two threads of one process contend just like two
processes do.
"""

import fcntl
import hashlib
import os
import re
import time
from contextlib import contextmanager
from pathlib import Path


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


POLL_INTERVAL_SECONDS = 0.05

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


def lock_name_for(key: str) -> str:
    """Filesystem-safe, collision-resistant lock file stem for an arbitrary key."""
    stem = _SAFE_NAME.sub("_", key).strip("_")[:40] or "key"
    digest = hashlib.sha1(key.encode()).hexdigest()[:10]
    return f"{stem}-{digest}"


def count_locked(lock_dir: Path) -> int:
    """Count how many lock files in a directory are currently held."""
    if not lock_dir.exists():
        return 0

    count = 0
    for lock_file in lock_dir.glob("*.lock"):
        try:
            fd = open(lock_file, 'r')
            try:
                # Try non-blocking exclusive lock
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                # Got lock - nobody holds it, release immediately
                fcntl.flock(fd, fcntl.LOCK_UN)
            except BlockingIOError:
                count += 1
            finally:
                fd.close()
        except OSError:
            pass
    return count


def count_running_runs(ops_dir: Path) -> int:
    """Count runs whose backlog claim is currently held by some worker."""
    return count_locked(ops_dir / "locks" / "backlogs")


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str):
    """
    Internal helper to acquire a file lock.

    Lock files are never deleted: removing one lets two holders end up with
    "exclusive" locks on different inodes behind the same path.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock (0 = try once)
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'w')
    start = time.monotonic()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start >= timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(POLL_INTERVAL_SECONDS)

    try:
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            fd.close()


@contextmanager
def run_lock(ops_dir: Path, run_id: str, timeout: float = 30):
    """
    Acquire the per-run checkpoint lock, yield, release on exit.

    Serializes read-modify-write of a run's persisted state.
    """
    lock_file = ops_dir / "locks" / "runs" / f"{lock_name_for(run_id)}.lock"
    with _acquire_lock(lock_file, timeout, f"lock for run {run_id}"):
        yield


@contextmanager
def backlog_lock(ops_dir: Path, source_id: str, timeout: float = 0):
    """
    Claim a backlog document for one run.

    Held for the whole life of the run so the story source cannot hand the
    same document to a second run concurrently.
    """
    lock_file = ops_dir / "locks" / "backlogs" / f"{lock_name_for(source_id)}.lock"
    with _acquire_lock(lock_file, timeout, f"backlog claim for {source_id}"):
        yield
