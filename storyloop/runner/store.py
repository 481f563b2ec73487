"""
File-backed run store.

Layout under the ops directory:
  runs/<run_id>/run.json      - latest checkpoint (whole run state)
  runs/<run_id>/events.jsonl  - append-only event log
  runs/<run_id>/control       - pending pause/cancel request from another process

Checkpoints are validated against run.schema.json, written to a temp file
and renamed into place, so a reader sees either the previous or the new
state and never a torn write.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from storyloop.lib.errors import PersistenceError, RunNotFound
from storyloop.lib.validate import ValidationError, validate_before_write
from storyloop.runner.events import Event
from storyloop.runner.locking import LockTimeout, run_lock
from storyloop.runner.models import Run

logger = logging.getLogger(__name__)

RUN_FILE = "run.json"
EVENTS_FILE = "events.jsonl"
CONTROL_FILE = "control"


class FileRunStore:
    """Durable key/row storage for runs keyed by run id."""

    def __init__(self, ops_dir: Path, lock_timeout: float = 30):
        self.ops_dir = Path(ops_dir)
        self.runs_dir = self.ops_dir / "runs"
        self.lock_timeout = lock_timeout

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id

    def exists(self, run_id: str) -> bool:
        return (self.run_dir(run_id) / RUN_FILE).exists()

    def save(self, run: Run) -> None:
        """Atomically write the whole run state. Raises PersistenceError."""
        run.touch()
        data = run.to_dict()
        run_dir = self.run_dir(run.id)
        target = run_dir / RUN_FILE

        try:
            validate_before_write(data, "run", target)
        except ValidationError as e:
            raise PersistenceError(str(e)) from e

        try:
            with run_lock(self.ops_dir, run.id, timeout=self.lock_timeout):
                run_dir.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=run_dir, prefix=".run-", suffix=".json")
                try:
                    with os.fdopen(fd, "w") as f:
                        json.dump(data, f, indent=2)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp_name, target)
                except BaseException:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise
        except (OSError, LockTimeout) as e:
            raise PersistenceError(f"Failed to checkpoint run {run.id}: {e}") from e

        logger.debug(f"[STORE] {run.id}: checkpoint written ({run.status.value}, "
                     f"{run.iterations_used} iterations)")

    def load(self, run_id: str) -> Run:
        """Read the last checkpoint. Raises RunNotFound or PersistenceError."""
        path = self.run_dir(run_id) / RUN_FILE
        if not path.exists():
            raise RunNotFound(run_id)
        try:
            return Run.from_dict(json.loads(path.read_text()))
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            raise PersistenceError(f"Corrupt checkpoint for run {run_id}: {e}") from e

    def list(self) -> list[Run]:
        """All readable runs. Unreadable checkpoints are skipped with a warning."""
        if not self.runs_dir.exists():
            return []
        runs = []
        for d in sorted(self.runs_dir.iterdir()):
            if not d.is_dir() or not (d / RUN_FILE).exists():
                continue
            try:
                runs.append(self.load(d.name))
            except PersistenceError as e:
                logger.warning(f"[STORE] Skipping {d.name}: {e}")
        return runs

    def delete(self, run_id: str) -> None:
        run_dir = self.run_dir(run_id)
        if not run_dir.exists():
            raise RunNotFound(run_id)
        try:
            shutil.rmtree(run_dir)
        except OSError as e:
            raise PersistenceError(f"Failed to delete run {run_id}: {e}") from e

    def append_event(self, event: Event) -> None:
        """Append one event to the run's log (event bus sink)."""
        run_dir = self.run_dir(event.run_id)
        try:
            run_dir.mkdir(parents=True, exist_ok=True)
            with open(run_dir / EVENTS_FILE, "a") as f:
                f.write(json.dumps(event.to_record()) + "\n")
                f.flush()
        except OSError as e:
            raise PersistenceError(f"Failed to append event for run {event.run_id}: {e}") from e

    def load_events(self, run_id: str, from_sequence: int = 0) -> list[Event]:
        """Events with sequence > from_sequence. Skips corrupted lines."""
        path = self.run_dir(run_id) / EVENTS_FILE
        if not path.exists():
            return []

        events = []
        for line_num, line in enumerate(path.read_text().splitlines(), 1):
            if not line.strip():
                continue
            try:
                event = Event.from_record(json.loads(line))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping corrupted event line {line_num} in {path}: {e}")
                continue
            if event.sequence > from_sequence:
                events.append(event)
        return events

    def find_active_for_source(self, source_id: str) -> Optional[Run]:
        """A non-terminal run that references this backlog, if any."""
        for run in self.list():
            if run.source_id == source_id and not run.is_terminal:
                return run
        return None

    def request_control(self, run_id: str, action: str) -> None:
        """Leave a pause/cancel request for a worker running in another process."""
        if not self.exists(run_id):
            raise RunNotFound(run_id)
        path = self.run_dir(run_id) / CONTROL_FILE
        try:
            path.write_text(action + "\n")
        except OSError as e:
            raise PersistenceError(f"Failed to write control request for run {run_id}: {e}") from e

    def take_control(self, run_id: str) -> Optional[str]:
        """Pop a pending control request, if any."""
        path = self.run_dir(run_id) / CONTROL_FILE
        if not path.exists():
            return None
        try:
            action = path.read_text().strip()
            path.unlink()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read control request for run {run_id}: {e}") from e
        return action or None
