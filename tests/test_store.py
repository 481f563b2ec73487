"""Tests for storyloop.runner.store and storyloop.runner.locking."""

import json
from unittest.mock import patch

import pytest

from storyloop.lib.errors import PersistenceError, RunNotFound
from storyloop.runner.events import AgentText, EventBus
from storyloop.runner.locking import (
    LockTimeout,
    backlog_lock,
    count_running_runs,
    lock_name_for,
    run_lock,
)
from storyloop.runner.models import Backlog, BudgetConfig, Run, RunStatus, Story
from storyloop.runner.store import EVENTS_FILE, RUN_FILE, FileRunStore


def make_run(run_id="r1", source_id="/tmp/prd.json", status=RunStatus.PENDING):
    return Run(
        id=run_id,
        project_id="acme",
        source_id=source_id,
        backlog=Backlog(branch_name="feature/x", stories=[Story(id="S1", title="One", priority=1)]),
        budget=BudgetConfig(max_iterations=3),
        status=status,
    )


class TestSaveLoad:

    def test_save_then_load(self, ops_dir):
        store = FileRunStore(ops_dir)
        run = make_run()
        run.total_cost = 1.25
        store.save(run)

        loaded = store.load("r1")
        assert loaded.total_cost == 1.25
        assert loaded.backlog.get("S1").title == "One"
        assert store.exists("r1")

    def test_no_temp_files_left_behind(self, ops_dir):
        store = FileRunStore(ops_dir)
        store.save(make_run())
        assert [p.name for p in store.run_dir("r1").iterdir()] == [RUN_FILE]

    def test_load_missing_raises_not_found(self, ops_dir):
        with pytest.raises(RunNotFound):
            FileRunStore(ops_dir).load("nope")

    def test_load_corrupt_raises_persistence_error(self, ops_dir):
        store = FileRunStore(ops_dir)
        store.run_dir("bad").mkdir(parents=True)
        (store.run_dir("bad") / RUN_FILE).write_text("{not json")
        with pytest.raises(PersistenceError, match="Corrupt"):
            store.load("bad")

    def test_invalid_state_is_rejected_before_write(self, ops_dir):
        store = FileRunStore(ops_dir)
        run = make_run()
        run.iterations_used = -1
        with pytest.raises(PersistenceError):
            store.save(run)
        assert not store.exists("r1")

    def test_failed_write_keeps_previous_checkpoint(self, ops_dir):
        store = FileRunStore(ops_dir)
        run = make_run()
        store.save(run)

        run.total_cost = 9.0
        with patch("storyloop.runner.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError, match="disk full"):
                store.save(run)

        assert store.load("r1").total_cost == 0.0

    def test_list_skips_unreadable(self, ops_dir):
        store = FileRunStore(ops_dir)
        store.save(make_run("a"))
        store.save(make_run("b"))
        store.run_dir("c").mkdir()
        (store.run_dir("c") / RUN_FILE).write_text("garbage")
        assert sorted(r.id for r in store.list()) == ["a", "b"]

    def test_delete(self, ops_dir):
        store = FileRunStore(ops_dir)
        store.save(make_run())
        store.delete("r1")
        assert not store.run_dir("r1").exists()
        with pytest.raises(RunNotFound):
            store.delete("r1")


class TestFindActive:

    def test_finds_non_terminal_run(self, ops_dir):
        store = FileRunStore(ops_dir)
        store.save(make_run("old", status=RunStatus.COMPLETED))
        store.save(make_run("live", status=RunStatus.PAUSED))
        assert store.find_active_for_source("/tmp/prd.json").id == "live"

    def test_ignores_terminal_runs(self, ops_dir):
        store = FileRunStore(ops_dir)
        store.save(make_run("old", status=RunStatus.FAILED))
        assert store.find_active_for_source("/tmp/prd.json") is None


class TestEventLog:

    def test_append_and_load(self, ops_dir):
        store = FileRunStore(ops_dir)
        bus = EventBus(sink=store.append_event)
        for i in range(3):
            bus.publish("r1", AgentText(text=str(i)))

        events = store.load_events("r1", from_sequence=1)
        assert [e.sequence for e in events] == [2, 3]
        assert events[0].payload.text == "1"

    def test_corrupt_lines_are_skipped(self, ops_dir):
        store = FileRunStore(ops_dir)
        bus = EventBus(sink=store.append_event)
        bus.publish("r1", AgentText(text="ok"))
        with open(store.run_dir("r1") / EVENTS_FILE, "a") as f:
            f.write("{truncated\n")
        bus.publish("r1", AgentText(text="still ok"))

        assert [e.payload.text for e in store.load_events("r1")] == ["ok", "still ok"]

    def test_no_log_yet(self, ops_dir):
        assert FileRunStore(ops_dir).load_events("r1") == []

    def test_loader_resumes_numbering_across_buses(self, ops_dir):
        store = FileRunStore(ops_dir)
        EventBus(sink=store.append_event).publish("r1", AgentText(text="first"))
        bus = EventBus(sink=store.append_event, loader=store.load_events)
        assert bus.publish("r1", AgentText(text="second")).sequence == 2

    def test_records_are_json_lines(self, ops_dir):
        store = FileRunStore(ops_dir)
        EventBus(sink=store.append_event).publish("r1", AgentText(text="x"), iteration=1)
        line = (store.run_dir("r1") / EVENTS_FILE).read_text().splitlines()[0]
        assert json.loads(line)["type"] == "agent_text"


class TestControl:

    def test_request_and_take(self, ops_dir):
        store = FileRunStore(ops_dir)
        store.save(make_run())
        store.request_control("r1", "pause")
        assert store.take_control("r1") == "pause"
        assert store.take_control("r1") is None

    def test_request_for_unknown_run(self, ops_dir):
        with pytest.raises(RunNotFound):
            FileRunStore(ops_dir).request_control("nope", "cancel")


class TestLocking:

    def test_lock_names_are_safe_and_distinct(self):
        a = lock_name_for("/home/me/app/prd.json")
        b = lock_name_for("/home/me/other/prd.json")
        assert "/" not in a
        assert a != b

    def test_backlog_lock_is_exclusive(self, ops_dir):
        with backlog_lock(ops_dir, "/tmp/prd.json"):
            with pytest.raises(LockTimeout):
                with backlog_lock(ops_dir, "/tmp/prd.json"):
                    pass
            assert count_running_runs(ops_dir) == 1
        assert count_running_runs(ops_dir) == 0

    def test_different_backlogs_do_not_contend(self, ops_dir):
        with backlog_lock(ops_dir, "/tmp/a.json"):
            with backlog_lock(ops_dir, "/tmp/b.json"):
                assert count_running_runs(ops_dir) == 2

    def test_run_lock_times_out(self, ops_dir):
        with run_lock(ops_dir, "r1"):
            with pytest.raises(LockTimeout):
                with run_lock(ops_dir, "r1", timeout=0.1):
                    pass
