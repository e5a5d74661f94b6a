# SPDX-License-Identifier: MIT
"""Tests for the progress broadcaster."""

from __future__ import annotations

from unittest.mock import MagicMock

from subagent_pool.activity import ActivityKind
from subagent_pool.progress import (
    ProgressBroadcaster,
    ProgressSnapshot,
    ProgressUpdate,
    TaskProgress,
    TaskStatus,
    build_progress_text,
    emit_update,
)
from subagent_pool.tasks import NormalizedTask

from conftest import make_activity, make_result

TASKS = [NormalizedTask("alpha", "a"), NormalizedTask("beta", "b")]


class TestBuildProgressText:
    """Tests for build_progress_text."""

    def test_layout(self) -> None:
        snapshot = ProgressSnapshot(
            run_id="run-1",
            completed=1,
            total=2,
            tasks=(
                TaskProgress("alpha", "a", TaskStatus.COMPLETED, "finished (ok)", 4),
                TaskProgress("beta", "b"),
            ),
        )
        assert build_progress_text(snapshot) == (
            "Subagent run run-1: 1/2 complete\n"
            "[alpha] completed — finished (ok)\n"
            "[beta] queued   "
        )


class TestEmitUpdate:
    """Tests for emit_update."""

    def test_no_sink(self) -> None:
        emit_update(None, ProgressUpdate(text="x"))

    def test_sink_exception_is_swallowed(self) -> None:
        sink = MagicMock(side_effect=RuntimeError("ui gone"))
        emit_update(sink, ProgressUpdate(text="x"))
        sink.assert_called_once()


class TestProgressBroadcaster:
    """Tests for ProgressBroadcaster."""

    def test_initial_snapshot(self) -> None:
        snapshot = ProgressBroadcaster("run-1", TASKS).snapshot()
        assert snapshot.completed == 0
        assert snapshot.total == 2
        assert [t.status for t in snapshot.tasks] == [TaskStatus.QUEUED, TaskStatus.QUEUED]

    def test_lifecycle_emits_snapshots(self) -> None:
        updates: list[ProgressUpdate] = []
        broadcaster = ProgressBroadcaster("run-1", TASKS, updates.append)

        broadcaster.emit()
        broadcaster.mark_running(0)
        broadcaster.record_activity(0, make_activity(ActivityKind.TOOL, "read"))
        broadcaster.mark_finished(0, make_result("alpha"))
        broadcaster.mark_running(1)
        broadcaster.mark_finished(1, make_result("beta", exit_code=1))

        assert len(updates) == 6
        assert all(u.snapshot is not None for u in updates)
        running = updates[1].snapshot
        assert running.tasks[0].status == TaskStatus.RUNNING
        assert running.tasks[0].latest_activity == "started"

        with_activity = updates[2].snapshot
        assert with_activity.tasks[0].latest_activity == "→ read"
        assert with_activity.tasks[0].activity_count == 1

        final = updates[-1].snapshot
        assert final.completed == 2
        assert final.tasks[0].status == TaskStatus.COMPLETED
        assert final.tasks[0].latest_activity == "finished (ok)"
        assert final.tasks[1].status == TaskStatus.FAILED
        assert final.tasks[1].latest_activity == "finished (failed)"
        assert updates[-1].text.startswith("Subagent run run-1: 2/2 complete")

    def test_snapshots_are_immutable_copies(self) -> None:
        updates: list[ProgressUpdate] = []
        broadcaster = ProgressBroadcaster("run-1", TASKS, updates.append)
        broadcaster.emit()
        broadcaster.mark_running(0)
        assert updates[0].snapshot.tasks[0].status == TaskStatus.QUEUED

    def test_failing_sink_does_not_break_tracking(self) -> None:
        broadcaster = ProgressBroadcaster("run-1", TASKS, MagicMock(side_effect=ValueError))
        broadcaster.mark_running(0)
        broadcaster.mark_finished(0, make_result("alpha"))
        assert broadcaster.snapshot().completed == 1

    def test_to_dict(self) -> None:
        payload = ProgressBroadcaster("run-1", TASKS).snapshot().to_dict()
        assert payload["tasks"][0] == {
            "task_id": "alpha",
            "prompt": "a",
            "status": "queued",
            "latest_activity": None,
            "activity_count": 0,
        }
