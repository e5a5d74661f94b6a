"""Live progress snapshots for a running batch.

After every activity event and every status transition the broadcaster
recomputes the full per-task progress list and pushes it, together with a
rendered text block, to a caller-supplied sink. Sinks are expected to
redraw from the latest snapshot rather than queue updates.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .activity import Activity, format_activity
from .tasks import NormalizedTask
from .worker import TaskResult

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Status of an individual task in a run."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TaskProgress:
    """Transient view of one task's live state."""

    task_id: str
    prompt: str
    status: TaskStatus = TaskStatus.QUEUED
    latest_activity: str | None = None
    activity_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "prompt": self.prompt,
            "status": self.status.value,
            "latest_activity": self.latest_activity,
            "activity_count": self.activity_count,
        }


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Progress of every task in a run at one instant."""

    run_id: str
    completed: int
    total: int
    tasks: tuple[TaskProgress, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "completed": self.completed,
            "total": self.total,
            "tasks": [t.to_dict() for t in self.tasks],
        }


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """Payload pushed to the update sink: a text block and optional snapshot."""

    text: str
    snapshot: ProgressSnapshot | None = None


UpdateSink = Callable[[ProgressUpdate], None]


def build_progress_text(snapshot: ProgressSnapshot) -> str:
    lines = [f"Subagent run {snapshot.run_id}: {snapshot.completed}/{snapshot.total} complete"]
    for task in snapshot.tasks:
        status = task.status.value.ljust(9)
        latest = f" — {task.latest_activity}" if task.latest_activity else ""
        lines.append(f"[{task.task_id}] {status}{latest}")
    return "\n".join(lines)


def emit_update(sink: UpdateSink | None, update: ProgressUpdate) -> None:
    """Deliver an update, logging (not raising) sink failures."""
    if sink is None:
        return
    try:
        sink(update)
    except Exception:
        logger.exception("Progress sink raised exception")


class ProgressBroadcaster:
    """Tracks per-task progress for one run and publishes snapshots."""

    def __init__(
        self,
        run_id: str,
        tasks: Sequence[NormalizedTask],
        sink: UpdateSink | None = None,
    ) -> None:
        self.run_id = run_id
        self._sink = sink
        self._lock = threading.Lock()
        self._completed = 0
        self._tasks = [TaskProgress(task_id=t.id, prompt=t.prompt) for t in tasks]

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            run_id=self.run_id,
            completed=self._completed,
            total=len(self._tasks),
            tasks=tuple(self._tasks),
        )

    def _update(self, index: int, *, finished: bool = False, **changes: Any) -> None:
        with self._lock:
            self._tasks[index] = dataclasses.replace(self._tasks[index], **changes)
            if finished:
                self._completed += 1
            snapshot = self._snapshot_locked()
        self._publish(snapshot)

    def _publish(self, snapshot: ProgressSnapshot) -> None:
        emit_update(self._sink, ProgressUpdate(text=build_progress_text(snapshot), snapshot=snapshot))

    def emit(self) -> None:
        self._publish(self.snapshot())

    def mark_running(self, index: int) -> None:
        self._update(index, status=TaskStatus.RUNNING, latest_activity="started")

    def record_activity(self, index: int, activity: Activity) -> None:
        with self._lock:
            current = self._tasks[index]
            self._tasks[index] = dataclasses.replace(
                current,
                latest_activity=format_activity(activity),
                activity_count=current.activity_count + 1,
            )
            snapshot = self._snapshot_locked()
        self._publish(snapshot)

    def mark_finished(self, index: int, result: TaskResult) -> None:
        self._update(
            index,
            finished=True,
            status=TaskStatus.COMPLETED if result.succeeded else TaskStatus.FAILED,
            latest_activity=f"finished ({'ok' if result.succeeded else 'failed'})",
        )
