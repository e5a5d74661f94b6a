"""Plain-text reports for finished runs and steered tasks."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .activity import format_activity
from .worker import TaskResult

DEFAULT_RECENT_ACTIVITIES = 6
TASK_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True, slots=True)
class RunDetails:
    """Derived view of a run: its tasks and how many succeeded."""

    run_id: str
    tasks: tuple[TaskResult, ...]
    success_count: int
    total_count: int

    @property
    def all_succeeded(self) -> bool:
        return self.success_count == self.total_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success_count": self.success_count,
            "total_count": self.total_count,
            "tasks": [t.to_dict() for t in self.tasks],
        }


def build_run_details(run_id: str, results: Sequence[TaskResult]) -> RunDetails:
    return RunDetails(
        run_id=run_id,
        tasks=tuple(results),
        success_count=sum(1 for r in results if r.succeeded),
        total_count=len(results),
    )


def format_duration(result: TaskResult) -> str:
    """``850ms`` below one second, otherwise seconds to one decimal."""
    duration_ms = result.duration_ms
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    return f"{duration_ms / 1000:.1f}s"


def format_task_result(
    result: TaskResult,
    index: int,
    *,
    recent_activities: int = DEFAULT_RECENT_ACTIVITIES,
) -> str:
    """Render one task's section of a report."""
    status = "completed" if result.succeeded else "failed"
    lines = [
        f"Task {index + 1} ({result.task_id}): {status}",
        f"Prompt: {result.prompt}",
        f"CWD: {result.cwd}",
        f"Duration: {format_duration(result)}",
    ]

    if result.steering_notes:
        lines.append("Steering notes:")
        lines.extend(f"- {note}" for note in result.steering_notes)

    recent = result.activities[-recent_activities:] if recent_activities > 0 else ()
    lines.append("Recent activity:")
    if recent:
        lines.extend(f"- {format_activity(a)}" for a in recent)
    else:
        lines.append("- (no activity captured)")

    if not result.succeeded:
        error = result.stderr.strip() or "unknown error"
        lines.append(f"Error: {error}")
        return "\n".join(lines)

    output = result.output.strip() or "(no output)"
    references = "\n".join(f"- {ref}" for ref in result.references) if result.references else "- None"
    return "\n".join(lines) + f"\n\n{output}\n\nReferences:\n{references}"


def format_run_report(
    details: RunDetails,
    *,
    recent_activities: int = DEFAULT_RECENT_ACTIVITIES,
) -> str:
    """Summary line, steering hint, then one section per task."""
    header = (
        f"Subagent research run {details.run_id}: "
        f"{details.success_count}/{details.total_count} tasks succeeded."
    )
    hint = (
        f'Use steer_subagent with run_id "{details.run_id}" and a task_id '
        "to rerun a specific task with extra instruction."
    )
    sections = TASK_SEPARATOR.join(
        format_task_result(result, index, recent_activities=recent_activities)
        for index, result in enumerate(details.tasks)
    )
    return f"{header}\n{hint}\n\n{sections}"


def format_steer_report(
    details: RunDetails,
    result: TaskResult,
    index: int,
    *,
    recent_activities: int = DEFAULT_RECENT_ACTIVITIES,
) -> str:
    header = (
        f"Steered {result.task_id} in run {details.run_id}. "
        f"Run status: {details.success_count}/{details.total_count} succeeded."
    )
    section = format_task_result(result, index, recent_activities=recent_activities)
    return f"{header}\n\n{section}"
