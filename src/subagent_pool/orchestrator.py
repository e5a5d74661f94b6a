"""Host-facing entry points: run a batch of subagents, steer one task.

This module wires the task normalizer, scheduler, worker runner, progress
broadcaster, run registry and report formatter together. Both operations
return a ToolResponse and never raise for task-level failures.

Example:
    >>> orchestrator = SubagentOrchestrator(load_pool_config())
    >>> response = orchestrator.run_batch([{"prompt": "Survey the auth module"}])
    >>> print(response.text)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .activity import Activity, format_activity
from .cancellation import CancellationToken
from .config import PoolConfig
from .progress import (
    ProgressBroadcaster,
    ProgressSnapshot,
    ProgressUpdate,
    TaskProgress,
    TaskStatus,
    UpdateSink,
    emit_update,
)
from .registry import RunRecord, RunRegistry, SteeringError, TaskRunner
from .report import RunDetails, build_run_details, format_run_report, format_steer_report
from .scheduler import run_with_concurrency_limit
from .spec import TaskSpec
from .tasks import NormalizedTask, create_run_id, normalize_tasks, resolve_concurrency
from .worker import TaskResult, WorkerRunner, failed_task_result, resolve_task_cwd

logger = logging.getLogger(__name__)

SUBAGENTS_TOOL = "subagents"
STEER_TOOL = "steer_subagent"


@dataclass(frozen=True, slots=True)
class ToolResponse:
    """Value returned by both host-facing operations."""

    text: str
    details: RunDetails | None = None
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "details": self.details.to_dict() if self.details is not None else None,
            "is_error": self.is_error,
        }


def _unavailable(tool: str) -> ToolResponse:
    return ToolResponse(text=f"{tool} is only available while plan mode is active.", is_error=True)


class SubagentOrchestrator:
    """Runs subagent batches and steers individual tasks of past runs.

    Args:
        config: Pool configuration; defaults to PoolConfig().
        registry: Run history; defaults to a registry sized from config.
        runner: Task runner; defaults to a WorkerRunner using config.
        default_cwd: Working directory for tasks without one; defaults to
            the process working directory at call time.
        is_available: Optional gate; when it returns False both operations
            are refused without side effects.
    """

    def __init__(
        self,
        config: PoolConfig | None = None,
        *,
        registry: RunRegistry | None = None,
        runner: TaskRunner | None = None,
        default_cwd: str | Path | None = None,
        is_available: Callable[[], bool] | None = None,
    ) -> None:
        self.config = config or PoolConfig()
        self.registry = registry or RunRegistry(self.config.registry_capacity)
        self.runner: TaskRunner = runner or WorkerRunner(self.config)
        self._default_cwd = default_cwd
        self._is_available = is_available

    @property
    def default_cwd(self) -> str:
        return str(self._default_cwd) if self._default_cwd is not None else str(Path.cwd())

    def _available(self) -> bool:
        return self._is_available is None or bool(self._is_available())

    def run_batch(
        self,
        tasks: Sequence[TaskSpec | Mapping[str, Any]],
        concurrency: Any = None,
        *,
        cancel: CancellationToken | None = None,
        on_update: UpdateSink | None = None,
    ) -> ToolResponse:
        """Run every task under the concurrency cap and store the run.

        Returns:
            ToolResponse whose text is the full run report; ``is_error`` is
            set when any task failed.
        """
        if not self._available():
            return _unavailable(SUBAGENTS_TOOL)

        limit = resolve_concurrency(
            concurrency,
            default=self.config.default_concurrency,
            maximum=self.config.max_concurrency,
        )
        if limit is None:
            return ToolResponse(
                text=f"concurrency must be an integer between 1 and {self.config.max_concurrency}.",
                is_error=True,
            )

        normalized = normalize_tasks(tasks)
        run_id = create_run_id()
        default_cwd = self.default_cwd
        broadcaster = ProgressBroadcaster(run_id, normalized, on_update)
        broadcaster.emit()

        logger.info("Starting run %s: %d tasks, %d workers", run_id, len(normalized), limit)

        def _run_one(task: NormalizedTask, index: int) -> TaskResult:
            broadcaster.mark_running(index)
            try:
                result = self.runner.run(
                    task,
                    default_cwd,
                    cancel=cancel,
                    on_activity=lambda activity: broadcaster.record_activity(index, activity),
                )
            except Exception as e:
                logger.exception("Task %s raised an unexpected exception", task.id)
                result = failed_task_result(task, resolve_task_cwd(task, default_cwd), str(e) or e.__class__.__name__)
            broadcaster.mark_finished(index, result)
            return result

        results = run_with_concurrency_limit(normalized, limit, _run_one)

        details = build_run_details(run_id, results)
        self.registry.remember(RunRecord(run_id=run_id, tasks=list(results)))
        logger.info(
            "Finished run %s: %d/%d tasks succeeded",
            run_id,
            details.success_count,
            details.total_count,
        )

        return ToolResponse(
            text=format_run_report(details, recent_activities=self.config.report_recent_activities),
            details=details,
            is_error=details.success_count != details.total_count,
        )

    def steer(
        self,
        run_id: Any,
        task_id: Any,
        instruction: Any,
        *,
        cancel: CancellationToken | None = None,
        on_update: UpdateSink | None = None,
    ) -> ToolResponse:
        """Re-run one task of a stored run with an extra instruction.

        Returns:
            ToolResponse with the steer report; ``is_error`` reflects only the
            re-run task's exit code.
        """
        if not self._available():
            return _unavailable(STEER_TOOL)

        run_id = str(run_id if run_id is not None else "").strip()
        task_id = str(task_id if task_id is not None else "").strip()
        instruction = str(instruction if instruction is not None else "").strip()
        if not run_id or not task_id or not instruction:
            return ToolResponse(text="run_id, task_id, and instruction are required.", is_error=True)

        try:
            run, task_index = self.registry.resolve(run_id, task_id)
        except SteeringError as e:
            return ToolResponse(text=str(e), is_error=True)

        snapshot = _steering_snapshot(run, task_index)
        emit_update(on_update, ProgressUpdate(text=f"Steering {task_id} in {run_id}...", snapshot=snapshot))

        def _on_activity(activity: Activity) -> None:
            emit_update(on_update, ProgressUpdate(text=f"Steering {task_id}: {format_activity(activity)}"))

        try:
            outcome = self.registry.steer(
                run_id,
                task_id,
                instruction,
                runner=self.runner,
                default_cwd=self.default_cwd,
                cancel=cancel,
                on_activity=_on_activity,
            )
        except SteeringError as e:
            # The run may have been evicted by a concurrent batch.
            return ToolResponse(text=str(e), is_error=True)

        details = build_run_details(run_id, outcome.run.tasks)
        return ToolResponse(
            text=format_steer_report(
                details,
                outcome.result,
                outcome.task_index,
                recent_activities=self.config.report_recent_activities,
            ),
            details=details,
            is_error=not outcome.result.succeeded,
        )


def _steering_snapshot(run: RunRecord, task_index: int) -> ProgressSnapshot:
    tasks = []
    for index, result in enumerate(run.tasks):
        if index == task_index:
            status, latest = TaskStatus.RUNNING, "re-running with steering"
        else:
            status = TaskStatus.COMPLETED if result.succeeded else TaskStatus.FAILED
            latest = None
        tasks.append(
            TaskProgress(
                task_id=result.task_id,
                prompt=result.prompt,
                status=status,
                latest_activity=latest,
                activity_count=len(result.activities),
            )
        )
    return ProgressSnapshot(
        run_id=run.run_id,
        completed=sum(1 for r in run.tasks if r.succeeded),
        total=len(run.tasks),
        tasks=tuple(tasks),
    )
