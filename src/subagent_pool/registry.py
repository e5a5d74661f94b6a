"""Bounded in-memory history of completed runs, with steering.

The registry keeps the most recent runs (20 by default) so any task of a
recent run can be re-run with extra guidance. Eviction follows insertion
order: overwriting a run keeps its original position.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from .activity import ActivityCallback
from .cancellation import CancellationToken
from .tasks import NormalizedTask
from .worker import TaskResult, failed_task_result, resolve_task_cwd

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_CAPACITY = 20


class SteeringError(ValueError):
    """Base exception for steer requests that cannot be served."""


class UnknownRunError(SteeringError):
    """Raised when a steer request names a run that is not in the registry."""

    def __init__(self, run_id: str, known_run_ids: list[str]) -> None:
        if known_run_ids:
            message = f'Unknown run_id "{run_id}". Known run_ids: {", ".join(known_run_ids)}'
        else:
            message = f'Unknown run_id "{run_id}". No prior subagent runs are available.'
        super().__init__(message)
        self.run_id = run_id
        self.known_run_ids = known_run_ids


class UnknownTaskError(SteeringError):
    """Raised when a steer request names a task that is not part of the run."""

    def __init__(self, run_id: str, task_id: str, known_task_ids: list[str]) -> None:
        super().__init__(
            f'Unknown task_id "{task_id}" for run {run_id}. Known task_ids: {", ".join(known_task_ids)}'
        )
        self.run_id = run_id
        self.task_id = task_id
        self.known_task_ids = known_task_ids


class TaskRunner(Protocol):
    """Anything that can run one task the way WorkerRunner does."""

    def run(
        self,
        task: NormalizedTask,
        default_cwd: str | Path,
        *,
        cancel: CancellationToken | None = ...,
        on_activity: ActivityCallback | None = ...,
        steering_instruction: str | None = ...,
        previous_output: str | None = ...,
        steering_notes: Any = ...,
    ) -> TaskResult: ...


@dataclass
class RunRecord:
    """A completed batch, addressable by run id for steering."""

    run_id: str
    tasks: list[TaskResult]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def task_ids(self) -> list[str]:
        return [t.task_id for t in self.tasks]

    def find_task(self, task_id: str) -> int | None:
        for index, task in enumerate(self.tasks):
            if task.task_id == task_id:
                return index
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "created_at": self.created_at.isoformat(),
            "tasks": [t.to_dict() for t in self.tasks],
        }


@dataclass(frozen=True, slots=True)
class SteerOutcome:
    """Result of a steer: the updated run, the task's slot and its new result."""

    run: RunRecord
    task_index: int
    result: TaskResult


class RunRegistry:
    """Thread-safe, size-capped store of run records."""

    def __init__(self, capacity: int = DEFAULT_REGISTRY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._runs: OrderedDict[str, RunRecord] = OrderedDict()
        self._lock = threading.RLock()

    def remember(self, run: RunRecord) -> None:
        """Insert or overwrite a run, evicting the oldest beyond capacity."""
        with self._lock:
            self._runs[run.run_id] = run
            while len(self._runs) > self.capacity:
                evicted_id, _ = self._runs.popitem(last=False)
                logger.debug("Evicted run %s from registry", evicted_id)

    def lookup(self, run_id: str) -> RunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def run_ids(self) -> list[str]:
        with self._lock:
            return list(self._runs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._runs

    def resolve(self, run_id: str, task_id: str) -> tuple[RunRecord, int]:
        """Locate a run and the index of one of its tasks.

        Raises:
            UnknownRunError: If the run is not in the registry.
            UnknownTaskError: If the run has no task with that id.
        """
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise UnknownRunError(run_id, list(self._runs))
            index = run.find_task(task_id)
            if index is None:
                raise UnknownTaskError(run_id, task_id, run.task_ids())
            return run, index

    def steer(
        self,
        run_id: str,
        task_id: str,
        instruction: str,
        *,
        runner: TaskRunner,
        default_cwd: str | Path,
        cancel: CancellationToken | None = None,
        on_activity: ActivityCallback | None = None,
    ) -> SteerOutcome:
        """Re-run one task of a stored run with an extra instruction.

        The task is re-run with its previous output and the accumulated
        steering notes as replay context; its result is then replaced in
        place and the run is stored again.

        Raises:
            UnknownRunError: If the run is not in the registry.
            UnknownTaskError: If the run has no task with that id.
        """
        run, index = self.resolve(run_id, task_id)
        previous = run.tasks[index]
        steering_notes = [*previous.steering_notes, instruction]
        rerun_task = NormalizedTask(id=previous.task_id, prompt=previous.prompt, cwd=previous.cwd)

        logger.info("Steering task %s in run %s", task_id, run_id)
        try:
            result = runner.run(
                rerun_task,
                default_cwd,
                cancel=cancel,
                on_activity=on_activity,
                steering_instruction=instruction,
                previous_output=previous.output,
                steering_notes=steering_notes,
            )
        except Exception as e:
            logger.exception("Steered task %s raised an unexpected exception", task_id)
            result = failed_task_result(
                rerun_task,
                resolve_task_cwd(rerun_task, default_cwd),
                str(e) or e.__class__.__name__,
                steering_notes=steering_notes,
            )

        with self._lock:
            run.tasks[index] = result
            self.remember(run)
        logger.info("Steered task %s in run %s: exit code %d", task_id, run_id, result.exit_code)
        return SteerOutcome(run=run, task_index=index, result=result)
