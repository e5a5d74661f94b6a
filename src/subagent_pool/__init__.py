"""Subagent Pool: run isolated research workers under a concurrency cap.

A coordinating agent hands a batch of independent research tasks to this
package. Each task runs as its own worker process; live progress is streamed
back while the batch runs, and any task of a recent run can later be re-run
("steered") with extra guidance without disturbing the others.

Public API
----------
- :class:`SubagentOrchestrator` - Run batches and steer tasks of past runs
- :class:`WorkerRunner` - Run one task as a worker process
- :class:`RunRegistry` - Bounded history of completed runs
- :func:`load_pool_config` - Load pool configuration from YAML
- :func:`normalize_tasks` - Assign unique, filesystem-safe task ids

Example
-------
>>> from subagent_pool import SubagentOrchestrator, load_pool_config
>>> orchestrator = SubagentOrchestrator(load_pool_config())
>>> response = orchestrator.run_batch([{"id": "auth", "prompt": "Map the auth flow"}])
>>> run_id = response.details.run_id
>>> orchestrator.steer(run_id, "auth", "Focus on token refresh")
"""

from __future__ import annotations

from .activity import Activity, ActivityKind, ActivityRecorder, format_activity, summarize_snippet
from .cancellation import CancellationToken
from .config import ConfigError, PoolConfig, load_pool_config
from .events import EventStreamParser, LineBuffer, extract_references, parse_event
from .orchestrator import SubagentOrchestrator, ToolResponse
from .progress import (
    ProgressBroadcaster,
    ProgressSnapshot,
    ProgressUpdate,
    TaskProgress,
    TaskStatus,
    build_progress_text,
)
from .registry import (
    RunRecord,
    RunRegistry,
    SteerOutcome,
    SteeringError,
    UnknownRunError,
    UnknownTaskError,
)
from .report import (
    RunDetails,
    build_run_details,
    format_run_report,
    format_steer_report,
    format_task_result,
)
from .scheduler import run_with_concurrency_limit
from .spec import SteerRequest, SubagentsRequest, TaskSpec, load_request_file
from .tasks import NormalizedTask, create_run_id, normalize_tasks, resolve_concurrency
from .worker import TaskResult, WorkerRunner, compose_prompt

__all__ = [
    # Orchestration
    "SubagentOrchestrator",
    "ToolResponse",
    # Requests
    "SteerRequest",
    "SubagentsRequest",
    "TaskSpec",
    "load_request_file",
    # Tasks
    "NormalizedTask",
    "create_run_id",
    "normalize_tasks",
    "resolve_concurrency",
    # Workers
    "CancellationToken",
    "TaskResult",
    "WorkerRunner",
    "compose_prompt",
    "run_with_concurrency_limit",
    # Activity and events
    "Activity",
    "ActivityKind",
    "ActivityRecorder",
    "EventStreamParser",
    "LineBuffer",
    "extract_references",
    "format_activity",
    "parse_event",
    "summarize_snippet",
    # Progress
    "ProgressBroadcaster",
    "ProgressSnapshot",
    "ProgressUpdate",
    "TaskProgress",
    "TaskStatus",
    "build_progress_text",
    # Registry
    "RunRecord",
    "RunRegistry",
    "SteerOutcome",
    "SteeringError",
    "UnknownRunError",
    "UnknownTaskError",
    # Reports
    "RunDetails",
    "build_run_details",
    "format_run_report",
    "format_steer_report",
    "format_task_result",
    # Config
    "ConfigError",
    "PoolConfig",
    "load_pool_config",
]
