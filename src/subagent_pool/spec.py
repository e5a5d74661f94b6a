"""Request models for the subagent pool.

This module defines the Pydantic models for the two host-facing operations:
- SubagentsRequest: a batch of research tasks plus an optional concurrency cap
- SteerRequest: a targeted re-run of one task from a previous run

Models use strict validation via ConfigDict(extra="forbid"), matching the
schemas the host advertises for these operations.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

MAX_TASKS_PER_BATCH = 6
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 4


class _SpecBase(BaseModel):
    """Base model with strict validation - no extra fields allowed."""

    model_config = ConfigDict(extra="forbid")


class TaskSpec(_SpecBase):
    """A single delegated task as supplied by the caller."""

    id: str | None = Field(
        None,
        description="Optional stable task ID (e.g. auth-scan) for tracing and steering.",
    )
    prompt: str = Field(..., description="Task prompt for the delegated subagent.")
    cwd: str | None = Field(None, description="Optional working directory for this task.")


class SubagentsRequest(_SpecBase):
    """Batch of tasks to run via isolated subagents."""

    tasks: list[TaskSpec] = Field(
        ...,
        min_length=1,
        max_length=MAX_TASKS_PER_BATCH,
        description="One or more tasks to run via isolated subagents.",
    )
    concurrency: int | None = Field(
        None,
        ge=MIN_CONCURRENCY,
        le=MAX_CONCURRENCY,
        description="How many tasks to run in parallel (default: 2).",
    )


class SteerRequest(_SpecBase):
    """Re-run one task of a previous run with an extra instruction."""

    run_id: str = Field(..., description="Run ID from a previous subagents result.")
    task_id: str = Field(..., description="Task ID from that run to rerun with steering.")
    instruction: str = Field(..., description="Additional steering instruction for the selected task.")


def load_subagents_request(data: dict[str, Any]) -> SubagentsRequest:
    """Validate a raw mapping into a SubagentsRequest."""
    return SubagentsRequest.model_validate(data)


def load_request_file(path: Path) -> SubagentsRequest:
    """Load a batch request from a JSON or YAML file.

    A bare list at the top level is accepted as the ``tasks`` array.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If the document is not a mapping or list.
        pydantic.ValidationError: If the document doesn't match the schema.
    """
    if not path.exists():
        raise FileNotFoundError(f"Request file not found: {path}")

    content = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(content)
    else:
        data = json.loads(content)

    if isinstance(data, list):
        data = {"tasks": data}
    if not isinstance(data, dict):
        raise ValueError(f"Request file must contain a mapping or list, got {type(data).__name__}")
    return load_subagents_request(data)


def subagents_request_schema() -> dict[str, Any]:
    """JSON schema advertised to the host for the batch operation."""
    return SubagentsRequest.model_json_schema()


def steer_request_schema() -> dict[str, Any]:
    """JSON schema advertised to the host for the steer operation."""
    return SteerRequest.model_json_schema()
