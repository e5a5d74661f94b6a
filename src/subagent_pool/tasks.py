"""Task normalization and concurrency resolution."""

from __future__ import annotations

import math
import re
import secrets
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .spec import MAX_CONCURRENCY, TaskSpec

DEFAULT_CONCURRENCY = 2

_INVALID_ID_CHARS = re.compile(r"[^a-z0-9_-]+")
_REPEATED_DASHES = re.compile(r"-+")
_EDGE_SEPARATORS = re.compile(r"^[-_]+|[-_]+$")


@dataclass(frozen=True, slots=True)
class NormalizedTask:
    """A task with an id that is unique within its batch.

    Attributes:
        id: Filesystem-safe identifier, unique within the batch.
        prompt: Task prompt forwarded to the worker.
        cwd: Optional working directory override.
    """

    id: str
    prompt: str
    cwd: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "prompt": self.prompt, "cwd": self.cwd}


def slugify_task_id(raw_id: str | None) -> str:
    """Reduce a caller-supplied id to ``[a-z0-9_-]`` with single dashes.

    Returns an empty string when nothing usable remains.
    """
    if raw_id is None:
        return ""
    slug = _INVALID_ID_CHARS.sub("-", raw_id.strip().lower())
    slug = _REPEATED_DASHES.sub("-", slug)
    return _EDGE_SEPARATORS.sub("", slug)


def _unique_task_id(raw_id: str | None, index: int, used: set[str]) -> str:
    base = slugify_task_id(raw_id) or f"task-{index + 1}"
    candidate = base
    suffix = 2
    while candidate in used:
        candidate = f"{base}-{suffix}"
        suffix += 1
    used.add(candidate)
    return candidate


def _task_fields(task: TaskSpec | Mapping[str, Any]) -> tuple[str | None, str, str | None]:
    if isinstance(task, TaskSpec):
        return task.id, task.prompt, task.cwd
    raw_id, cwd = task.get("id"), task.get("cwd")
    return (
        str(raw_id) if raw_id is not None else None,
        str(task.get("prompt", "")),
        str(cwd) if cwd is not None else None,
    )


def normalize_tasks(tasks: Sequence[TaskSpec | Mapping[str, Any]]) -> list[NormalizedTask]:
    """Assign unique ids to a batch of raw tasks, preserving order.

    Example:
        >>> [t.id for t in normalize_tasks([
        ...     {"id": "Auth Scan", "prompt": "a"},
        ...     {"id": "Auth Scan", "prompt": "b"},
        ...     {"prompt": "c"},
        ... ])]
        ['auth-scan', 'auth-scan-2', 'task-3']
    """
    used: set[str] = set()
    normalized: list[NormalizedTask] = []
    for index, task in enumerate(tasks):
        raw_id, prompt, cwd = _task_fields(task)
        normalized.append(
            NormalizedTask(
                id=_unique_task_id(raw_id, index, used),
                prompt=prompt,
                cwd=cwd,
            )
        )
    return normalized


def resolve_concurrency(
    value: Any,
    *,
    default: int = DEFAULT_CONCURRENCY,
    maximum: int = MAX_CONCURRENCY,
) -> int | None:
    """Resolve a caller-supplied concurrency value.

    Returns the concurrency to use, or None if the value must be rejected
    (non-integral, non-numeric, or outside ``[1, maximum]``).
    """
    concurrency = default if value is None else value
    if isinstance(concurrency, bool) or not isinstance(concurrency, (int, float)):
        return None
    if isinstance(concurrency, float):
        if not math.isfinite(concurrency) or not concurrency.is_integer():
            return None
        concurrency = int(concurrency)
    if concurrency < 1 or concurrency > maximum:
        return None
    return concurrency


def create_run_id() -> str:
    """Generate a short run identifier such as ``run-1a2b3c4d``."""
    return f"run-{secrets.token_hex(4)}"
