"""Per-task activity trail.

Each worker process owns one ActivityRecorder. Activities are classified,
single-line previews of what the subprocess is doing (tool calls, assistant
text, tool results, stderr lines, lifecycle status). The recorder keeps a
fixed-capacity ring buffer so long-running tasks cannot grow without bound,
and forwards every activity to an optional live observer.
"""

from __future__ import annotations

import re
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

DEFAULT_MAX_ACTIVITIES = 120
DEFAULT_PREVIEW_CHARS = 180

_WHITESPACE = re.compile(r"\s+")


class ActivityKind(str, Enum):
    """Classification of an observed activity line."""

    STATUS = "status"
    TOOL = "tool"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"
    STDERR = "stderr"


_ACTIVITY_GLYPHS = {
    ActivityKind.TOOL: "→",
    ActivityKind.ASSISTANT: "✎",
    ActivityKind.TOOL_RESULT: "↳",
    ActivityKind.STDERR: "!",
    ActivityKind.STATUS: "•",
}


@dataclass(frozen=True, slots=True)
class Activity:
    """One classified, timestamped line of subprocess behaviour."""

    kind: ActivityKind
    text: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


ActivityCallback = Callable[[Activity], None]


def summarize_snippet(text: str, max_length: int = 120) -> str:
    """Collapse whitespace to single spaces and truncate with an ellipsis."""
    single_line = _WHITESPACE.sub(" ", text).strip()
    if len(single_line) <= max_length:
        return single_line
    return f"{single_line[: max(0, max_length - 3)]}..."


def format_activity(activity: Activity) -> str:
    """Render an activity with its kind glyph, e.g. ``→ read {"path":"a"}``."""
    glyph = _ACTIVITY_GLYPHS.get(activity.kind, "•")
    return f"{glyph} {activity.text}"


class ActivityRecorder:
    """Bounded, thread-safe activity buffer for one task.

    The stdout and stderr pump threads record concurrently, so appends are
    serialized with a lock. The observer callback runs outside the lock on
    the recording thread.
    """

    def __init__(
        self,
        *,
        capacity: int = DEFAULT_MAX_ACTIVITIES,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
        on_activity: ActivityCallback | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._activities: deque[Activity] = deque(maxlen=capacity)
        self._preview_chars = preview_chars
        self._on_activity = on_activity
        self._lock = threading.Lock()
        self._count = 0

    @property
    def count(self) -> int:
        """Total activities recorded, including ones already evicted."""
        with self._lock:
            return self._count

    def record(self, kind: ActivityKind, text: str) -> Activity | None:
        """Record an activity; blank text is ignored."""
        normalized = summarize_snippet(text, self._preview_chars)
        if not normalized:
            return None
        activity = Activity(kind=kind, text=normalized, timestamp=datetime.now(timezone.utc))
        with self._lock:
            self._activities.append(activity)
            self._count += 1
        if self._on_activity is not None:
            self._on_activity(activity)
        return activity

    def snapshot(self) -> tuple[Activity, ...]:
        with self._lock:
            return tuple(self._activities)

    def __len__(self) -> int:
        with self._lock:
            return len(self._activities)
