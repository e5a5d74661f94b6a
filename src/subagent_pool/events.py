"""Parsing of the worker's line-delimited JSON event stream.

Workers write one JSON object per line to stdout. Reads arrive in arbitrary
chunks, so a LineBuffer keeps any trailing fragment until its newline shows
up. Lines that are not JSON objects are skipped; a noisy worker never fails
the task.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .activity import ActivityKind, ActivityRecorder, summarize_snippet

logger = logging.getLogger(__name__)

DEFAULT_TOOL_ARGS_PREVIEW_CHARS = 90

MESSAGE_END = "message_end"
TOOL_RESULT_END = "tool_result_end"

_URL_PATTERN = re.compile(r"https?://\S+")
_URL_TRAILING_PUNCTUATION = re.compile(r"[),.;]+$")


class LineBuffer:
    """Split streamed text on newlines, retaining the incomplete tail."""

    def __init__(self) -> None:
        self._residual = ""

    def feed(self, chunk: str) -> list[str]:
        """Add a chunk and return every line it completed."""
        if not chunk:
            return []
        lines = (self._residual + chunk).split("\n")
        self._residual = lines.pop()
        return lines

    def flush(self) -> str:
        """Return and clear whatever partial line remains."""
        residual, self._residual = self._residual, ""
        return residual

    @property
    def pending(self) -> str:
        return self._residual


def parse_event(line: str) -> dict[str, Any] | None:
    """Decode one event line, or None if it is blank or not a JSON object."""
    if not line.strip():
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON worker line: %s", summarize_snippet(line, 80))
        return None
    if not isinstance(event, dict):
        return None
    return event


def _content_items(message: dict[str, Any]) -> list[dict[str, Any]]:
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [item for item in content if isinstance(item, dict)]


def message_text(message: dict[str, Any]) -> str:
    """Join a message's text items with newlines and trim."""
    texts = [
        item["text"]
        for item in _content_items(message)
        if item.get("type") == "text" and isinstance(item.get("text"), str)
    ]
    return "\n".join(texts).strip()


def format_tool_arguments(arguments: Any, max_length: int = DEFAULT_TOOL_ARGS_PREVIEW_CHARS) -> str:
    """Compact JSON preview of tool-call arguments, prefixed with a space."""
    if arguments is None:
        return ""
    try:
        serialized = json.dumps(arguments, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        serialized = str(arguments)
    preview = summarize_snippet(serialized, max_length)
    return f" {preview}" if preview else ""


def extract_references(text: str) -> list[str]:
    """Find http(s) URLs in text, deduplicated in first-seen order.

    Trailing ``)``, ``,``, ``.`` and ``;`` are stripped from each match.
    """
    seen: dict[str, None] = {}
    for match in _URL_PATTERN.finditer(text):
        url = _URL_TRAILING_PUNCTUATION.sub("", match.group(0))
        if url:
            seen.setdefault(url, None)
    return list(seen)


class EventStreamParser:
    """Turns decoded worker events into activities and a final output.

    Only the last assistant text block is kept as the final output; earlier
    blocks interleaved with tool calls are recorded as activities but do not
    accumulate.
    """

    def __init__(
        self,
        recorder: ActivityRecorder,
        *,
        tool_args_preview_chars: int = DEFAULT_TOOL_ARGS_PREVIEW_CHARS,
    ) -> None:
        self.recorder = recorder
        self.tool_args_preview_chars = tool_args_preview_chars
        self._final_output = ""
        self.events_seen = 0

    @property
    def final_output(self) -> str:
        return self._final_output

    def handle_line(self, line: str) -> None:
        event = parse_event(line)
        if event is None:
            return
        self.events_seen += 1

        message = event.get("message")
        if not isinstance(message, dict):
            return

        event_type = event.get("type")
        if event_type == MESSAGE_END:
            self._handle_message_end(message)
        elif event_type == TOOL_RESULT_END:
            tool_text = message_text(message)
            if tool_text:
                self.recorder.record(ActivityKind.TOOL_RESULT, tool_text)

    def _handle_message_end(self, message: dict[str, Any]) -> None:
        if message.get("role") != "assistant":
            return

        for part in _content_items(message):
            part_type = part.get("type")
            if part_type == "toolCall":
                name = part.get("name") or "unknown_tool"
                args = format_tool_arguments(part.get("arguments"), self.tool_args_preview_chars)
                self.recorder.record(ActivityKind.TOOL, f"{name}{args}")
            elif part_type == "text" and isinstance(part.get("text"), str):
                self.recorder.record(ActivityKind.ASSISTANT, part["text"])

        text = message_text(message)
        if text:
            self._final_output = text
