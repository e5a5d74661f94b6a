# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for the test suite.

This module provides:
- A fake worker executable that speaks the JSON event protocol
- Pool configurations that launch it with the current interpreter
- Helpers for building activities and task results
"""
from __future__ import annotations

import os
import sys
import textwrap
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from subagent_pool.activity import Activity, ActivityKind
from subagent_pool.config import PoolConfig
from subagent_pool.worker import TaskResult

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TESTS_DIR = Path(__file__).resolve().parent
ROOT_DIR = TESTS_DIR.parent

# The fake worker reads the "Task: <verb> <arg>" line of its prompt and
# behaves according to the verb. Everything it prints is JSON unless the
# verb asks for garbage.
FAKE_WORKER_SOURCE = textwrap.dedent(
    '''
    import json
    import os
    import signal
    import sys
    import time

    prompt = sys.argv[-1]
    task = ""
    for line in prompt.splitlines():
        if line.startswith("Task: "):
            task = line[len("Task: "):]
            break
    verb, _, arg = task.partition(" ")


    def emit(event):
        sys.stdout.write(json.dumps(event) + "\\n")
        sys.stdout.flush()


    def assistant(*parts):
        emit({"type": "message_end", "message": {"role": "assistant", "content": list(parts)}})


    def text(value):
        return {"type": "text", "text": value}


    def tool_call(name, arguments):
        return {"type": "toolCall", "name": name, "arguments": arguments}


    def tool_result(value):
        emit({"type": "tool_result_end", "message": {"role": "toolResult", "content": [text(value)]}})


    if verb == "ok":
        assistant(tool_call("read", {"path": arg + ".md"}))
        tool_result("contents of " + arg)
        assistant(text("## Summary\\nFound " + arg + "\\n\\n## References\\n- https://example.com/" + arg + "."))
    elif verb == "say":
        assistant(text(arg))
    elif verb == "fail":
        sys.stderr.write("failed\\n")
        sys.exit(1)
    elif verb == "stderr":
        sys.stderr.write("warning one\\nwarning two")
        assistant(text("done"))
    elif verb == "multi":
        assistant(text("first draft"))
        assistant(tool_call("grep", {"pattern": "x"}))
        assistant(text("final answer"))
    elif verb == "cwd":
        assistant(text(os.getcwd()))
    elif verb == "garbage":
        sys.stdout.write("not json at all\\n")
        sys.stdout.write("{broken json\\n")
        sys.stdout.write("[1, 2, 3]\\n")
        sys.stdout.flush()
        assistant(text("survived"))
    elif verb == "partial":
        line = json.dumps({"type": "message_end", "message": {"role": "assistant", "content": [text("split line")]}})
        middle = len(line) // 2
        sys.stdout.write(line[:middle])
        sys.stdout.flush()
        time.sleep(0.2)
        sys.stdout.write(line[middle:])
        sys.stdout.flush()
    elif verb == "noisy":
        for i in range(int(arg)):
            assistant(tool_call("step", {"i": i}))
        assistant(text("noisy done"))
    elif verb == "steer":
        marker = "Steering update from the main agent:"
        if marker in prompt:
            instruction = prompt.split(marker, 1)[1].strip().split("\\n\\n", 1)[0]
            has_previous = "Most recent output for this task:" in prompt
            assistant(text("steered: " + instruction + " previous=" + str(has_previous)))
        else:
            assistant(text("initial answer"))
    elif verb == "flaky":
        if "Steering update from the main agent:" not in prompt:
            sys.stderr.write("flaky failure\\n")
            sys.exit(2)
        assistant(text("recovered"))
    elif verb == "sleep":
        emit({"type": "agent_start"})
        time.sleep(float(arg))
        assistant(text("woke up"))
    elif verb == "hang":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        emit({"type": "agent_start"})
        time.sleep(float(arg or 30))
    elif verb == "graceful":
        signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))
        emit({"type": "agent_start"})
        time.sleep(float(arg or 30))
    elif verb == "linger":
        if "Steering update from the main agent:" in prompt:
            emit({"type": "agent_start"})
            time.sleep(float(arg or 30))
        assistant(text("lingered"))
    elif verb == "track":
        directory, _, duration = arg.partition(" ")
        start = time.time()
        time.sleep(float(duration or 0.3))
        end = time.time()
        with open(os.path.join(directory, str(os.getpid())), "w") as f:
            f.write(f"{start} {end}")
        assistant(text("tracked"))
    elif verb == "exit":
        sys.exit(int(arg))
    else:
        assistant(text("echo: " + task))
    '''
)


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism."""
    deterministic_env = {
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)
    # A developer override must not leak into the config tests.
    os.environ.pop("SUBAGENT_POOL_COMMAND", None)


# ---------------------------------------------------------------------------
# Fixtures: Fake worker
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_worker(tmp_path: Path) -> Path:
    """Write the fake worker script and return its path."""
    path = tmp_path / "fake_worker.py"
    path.write_text(FAKE_WORKER_SOURCE, encoding="utf-8")
    return path


@pytest.fixture
def pool_config(fake_worker: Path) -> PoolConfig:
    """PoolConfig that launches the fake worker with a short grace period."""
    return PoolConfig(
        command=(sys.executable, str(fake_worker)),
        grace_period_s=0.5,
        drain_timeout_s=2.0,
    )


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Default working directory for tasks."""
    path = tmp_path / "work"
    path.mkdir()
    return path


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_activity(kind: ActivityKind = ActivityKind.STATUS, text: str = "started") -> Activity:
    return Activity(kind=kind, text=text, timestamp=T0)


def make_result(task_id: str = "task-1", **overrides: Any) -> TaskResult:
    """Build a TaskResult with sensible defaults for formatter/registry tests."""
    fields: dict[str, Any] = {
        "task_id": task_id,
        "prompt": f"Investigate {task_id}",
        "cwd": "/repo",
        "output": "## Summary\nAll good",
        "references": (),
        "exit_code": 0,
        "stderr": "",
        "activities": (),
        "started_at": T0,
        "finished_at": T0 + timedelta(milliseconds=850),
        "steering_notes": (),
    }
    fields.update(overrides)
    return TaskResult(**fields)
