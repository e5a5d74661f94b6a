"""Worker process runner.

Runs exactly one task as an isolated external process and resolves to a
TaskResult. The worker receives a composed prompt as its last argument,
streams JSON events on stdout and free text on stderr.

Cancellation is two-phase: SIGTERM to the worker's process group, then
SIGKILL if it is still alive once the grace period expires. Every outcome,
including launch failure and cancellation, resolves to a TaskResult.
"""

from __future__ import annotations

import codecs
import contextlib
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Any

from .activity import Activity, ActivityCallback, ActivityKind, ActivityRecorder
from .cancellation import CancellationToken
from .config import PoolConfig
from .events import EventStreamParser, LineBuffer, extract_references
from .tasks import NormalizedTask

logger = logging.getLogger(__name__)

ABORTED_STDERR = "aborted"

_READ_CHUNK_SIZE = 4096
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)

PROMPT_PREAMBLE = "You are a focused research subagent working for a planning workflow."
PROMPT_CONSTRAINTS = "Stay read-only. Do not edit files."
PROMPT_OUTPUT_FORMAT = (
    "Return markdown with the sections: Summary and References.",
    "In References, include file paths, symbols, and URLs you relied on. If none, write 'None'.",
)


class ProcessState(str, Enum):
    """Lifecycle of one worker process."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    TERMINATING = "terminating"
    KILLED = "killed"
    EXITED = "exited"


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Outcome of one worker run.

    Attributes:
        task_id: Normalized task id.
        prompt: The task prompt (not the composed worker prompt).
        cwd: Working directory the worker ran in.
        output: Last assistant text block emitted by the worker.
        references: URLs found in the output, first-seen order.
        exit_code: 0 on success; anything else is failure.
        stderr: Captured stderr, or "aborted" for cancelled runs.
        activities: Most recent activities, oldest first.
        started_at: When the run began.
        finished_at: When the run resolved.
        steering_notes: Instructions accumulated by steer re-runs.
    """

    task_id: str
    prompt: str
    cwd: str
    output: str
    references: tuple[str, ...]
    exit_code: int
    stderr: str
    activities: tuple[Activity, ...]
    started_at: datetime
    finished_at: datetime
    steering_notes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def aborted(self) -> bool:
        return self.stderr == ABORTED_STDERR

    @property
    def duration_ms(self) -> int:
        delta = self.finished_at - self.started_at
        return max(0, int(delta.total_seconds() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "prompt": self.prompt,
            "cwd": self.cwd,
            "output": self.output,
            "references": list(self.references),
            "exit_code": self.exit_code,
            "stderr": self.stderr,
            "activities": [a.to_dict() for a in self.activities],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": self.duration_ms,
            "steering_notes": list(self.steering_notes),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def failed_task_result(
    task: NormalizedTask,
    cwd: str,
    message: str,
    *,
    started_at: datetime | None = None,
    activities: Sequence[Activity] = (),
    steering_notes: Sequence[str] = (),
) -> TaskResult:
    """Build a failed TaskResult for a task that never produced output."""
    return TaskResult(
        task_id=task.id,
        prompt=task.prompt,
        cwd=cwd,
        output="",
        references=(),
        exit_code=1,
        stderr=message,
        activities=tuple(activities),
        started_at=started_at or _utcnow(),
        finished_at=_utcnow(),
        steering_notes=tuple(steering_notes),
    )


def compose_prompt(
    task: NormalizedTask,
    *,
    steering_instruction: str | None = None,
    previous_output: str | None = None,
) -> str:
    """Build the single prompt argument handed to the worker."""
    parts = [
        PROMPT_PREAMBLE,
        PROMPT_CONSTRAINTS,
        f"Task ID: {task.id}",
        f"Task: {task.prompt}",
        *PROMPT_OUTPUT_FORMAT,
    ]

    instruction = (steering_instruction or "").strip()
    if instruction:
        parts.append(f"Steering update from the main agent:\n{instruction}")
        previous = (previous_output or "").strip()
        if previous:
            parts.append(f"Most recent output for this task:\n{previous}")

    return "\n\n".join(parts)


def resolve_task_cwd(task: NormalizedTask, default_cwd: str | Path) -> str:
    if task.cwd and task.cwd.strip():
        return task.cwd
    return str(default_cwd)


def _signal_process_group(proc: subprocess.Popen, sig: int, fallback: Callable[[], None]) -> None:
    """Signal the worker's whole process group, falling back to the process."""
    try:
        os.killpg(proc.pid, sig)
    except Exception:
        with contextlib.suppress(Exception):
            fallback()


class _ProcessSupervisor:
    """Cancellation state machine for a single worker process."""

    def __init__(
        self,
        proc: subprocess.Popen,
        recorder: ActivityRecorder,
        *,
        task_id: str,
        grace_period_s: float,
    ) -> None:
        self._proc = proc
        self._recorder = recorder
        self._task_id = task_id
        self._grace_period_s = grace_period_s
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self.state = ProcessState.RUNNING
        self.aborted = False

    def request_cancel(self) -> None:
        with self._lock:
            if self.state != ProcessState.RUNNING:
                return
            self.state = ProcessState.TERMINATING
            self.aborted = True

        logger.info("Cancelling task %s (pid %d)", self._task_id, self._proc.pid)
        self._recorder.record(ActivityKind.STATUS, "aborting")
        _signal_process_group(self._proc, signal.SIGTERM, self._proc.terminate)

        timer = threading.Timer(self._grace_period_s, self._force_kill)
        timer.daemon = True
        with self._lock:
            if self.state != ProcessState.TERMINATING:
                return
            self._timer = timer
        timer.start()

    def _force_kill(self) -> None:
        with self._lock:
            if self.state != ProcessState.TERMINATING:
                return
            self.state = ProcessState.KILLED

        logger.warning(
            "Task %s did not exit within %.1fs of SIGTERM; killing",
            self._task_id,
            self._grace_period_s,
        )
        self._recorder.record(ActivityKind.STATUS, "forcing termination")
        _signal_process_group(self._proc, _SIGKILL, self._proc.kill)

    def mark_exited(self) -> None:
        with self._lock:
            self.state = ProcessState.EXITED
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()


def _pump_chunks(src: IO[bytes], on_text: Callable[[str], None]) -> None:
    """Read raw chunks from a pipe and hand decoded text to on_text."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            chunk = src.read1(_READ_CHUNK_SIZE)  # type: ignore[attr-defined]
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                on_text(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            on_text(tail)
    finally:
        with contextlib.suppress(Exception):
            src.close()


class WorkerRunner:
    """Spawns one worker process per task and collects its result.

    Example:
        >>> runner = WorkerRunner(PoolConfig(command=("pi", "--mode", "json", "-p")))
        >>> result = runner.run(NormalizedTask("docs", "Summarize the docs"), Path.cwd())
        >>> result.succeeded, result.output
    """

    def __init__(self, config: PoolConfig | None = None) -> None:
        self.config = config or PoolConfig()

    def run(
        self,
        task: NormalizedTask,
        default_cwd: str | Path,
        *,
        cancel: CancellationToken | None = None,
        on_activity: ActivityCallback | None = None,
        steering_instruction: str | None = None,
        previous_output: str | None = None,
        steering_notes: Sequence[str] = (),
    ) -> TaskResult:
        """Run a task to completion.

        Args:
            task: Normalized task to run.
            default_cwd: Working directory when the task has none.
            cancel: Optional shared cancellation token.
            on_activity: Observer invoked for every recorded activity.
            steering_instruction: Extra instruction for a steer re-run.
            previous_output: Last output of the task, replayed when steering.
            steering_notes: Notes stored on the resulting TaskResult.

        Returns:
            TaskResult; never raises for process-level failures.
        """
        prompt = compose_prompt(
            task,
            steering_instruction=steering_instruction,
            previous_output=previous_output,
        )
        cwd = resolve_task_cwd(task, default_cwd)
        notes = tuple(steering_notes)
        started_at = _utcnow()
        recorder = ActivityRecorder(
            capacity=self.config.max_activities,
            preview_chars=self.config.activity_preview_chars,
            on_activity=on_activity,
        )

        cmd = [*self.config.command, prompt]
        logger.debug("Launching worker for task %s in %s: %s", task.id, cwd, cmd[0])
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            # ValueError covers arguments Popen rejects, such as embedded NUL bytes.
            message = str(e) or e.__class__.__name__
            logger.warning("Failed to launch worker for task %s: %s", task.id, message)
            recorder.record(ActivityKind.STDERR, message)
            return failed_task_result(
                task,
                cwd,
                message,
                started_at=started_at,
                activities=recorder.snapshot(),
                steering_notes=notes,
            )

        recorder.record(ActivityKind.STATUS, "started")
        supervisor = _ProcessSupervisor(
            proc,
            recorder,
            task_id=task.id,
            grace_period_s=self.config.grace_period_s,
        )
        parser = EventStreamParser(
            recorder,
            tool_args_preview_chars=self.config.tool_args_preview_chars,
        )
        stdout_lines = LineBuffer()
        stderr_lines = LineBuffer()
        stderr_chunks: list[str] = []

        def _on_stdout(text: str) -> None:
            for line in stdout_lines.feed(text):
                parser.handle_line(line)

        def _on_stderr(text: str) -> None:
            stderr_chunks.append(text)
            for line in stderr_lines.feed(text):
                if line.strip():
                    recorder.record(ActivityKind.STDERR, line)

        def _pump_stdout() -> None:
            assert proc.stdout is not None
            _pump_chunks(proc.stdout, _on_stdout)
            residual = stdout_lines.flush()
            if residual.strip():
                parser.handle_line(residual)

        def _pump_stderr() -> None:
            assert proc.stderr is not None
            _pump_chunks(proc.stderr, _on_stderr)
            residual = stderr_lines.flush()
            if residual.strip():
                recorder.record(ActivityKind.STDERR, residual)

        t_out = threading.Thread(target=_pump_stdout, name=f"{task.id}-stdout", daemon=True)
        t_err = threading.Thread(target=_pump_stderr, name=f"{task.id}-stderr", daemon=True)
        t_out.start()
        t_err.start()

        remove_listener = cancel.add_listener(supervisor.request_cancel) if cancel is not None else None
        try:
            returncode = proc.wait()
        finally:
            supervisor.mark_exited()
            if remove_listener is not None:
                remove_listener()

        t_out.join(timeout=self.config.drain_timeout_s)
        t_err.join(timeout=self.config.drain_timeout_s)

        # Death by signal has no exit status of its own.
        exit_code = returncode if returncode >= 0 else 1
        if supervisor.aborted:
            # A cancelled task never counts as a success.
            exit_code = exit_code or 1
        recorder.record(ActivityKind.STATUS, f"finished with exit code {exit_code}")

        output = parser.final_output
        stderr_text = ABORTED_STDERR if supervisor.aborted else "".join(stderr_chunks)
        logger.debug(
            "Task %s exited with %d (%d events, aborted=%s)",
            task.id,
            exit_code,
            parser.events_seen,
            supervisor.aborted,
        )

        return TaskResult(
            task_id=task.id,
            prompt=task.prompt,
            cwd=cwd,
            output=output,
            references=tuple(extract_references(output)),
            exit_code=exit_code,
            stderr=stderr_text,
            activities=recorder.snapshot(),
            started_at=started_at,
            finished_at=_utcnow(),
            steering_notes=notes,
        )
