"""subagent-pool CLI: run a batch of research subagents from the shell.

Commands:
    run: Run tasks from a request file and/or --task options, optionally
        steering tasks of the finished run, and print the report.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .cancellation import CancellationToken
from .config import ConfigError, load_pool_config
from .orchestrator import SubagentOrchestrator, ToolResponse
from .progress import ProgressUpdate
from .spec import SubagentsRequest, TaskSpec, load_request_file

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the subagent-pool CLI."""
    parser = argparse.ArgumentParser(
        prog="subagent-pool",
        description="Run isolated research subagents under a concurrency cap",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_cmd = subparsers.add_parser("run", help="Run a batch of subagent tasks")
    run_cmd.add_argument(
        "--file",
        type=Path,
        default=None,
        help="JSON or YAML request file with 'tasks' and optional 'concurrency'",
    )
    run_cmd.add_argument(
        "--task",
        action="append",
        default=[],
        metavar="[ID=]PROMPT",
        help="Add a task (repeatable)",
    )
    run_cmd.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Tasks to run in parallel (overrides the request file)",
    )
    run_cmd.add_argument(
        "--cwd",
        type=Path,
        default=None,
        help="Default working directory for tasks (defaults to current directory)",
    )
    run_cmd.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Pool config file (defaults to config/subagent_pool.yaml if present)",
    )
    run_cmd.add_argument(
        "--steer",
        action="append",
        default=[],
        metavar="TASK_ID=INSTRUCTION",
        help="Re-run a task of the finished run with an extra instruction (repeatable)",
    )
    run_cmd.add_argument(
        "--json",
        nargs="?",
        const="-",
        default=None,
        metavar="PATH",
        help="Emit run details as JSON to stdout or PATH",
    )
    run_cmd.add_argument(
        "--progress",
        action="store_true",
        help="Write live progress to stderr",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the subagent-pool CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv).

    Returns:
        Exit code (0 when every task succeeded, 1 otherwise).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.WARNING
    if args.verbose >= 1:
        log_level = logging.INFO
    if args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    if args.command == "run":
        return _cmd_run(args)

    parser.error(f"Unknown command: {args.command}")
    return 2


def parse_task_option(value: str) -> TaskSpec:
    """Parse ``[ID=]PROMPT``; the id part must not contain whitespace."""
    head, sep, tail = value.partition("=")
    if sep and head.strip() and not any(ch.isspace() for ch in head.strip()) and tail.strip():
        return TaskSpec(id=head.strip(), prompt=tail.strip())
    return TaskSpec(prompt=value.strip())


def parse_steer_option(value: str) -> tuple[str, str]:
    task_id, sep, instruction = value.partition("=")
    if not sep or not task_id.strip() or not instruction.strip():
        raise ValueError(f"--steer expects TASK_ID=INSTRUCTION, got {value!r}")
    return task_id.strip(), instruction.strip()


def _build_request(args: argparse.Namespace) -> SubagentsRequest:
    tasks: list[TaskSpec] = []
    concurrency = None
    if args.file is not None:
        from_file = load_request_file(args.file)
        tasks.extend(from_file.tasks)
        concurrency = from_file.concurrency
    tasks.extend(parse_task_option(v) for v in args.task)
    if args.concurrency is not None:
        concurrency = args.concurrency
    return SubagentsRequest.model_validate({"tasks": [t.model_dump() for t in tasks], "concurrency": concurrency})


def _cmd_run(args: argparse.Namespace) -> int:
    """Handle the run command."""
    try:
        config = load_pool_config(args.config)
    except ConfigError as e:
        sys.stderr.write(f"Invalid config: {e}\n")
        return 1

    try:
        request = _build_request(args)
        steers = [parse_steer_option(v) for v in args.steer]
    except FileNotFoundError as e:
        sys.stderr.write(f"{e}\n")
        return 1
    except (ValidationError, ValueError) as e:
        sys.stderr.write(f"Invalid request: {e}\n")
        return 1

    default_cwd = (args.cwd or Path.cwd()).resolve()
    orchestrator = SubagentOrchestrator(config, default_cwd=default_cwd)
    cancel = CancellationToken()
    on_update = _write_progress if args.progress else None
    # JSON on stdout replaces the text report.
    show_report = args.json != "-"

    previous_handler = _install_interrupt_handler(cancel)
    try:
        response = orchestrator.run_batch(
            request.tasks,
            request.concurrency,
            cancel=cancel,
            on_update=on_update,
        )
        _print_response(response, show_report)
        if response.details is None:
            return 1

        for task_id, instruction in steers:
            if cancel.cancelled:
                break
            steer_response = orchestrator.steer(
                response.details.run_id,
                task_id,
                instruction,
                cancel=cancel,
                on_update=on_update,
            )
            _print_response(steer_response, show_report)
            if steer_response.details is None:
                return 1
            response = steer_response
    finally:
        _restore_interrupt_handler(previous_handler)

    details = response.details
    if args.json is not None:
        _emit_json(details.to_dict(), args.json)
    return 0 if details.all_succeeded else 1


def _make_interrupt_handler(cancel: CancellationToken) -> Callable[[int, Any], None]:
    def _on_sigint(signum: int, frame: Any) -> None:
        logger.warning("Interrupted; cancelling running subagents")
        # The interrupted main thread may hold a lock that cancel() needs.
        threading.Thread(target=cancel.cancel, name="subagent-cancel", daemon=True).start()

    return _on_sigint


def _install_interrupt_handler(cancel: CancellationToken) -> Any:
    try:
        return signal.signal(signal.SIGINT, _make_interrupt_handler(cancel))
    except ValueError:
        # Not on the main thread.
        return None


def _restore_interrupt_handler(previous: Any) -> None:
    if previous is not None:
        signal.signal(signal.SIGINT, previous)


def _write_progress(update: ProgressUpdate) -> None:
    sys.stderr.write(f"{update.text}\n")
    sys.stderr.flush()


def _print_response(response: ToolResponse, show_report: bool = True) -> None:
    if response.details is None:
        sys.stderr.write(f"{response.text}\n")
    elif show_report:
        sys.stdout.write(f"{response.text}\n")


def _emit_json(payload: dict[str, Any], target: str) -> None:
    """Emit JSON to stdout or file."""
    text = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    if target == "-":
        sys.stdout.write(f"{text}\n")
        return
    out_path = Path(target)
    out_path.write_text(f"{text}\n", encoding="utf-8")


if __name__ == "__main__":
    raise SystemExit(main())
