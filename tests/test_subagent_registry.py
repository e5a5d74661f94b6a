# SPDX-License-Identifier: MIT
"""Tests for the run registry and steering."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from subagent_pool.registry import (
    RunRecord,
    RunRegistry,
    SteeringError,
    UnknownRunError,
    UnknownTaskError,
)
from subagent_pool.tasks import NormalizedTask

from conftest import make_result


def _run(run_id: str, *task_ids: str) -> RunRecord:
    return RunRecord(run_id=run_id, tasks=[make_result(t) for t in task_ids or ("task-1",)])


class TestRunRegistry:
    """Tests for RunRegistry storage and eviction."""

    def test_remember_and_lookup(self) -> None:
        registry = RunRegistry()
        run = _run("run-a")
        registry.remember(run)
        assert registry.lookup("run-a") is run
        assert registry.lookup("run-b") is None
        assert "run-a" in registry
        assert len(registry) == 1

    def test_capacity_evicts_oldest(self) -> None:
        registry = RunRegistry(capacity=20)
        for i in range(21):
            registry.remember(_run(f"run-{i}"))
        assert len(registry) == 20
        assert "run-0" not in registry
        assert registry.run_ids()[0] == "run-1"
        assert registry.run_ids()[-1] == "run-20"

    def test_overwrite_keeps_insertion_position(self) -> None:
        registry = RunRegistry(capacity=3)
        for run_id in ("a", "b", "c"):
            registry.remember(_run(run_id))
        registry.remember(_run("a", "other"))
        assert registry.run_ids() == ["a", "b", "c"]
        registry.remember(_run("d"))
        assert registry.run_ids() == ["b", "c", "d"]

    def test_invalid_capacity(self) -> None:
        with pytest.raises(ValueError):
            RunRegistry(capacity=0)

    def test_record_to_dict(self) -> None:
        payload = _run("run-a", "x").to_dict()
        assert payload["run_id"] == "run-a"
        assert [t["task_id"] for t in payload["tasks"]] == ["x"]


class TestResolve:
    """Tests for RunRegistry.resolve error messages."""

    def test_unknown_run_with_history(self) -> None:
        registry = RunRegistry()
        registry.remember(_run("run-a"))
        registry.remember(_run("run-b"))
        with pytest.raises(UnknownRunError) as exc_info:
            registry.resolve("run-z", "task-1")
        assert str(exc_info.value) == 'Unknown run_id "run-z". Known run_ids: run-a, run-b'
        assert exc_info.value.known_run_ids == ["run-a", "run-b"]

    def test_unknown_run_empty_registry(self) -> None:
        with pytest.raises(UnknownRunError, match="No prior subagent runs are available"):
            RunRegistry().resolve("run-z", "task-1")

    def test_unknown_task(self) -> None:
        registry = RunRegistry()
        registry.remember(_run("run-a", "alpha", "beta"))
        with pytest.raises(UnknownTaskError) as exc_info:
            registry.resolve("run-a", "gamma")
        assert str(exc_info.value) == 'Unknown task_id "gamma" for run run-a. Known task_ids: alpha, beta'
        assert exc_info.value.known_task_ids == ["alpha", "beta"]
        assert isinstance(exc_info.value, SteeringError)


class TestSteer:
    """Tests for RunRegistry.steer."""

    def test_reruns_one_task_in_place(self) -> None:
        registry = RunRegistry()
        previous = make_result("beta", output="old output", steering_notes=("first",), cwd="/repo/b")
        run = RunRecord(run_id="run-a", tasks=[make_result("alpha"), previous])
        registry.remember(run)

        new_result = make_result("beta", output="new output", steering_notes=("first", "second"))
        runner = MagicMock()
        runner.run.return_value = new_result

        outcome = registry.steer("run-a", "beta", "second", runner=runner, default_cwd="/repo")

        runner.run.assert_called_once()
        args, kwargs = runner.run.call_args
        assert args[0] == NormalizedTask(id="beta", prompt=previous.prompt, cwd="/repo/b")
        assert args[1] == "/repo"
        assert kwargs["steering_instruction"] == "second"
        assert kwargs["previous_output"] == "old output"
        assert kwargs["steering_notes"] == ["first", "second"]

        assert outcome.task_index == 1
        assert outcome.result is new_result
        assert registry.lookup("run-a").tasks[1] is new_result
        assert registry.lookup("run-a").tasks[0].task_id == "alpha"

    def test_unknown_task_leaves_registry_untouched(self) -> None:
        registry = RunRegistry()
        run = _run("run-a", "alpha")
        registry.remember(run)
        runner = MagicMock()
        with pytest.raises(UnknownTaskError):
            registry.steer("run-a", "nope", "x", runner=runner, default_cwd="/repo")
        runner.run.assert_not_called()
        assert registry.lookup("run-a").tasks == run.tasks

    def test_runner_exception_becomes_failed_result(self) -> None:
        registry = RunRegistry()
        previous = make_result("beta", output="old output", cwd="/repo/b")
        registry.remember(RunRecord(run_id="run-a", tasks=[make_result("alpha"), previous]))
        runner = MagicMock()
        runner.run.side_effect = RuntimeError("runner blew up")

        outcome = registry.steer("run-a", "beta", "retry", runner=runner, default_cwd="/repo")

        assert outcome.task_index == 1
        assert not outcome.result.succeeded
        assert outcome.result.stderr == "runner blew up"
        assert outcome.result.cwd == "/repo/b"
        assert outcome.result.steering_notes == ("retry",)
        assert registry.lookup("run-a").tasks[1] is outcome.result
        assert registry.lookup("run-a").tasks[0].succeeded
