"""Tests for saga execution, compensation and crash diagnosis."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from ralph_dev.errors import SagaValidationError, StepExecutionError
from ralph_dev.saga import FunctionStep, SagaExecutor, SagaService, SagaStep
from ralph_dev.saga.executor import saga_log_path


class Recorder:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def step(self, name: str, *, fail: bool = False, fail_compensate: bool = False) -> FunctionStep:
        def execute() -> None:
            self.calls.append(name)
            if fail:
                raise RuntimeError("boom")

        def compensate() -> None:
            self.calls.append(f"compensate-{name}")
            if fail_compensate:
                raise RuntimeError(f"cannot undo {name}")

        return FunctionStep(name, f"step {name}", execute, compensate)


def _events(project_dir: Path) -> list[dict]:
    lines = saga_log_path(project_dir).read_text().splitlines()
    return [json.loads(line) for line in lines]


@pytest.fixture
def executor(tmp_path: Path) -> SagaExecutor:
    return SagaExecutor(tmp_path)


class TestExecute:
    def test_success_keeps_input_order(self, executor: SagaExecutor, tmp_path: Path) -> None:
        rec = Recorder()
        result = asyncio.run(executor.execute([rec.step("s1"), rec.step("s2"), rec.step("s3")]))
        assert result.success
        assert result.completed_steps == ["s1", "s2", "s3"]
        assert not result.rollback_performed
        assert rec.calls == ["s1", "s2", "s3"]

        events = _events(tmp_path)
        assert [e["event"] for e in events] == ["saga_started", "saga_completed"]
        assert events[0]["data"]["stepCount"] == 3
        assert events[1]["data"]["completedSteps"] == ["s1", "s2", "s3"]
        assert all(e["timestamp"] for e in events)

    def test_empty_saga(self, executor: SagaExecutor) -> None:
        result = asyncio.run(executor.execute([]))
        assert result.success
        assert result.completed_steps == []
        assert not result.rollback_performed

    def test_failure_compensates_previous_step(self, executor: SagaExecutor, tmp_path: Path) -> None:
        rec = Recorder()
        result = asyncio.run(executor.execute([rec.step("s1"), rec.step("s2", fail=True), rec.step("s3")]))
        assert not result.success
        assert result.completed_steps == ["s1"]
        assert result.failed_step == "s2"
        assert isinstance(result.error, StepExecutionError)
        assert str(result.error) == "boom"
        assert result.rollback_performed
        assert result.rollback_successful
        assert rec.calls == ["s1", "s2", "compensate-s1"]

        events = [e["event"] for e in _events(tmp_path)]
        assert events == ["saga_started", "step_failed", "rollback_completed"]

    def test_compensation_runs_in_reverse(self, executor: SagaExecutor) -> None:
        rec = Recorder()
        steps = [rec.step(f"s{i}") for i in range(4)] + [rec.step("bad", fail=True)]
        asyncio.run(executor.execute(steps))
        compensations = [c for c in rec.calls if c.startswith("compensate-")]
        assert compensations == ["compensate-s3", "compensate-s2", "compensate-s1", "compensate-s0"]

    def test_failing_compensation_does_not_stop_the_rest(self, executor: SagaExecutor, tmp_path: Path) -> None:
        rec = Recorder()
        steps = [
            rec.step("s1"),
            rec.step("s2", fail_compensate=True),
            rec.step("s3"),
            rec.step("s4", fail=True),
        ]
        result = asyncio.run(executor.execute(steps))
        assert rec.calls[-3:] == ["compensate-s3", "compensate-s2", "compensate-s1"]
        assert result.rollback_successful is False
        assert [e.step_name for e in result.compensation_errors] == ["s2"]

        rollback = _events(tmp_path)[-1]
        assert rollback["event"] == "rollback_completed"
        assert rollback["data"]["success"] is False

    def test_async_steps(self, executor: SagaExecutor) -> None:
        calls: list[str] = []

        class AsyncStep(SagaStep):
            name = "async"
            description = "async step"

            async def execute(self) -> None:
                await asyncio.sleep(0)
                calls.append("execute")

            async def compensate(self) -> None:
                calls.append("compensate")

        result = asyncio.run(executor.execute([AsyncStep()]))
        assert result.success
        assert calls == ["execute"]

    def test_duplicate_names_rejected(self, executor: SagaExecutor) -> None:
        rec = Recorder()
        with pytest.raises(SagaValidationError, match="Duplicate step names found: s1"):
            asyncio.run(executor.execute([rec.step("s1"), rec.step("s1")]))

    def test_result_to_dict(self, executor: SagaExecutor) -> None:
        rec = Recorder()
        result = asyncio.run(executor.execute([rec.step("s1"), rec.step("s2", fail=True)]))
        data = result.to_dict()
        assert data["failedStep"] == "s2"
        assert data["error"] == "boom"
        assert data["rollbackSuccessful"] is True


class TestRollback:
    def test_nothing_to_roll_back(self, executor: SagaExecutor) -> None:
        assert asyncio.run(executor.rollback()) is True

    def test_manual_rollback_after_success(self, executor: SagaExecutor) -> None:
        rec = Recorder()
        asyncio.run(executor.execute([rec.step("s1"), rec.step("s2")]))
        assert asyncio.run(executor.rollback()) is True
        assert rec.calls[-2:] == ["compensate-s2", "compensate-s1"]
        # Already compensated; a second rollback is a no-op.
        assert asyncio.run(executor.rollback()) is True
        assert len(rec.calls) == 4

    def test_manual_rollback_reports_failure(self, executor: SagaExecutor) -> None:
        rec = Recorder()
        asyncio.run(executor.execute([rec.step("s1", fail_compensate=True)]))
        assert asyncio.run(executor.rollback()) is False


class TestRecover:
    def test_no_log(self, tmp_path: Path) -> None:
        report = SagaExecutor.recover(tmp_path)
        assert not report.needed
        assert report.message == "No saga recovery needed"

    def test_finished_saga(self, tmp_path: Path) -> None:
        rec = Recorder()
        asyncio.run(SagaExecutor(tmp_path).execute([rec.step("s1")]))
        report = SagaExecutor.recover(tmp_path)
        assert not report.needed
        assert report.message == "No incomplete sagas found"
        assert report.last_event == "saga_completed"

    def test_interrupted_saga(self, tmp_path: Path) -> None:
        log_path = saga_log_path(tmp_path)
        log_path.parent.mkdir(parents=True)
        started = {"timestamp": "2026-01-01T00:00:00Z", "event": "saga_started", "data": {"stepCount": 4}}
        log_path.write_text(json.dumps(started) + "\n")

        report = SagaExecutor.recover(tmp_path)
        assert report.needed
        assert report.step_count == 4
        assert report.message.startswith("Found incomplete saga with 4 step(s)")

    def test_partial_trailing_line_is_ignored(self, tmp_path: Path) -> None:
        rec = Recorder()
        asyncio.run(SagaExecutor(tmp_path).execute([rec.step("s1")]))
        with open(saga_log_path(tmp_path), "a", encoding="utf-8") as handle:
            handle.write('{"timestamp": "2026-01-01T00:00:00Z", "event": "saga_sta')
        assert not SagaExecutor.recover(tmp_path).needed


class TestSagaService:
    def test_validate_steps(self, tmp_path: Path) -> None:
        service = SagaService(tmp_path)
        assert service.validate_steps([]).errors == ["Steps array cannot be empty"]

        rec = Recorder()
        blank = FunctionStep(" ", "", lambda: None)
        result = service.validate_steps([rec.step("a"), blank, rec.step("a"), object()])
        assert not result.valid
        assert "Step 1: name is required" in result.errors
        assert "Step 1: description is required" in result.errors
        assert any("must be a SagaStep" in e for e in result.errors)
        assert "Duplicate step names found: a" in result.errors

    def test_execute_saga_validates_first(self, tmp_path: Path) -> None:
        with pytest.raises(SagaValidationError):
            asyncio.run(SagaService(tmp_path).execute_saga([]))
        assert not saga_log_path(tmp_path).exists()

    def test_execute_saga(self, tmp_path: Path) -> None:
        rec = Recorder()
        result = asyncio.run(SagaService(tmp_path).execute_saga([rec.step("a"), rec.step("b", fail=True)]))
        assert not result.success
        assert rec.calls == ["a", "b", "compensate-a"]

    def test_trigger_rollback(self, tmp_path: Path) -> None:
        rec = Recorder()
        executor = SagaExecutor(tmp_path)
        service = SagaService(tmp_path)
        asyncio.run(service.execute_saga([rec.step("a")], executor=executor))
        assert asyncio.run(service.trigger_rollback(executor)) is True
        assert rec.calls == ["a", "compensate-a"]

    def test_unknown_phase_has_no_saga(self, tmp_path: Path) -> None:
        assert asyncio.run(SagaService(tmp_path).execute_phase("clarify")) is None
