"""Ordered multi-step execution with reverse-order compensation.

A saga runs its steps one at a time. When a step's ``execute`` raises, every
step that already succeeded is compensated in reverse order. Compensation is
best effort: a failing ``compensate`` is recorded and the remaining
compensations still run. The outcome is returned as a :class:`SagaResult`;
step failures never propagate to the caller as exceptions.

Progress is appended to ``.ralph-dev/saga.log`` (one JSON object per line) so
:meth:`SagaExecutor.recover` can spot a saga interrupted by a crash.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from loguru import logger

from ..constants import SAGA_LOG_FILE, STATE_DIR_NAME
from ..errors import CompensationError, SagaValidationError, StepExecutionError, normalize_error
from ..io_utils import _append_event, _read_events

EVENT_SAGA_STARTED = "saga_started"
EVENT_STEP_FAILED = "step_failed"
EVENT_SAGA_COMPLETED = "saga_completed"
EVENT_ROLLBACK_COMPLETED = "rollback_completed"
TERMINAL_EVENTS = {EVENT_SAGA_COMPLETED, EVENT_ROLLBACK_COMPLETED}

StepAction = Callable[[], Union[Awaitable[None], None]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class SagaStep(ABC):
    """A named reversible unit of work."""

    name: str = ""
    description: str = ""

    @abstractmethod
    async def execute(self) -> None:
        """Perform the step; raise to fail the saga."""

    @abstractmethod
    async def compensate(self) -> None:
        """Undo :meth:`execute` as far as possible."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class FunctionStep(SagaStep):
    """A step built from plain callables (sync or async)."""

    def __init__(
        self,
        name: str,
        description: str,
        execute: StepAction,
        compensate: Optional[StepAction] = None,
    ) -> None:
        self.name = name
        self.description = description
        self._execute = execute
        self._compensate = compensate

    async def execute(self) -> None:
        await _maybe_await(self._execute())

    async def compensate(self) -> None:
        if self._compensate is not None:
            await _maybe_await(self._compensate())


@dataclass
class SagaResult:
    success: bool
    completed_steps: list[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[StepExecutionError] = None
    rollback_performed: bool = False
    rollback_successful: Optional[bool] = None
    compensation_errors: list[CompensationError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "completedSteps": list(self.completed_steps),
            "rollbackPerformed": self.rollback_performed,
        }
        if self.failed_step is not None:
            data["failedStep"] = self.failed_step
        if self.error is not None:
            data["error"] = str(self.error)
        if self.rollback_successful is not None:
            data["rollbackSuccessful"] = self.rollback_successful
        if self.compensation_errors:
            data["compensationErrors"] = [str(e) for e in self.compensation_errors]
        return data


@dataclass
class SagaRecoveryReport:
    needed: bool
    message: str
    step_count: Optional[int] = None
    started_at: Optional[str] = None
    last_event: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "needed": self.needed,
            "message": self.message,
            "stepCount": self.step_count,
            "startedAt": self.started_at,
            "lastEvent": self.last_event,
        }


def saga_log_path(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME / SAGA_LOG_FILE


def duplicate_step_names(steps: Sequence[SagaStep]) -> list[str]:
    seen: set[str] = set()
    dupes: list[str] = []
    for step in steps:
        if step.name in seen and step.name not in dupes:
            dupes.append(step.name)
        seen.add(step.name)
    return dupes


class SagaExecutor:
    """Run saga steps for one project and keep the audit log.

    The executor remembers the steps completed by its last :meth:`execute`
    so :meth:`rollback` can undo a successful saga on request.
    """

    def __init__(self, project_dir: Path, log_path: Optional[Path] = None) -> None:
        self.project_dir = project_dir
        self.log_path = log_path or saga_log_path(project_dir)
        self._completed: list[SagaStep] = []

    @property
    def completed_steps(self) -> list[str]:
        return [step.name for step in self._completed]

    def _log(self, event: str, data: dict[str, Any]) -> None:
        _append_event(self.log_path, event, data)

    async def execute(self, steps: Sequence[SagaStep]) -> SagaResult:
        dupes = duplicate_step_names(steps)
        if dupes:
            raise SagaValidationError([f"Duplicate step names found: {', '.join(dupes)}"])

        self._completed = []
        self._log(EVENT_SAGA_STARTED, {"stepCount": len(steps), "steps": [s.name for s in steps]})
        logger.debug("Saga started with {} step(s)", len(steps))

        for step in steps:
            try:
                await step.execute()
            except Exception as exc:
                error = StepExecutionError(step.name, normalize_error(exc))
                logger.error("Saga step {} failed: {}", step.name, error)
                self._log(EVENT_STEP_FAILED, {"step": step.name, "error": str(error)})
                completed_names = self.completed_steps
                compensation_errors = await self._compensate_completed()
                rollback_ok = not compensation_errors
                self._log(
                    EVENT_ROLLBACK_COMPLETED,
                    {
                        "success": rollback_ok,
                        "failedStep": step.name,
                        "compensated": list(reversed(completed_names)),
                        "compensationErrors": [str(e) for e in compensation_errors],
                    },
                )
                return SagaResult(
                    success=False,
                    completed_steps=completed_names,
                    failed_step=step.name,
                    error=error,
                    rollback_performed=True,
                    rollback_successful=rollback_ok,
                    compensation_errors=compensation_errors,
                )
            self._completed.append(step)

        self._log(EVENT_SAGA_COMPLETED, {"completedSteps": self.completed_steps})
        logger.debug("Saga completed: {}", self.completed_steps)
        return SagaResult(success=True, completed_steps=self.completed_steps, rollback_performed=False)

    async def _compensate_completed(self) -> list[CompensationError]:
        errors: list[CompensationError] = []
        for step in reversed(self._completed):
            logger.info("Compensating saga step {}", step.name)
            try:
                await step.compensate()
            except Exception as exc:
                error = CompensationError(step.name, normalize_error(exc))
                logger.error("{}", error)
                errors.append(error)
        self._completed = []
        return errors

    async def rollback(self) -> bool:
        """Compensate the steps completed by the last run; True if none of them failed."""
        if not self._completed:
            return True
        errors = await self._compensate_completed()
        return not errors

    @classmethod
    def recover(cls, project_dir: Path) -> SagaRecoveryReport:
        """Report whether the saga log ends inside an unfinished saga.

        This only diagnoses; it does not compensate anything.
        """
        log_path = saga_log_path(project_dir)
        if not log_path.exists():
            report = SagaRecoveryReport(needed=False, message="No saga recovery needed")
            logger.info(report.message)
            return report

        pending: Optional[dict[str, Any]] = None
        last_event: Optional[str] = None
        for record in _read_events(log_path):
            event = record.get("event")
            if event == EVENT_SAGA_STARTED:
                pending = record
            elif event in TERMINAL_EVENTS:
                pending = None
            if event:
                last_event = str(event)

        if pending is None:
            report = SagaRecoveryReport(
                needed=False,
                message="No incomplete sagas found",
                last_event=last_event,
            )
            logger.info(report.message)
            return report

        data = pending.get("data") if isinstance(pending.get("data"), dict) else {}
        step_count = data.get("stepCount")
        report = SagaRecoveryReport(
            needed=True,
            message=f"Found incomplete saga with {step_count} step(s) started at {pending.get('timestamp')}",
            step_count=step_count if isinstance(step_count, int) else None,
            started_at=pending.get("timestamp"),
            last_event=last_event,
        )
        logger.warning(report.message)
        return report
