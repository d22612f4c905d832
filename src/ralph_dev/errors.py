"""Exception types raised by the orchestration core."""

from __future__ import annotations

from typing import Any, Iterable, Optional


class RalphDevError(Exception):
    """Base class for all ralph-dev errors."""


class InvalidTransitionError(RalphDevError):
    """A task or phase state change violates its state machine."""

    def __init__(self, current: str, requested: str, allowed: Iterable[str], *, subject: str = "") -> None:
        self.current = current
        self.requested = requested
        self.allowed = list(allowed)
        self.subject = subject
        allowed_text = ", ".join(self.allowed) if self.allowed else "none"
        prefix = f"{subject}: " if subject else ""
        super().__init__(
            f"{prefix}Cannot transition from {current} to {requested}. "
            f"Allowed transitions: {allowed_text}"
        )


class TaskNotFoundError(RalphDevError, KeyError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found in index: {task_id}")

    def __str__(self) -> str:
        return self.args[0]


class StateNotFoundError(RalphDevError):
    def __init__(self, message: str = "State not found. Initialize state first.") -> None:
        super().__init__(message)


class CircuitOpenError(RalphDevError):
    """Raised instead of running the guarded operation while the circuit is OPEN."""

    def __init__(self, message: str = "Circuit breaker is OPEN") -> None:
        super().__init__(message)


class StepExecutionError(RalphDevError):
    def __init__(self, step_name: str, original: BaseException) -> None:
        self.step_name = step_name
        self.original = original
        super().__init__(str(original))


class CompensationError(RalphDevError):
    def __init__(self, step_name: str, original: BaseException) -> None:
        self.step_name = step_name
        self.original = original
        super().__init__(f"Compensation failed for {step_name}: {original}")


class SagaValidationError(RalphDevError, ValueError):
    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Saga validation failed: {', '.join(self.errors)}")


def normalize_error(value: Any, default: Optional[str] = None) -> Exception:
    """Return *value* as an ``Exception``.

    Exceptions pass through unchanged; anything else is wrapped in a
    ``RalphDevError`` whose message is ``str(value)``.
    """
    if isinstance(value, Exception):
        return value
    if value is None and default is not None:
        return RalphDevError(default)
    return RalphDevError(str(value))
