"""Define task, workflow-state and circuit-breaker models and their state machines."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from .errors import InvalidTransitionError
from .utils import _coerce_int, _now_iso


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Phase(str, Enum):
    """Workflow phases; ``NONE`` means no state has been initialized."""

    NONE = "none"
    CLARIFY = "clarify"
    BREAKDOWN = "breakdown"
    IMPLEMENT = "implement"
    HEAL = "heal"
    DELIVER = "deliver"
    COMPLETE = "complete"


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


# ---------------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------------

TASK_TRANSITIONS: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.PENDING: (TaskStatus.IN_PROGRESS,),
    TaskStatus.IN_PROGRESS: (TaskStatus.COMPLETED, TaskStatus.FAILED),
    TaskStatus.COMPLETED: (),
    TaskStatus.FAILED: (),
}

PHASE_TRANSITIONS: dict[Phase, tuple[Phase, ...]] = {
    Phase.NONE: (),
    Phase.CLARIFY: (Phase.BREAKDOWN,),
    Phase.BREAKDOWN: (Phase.IMPLEMENT,),
    Phase.IMPLEMENT: (Phase.HEAL, Phase.DELIVER),
    Phase.HEAL: (Phase.IMPLEMENT,),
    Phase.DELIVER: (Phase.COMPLETE,),
    Phase.COMPLETE: (),
}


def check_phase_transition(current: Phase, target: Phase) -> None:
    allowed = PHASE_TRANSITIONS.get(current, ())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value, [p.value for p in allowed])


def _module_from_id(task_id: str) -> str:
    return task_id.split(".", 1)[0] if "." in task_id else ""


def _str_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def _unique(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A unit of work identified by a dot-namespaced id such as ``auth.login``.

    Instances are transient views; the task index owns the canonical status.
    """

    id: str
    module: str = ""
    priority: int = 1
    status: TaskStatus = TaskStatus.PENDING
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    estimated_minutes: Optional[int] = None
    file_path: Optional[str] = None
    failure_reason: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id or not str(self.id).strip():
            raise ValueError("Task id must be a non-empty string")
        if not self.module:
            self.module = _module_from_id(self.id)
        self.status = TaskStatus(self.status)
        self.dependencies = _unique(self.dependencies)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "id" and "id" in self.__dict__:
            raise AttributeError("Task id is immutable")
        super().__setattr__(name, value)

    # -- lifecycle ----------------------------------------------------------

    def _transition(self, target: TaskStatus) -> None:
        allowed = TASK_TRANSITIONS[self.status]
        if target not in allowed:
            raise InvalidTransitionError(
                self.status.value,
                target.value,
                [s.value for s in allowed],
                subject=f"Task {self.id}",
            )
        self.status = target

    def start(self) -> None:
        self._transition(TaskStatus.IN_PROGRESS)
        self.started_at = _now_iso()

    def complete(self) -> None:
        self._transition(TaskStatus.COMPLETED)
        self.completed_at = _now_iso()

    def fail(self, reason: Optional[str] = None) -> None:
        self._transition(TaskStatus.FAILED)
        self.failure_reason = reason
        self.completed_at = _now_iso()

    def is_terminal(self) -> bool:
        return not TASK_TRANSITIONS[self.status]

    def is_blocked(self, completed_ids: Iterable[str]) -> bool:
        done = set(completed_ids)
        return any(dep not in done for dep in self.dependencies)

    # -- serialization ------------------------------------------------------

    def to_index_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "status": self.status.value,
            "priority": self.priority,
            "module": self.module,
            "description": self.description,
        }
        if self.acceptance_criteria:
            record["acceptanceCriteria"] = list(self.acceptance_criteria)
        if self.dependencies:
            record["dependencies"] = list(self.dependencies)
        if self.estimated_minutes is not None:
            record["estimatedMinutes"] = self.estimated_minutes
        if self.file_path:
            record["filePath"] = self.file_path
        if self.failure_reason:
            record["failureReason"] = self.failure_reason
        if self.started_at:
            record["startedAt"] = self.started_at
        if self.completed_at:
            record["completedAt"] = self.completed_at
        return record

    @classmethod
    def from_index_record(cls, task_id: str, record: dict[str, Any]) -> "Task":
        return cls(
            id=task_id,
            module=str(record.get("module") or ""),
            priority=_coerce_int(record.get("priority"), 1),
            status=TaskStatus(record.get("status", TaskStatus.PENDING.value)),
            description=str(record.get("description") or ""),
            acceptance_criteria=_str_list(record.get("acceptanceCriteria")),
            dependencies=_str_list(record.get("dependencies")),
            estimated_minutes=_coerce_int(record.get("estimatedMinutes")),
            file_path=record.get("filePath"),
            failure_reason=record.get("failureReason"),
            started_at=record.get("startedAt"),
            completed_at=record.get("completedAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Full camelCase representation, including the id."""
        data: dict[str, Any] = {"id": self.id}
        data.update(self.to_index_record())
        data.setdefault("acceptanceCriteria", [])
        data.setdefault("dependencies", [])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls.from_index_record(str(data.get("id") or ""), data)


# ---------------------------------------------------------------------------
# Workflow state
# ---------------------------------------------------------------------------

@dataclass
class WorkflowState:
    """The single workflow phase record of a workspace."""

    phase: Phase = Phase.CLARIFY
    started_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    current_task: Optional[str] = None
    prd: Any = None
    errors: list[Any] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.phase = Phase(self.phase)

    def next_allowed_phases(self) -> list[Phase]:
        return list(PHASE_TRANSITIONS.get(self.phase, ()))

    def can_transition_to(self, target: Phase | str) -> bool:
        return Phase(target) in PHASE_TRANSITIONS.get(self.phase, ())

    def transition_to(self, target: Phase | str) -> None:
        target = Phase(target)
        check_phase_transition(self.phase, target)
        self.phase = target
        self.touch()

    def is_complete(self) -> bool:
        return self.phase == Phase.COMPLETE

    def set_current_task(self, task_id: Optional[str]) -> None:
        self.current_task = task_id
        self.touch()

    def set_prd(self, prd: Any) -> None:
        self.prd = prd
        self.touch()

    def add_error(self, error: Any) -> None:
        self.errors.append(error)
        self.touch()

    def clear_errors(self) -> None:
        self.errors = []
        self.touch()

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "phase": self.phase.value,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "errors": list(self.errors),
        }
        if self.current_task is not None:
            data["currentTask"] = self.current_task
        if self.prd is not None:
            data["prd"] = self.prd
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowState":
        errors = data.get("errors")
        return cls(
            phase=Phase(data.get("phase", Phase.CLARIFY.value)),
            started_at=data.get("startedAt") or _now_iso(),
            updated_at=data.get("updatedAt") or _now_iso(),
            current_task=data.get("currentTask"),
            prd=data.get("prd"),
            errors=list(errors) if isinstance(errors, list) else [],
        )


# ---------------------------------------------------------------------------
# Circuit breaker state
# ---------------------------------------------------------------------------

@dataclass
class CircuitBreakerState:
    """Persistable snapshot of one breaker; times are epoch milliseconds."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[int] = None
    last_reset_time: Optional[int] = None

    def __post_init__(self) -> None:
        self.state = CircuitState(self.state)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failureCount": self.failure_count,
            "successCount": self.success_count,
            "lastFailureTime": self.last_failure_time,
            "lastResetTime": self.last_reset_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CircuitBreakerState":
        try:
            state = CircuitState(data.get("state", CircuitState.CLOSED.value))
        except ValueError:
            state = CircuitState.CLOSED
        return cls(
            state=state,
            failure_count=_coerce_int(data.get("failureCount"), 0) or 0,
            success_count=_coerce_int(data.get("successCount"), 0) or 0,
            last_failure_time=_coerce_int(data.get("lastFailureTime")),
            last_reset_time=_coerce_int(data.get("lastResetTime")),
        )
