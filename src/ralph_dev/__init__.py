"""Provide the public `ralph_dev` package exports."""

from __future__ import annotations

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerStore
from .errors import (
    CircuitOpenError,
    CompensationError,
    InvalidTransitionError,
    RalphDevError,
    SagaValidationError,
    StateNotFoundError,
    StepExecutionError,
    TaskNotFoundError,
)
from .healing import HealingOperation, HealingResult, HealingService, HealingStats
from .models import CircuitBreakerState, CircuitState, Phase, Task, TaskStatus, WorkflowState
from .saga import SagaExecutor, SagaFactory, SagaResult, SagaService, SagaStep
from .state import StateRepository, StateService
from .status import StatusService
from .task_index import IndexManager

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitBreakerStore",
    "CircuitOpenError",
    "CircuitState",
    "CompensationError",
    "HealingOperation",
    "HealingResult",
    "HealingService",
    "HealingStats",
    "IndexManager",
    "InvalidTransitionError",
    "Phase",
    "RalphDevError",
    "SagaExecutor",
    "SagaFactory",
    "SagaResult",
    "SagaService",
    "SagaStep",
    "SagaValidationError",
    "StateNotFoundError",
    "StateRepository",
    "StateService",
    "StatusService",
    "StepExecutionError",
    "Task",
    "TaskNotFoundError",
    "TaskStatus",
    "WorkflowState",
]
