"""Saga execution with compensation, plus the per-phase step definitions."""

from __future__ import annotations

from ..models import Phase
from .executor import (
    FunctionStep,
    SagaExecutor,
    SagaRecoveryReport,
    SagaResult,
    SagaStep,
)
from .phases import Phase2Saga, Phase3Saga, Phase5Saga, SagaFactory
from .service import SagaService, ValidationResult

__all__ = [
    "FunctionStep",
    "Phase",
    "Phase2Saga",
    "Phase3Saga",
    "Phase5Saga",
    "SagaExecutor",
    "SagaFactory",
    "SagaRecoveryReport",
    "SagaResult",
    "SagaService",
    "SagaStep",
    "ValidationResult",
]
