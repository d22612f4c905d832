"""Validate and run sagas with logging around the executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

from loguru import logger as default_logger

from ..errors import SagaValidationError
from ..models import Phase
from .executor import SagaExecutor, SagaResult, SagaStep, duplicate_step_names
from .phases import SagaFactory


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


class SagaService:
    def __init__(self, project_dir: Path, logger: Any = None) -> None:
        self.project_dir = project_dir
        self._logger = logger or default_logger

    def validate_steps(self, steps: Sequence[Any]) -> ValidationResult:
        errors: list[str] = []
        if not steps:
            errors.append("Steps array cannot be empty")

        for i, step in enumerate(steps):
            name = getattr(step, "name", None)
            if not isinstance(name, str) or not name.strip():
                errors.append(f"Step {i}: name is required")
            description = getattr(step, "description", None)
            if not isinstance(description, str) or not description.strip():
                errors.append(f"Step {i}: description is required")
            if not isinstance(step, SagaStep):
                errors.append(f"Step {i} ({name}): must be a SagaStep with execute and compensate")

        dupes = duplicate_step_names([s for s in steps if isinstance(getattr(s, "name", None), str)])
        if dupes:
            errors.append(f"Duplicate step names found: {', '.join(dupes)}")

        if errors:
            self._logger.warning("Saga validation failed: {errors}", errors=errors)
        return ValidationResult(valid=not errors, errors=errors)

    async def execute_saga(self, steps: Sequence[SagaStep], executor: Optional[SagaExecutor] = None) -> SagaResult:
        self._logger.info(
            "Starting saga execution with {step_count} step(s)",
            step_count=len(steps),
            steps=[s.name for s in steps],
        )
        validation = self.validate_steps(steps)
        if not validation.valid:
            raise SagaValidationError(validation.errors)

        executor = executor or SagaExecutor(self.project_dir)
        result = await executor.execute(steps)
        if result.success:
            self._logger.info("Saga completed successfully", completed_steps=result.completed_steps)
        else:
            self._logger.error(
                "Saga failed at {failed_step}: {error}",
                failed_step=result.failed_step,
                error=str(result.error),
                rollback_performed=result.rollback_performed,
                rollback_successful=result.rollback_successful,
            )
        return result

    async def execute_phase(self, phase: Phase | str) -> Optional[SagaResult]:
        """Run the saga registered for *phase*; ``None`` if the phase has none."""
        steps = SagaFactory.create_for_phase(phase, self.project_dir)
        if not steps:
            self._logger.info("No saga defined for phase {phase}", phase=str(getattr(phase, "value", phase)))
            return None
        return await self.execute_saga(steps)

    async def trigger_rollback(self, executor: SagaExecutor) -> bool:
        self._logger.warning("Manually triggering saga rollback")
        success = await executor.rollback()
        if success:
            self._logger.info("Manual rollback completed successfully")
        else:
            self._logger.error("Manual rollback partially failed")
        return success
