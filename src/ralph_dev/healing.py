"""Circuit-breaker protected healing of failed tasks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

from loguru import logger as default_logger

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerStore, Clock
from .errors import CircuitOpenError, normalize_error
from .models import CircuitState


class HealingOperation(ABC):
    """Something that tries to fix a failed task."""

    @abstractmethod
    async def heal(self) -> bool:
        """Return ``True`` if the task was fixed, ``False`` if the attempt ran but did not fix it."""


class CallableHealingOperation(HealingOperation):
    """Adapt an async callable into a :class:`HealingOperation`."""

    def __init__(self, func: Callable[[], Awaitable[bool]]) -> None:
        self._func = func

    async def heal(self) -> bool:
        return bool(await self._func())


@dataclass
class HealingResult:
    success: bool
    task_id: str
    attempt_number: int
    circuit_state: CircuitState
    error: Optional[Exception] = None

    @property
    def circuit_open(self) -> bool:
        """True when the heal operation was not run because the circuit rejected it."""
        return isinstance(self.error, CircuitOpenError)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "taskId": self.task_id,
            "attemptNumber": self.attempt_number,
            "circuitState": self.circuit_state.value,
        }
        if self.error is not None:
            data["error"] = str(self.error)
        return data


@dataclass
class HealingStats:
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    circuit_open_count: int = 0
    current_circuit_state: CircuitState = CircuitState.CLOSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalAttempts": self.total_attempts,
            "successfulAttempts": self.successful_attempts,
            "failedAttempts": self.failed_attempts,
            "circuitOpenCount": self.circuit_open_count,
            "currentCircuitState": self.current_circuit_state.value,
        }


class HealingService:
    """Run heal operations through a circuit breaker and keep statistics.

    Per-task attempt numbers and aggregate statistics live as long as the
    service; :meth:`reset_circuit` replaces only the breaker.
    """

    def __init__(
        self,
        logger: Any = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        *,
        store: Optional[CircuitBreakerStore] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._logger = logger or default_logger
        self._config = circuit_config or CircuitBreakerConfig()
        self._store = store
        self._clock = clock
        self._breaker = self._new_breaker(load=True)
        self._stats = HealingStats(current_circuit_state=self._breaker.get_state())
        self._attempts_by_task: dict[str, int] = {}

    def _new_breaker(self, *, load: bool) -> CircuitBreaker:
        if self._store is not None and not load:
            self._store.clear()
        return CircuitBreaker(
            self._config,
            store=self._store,
            clock=self._clock,
            on_state_change=self._on_state_change,
        )

    def _on_state_change(self, old: CircuitState, new: CircuitState) -> None:
        if new == CircuitState.OPEN:
            self._stats.circuit_open_count += 1
            self._logger.error(
                "Circuit breaker opened - healing disabled temporarily",
                previous_state=old.value,
                failed_attempts=self._stats.failed_attempts,
                circuit_open_count=self._stats.circuit_open_count,
            )

    async def attempt_healing(self, task_id: str, operation: HealingOperation) -> HealingResult:
        attempt_number = self._attempts_by_task.get(task_id, 0) + 1
        self._attempts_by_task[task_id] = attempt_number
        self._stats.total_attempts += 1

        self._logger.info(
            "Attempting to heal task {task_id} (attempt {attempt_number})",
            task_id=task_id,
            attempt_number=attempt_number,
            circuit_state=self.get_circuit_state().value,
        )

        try:
            success = bool(await self._breaker.execute(operation.heal))
        except Exception as exc:
            error = normalize_error(exc)
            self._stats.failed_attempts += 1
            state = self.get_circuit_state()
            self._stats.current_circuit_state = state
            self._logger.error(
                "Healing failed for {task_id}: {error}",
                task_id=task_id,
                attempt_number=attempt_number,
                error=str(error),
                circuit_state=state.value,
            )
            return HealingResult(
                success=False,
                task_id=task_id,
                attempt_number=attempt_number,
                circuit_state=state,
                error=error,
            )

        if success:
            self._stats.successful_attempts += 1
            self._logger.info(
                "Healing succeeded for {task_id}",
                task_id=task_id,
                attempt_number=attempt_number,
            )
        else:
            self._stats.failed_attempts += 1
            self._logger.warning(
                "Healing operation returned false for {task_id}",
                task_id=task_id,
                attempt_number=attempt_number,
            )
        state = self.get_circuit_state()
        self._stats.current_circuit_state = state
        return HealingResult(
            success=success,
            task_id=task_id,
            attempt_number=attempt_number,
            circuit_state=state,
        )

    def attempts_for(self, task_id: str) -> int:
        return self._attempts_by_task.get(task_id, 0)

    def get_circuit_state(self) -> CircuitState:
        return self._breaker.get_state()

    def get_healing_stats(self) -> HealingStats:
        return replace(self._stats)

    def reset_circuit(self) -> None:
        self._logger.info("Resetting circuit breaker")
        self._breaker = self._new_breaker(load=False)
        self._stats.current_circuit_state = CircuitState.CLOSED
