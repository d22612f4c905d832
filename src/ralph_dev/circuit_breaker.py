"""Three-state circuit breaker guarding a repeatedly invoked risky operation.

CLOSED lets calls through and counts consecutive failures; reaching the
failure threshold opens the circuit. OPEN rejects calls with
:class:`CircuitOpenError` until ``reset_timeout_ms`` has elapsed since the last
failure; the first call after that moves the breaker to HALF_OPEN and runs as a
probe. ``success_threshold`` consecutive probe successes close the circuit, any
probe failure reopens it.

The OPEN -> HALF_OPEN move is evaluated lazily when a call arrives; there is no
background timer. Callers are expected to use a breaker sequentially.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from loguru import logger

from .constants import (
    CIRCUIT_BREAKER_FILE,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_RESET_TIMEOUT_MS,
    DEFAULT_SUCCESS_THRESHOLD,
    STATE_DIR_NAME,
)
from .errors import CircuitOpenError
from .io_utils import _atomic_write_json, _load_data
from .models import CircuitBreakerState, CircuitState
from .utils import _now_ms

T = TypeVar("T")

Clock = Callable[[], int]
StateChangeHook = Callable[[CircuitState, CircuitState], None]
Operation = Callable[[], Union[Awaitable[T], T]]


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    success_threshold: int = DEFAULT_SUCCESS_THRESHOLD
    reset_timeout_ms: int = DEFAULT_RESET_TIMEOUT_MS

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.reset_timeout_ms < 0:
            raise ValueError("reset_timeout_ms must be >= 0")

    def to_dict(self) -> dict[str, int]:
        return {
            "failureThreshold": self.failure_threshold,
            "successThreshold": self.success_threshold,
            "resetTimeoutMs": self.reset_timeout_ms,
        }


class CircuitBreakerStore:
    """Persist a breaker's state to ``.ralph-dev/circuit-breaker.json``."""

    def __init__(self, project_dir: Path, filename: str = CIRCUIT_BREAKER_FILE) -> None:
        self.path = project_dir / STATE_DIR_NAME / filename

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> CircuitBreakerState:
        return CircuitBreakerState.from_dict(_load_data(self.path, {}))

    def save(self, state: CircuitBreakerState) -> None:
        _atomic_write_json(self.path, state.to_dict())

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class CircuitBreaker:
    """Run operations under the CLOSED / OPEN / HALF_OPEN state machine.

    Parameters
    ----------
    config:
        Thresholds and timeout; defaults to 5 failures, 2 successes, 60s.
    state:
        Initial state (e.g. loaded from a store); defaults to CLOSED.
    store:
        Optional store; when given, the initial state is loaded from it (unless
        *state* is passed) and every change is written back.
    clock:
        Returns the current time in epoch milliseconds.
    on_state_change:
        Called with ``(old, new)`` whenever the circuit state changes.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        state: Optional[CircuitBreakerState] = None,
        store: Optional[CircuitBreakerStore] = None,
        clock: Optional[Clock] = None,
        on_state_change: Optional[StateChangeHook] = None,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._store = store
        if state is None:
            state = store.load() if store is not None else CircuitBreakerState()
        self._state = replace(state)
        self._clock: Clock = clock or _now_ms
        self._on_state_change = on_state_change

    # -- introspection ------------------------------------------------------

    def get_state(self) -> CircuitState:
        return self._state.state

    def snapshot(self) -> CircuitBreakerState:
        return replace(self._state)

    def retry_after_ms(self) -> int:
        """Milliseconds until an OPEN circuit admits a probe (0 if it already would)."""
        if self._state.state != CircuitState.OPEN:
            return 0
        if self._state.last_failure_time is None:
            return 0
        elapsed = self._clock() - self._state.last_failure_time
        return max(0, self.config.reset_timeout_ms - elapsed)

    def is_call_permitted(self) -> bool:
        return self._state.state != CircuitState.OPEN or self.retry_after_ms() == 0

    # -- execution ----------------------------------------------------------

    async def execute(self, operation: Operation[T]) -> T:
        """Run *operation* if the circuit allows it.

        Raises:
            CircuitOpenError: the circuit is OPEN and the reset timeout has not
                elapsed; *operation* is not invoked.

        Exceptions raised by *operation* propagate after the failure is recorded.
        """
        self._before_call()
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def _before_call(self) -> None:
        if self._state.state != CircuitState.OPEN:
            return
        if not self.is_call_permitted():
            raise CircuitOpenError()
        self._transition(CircuitState.HALF_OPEN)
        self._state.success_count = 0
        self._persist()

    # -- outcome recording --------------------------------------------------

    def record_success(self) -> CircuitBreakerState:
        current = self._state.state
        if current == CircuitState.CLOSED:
            self._state.failure_count = 0
        elif current == CircuitState.HALF_OPEN:
            self._state.success_count += 1
            if self._state.success_count >= self.config.success_threshold:
                self._close()
        # A success reported while OPEN is not a probe; the cooldown still applies.
        self._persist()
        return self.snapshot()

    def record_failure(self) -> CircuitBreakerState:
        now = self._clock()
        current = self._state.state
        self._state.failure_count += 1
        self._state.last_failure_time = now
        if current == CircuitState.HALF_OPEN:
            self._state.success_count = 0
            self._transition(CircuitState.OPEN)
        elif current == CircuitState.CLOSED and self._state.failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)
        self._persist()
        return self.snapshot()

    def reset(self) -> None:
        """Force the breaker back to CLOSED with zeroed counters."""
        self._close()
        self._persist()

    # -- internals ----------------------------------------------------------

    def _close(self) -> None:
        self._state.failure_count = 0
        self._state.success_count = 0
        self._state.last_reset_time = self._clock()
        self._transition(CircuitState.CLOSED)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state.state
        if old_state == new_state:
            return
        self._state.state = new_state
        logger.info(
            "Circuit breaker {old_state} -> {new_state}",
            old_state=old_state.value,
            new_state=new_state.value,
            failure_count=self._state.failure_count,
        )
        if self._on_state_change is not None:
            self._on_state_change(old_state, new_state)

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self._state)

    def __repr__(self) -> str:
        return f"CircuitBreaker(state={self._state.state.value}, failures={self._state.failure_count})"


def describe_state(breaker: CircuitBreaker) -> dict[str, Any]:
    """JSON-friendly status of *breaker* including its thresholds."""
    data = breaker.snapshot().to_dict()
    data.update(breaker.config.to_dict())
    data["retryAfterMs"] = breaker.retry_after_ms()
    return data
