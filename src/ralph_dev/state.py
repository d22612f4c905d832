"""Workflow state persistence (``.ralph-dev/state.json``) and phase transitions."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from loguru import logger as default_logger

from .constants import STATE_DIR_NAME, STATE_FILE
from .errors import InvalidTransitionError, RalphDevError, StateNotFoundError
from .io_utils import _atomic_write_json, _load_data_with_error
from .models import Phase, WorkflowState

_UNSET: Any = object()


class StateRepository:
    """Read and write the single ``WorkflowState`` of a workspace."""

    def __init__(self, project_dir: Path) -> None:
        self.path = project_dir / STATE_DIR_NAME / STATE_FILE

    def exists(self) -> bool:
        return self.path.exists()

    def get(self) -> Optional[WorkflowState]:
        data, err = _load_data_with_error(self.path, {})
        if err:
            raise RalphDevError(f"Unable to read workflow state: {err}")
        if not data:
            return None
        return WorkflowState.from_dict(data)

    def save(self, state: WorkflowState) -> None:
        _atomic_write_json(self.path, state.to_dict())

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class StateService:
    """Business operations on the workflow state.

    The repository is injected so callers (and tests) decide where state lives.
    """

    def __init__(self, repository: StateRepository, logger: Any = None) -> None:
        self.repository = repository
        self._logger = logger or default_logger

    def _require(self) -> WorkflowState:
        state = self.repository.get()
        if state is None:
            raise StateNotFoundError()
        return state

    def get_state(self) -> Optional[WorkflowState]:
        self._logger.debug("Getting workflow state")
        return self.repository.get()

    def current_phase(self) -> Phase:
        state = self.repository.get()
        return state.phase if state is not None else Phase.NONE

    def initialize_state(self, phase: Phase | str = Phase.CLARIFY) -> WorkflowState:
        """Create the state in *phase*; an existing state is returned untouched."""
        phase = Phase(phase)
        if phase == Phase.NONE:
            raise InvalidTransitionError(
                Phase.NONE.value,
                phase.value,
                [p.value for p in Phase if p != Phase.NONE],
                subject="initialize",
            )
        existing = self.repository.get()
        if existing is not None:
            self._logger.warning(
                "State already exists in phase {phase}, returning existing state",
                phase=existing.phase.value,
            )
            return existing
        state = WorkflowState(phase=phase)
        self.repository.save(state)
        self._logger.info("Workflow state initialized in phase {phase}", phase=phase.value)
        return state

    def update_state(
        self,
        *,
        phase: Optional[Phase | str] = None,
        current_task: Any = _UNSET,
        prd: Any = _UNSET,
        add_error: Any = _UNSET,
    ) -> WorkflowState:
        state = self._require()
        if phase is not None:
            state.transition_to(phase)
        if current_task is not _UNSET:
            state.set_current_task(current_task)
        if prd is not _UNSET:
            state.set_prd(prd)
        if add_error is not _UNSET:
            state.add_error(add_error)
        self.repository.save(state)
        self._logger.info("Workflow state updated", phase=state.phase.value)
        return state

    def transition_to_phase(self, target: Phase | str) -> WorkflowState:
        target = Phase(target)
        state = self._require()
        if not state.can_transition_to(target):
            allowed = [p.value for p in state.next_allowed_phases()]
            raise InvalidTransitionError(state.phase.value, target.value, allowed)
        previous = state.phase
        state.transition_to(target)
        self.repository.save(state)
        self._logger.info(
            "Transitioned from {previous} to {phase}",
            previous=previous.value,
            phase=target.value,
        )
        return state

    def set_current_task(self, task_id: Optional[str]) -> WorkflowState:
        state = self._require()
        state.set_current_task(task_id)
        self.repository.save(state)
        self._logger.info("Current task set to {task_id}", task_id=task_id)
        return state

    def set_prd(self, prd: Any) -> WorkflowState:
        state = self._require()
        state.set_prd(prd)
        self.repository.save(state)
        self._logger.info("PRD set")
        return state

    def add_error(self, error: Any) -> WorkflowState:
        state = self._require()
        state.add_error(error)
        self.repository.save(state)
        self._logger.error("Error added to workflow state: {error}", error=error)
        return state

    def clear_errors(self) -> WorkflowState:
        state = self._require()
        state.clear_errors()
        self.repository.save(state)
        self._logger.info("Errors cleared")
        return state

    def clear_state(self) -> None:
        self.repository.clear()
        self._logger.info("Workflow state cleared")

    def exists(self) -> bool:
        return self.repository.exists()
