"""Saga step builders for the breakdown, implement and deliver phases.

Every step treats a missing precondition (no git repository, no existing
tasks directory or index) as a successful no-op, in both ``execute`` and
``compensate``.
"""

from __future__ import annotations

import json
import re
import shutil
from pathlib import Path
from typing import Optional

from loguru import logger

from ..constants import (
    BACKUPS_DIR,
    DELIVER_COMMIT_MESSAGE,
    FEATURE_BRANCH_PREFIX,
    INDEX_SCHEMA_VERSION,
    STATE_DIR_NAME,
    TASK_INDEX_FILE,
    TASKS_DIR,
)
from ..git_utils import (
    _ensure_gitignore,
    _git_branch_exists,
    _git_checkout,
    _git_commit_all,
    _git_create_branch,
    _git_current_branch,
    _git_delete_branch,
    _git_is_repo,
    _git_stash_pop,
    _git_stash_push,
    _git_undo_commit,
)
from ..io_utils import _atomic_write_json, _copy_tree, _load_data, _remove_tree
from ..models import Phase
from ..utils import _now_iso, _timestamp_slug
from .executor import SagaStep


def _state_dir(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME


def _backup_dir(project_dir: Path, label: str) -> Path:
    return _state_dir(project_dir) / BACKUPS_DIR / f"{_timestamp_slug()}-{label}"


def _slugify(text: str, max_len: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")


# ---------------------------------------------------------------------------
# Phase 2: breakdown setup
# ---------------------------------------------------------------------------

class BackupExistingStateStep(SagaStep):
    name = "backup_existing_state"
    description = "Back up the existing tasks directory before breakdown"

    def __init__(self, project_dir: Path) -> None:
        self.tasks_dir = _state_dir(project_dir) / TASKS_DIR
        self.project_dir = project_dir
        self.backup_path: Optional[Path] = None

    async def execute(self) -> None:
        if not self.tasks_dir.is_dir() or not any(self.tasks_dir.iterdir()):
            logger.debug("No existing tasks to back up")
            return
        self.backup_path = _backup_dir(self.project_dir, "before-breakdown") / TASKS_DIR
        _copy_tree(self.tasks_dir, self.backup_path)
        logger.info("Backed up {} to {}", self.tasks_dir, self.backup_path)

    async def compensate(self) -> None:
        # Backups are additive and kept.
        return None


class InitializeTasksDirectoryStep(SagaStep):
    name = "initialize_tasks_directory"
    description = "Create the tasks directory"

    def __init__(self, project_dir: Path) -> None:
        self.tasks_dir = _state_dir(project_dir) / TASKS_DIR
        self.created = False

    async def execute(self) -> None:
        self.created = not self.tasks_dir.exists()
        self.tasks_dir.mkdir(parents=True, exist_ok=True)

    async def compensate(self) -> None:
        if self.created:
            _remove_tree(self.tasks_dir)
            self.created = False


class CreateTaskIndexStep(SagaStep):
    name = "create_task_index"
    description = "Write an empty task index"

    def __init__(self, project_dir: Path) -> None:
        self.index_path = _state_dir(project_dir) / TASKS_DIR / TASK_INDEX_FILE
        self.previous: Optional[dict] = None

    async def execute(self) -> None:
        self.previous = _load_data(self.index_path, {}) if self.index_path.exists() else None
        now = _now_iso()
        _atomic_write_json(
            self.index_path,
            {
                "version": INDEX_SCHEMA_VERSION,
                "createdAt": now,
                "updatedAt": now,
                "metadata": {"projectGoal": ""},
                "tasks": {},
            },
        )

    async def compensate(self) -> None:
        if self.previous is not None:
            _atomic_write_json(self.index_path, self.previous)
        else:
            self.index_path.unlink(missing_ok=True)


class VerifyGitignoreStep(SagaStep):
    name = "verify_gitignore"
    description = "Make sure .gitignore covers ralph-dev runtime files"

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir

    async def execute(self) -> None:
        if _ensure_gitignore(self.project_dir):
            logger.info("Added ralph-dev entries to .gitignore")

    async def compensate(self) -> None:
        # .gitignore edits are not rolled back.
        return None


class Phase2Saga:
    """Breakdown setup: backup, create tasks dir, create index, check .gitignore."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir

    def create_saga_steps(self) -> list[SagaStep]:
        return [
            BackupExistingStateStep(self.project_dir),
            InitializeTasksDirectoryStep(self.project_dir),
            CreateTaskIndexStep(self.project_dir),
            VerifyGitignoreStep(self.project_dir),
        ]


# ---------------------------------------------------------------------------
# Phase 3: implement safety net
# ---------------------------------------------------------------------------

class CreateGitStashStep(SagaStep):
    name = "create_git_stash"
    description = "Stash uncommitted work before implementing"

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir
        self.message = f"ralph-dev-implement-{_timestamp_slug()}"
        self.stash_ref: Optional[str] = None

    async def execute(self) -> None:
        if not _git_is_repo(self.project_dir):
            logger.debug("Not a git repository; skipping stash")
            return
        self.stash_ref = _git_stash_push(self.project_dir, self.message, exclude=STATE_DIR_NAME)
        if self.stash_ref:
            logger.info("Stashed working tree as {} ({})", self.stash_ref, self.message)

    async def compensate(self) -> None:
        if not self.stash_ref:
            return
        if _git_stash_pop(self.project_dir, self.message):
            logger.info("Restored stashed working tree {}", self.message)
        self.stash_ref = None


class BackupTaskStatesStep(SagaStep):
    name = "backup_task_states"
    description = "Back up the task index before mutating it"

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir
        self.index_path = _state_dir(project_dir) / TASKS_DIR / TASK_INDEX_FILE
        self.backup_path: Optional[Path] = None

    async def execute(self) -> None:
        if not self.index_path.exists():
            logger.debug("No task index to back up")
            return
        self.backup_path = _backup_dir(self.project_dir, "before-implement") / TASK_INDEX_FILE
        self.backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.index_path, self.backup_path)
        logger.info("Backed up task index to {}", self.backup_path)

    async def compensate(self) -> None:
        if self.backup_path is None or not self.backup_path.exists():
            return
        with open(self.backup_path, "r", encoding="utf-8") as handle:
            content = json.load(handle)
        _atomic_write_json(self.index_path, content)
        logger.info("Restored task index from {}", self.backup_path)


class Phase3Saga:
    """Implement phase: stash the working tree and back up task states."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir

    def create_saga_steps(self) -> list[SagaStep]:
        return [
            CreateGitStashStep(self.project_dir),
            BackupTaskStatesStep(self.project_dir),
        ]


# ---------------------------------------------------------------------------
# Phase 5: deliver
# ---------------------------------------------------------------------------

def default_branch_name(project_dir: Path) -> str:
    index = _load_data(_state_dir(project_dir) / TASKS_DIR / TASK_INDEX_FILE, {})
    metadata = index.get("metadata") if isinstance(index.get("metadata"), dict) else {}
    slug = _slugify(str(metadata.get("projectGoal") or ""))
    return FEATURE_BRANCH_PREFIX + (slug or f"delivery-{_timestamp_slug()[:15].lower()}")


class CreateFeatureBranchStep(SagaStep):
    name = "create_feature_branch"
    description = "Create and switch to the delivery branch"

    def __init__(self, project_dir: Path, branch: Optional[str] = None) -> None:
        self.project_dir = project_dir
        self.branch = branch
        self.original_branch: Optional[str] = None
        self.created = False

    async def execute(self) -> None:
        if not _git_is_repo(self.project_dir):
            logger.debug("Not a git repository; skipping branch creation")
            return
        branch = self.branch or default_branch_name(self.project_dir)
        self.branch = branch
        self.original_branch = _git_current_branch(self.project_dir)
        if self.original_branch == branch:
            return
        if _git_branch_exists(self.project_dir, branch):
            _git_checkout(self.project_dir, branch)
            return
        self.created = _git_create_branch(self.project_dir, branch)

    async def compensate(self) -> None:
        if not self.created or not self.branch:
            return
        if self.original_branch and self.original_branch != "HEAD":
            _git_checkout(self.project_dir, self.original_branch)
        if _git_current_branch(self.project_dir) != self.branch:
            _git_delete_branch(self.project_dir, self.branch)
        self.created = False


class CreateGitCommitStep(SagaStep):
    name = "create_git_commit"
    description = "Commit the delivered changes"

    def __init__(self, project_dir: Path, message: str = DELIVER_COMMIT_MESSAGE) -> None:
        self.project_dir = project_dir
        self.message = message
        self.commit_sha: Optional[str] = None

    async def execute(self) -> None:
        if not _git_is_repo(self.project_dir):
            logger.debug("Not a git repository; skipping commit")
            return
        self.commit_sha = _git_commit_all(self.project_dir, self.message)
        if self.commit_sha:
            logger.info("Created commit {}", self.commit_sha[:12])

    async def compensate(self) -> None:
        if not self.commit_sha:
            return
        if _git_undo_commit(self.project_dir, self.commit_sha):
            logger.info("Soft-reset commit {}", self.commit_sha[:12])
        self.commit_sha = None


class Phase5Saga:
    """Deliver phase: create the feature branch, then commit."""

    def __init__(
        self,
        project_dir: Path,
        branch: Optional[str] = None,
        commit_message: str = DELIVER_COMMIT_MESSAGE,
    ) -> None:
        self.project_dir = project_dir
        self.branch = branch
        self.commit_message = commit_message

    def create_saga_steps(self) -> list[SagaStep]:
        return [
            CreateFeatureBranchStep(self.project_dir, self.branch),
            CreateGitCommitStep(self.project_dir, self.commit_message),
        ]


class SagaFactory:
    _BUILDERS = {
        Phase.BREAKDOWN.value: Phase2Saga,
        Phase.IMPLEMENT.value: Phase3Saga,
        Phase.DELIVER.value: Phase5Saga,
    }

    @classmethod
    def create_for_phase(cls, phase: Phase | str, project_dir: Path) -> list[SagaStep]:
        """Return the saga steps for *phase*, or ``[]`` for phases without one."""
        key = phase.value if isinstance(phase, Phase) else str(phase)
        builder = cls._BUILDERS.get(key)
        if builder is None:
            return []
        return builder(project_dir).create_saga_steps()
