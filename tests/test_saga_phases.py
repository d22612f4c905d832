"""Tests for the per-phase saga steps."""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from pathlib import Path

import pytest

from ralph_dev.constants import GITIGNORE_ENTRIES, GITIGNORE_MARKER
from ralph_dev.git_utils import _ensure_gitignore, _git_current_branch, _git_head_sha
from ralph_dev.models import Task
from ralph_dev.saga import FunctionStep, Phase2Saga, Phase3Saga, Phase5Saga, SagaExecutor, SagaFactory
from ralph_dev.saga.phases import default_branch_name
from ralph_dev.task_index import IndexManager

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _execute(project_dir: Path, steps):
    return asyncio.run(SagaExecutor(project_dir).execute(steps))


def _boom() -> None:
    raise RuntimeError("boom")


def _failing_step() -> FunctionStep:
    return FunctionStep("explode", "always fails", _boom)


def _git(cwd: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True).stdout.strip()


@pytest.fixture
def git_repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for var, value in {
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    }.items():
        monkeypatch.setenv(var, value)
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "checkout", "-q", "-b", "main")
    (tmp_path / "README.md").write_text("hello\n")
    _git(tmp_path, "add", "README.md")
    _git(tmp_path, "commit", "-q", "-m", "init")
    return tmp_path


class TestFactory:
    def test_dispatch(self, tmp_path: Path) -> None:
        assert [s.name for s in SagaFactory.create_for_phase("breakdown", tmp_path)] == [
            "backup_existing_state",
            "initialize_tasks_directory",
            "create_task_index",
            "verify_gitignore",
        ]
        assert [s.name for s in SagaFactory.create_for_phase("implement", tmp_path)] == [
            "create_git_stash",
            "backup_task_states",
        ]
        assert [s.name for s in SagaFactory.create_for_phase("deliver", tmp_path)] == [
            "create_feature_branch",
            "create_git_commit",
        ]

    @pytest.mark.parametrize("phase", ["clarify", "heal", "complete", "nonsense", ""])
    def test_unknown_phase_returns_empty(self, tmp_path: Path, phase: str) -> None:
        assert SagaFactory.create_for_phase(phase, tmp_path) == []


class TestPhase2:
    def test_fresh_workspace(self, tmp_path: Path) -> None:
        result = _execute(tmp_path, Phase2Saga(tmp_path).create_saga_steps())
        assert result.success

        index = json.loads((tmp_path / ".ralph-dev" / "tasks" / "index.json").read_text())
        assert index["version"] == "1.0.0"
        assert index["tasks"] == {}
        assert index["createdAt"]
        gitignore = (tmp_path / ".gitignore").read_text()
        assert GITIGNORE_MARKER in gitignore
        assert not (tmp_path / ".ralph-dev" / "backups").exists()

    def test_backs_up_existing_tasks(self, tmp_path: Path) -> None:
        manager = IndexManager.for_project(tmp_path)
        manager.save_task(Task(id="auth.login"))
        _execute(tmp_path, Phase2Saga(tmp_path).create_saga_steps())

        backups = list((tmp_path / ".ralph-dev" / "backups").iterdir())
        assert len(backups) == 1
        assert backups[0].name.endswith("-before-breakdown")
        assert (backups[0] / "tasks" / "auth" / "login.md").exists()

    def test_rollback_removes_created_directory(self, tmp_path: Path) -> None:
        steps = Phase2Saga(tmp_path).create_saga_steps()[1:3] + [_failing_step()]
        result = _execute(tmp_path, steps)
        assert not result.success
        assert result.rollback_successful
        assert not (tmp_path / ".ralph-dev" / "tasks").exists()

    def test_rollback_restores_previous_index(self, tmp_path: Path) -> None:
        manager = IndexManager.for_project(tmp_path)
        manager.upsert_task(Task(id="auth.login"))
        steps = Phase2Saga(tmp_path).create_saga_steps()[:3] + [_failing_step()]
        _execute(tmp_path, steps)
        assert manager.get_task("auth.login") is not None

    def test_gitignore_is_idempotent(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text("node_modules/")
        assert _ensure_gitignore(tmp_path) is True
        assert _ensure_gitignore(tmp_path) is False
        text = (tmp_path / ".gitignore").read_text()
        assert text.startswith("node_modules/\n")
        assert text.count(GITIGNORE_MARKER) == 1
        for entry in GITIGNORE_ENTRIES:
            assert entry in text


class TestPhase3:
    def test_no_repo_no_index_is_noop(self, tmp_path: Path) -> None:
        steps = Phase3Saga(tmp_path).create_saga_steps()
        result = _execute(tmp_path, steps + [_failing_step()])
        assert result.completed_steps == ["create_git_stash", "backup_task_states"]
        assert result.rollback_successful

    def test_rollback_restores_index(self, tmp_path: Path) -> None:
        manager = IndexManager.for_project(tmp_path)
        manager.upsert_task(Task(id="auth.login"))

        def mutate() -> None:
            manager.update_task_status("auth.login", "in_progress")
            raise RuntimeError("implementation crashed")

        steps = Phase3Saga(tmp_path).create_saga_steps() + [FunctionStep("implement", "mutate index", mutate)]
        result = _execute(tmp_path, steps)
        assert not result.success
        assert manager.get_task("auth.login").status.value == "pending"
        backups = list((tmp_path / ".ralph-dev" / "backups").iterdir())
        assert backups[0].name.endswith("-before-implement")
        assert (backups[0] / "index.json").exists()

    @requires_git
    def test_stash_and_restore(self, git_repo: Path) -> None:
        (git_repo / "README.md").write_text("work in progress\n")
        (git_repo / "scratch.txt").write_text("untracked\n")

        steps = Phase3Saga(git_repo).create_saga_steps()
        stash_step = steps[0]
        asyncio.run(stash_step.execute())
        assert stash_step.stash_ref
        assert (git_repo / "README.md").read_text() == "hello\n"
        assert not (git_repo / "scratch.txt").exists()

        asyncio.run(stash_step.compensate())
        assert (git_repo / "README.md").read_text() == "work in progress\n"
        assert (git_repo / "scratch.txt").exists()
        assert _git(git_repo, "stash", "list") == ""

    @requires_git
    def test_clean_tree_stashes_nothing(self, git_repo: Path) -> None:
        step = Phase3Saga(git_repo).create_saga_steps()[0]
        asyncio.run(step.execute())
        assert step.stash_ref is None
        asyncio.run(step.compensate())


class TestPhase5:
    def test_no_repo_is_noop(self, tmp_path: Path) -> None:
        result = _execute(tmp_path, Phase5Saga(tmp_path).create_saga_steps() + [_failing_step()])
        assert result.completed_steps == ["create_feature_branch", "create_git_commit"]
        assert result.rollback_successful

    def test_default_branch_from_goal(self, tmp_path: Path) -> None:
        IndexManager.for_project(tmp_path).update_metadata({"projectGoal": "Add OAuth Login!"})
        assert default_branch_name(tmp_path) == "ralph-dev/add-oauth-login"

    @requires_git
    def test_branch_and_commit_then_rollback(self, git_repo: Path) -> None:
        base_sha = _git_head_sha(git_repo)
        (git_repo / "feature.py").write_text("print('hi')\n")

        steps = Phase5Saga(git_repo, branch="ralph-dev/feature").create_saga_steps()
        result = _execute(git_repo, steps + [_failing_step()])

        assert result.rollback_successful
        assert _git_current_branch(git_repo) == "main"
        assert _git_head_sha(git_repo) == base_sha
        assert "ralph-dev/feature" not in _git(git_repo, "branch", "--list")
        # The soft reset keeps the delivered work in the tree.
        assert (git_repo / "feature.py").exists()

    @requires_git
    def test_successful_delivery(self, git_repo: Path) -> None:
        (git_repo / "feature.py").write_text("print('hi')\n")
        result = _execute(git_repo, Phase5Saga(git_repo, branch="ralph-dev/feature").create_saga_steps())
        assert result.success
        assert _git_current_branch(git_repo) == "ralph-dev/feature"
        assert _git(git_repo, "log", "-1", "--format=%s") == "feat: deliver ralph-dev tasks"
