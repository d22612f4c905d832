"""Tests for the file-backed task index and task documents."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ralph_dev.errors import InvalidTransitionError, RalphDevError, TaskNotFoundError
from ralph_dev.models import Task, TaskStatus
from ralph_dev.task_index import IndexManager, load_task_file, render_task_document


@pytest.fixture
def index(tmp_path: Path) -> IndexManager:
    return IndexManager.for_project(tmp_path)


def _task(task_id: str, priority: int = 1, status: TaskStatus = TaskStatus.PENDING, **kwargs) -> Task:
    return Task(id=task_id, priority=priority, status=status, **kwargs)


class TestReadWrite:
    def test_default_when_missing(self, index: IndexManager) -> None:
        data = index.read_index()
        assert data["version"] == "1.0.0"
        assert data["tasks"] == {}
        assert data["metadata"]["projectGoal"] == ""
        assert data["updatedAt"]
        assert not index.index_path.exists()

    def test_write_restamps_updated_at(self, index: IndexManager) -> None:
        data = index.read_index()
        data["updatedAt"] = "2000-01-01T00:00:00Z"
        index.write_index(data)
        stored = json.loads(index.index_path.read_text())
        assert stored["updatedAt"] != "2000-01-01T00:00:00Z"

    def test_metadata_merge_preserves_keys(self, index: IndexManager) -> None:
        index.update_metadata({"projectGoal": "Ship login"})
        index.update_metadata({"languageConfig": {"language": "python"}})
        metadata = index.read_index()["metadata"]
        assert metadata["projectGoal"] == "Ship login"
        assert metadata["languageConfig"] == {"language": "python"}

        index.update_metadata({"projectGoal": "Ship signup"})
        assert index.read_index()["metadata"]["projectGoal"] == "Ship signup"

    def test_unreadable_index_is_not_overwritten(self, index: IndexManager) -> None:
        index.upsert_tasks([_task(f"auth.t{i}") for i in range(3)])
        corrupt = index.index_path.read_text()[:40]
        index.index_path.write_text(corrupt)

        with pytest.raises(RalphDevError, match="Unable to read task index"):
            index.upsert_task(_task("db.new"))
        with pytest.raises(RalphDevError):
            index.update_metadata({"projectGoal": "x"})
        with pytest.raises(RalphDevError):
            index.start_task("auth.t0")
        assert index.index_path.read_text() == corrupt


class TestUpsert:
    def test_overwrite_then_no_next_task(self, index: IndexManager) -> None:
        index.upsert_task(_task("auth.login", priority=1))
        index.upsert_task(_task("auth.login", status=TaskStatus.COMPLETED))
        assert index.get_next_task() is None

    def test_file_path_stored_relative(self, index: IndexManager) -> None:
        target = index.tasks_dir / "auth" / "login.md"
        index.upsert_task(_task("auth.login"), target)
        record = index.read_index()["tasks"]["auth.login"]
        assert record["filePath"] == "auth/login.md"
        assert index.get_task_file_path("auth.login") == target

    def test_bulk_upsert_keeps_order(self, index: IndexManager) -> None:
        count = index.upsert_tasks([_task("b.two"), _task("a.one"), _task("c.three")])
        assert count == 3
        assert list(index.read_index()["tasks"]) == ["b.two", "a.one", "c.three"]


class TestStatusUpdates:
    def test_unknown_id_raises(self, index: IndexManager) -> None:
        with pytest.raises(TaskNotFoundError, match="ghost.task"):
            index.update_task_status("ghost.task", "completed")

    def test_update_status(self, index: IndexManager) -> None:
        index.upsert_task(_task("auth.login"))
        index.update_task_status("auth.login", TaskStatus.IN_PROGRESS)
        assert index.get_task("auth.login").status == TaskStatus.IN_PROGRESS

    def test_lifecycle_helpers(self, index: IndexManager) -> None:
        index.upsert_task(_task("auth.login"), index.tasks_dir / "auth" / "login.md")
        index.start_task("auth.login")
        task = index.complete_task("auth.login")
        assert task.status == TaskStatus.COMPLETED
        record = index.read_index()["tasks"]["auth.login"]
        assert record["status"] == "completed"
        assert record["filePath"] == "auth/login.md"
        assert index.completed_task_ids() == {"auth.login"}

    def test_fail_stores_reason(self, index: IndexManager) -> None:
        index.upsert_task(_task("auth.login"))
        index.start_task("auth.login")
        index.fail_task("auth.login", reason="flaky")
        assert index.get_task("auth.login").failure_reason == "flaky"

    def test_illegal_transition_leaves_index_untouched(self, index: IndexManager) -> None:
        index.upsert_task(_task("auth.login"))
        with pytest.raises(InvalidTransitionError):
            index.complete_task("auth.login")
        assert index.get_task("auth.login").status == TaskStatus.PENDING

    def test_lifecycle_unknown_id(self, index: IndexManager) -> None:
        with pytest.raises(TaskNotFoundError):
            index.start_task("nope.task")


class TestSelection:
    def test_lowest_priority_value_wins(self, index: IndexManager) -> None:
        index.upsert_task(_task("task.low", priority=10))
        index.upsert_task(_task("task.high", priority=1))
        index.upsert_task(_task("task.medium", priority=5))
        assert index.get_next_task() == "task.high"

    def test_in_progress_is_eligible(self, index: IndexManager) -> None:
        index.upsert_task(_task("task.inprogress", priority=1, status=TaskStatus.IN_PROGRESS))
        index.upsert_task(_task("task.pending", priority=2))
        assert index.get_next_task() == "task.inprogress"

    def test_ties_keep_insertion_order(self, index: IndexManager) -> None:
        index.upsert_task(_task("b.first", priority=2))
        index.upsert_task(_task("a.second", priority=2))
        assert index.get_next_task() == "b.first"

    def test_terminal_tasks_excluded(self, index: IndexManager) -> None:
        index.upsert_task(_task("task.completed", status=TaskStatus.COMPLETED))
        index.upsert_task(_task("task.failed", status=TaskStatus.FAILED))
        assert index.get_next_task() is None

    def test_missing_priority_sorts_as_default(self, index: IndexManager) -> None:
        index.upsert_tasks([_task("a.explicit", priority=2), _task("b.implicit", priority=3)])
        data = index.read_index()
        del data["tasks"]["b.implicit"]["priority"]
        index.write_index(data)
        assert index.get_next_task() == "b.implicit"
        assert index.get_task("b.implicit").priority == 1

    def test_dependencies_not_checked(self, index: IndexManager) -> None:
        index.upsert_task(_task("api.users", priority=1, dependencies=["db.schema"]))
        index.upsert_task(_task("db.schema", priority=2))
        assert index.get_next_task() == "api.users"
        assert index.get_next_unblocked_task() == "db.schema"

    def test_list_filters(self, index: IndexManager) -> None:
        index.upsert_task(_task("auth.login"))
        index.upsert_task(_task("auth.logout", status=TaskStatus.COMPLETED))
        index.upsert_task(_task("api.users"))
        assert [t.id for t in index.list_tasks(module="auth")] == ["auth.login", "auth.logout"]
        assert [t.id for t in index.list_tasks(status="pending")] == ["auth.login", "api.users"]


class TestTaskFiles:
    def test_derived_path(self, index: IndexManager) -> None:
        index.upsert_task(_task("auth.login"))
        assert index.get_task_file_path("auth.login") == index.tasks_dir / "auth" / "login.md"
        assert index.get_task_file_path("missing.task") is None

    def test_save_and_load(self, index: IndexManager) -> None:
        task = _task(
            "auth.login",
            priority=2,
            description="Build the login form.",
            acceptance_criteria=["Shows errors", "Redirects on success"],
            dependencies=["db.schema"],
            estimated_minutes=30,
        )
        path = index.save_task(task)
        assert path == index.tasks_dir / "auth" / "login.md"
        assert index.read_index()["tasks"]["auth.login"]["filePath"] == "auth/login.md"

        loaded = load_task_file(path)
        assert loaded.id == "auth.login"
        assert loaded.priority == 2
        assert loaded.description == "Build the login form."
        assert loaded.acceptance_criteria == ["Shows errors", "Redirects on success"]
        assert loaded.dependencies == ["db.schema"]
        assert loaded.estimated_minutes == 30

    def test_document_has_front_matter(self) -> None:
        text = render_task_document(_task("auth.login"))
        assert text.startswith("---\nid: auth.login\n")
        assert "## Acceptance Criteria" in text

    def test_load_rejects_plain_markdown(self, tmp_path: Path) -> None:
        path = tmp_path / "x.md"
        path.write_text("# Just a title\n")
        with pytest.raises(ValueError, match="front matter"):
            load_task_file(path)
