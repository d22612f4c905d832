"""File-backed task index (``tasks/index.json``) and task documents.

The index file is the single source of truth for task status. Every operation
reads it, applies one change and writes it back; nothing is cached between
calls. Writes are atomic (write-tmp-then-rename) and always restamp
``updatedAt``.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from loguru import logger

from .constants import INDEX_SCHEMA_VERSION, STATE_DIR_NAME, TASK_INDEX_FILE, TASKS_DIR
from .errors import RalphDevError, TaskNotFoundError
from .io_utils import _atomic_write_json, _load_data_with_error
from .models import Task, TaskStatus
from .utils import _now_iso

ELIGIBLE_STATUSES = (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value)

_FRONT_MATTER_RE = re.compile(r"\A---\s*\n(?P<meta>.*?)\n---\s*\n?(?P<body>.*)\Z", re.S)


def default_index() -> dict[str, Any]:
    return {
        "version": INDEX_SCHEMA_VERSION,
        "updatedAt": _now_iso(),
        "metadata": {"projectGoal": ""},
        "tasks": {},
    }


def _normalize_index(data: dict[str, Any]) -> dict[str, Any]:
    index = default_index()
    index.update(data)
    if not isinstance(index.get("metadata"), dict):
        index["metadata"] = {"projectGoal": ""}
    index["metadata"].setdefault("projectGoal", "")
    if not isinstance(index.get("tasks"), dict):
        index["tasks"] = {}
    if not index.get("updatedAt"):
        index["updatedAt"] = _now_iso()
    return index


def _priority_of(record: dict[str, Any]) -> float:
    priority = record.get("priority")
    if priority is None:
        return 1.0
    try:
        return float(priority)
    except (TypeError, ValueError):
        return float("inf")


class IndexManager:
    """Own ``index.json`` inside a tasks directory.

    Parameters
    ----------
    tasks_dir:
        Directory holding ``index.json`` and the per-module task documents.
    """

    def __init__(self, tasks_dir: Path) -> None:
        self.tasks_dir = tasks_dir
        self.index_path = tasks_dir / TASK_INDEX_FILE

    @classmethod
    def for_project(cls, project_dir: Path) -> "IndexManager":
        return cls(project_dir / STATE_DIR_NAME / TASKS_DIR)

    # -- raw index ----------------------------------------------------------

    def read_index(self) -> dict[str, Any]:
        """Return the persisted index, or an empty default if there is none.

        An unreadable index raises rather than reading as empty, so a later
        write cannot replace the stored tasks with the default.
        """
        data, err = _load_data_with_error(self.index_path, {})
        if err:
            logger.error("Unable to read task index {}: {}", self.index_path, err)
            raise RalphDevError(f"Unable to read task index {self.index_path}: {err}")
        if not data:
            return default_index()
        return _normalize_index(data)

    def write_index(self, index: dict[str, Any]) -> None:
        payload = dict(index)
        payload["updatedAt"] = _now_iso()
        _atomic_write_json(self.index_path, payload)

    def update_metadata(self, updates: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge *updates* into the index metadata."""
        index = self.read_index()
        metadata = dict(index.get("metadata") or {})
        metadata.update(updates)
        index["metadata"] = metadata
        self.write_index(index)
        return metadata

    # -- task records -------------------------------------------------------

    def _relative_path(self, file_path: str | Path) -> str:
        path = Path(file_path)
        if path.is_absolute():
            try:
                path = path.relative_to(self.tasks_dir)
            except ValueError:
                logger.warning("Task file {} is outside {}; storing as given", path, self.tasks_dir)
        return path.as_posix()

    def upsert_task(self, task: Task, file_path: Optional[str | Path] = None) -> None:
        index = self.read_index()
        record = task.to_index_record()
        if file_path is not None:
            record["filePath"] = self._relative_path(file_path)
        index["tasks"][task.id] = record
        self.write_index(index)

    def upsert_tasks(self, tasks: Iterable[Task]) -> int:
        """Bulk insert/overwrite in one write, keeping the given order for new ids."""
        index = self.read_index()
        count = 0
        for task in tasks:
            index["tasks"][task.id] = task.to_index_record()
            count += 1
        self.write_index(index)
        logger.info("Upserted {} task(s) into {}", count, self.index_path)
        return count

    def update_task_status(self, task_id: str, status: TaskStatus | str) -> None:
        status = TaskStatus(status)
        index = self.read_index()
        record = index["tasks"].get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        record["status"] = status.value
        self.write_index(index)

    def get_task(self, task_id: str) -> Optional[Task]:
        record = self.read_index()["tasks"].get(task_id)
        if record is None:
            return None
        return Task.from_index_record(task_id, record)

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(
        self,
        *,
        status: Optional[TaskStatus | str] = None,
        module: Optional[str] = None,
    ) -> list[Task]:
        wanted = TaskStatus(status).value if status else None
        out: list[Task] = []
        for task_id, record in self.read_index()["tasks"].items():
            if wanted and record.get("status") != wanted:
                continue
            if module and record.get("module") != module:
                continue
            out.append(Task.from_index_record(task_id, record))
        return out

    def completed_task_ids(self) -> set[str]:
        return {
            task_id
            for task_id, record in self.read_index()["tasks"].items()
            if record.get("status") == TaskStatus.COMPLETED.value
        }

    # -- lifecycle ----------------------------------------------------------

    def _apply(self, task_id: str, action: str, **kwargs: Any) -> Task:
        index = self.read_index()
        record = index["tasks"].get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        task = Task.from_index_record(task_id, record)
        getattr(task, action)(**kwargs)
        updated = task.to_index_record()
        if "filePath" in record and "filePath" not in updated:
            updated["filePath"] = record["filePath"]
        index["tasks"][task_id] = updated
        self.write_index(index)
        logger.info("Task {} -> {}", task_id, task.status.value)
        return task

    def start_task(self, task_id: str) -> Task:
        return self._apply(task_id, "start")

    def complete_task(self, task_id: str) -> Task:
        return self._apply(task_id, "complete")

    def fail_task(self, task_id: str, reason: Optional[str] = None) -> Task:
        return self._apply(task_id, "fail", reason=reason)

    # -- selection ----------------------------------------------------------

    def _eligible(self, index: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
        eligible = [
            (task_id, record)
            for task_id, record in index["tasks"].items()
            if record.get("status") in ELIGIBLE_STATUSES
        ]
        # sorted() is stable, so equal priorities keep insertion order.
        return sorted(eligible, key=lambda item: _priority_of(item[1]))

    def get_next_task(self) -> Optional[str]:
        """Return the id of the lowest-priority-value pending or in-progress task.

        Dependencies are not consulted here; see :meth:`get_next_unblocked_task`.
        """
        eligible = self._eligible(self.read_index())
        return eligible[0][0] if eligible else None

    def get_next_unblocked_task(self) -> Optional[str]:
        index = self.read_index()
        completed = {
            task_id
            for task_id, record in index["tasks"].items()
            if record.get("status") == TaskStatus.COMPLETED.value
        }
        for task_id, record in self._eligible(index):
            if not Task.from_index_record(task_id, record).is_blocked(completed):
                return task_id
        return None

    # -- task documents -----------------------------------------------------

    def derive_task_path(self, task_id: str) -> Path:
        if "." in task_id:
            module, name = task_id.split(".", 1)
        else:
            module, name = "", task_id
        return self.tasks_dir / module / f"{name}.md" if module else self.tasks_dir / f"{name}.md"

    def get_task_file_path(self, task_id: str) -> Optional[Path]:
        record = self.read_index()["tasks"].get(task_id)
        if record is None:
            return None
        stored = record.get("filePath")
        if stored:
            return self.tasks_dir / stored
        return self.derive_task_path(task_id)

    def save_task(self, task: Task) -> Path:
        """Write *task* as a markdown document with YAML front matter and index it."""
        path = self.derive_task_path(task.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_task_document(task), encoding="utf-8")
        self.upsert_task(task, path)
        return path


def render_task_document(task: Task) -> str:
    meta = {
        "id": task.id,
        "module": task.module,
        "priority": task.priority,
        "status": task.status.value,
        "estimatedMinutes": task.estimated_minutes,
        "dependencies": list(task.dependencies),
    }
    front = yaml.safe_dump(meta, sort_keys=False, default_flow_style=False, allow_unicode=True)
    lines = ["---", front.rstrip("\n"), "---", "", f"# {task.id}", ""]
    if task.description:
        lines += [task.description, ""]
    lines += ["## Acceptance Criteria", ""]
    if task.acceptance_criteria:
        lines += [f"{i}. {criterion}" for i, criterion in enumerate(task.acceptance_criteria, start=1)]
    else:
        lines.append("_None specified._")
    return "\n".join(lines) + "\n"


def load_task_file(path: Path) -> Task:
    """Parse a task document written by :func:`render_task_document`."""
    text = path.read_text(encoding="utf-8")
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        raise ValueError(f"{path}: missing YAML front matter")
    meta = yaml.safe_load(match.group("meta")) or {}
    if not isinstance(meta, dict):
        raise ValueError(f"{path}: front matter must be a mapping")
    body = match.group("body")

    description_lines: list[str] = []
    criteria: list[str] = []
    section = "description"
    for line in body.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            continue
        if stripped.lower().startswith("## acceptance criteria"):
            section = "criteria"
            continue
        if section == "criteria":
            item = re.match(r"^(?:\d+\.|[-*])\s+(.*)$", stripped)
            if item:
                criteria.append(item.group(1))
        elif stripped:
            description_lines.append(stripped)

    data = dict(meta)
    data.setdefault("description", " ".join(description_lines))
    data.setdefault("acceptanceCriteria", criteria)
    return Task.from_dict(data)
