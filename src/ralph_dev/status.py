"""Summarize task progress and workflow state for display."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .models import Task, TaskStatus
from .state import StateRepository
from .task_index import IndexManager
from .utils import _parse_iso


@dataclass
class TaskCounts:
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0

    @property
    def completion_percentage(self) -> int:
        if not self.total:
            return 0
        return round(self.completed * 100 / self.total)

    def add(self, task: Task, blocked: bool) -> None:
        self.total += 1
        if task.status == TaskStatus.PENDING:
            self.pending += 1
        elif task.status == TaskStatus.IN_PROGRESS:
            self.in_progress += 1
        elif task.status == TaskStatus.COMPLETED:
            self.completed += 1
        elif task.status == TaskStatus.FAILED:
            self.failed += 1
        if blocked:
            self.blocked += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "inProgress": self.in_progress,
            "completed": self.completed,
            "failed": self.failed,
            "blocked": self.blocked,
            "completionPercentage": self.completion_percentage,
        }


@dataclass
class ProjectStatus:
    overall: TaskCounts
    by_module: dict[str, TaskCounts] = field(default_factory=dict)
    current_phase: str = "none"
    current_task: Optional[str] = None
    started_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def has_active_tasks(self) -> bool:
        return (self.overall.pending + self.overall.in_progress) > 0

    def to_dict(self) -> dict[str, Any]:
        by_module = []
        for module, counts in self.by_module.items():
            entry = {"module": module}
            entry.update(counts.to_dict())
            by_module.append(entry)
        return {
            "overall": self.overall.to_dict(),
            "byModule": by_module,
            "currentPhase": self.current_phase,
            "currentTask": self.current_task,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "hasActiveTasks": self.has_active_tasks,
        }


class StatusService:
    def __init__(self, project_dir: Path) -> None:
        self.index = IndexManager.for_project(project_dir)
        self.states = StateRepository(project_dir)

    def get_project_status(self) -> ProjectStatus:
        tasks = self.index.list_tasks()
        completed = {t.id for t in tasks if t.status == TaskStatus.COMPLETED}

        overall = TaskCounts()
        by_module: dict[str, TaskCounts] = {}
        for task in tasks:
            # Only pending work can be blocked.
            blocked = task.status == TaskStatus.PENDING and task.is_blocked(completed)
            overall.add(task, blocked)
            by_module.setdefault(task.module or "(none)", TaskCounts()).add(task, blocked)

        state = self.states.get()
        return ProjectStatus(
            overall=overall,
            by_module=by_module,
            current_phase=state.phase.value if state else "none",
            current_task=state.current_task if state else None,
            started_at=state.started_at if state else None,
            updated_at=state.updated_at if state else None,
        )


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'} ago"


def format_relative_time(value: Optional[str], now: Optional[datetime] = None) -> str:
    """Render an ISO timestamp as "just now", "5 minutes ago", ... or a date after a week."""
    dt = _parse_iso(value)
    if dt is None:
        return "N/A"
    now = now or datetime.now(timezone.utc)
    seconds = int((now - dt).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return _plural(minutes, "minute")
    hours = minutes // 60
    if hours < 24:
        return _plural(hours, "hour")
    days = hours // 24
    if days <= 7:
        return _plural(days, "day")
    return dt.date().isoformat()
