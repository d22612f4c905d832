"""Command-line entrypoint for ralph-dev.

Machine-readable output goes to stdout as JSON; human output is rendered with
rich; logs go to stderr through loguru. Every command returns an exit code:
``0`` on success, ``1`` on a reported error.
"""

from __future__ import annotations

import argparse
import asyncio
import io
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerStore, describe_state
from .config import VALID_LOG_LEVELS, get_circuit_breaker_config, get_log_level, load_config, resolve_project_dir
from .errors import RalphDevError
from .io_utils import _read_structured
from .logging_utils import configure_logging, pretty
from .models import CircuitState, Phase, Task, TaskStatus
from .saga import SagaExecutor, SagaService
from .state import StateRepository, StateService
from .status import ProjectStatus, StatusService, format_relative_time
from .task_index import IndexManager
from .utils import _ms_to_iso

SAGA_PHASES = [p.value for p in Phase if p != Phase.NONE]


def _emit_json(payload: Any) -> None:
    sys.stdout.write(pretty(payload) + "\n")


def _render(build) -> str:
    console = Console(record=True, width=80, file=io.StringIO())
    build(console)
    return console.export_text()


def _project_dir(args: argparse.Namespace) -> Path:
    return resolve_project_dir(args.project_dir)


def _breaker_config(args: argparse.Namespace) -> CircuitBreakerConfig:
    config, _ = load_config(_project_dir(args))
    return get_circuit_breaker_config(config)


# ---------------------------------------------------------------------------
# state
# ---------------------------------------------------------------------------

def _state_service(args: argparse.Namespace) -> StateService:
    return StateService(StateRepository(_project_dir(args)))


def _format_state(data: dict[str, Any]) -> str:
    def build(console: Console) -> None:
        console.print("[bold]Workflow State[/bold]")
        table = Table(show_header=False, box=None)
        table.add_row("Phase:", data.get("phase", "none"))
        table.add_row("Current task:", data.get("currentTask") or "-")
        table.add_row("Started:", format_relative_time(data.get("startedAt")))
        table.add_row("Updated:", format_relative_time(data.get("updatedAt")))
        table.add_row("Errors:", str(len(data.get("errors") or [])))
        console.print(table)

    return _render(build)


def _state_get(args: argparse.Namespace) -> int:
    state = _state_service(args).get_state()
    data = state.to_dict() if state else {"phase": Phase.NONE.value}
    if args.json:
        _emit_json(data)
    else:
        sys.stdout.write(_format_state(data))
    return 0


def _state_set(args: argparse.Namespace) -> int:
    service = _state_service(args)
    if service.exists():
        state = service.transition_to_phase(args.phase)
    else:
        state = service.initialize_state(args.phase)
    _emit_json(state.to_dict())
    return 0


def _read_prd(path: str) -> Any:
    prd_path = Path(path)
    if prd_path.suffix in {".json", ".yaml", ".yml"}:
        return _read_structured(prd_path)
    return prd_path.read_text(encoding="utf-8")


def _state_update(args: argparse.Namespace) -> int:
    updates: dict[str, Any] = {}
    if args.phase:
        updates["phase"] = args.phase
    if args.task is not None:
        updates["current_task"] = args.task or None
    if args.prd:
        try:
            updates["prd"] = _read_prd(args.prd)
        except (OSError, ValueError) as exc:
            sys.stderr.write(f"Unable to read PRD {args.prd}: {exc}\n")
            return 1
    state = _state_service(args).update_state(**updates)
    _emit_json(state.to_dict())
    return 0


def _state_clear(args: argparse.Namespace) -> int:
    _state_service(args).clear_state()
    _emit_json({"cleared": True})
    return 0


# ---------------------------------------------------------------------------
# tasks
# ---------------------------------------------------------------------------

def _index(args: argparse.Namespace) -> IndexManager:
    return IndexManager.for_project(_project_dir(args))


def _task_create(args: argparse.Namespace) -> int:
    index = _index(args)
    if index.get_task(args.id) is not None:
        sys.stderr.write(f"Task already exists: {args.id}\n")
        return 1
    task = Task(
        id=args.id,
        module=args.module or "",
        priority=args.priority,
        description=args.description,
        acceptance_criteria=list(args.criteria or []),
        dependencies=list(args.depends_on or []),
        estimated_minutes=args.estimated_minutes,
    )
    path = index.save_task(task)
    _emit_json({"task": task.to_dict(), "filePath": str(path)})
    return 0


def _task_list(args: argparse.Namespace) -> int:
    tasks = _index(args).list_tasks(status=args.status, module=args.module)
    _emit_json({"tasks": [task.to_dict() for task in tasks]})
    return 0


def _task_get(args: argparse.Namespace) -> int:
    task = _index(args).require_task(args.task_id)
    _emit_json({"task": task.to_dict()})
    return 0


def _task_next(args: argparse.Namespace) -> int:
    index = _index(args)
    task_id = index.get_next_unblocked_task() if args.unblocked else index.get_next_task()
    task = index.get_task(task_id) if task_id else None
    _emit_json({"taskId": task_id, "task": task.to_dict() if task else None})
    return 0


def _task_start(args: argparse.Namespace) -> int:
    task = _index(args).start_task(args.task_id)
    _emit_json({"task": task.to_dict()})
    return 0


def _task_done(args: argparse.Namespace) -> int:
    task = _index(args).complete_task(args.task_id)
    _emit_json({"task": task.to_dict()})
    return 0


def _task_fail(args: argparse.Namespace) -> int:
    task = _index(args).fail_task(args.task_id, reason=args.reason)
    _emit_json({"task": task.to_dict()})
    return 0


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------

def format_project_status(status: ProjectStatus) -> str:
    def build(console: Console) -> None:
        console.print("[bold]Project Status[/bold]")
        console.print(f"Phase: {status.current_phase}")
        if status.current_task:
            console.print(f"Current task: {status.current_task}")
        console.print(f"Updated: {format_relative_time(status.updated_at)}")

        overall = status.overall
        console.print(
            f"Progress: {overall.completed}/{overall.total} ({overall.completion_percentage}%)"
        )

        table = Table(title="Tasks by module", show_header=True)
        table.add_column("Module", style="cyan")
        table.add_column("Total", justify="right")
        table.add_column("Done", justify="right", style="green")
        table.add_column("Active", justify="right", style="yellow")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Blocked", justify="right")
        for module, counts in status.by_module.items():
            table.add_row(
                module,
                str(counts.total),
                str(counts.completed),
                str(counts.pending + counts.in_progress),
                str(counts.failed),
                str(counts.blocked),
            )
        console.print(table)
        if not status.has_active_tasks:
            console.print("No pending or in-progress tasks")

    return _render(build)


def _status(args: argparse.Namespace) -> int:
    status = StatusService(_project_dir(args)).get_project_status()
    if args.json:
        _emit_json(status.to_dict())
    else:
        sys.stdout.write(format_project_status(status))
    return 0


# ---------------------------------------------------------------------------
# circuit breaker
# ---------------------------------------------------------------------------

def _open_breaker(args: argparse.Namespace, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
    store = CircuitBreakerStore(_project_dir(args))
    return CircuitBreaker(config or _breaker_config(args), store=store)


def _effective_state(breaker: CircuitBreaker) -> CircuitState:
    # Reporting never performs the lazy OPEN -> HALF_OPEN move.
    if breaker.get_state() == CircuitState.OPEN and breaker.is_call_permitted():
        return CircuitState.HALF_OPEN
    return breaker.get_state()


def format_breaker_status(data: dict[str, Any]) -> str:
    def build(console: Console) -> None:
        console.print("[bold]Circuit Breaker Status[/bold]")
        table = Table(show_header=False, box=None)
        table.add_row("State:", data["state"])
        table.add_row("Failures:", f"{data['failureCount']}/{data['failureThreshold']}")
        table.add_row("Successes:", f"{data['successCount']}/{data['successThreshold']}")
        console.print(table)
        if data["state"] == CircuitState.OPEN.value:
            if data["retryAfterMs"]:
                seconds = -(-data["retryAfterMs"] // 1000)
                console.print(f"[bold red]Circuit is OPEN[/bold red]: next probe allowed in {seconds}s")
            else:
                console.print("[bold red]Circuit is OPEN[/bold red]: next call will probe (HALF_OPEN)")
        if data.get("lastFailureTime") is not None:
            console.print(f"Last Failure: {format_relative_time(_ms_to_iso(data['lastFailureTime']))}")
        if data.get("lastResetTime") is not None:
            console.print(f"Last Reset: {format_relative_time(_ms_to_iso(data['lastResetTime']))}")

    return _render(build)


def _cb_status(args: argparse.Namespace) -> int:
    breaker = _open_breaker(args)
    data = describe_state(breaker)
    data["effectiveState"] = _effective_state(breaker).value
    if args.json:
        _emit_json(data)
    else:
        sys.stdout.write(format_breaker_status(data))
    return 0


def _cb_reset(args: argparse.Namespace) -> int:
    breaker = _open_breaker(args)
    before = breaker.snapshot()
    was_reset = not (
        before.state == CircuitState.CLOSED and before.failure_count == 0 and before.success_count == 0
    )
    breaker.reset()
    if args.json:
        _emit_json({"wasReset": was_reset, **breaker.snapshot().to_dict()})
    elif was_reset:
        sys.stdout.write(f"Circuit breaker reset (was {before.state.value})\n")
    else:
        sys.stdout.write("Circuit breaker already CLOSED; nothing to reset\n")
    return 0


def _cb_fail(args: argparse.Namespace) -> int:
    config = _breaker_config(args)
    if args.threshold is not None:
        config = replace(config, failure_threshold=args.threshold)
    breaker = _open_breaker(args, config)
    state = breaker.record_failure()
    is_open = state.state == CircuitState.OPEN
    if args.json:
        _emit_json({**state.to_dict(), "isOpen": is_open, "threshold": config.failure_threshold})
    else:
        sys.stdout.write(f"Failure recorded ({state.failure_count}/{config.failure_threshold})\n")
        if is_open:
            sys.stdout.write("Circuit breaker OPEN: healing paused until the reset timeout elapses\n")
    return 0


def _cb_success(args: argparse.Namespace) -> int:
    config = _breaker_config(args)
    if args.success_threshold is not None:
        config = replace(config, success_threshold=args.success_threshold)
    breaker = _open_breaker(args, config)
    state = breaker.record_success()
    if args.json:
        _emit_json({**state.to_dict(), "threshold": config.success_threshold})
    else:
        sys.stdout.write(f"Success recorded (state {state.state.value})\n")
    return 0


# ---------------------------------------------------------------------------
# saga
# ---------------------------------------------------------------------------

def _saga_run(args: argparse.Namespace) -> int:
    service = SagaService(_project_dir(args))
    result = asyncio.run(service.execute_phase(args.phase))
    if result is None:
        _emit_json({"phase": args.phase, "saga": None, "message": f"No saga defined for phase {args.phase}"})
        return 0
    _emit_json({"phase": args.phase, **result.to_dict()})
    return 0 if result.success else 1


def _saga_recover(args: argparse.Namespace) -> int:
    report = SagaExecutor.recover(_project_dir(args))
    _emit_json(report.to_dict())
    return 0


# ---------------------------------------------------------------------------
# parser
# ---------------------------------------------------------------------------

def _add_cb_commands(parent: argparse.ArgumentParser) -> None:
    cb_sub = parent.add_subparsers(dest="cb_cmd", required=True)
    status = cb_sub.add_parser("status", help="Show circuit breaker state")
    status.add_argument("--json", action="store_true")
    status.set_defaults(func=_cb_status)
    reset = cb_sub.add_parser("reset", help="Force the circuit back to CLOSED")
    reset.add_argument("--json", action="store_true")
    reset.set_defaults(func=_cb_reset)
    fail = cb_sub.add_parser("fail", help="Record a failed heal attempt")
    fail.add_argument("--threshold", type=int, default=None, help="Failure threshold override")
    fail.add_argument("--json", action="store_true")
    fail.set_defaults(func=_cb_fail)
    success = cb_sub.add_parser("success", help="Record a successful heal attempt")
    success.add_argument("--success-threshold", type=int, default=None, help="Success threshold override")
    success.add_argument("--json", action="store_true")
    success.set_defaults(func=_cb_success)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ralph-dev", description="Ralph-dev workflow state, tasks and recovery")
    parser.add_argument(
        "--project-dir",
        default=None,
        help="Target project directory (default: $RALPH_DEV_WORKSPACE or the current directory)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=sorted(VALID_LOG_LEVELS),
        help="Log level (default: from config, else INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    state = subparsers.add_parser("state", help="Inspect or change the workflow state")
    state_sub = state.add_subparsers(dest="state_cmd", required=True)
    sget = state_sub.add_parser("get", help="Show the workflow state")
    sget.add_argument("--json", action="store_true")
    sget.set_defaults(func=_state_get)
    sset = state_sub.add_parser("set", help="Initialize state or transition to a phase")
    sset.add_argument("--phase", required=True, choices=SAGA_PHASES)
    sset.set_defaults(func=_state_set)
    supdate = state_sub.add_parser("update", help="Update phase, current task or PRD")
    supdate.add_argument("--phase", default=None, choices=SAGA_PHASES)
    supdate.add_argument("--task", default=None, help="Current task id ('' clears it)")
    supdate.add_argument("--prd", default=None, help="PRD file (markdown, JSON or YAML)")
    supdate.set_defaults(func=_state_update)
    sclear = state_sub.add_parser("clear", help="Delete the workflow state")
    sclear.set_defaults(func=_state_clear)

    tasks = subparsers.add_parser("tasks", help="Manage the task index")
    tasks_sub = tasks.add_subparsers(dest="tasks_cmd", required=True)
    tcreate = tasks_sub.add_parser("create", help="Create a task")
    tcreate.add_argument("--id", required=True)
    tcreate.add_argument("--module", default=None)
    tcreate.add_argument("--priority", type=int, default=1)
    tcreate.add_argument("--description", default="")
    tcreate.add_argument("--criteria", nargs="*", default=None)
    tcreate.add_argument("--depends-on", nargs="*", default=None)
    tcreate.add_argument("--estimated-minutes", type=int, default=None)
    tcreate.set_defaults(func=_task_create)
    tlist = tasks_sub.add_parser("list", help="List tasks")
    tlist.add_argument("--status", default=None, choices=[s.value for s in TaskStatus])
    tlist.add_argument("--module", default=None)
    tlist.set_defaults(func=_task_list)
    tget = tasks_sub.add_parser("get", help="Show a task")
    tget.add_argument("task_id")
    tget.set_defaults(func=_task_get)
    tnext = tasks_sub.add_parser("next", help="Show the next task to work on")
    tnext.add_argument("--unblocked", action="store_true", help="Skip tasks with unmet dependencies")
    tnext.set_defaults(func=_task_next)
    tstart = tasks_sub.add_parser("start", help="Mark a task in progress")
    tstart.add_argument("task_id")
    tstart.set_defaults(func=_task_start)
    tdone = tasks_sub.add_parser("done", help="Mark a task completed")
    tdone.add_argument("task_id")
    tdone.set_defaults(func=_task_done)
    tfail = tasks_sub.add_parser("fail", help="Mark a task failed")
    tfail.add_argument("task_id")
    tfail.add_argument("--reason", default=None)
    tfail.set_defaults(func=_task_fail)

    status = subparsers.add_parser("status", help="Show project progress")
    status.add_argument("--json", action="store_true")
    status.set_defaults(func=_status)

    cb = subparsers.add_parser("circuit-breaker", aliases=["cb"], help="Inspect or drive the healing circuit breaker")
    _add_cb_commands(cb)

    saga = subparsers.add_parser("saga", help="Run or diagnose phase sagas")
    saga_sub = saga.add_subparsers(dest="saga_cmd", required=True)
    srun = saga_sub.add_parser("run", help="Run the saga for a phase")
    srun.add_argument("phase", choices=SAGA_PHASES)
    srun.set_defaults(func=_saga_run)
    srecover = saga_sub.add_parser("recover", help="Check saga.log for an interrupted saga")
    srecover.set_defaults(func=_saga_recover)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config, config_err = load_config(resolve_project_dir(args.project_dir))
    configure_logging(args.log_level or get_log_level(config))
    if config_err:
        logger.warning("Using default configuration: {}", config_err)

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except RalphDevError as exc:
        sys.stderr.write(str(exc) + "\n")
        return 1
    except ValueError as exc:
        sys.stderr.write(f"Invalid value: {exc}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
