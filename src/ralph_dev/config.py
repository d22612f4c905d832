"""Load optional configuration from `.ralph-dev/config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger

from .circuit_breaker import CircuitBreakerConfig
from .constants import (
    CONFIG_FILE,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_LOG_LEVEL,
    DEFAULT_RESET_TIMEOUT_MS,
    DEFAULT_SUCCESS_THRESHOLD,
    STATE_DIR_NAME,
    WORKSPACE_ENV,
)
from .io_utils import _load_data_with_error
from .utils import _coerce_int

VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}

_ENV_INT_OVERRIDES = {
    "RALPH_DEV_FAILURE_THRESHOLD": ("circuit_breaker", "failure_threshold"),
    "RALPH_DEV_SUCCESS_THRESHOLD": ("circuit_breaker", "success_threshold"),
    "RALPH_DEV_RESET_TIMEOUT_MS": ("circuit_breaker", "reset_timeout_ms"),
}


def resolve_project_dir(project_dir: Optional[str | Path] = None, env: Optional[Mapping[str, str]] = None) -> Path:
    """Pick the project directory: explicit argument, then `RALPH_DEV_WORKSPACE`, then cwd."""
    env = os.environ if env is None else env
    if project_dir:
        return Path(project_dir).expanduser().resolve()
    from_env = env.get(WORKSPACE_ENV)
    if from_env:
        return Path(from_env).expanduser().resolve()
    return Path.cwd().resolve()


def _apply_env_overrides(config: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    merged = dict(config)
    level = env.get("RALPH_DEV_LOG_LEVEL")
    if level:
        merged["log_level"] = level
    for var, (section, key) in _ENV_INT_OVERRIDES.items():
        raw = env.get(var)
        if raw is None:
            continue
        value = _coerce_int(raw)
        if value is None or value <= 0:
            logger.warning("Ignoring invalid {}={!r}", var, raw)
            continue
        block = dict(merged.get(section) or {})
        block[key] = value
        merged[section] = block
    return merged


def load_config(
    project_dir: Path,
    env: Optional[Mapping[str, str]] = None,
) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file and apply environment overrides.

    Args:
        project_dir: Repository root directory.
        env: Environment mapping (defaults to ``os.environ``).

    Returns:
        A tuple of `(config, error_message)`. A missing file yields `({}, None)`
        before overrides; a corrupt file yields the overrides alone plus the error.
    """
    env = os.environ if env is None else env
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        logger.warning("Unable to read {}: {}", path, err)
        data = {}
    return _apply_env_overrides(data, env), err


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_int(value: Any, default: int) -> int:
    coerced = _coerce_int(value)
    if coerced is None or coerced <= 0:
        return default
    return coerced


def _non_negative_int(value: Any, default: int) -> int:
    coerced = _coerce_int(value)
    if coerced is None or coerced < 0:
        return default
    return coerced


def get_circuit_breaker_config(config: dict[str, Any]) -> CircuitBreakerConfig:
    """Build a `CircuitBreakerConfig` from the `circuit_breaker` block."""
    raw = _get_nested(config, "circuit_breaker")
    raw = raw if isinstance(raw, dict) else {}
    return CircuitBreakerConfig(
        failure_threshold=_positive_int(raw.get("failure_threshold"), DEFAULT_FAILURE_THRESHOLD),
        success_threshold=_positive_int(raw.get("success_threshold"), DEFAULT_SUCCESS_THRESHOLD),
        reset_timeout_ms=_non_negative_int(raw.get("reset_timeout_ms"), DEFAULT_RESET_TIMEOUT_MS),
    )


def get_log_level(config: dict[str, Any]) -> str:
    raw = config.get("log_level")
    if isinstance(raw, str) and raw.upper() in VALID_LOG_LEVELS:
        return raw.upper()
    return DEFAULT_LOG_LEVEL
