"""Typed runtime configuration for tool_runtime."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, TypeVar

import yaml

from tool_runtime.models import ServerIdentity, servers_from_mapping

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENV_PREFIX = "TOOL_RUNTIME_"
DEFAULT_AUDIT_DB_PATH = Path.home() / ".tool_runtime" / "tool_calls.db"

DEFAULT_CALL_TIMEOUT_S: float = 30.0
"""Deadline for a tool invocation (tools/call, tools/list)."""

DEFAULT_CHECK_TIMEOUT_S: float = 10.0
"""Deadline for a lightweight connectivity check."""

DEFAULT_POOL_IDLE_TIMEOUT_S: float = 5 * 60.0
DEFAULT_POOL_SWEEP_INTERVAL_S: float = 5 * 60.0

DEFAULT_LOOP_WINDOW_S: float = 2.0
DEFAULT_LOOP_THRESHOLD: int = 10
DEFAULT_LOOP_PRUNE_INTERVAL_S: float = 60.0

DEFAULT_AUDIT_QUEUE_SIZE: int = 1000
DEFAULT_AUDIT_RETENTION_DAYS: int = 30

DEFAULT_MAX_PLAN_STEPS: int = 5


def _env_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"expected on/off boolean, got {raw!r}")


def _positive(cast: Callable[[str], T]) -> Callable[[str], T]:
    def parse(raw: str) -> T:
        value = cast(raw.strip())
        if value <= 0:  # type: ignore[operator]
            raise ValueError(f"expected a positive value, got {raw!r}")
        return value

    return parse


def _from_env(env: Mapping[str, str], name: str, parse: Callable[[str], T], default: T) -> T:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return parse(raw)
    except ValueError:
        logger.warning(
            "Invalid %s%s=%r; defaulting to %r.", ENV_PREFIX, name, raw, default,
        )
        return default


@dataclass(frozen=True)
class RuntimeConfig:
    """Runtime policy resolved once and passed explicitly to the runtime objects."""

    call_timeout_s: float = DEFAULT_CALL_TIMEOUT_S
    check_timeout_s: float = DEFAULT_CHECK_TIMEOUT_S
    pool_idle_timeout_s: float = DEFAULT_POOL_IDLE_TIMEOUT_S
    pool_sweep_interval_s: float = DEFAULT_POOL_SWEEP_INTERVAL_S
    loop_window_s: float = DEFAULT_LOOP_WINDOW_S
    loop_threshold: int = DEFAULT_LOOP_THRESHOLD
    loop_prune_interval_s: float = DEFAULT_LOOP_PRUNE_INTERVAL_S
    audit_enabled: bool = True
    audit_db_path: Path = field(default_factory=lambda: DEFAULT_AUDIT_DB_PATH)
    audit_queue_size: int = DEFAULT_AUDIT_QUEUE_SIZE
    audit_retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS
    max_plan_steps: int = DEFAULT_MAX_PLAN_STEPS

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "RuntimeConfig":
        """Build typed config from TOOL_RUNTIME_* environment variables."""
        env = os.environ if env is None else env
        pos_float = _positive(float)
        pos_int = _positive(int)
        return cls(
            call_timeout_s=_from_env(env, "CALL_TIMEOUT", pos_float, DEFAULT_CALL_TIMEOUT_S),
            check_timeout_s=_from_env(env, "CHECK_TIMEOUT", pos_float, DEFAULT_CHECK_TIMEOUT_S),
            pool_idle_timeout_s=_from_env(
                env, "POOL_IDLE_TIMEOUT", pos_float, DEFAULT_POOL_IDLE_TIMEOUT_S,
            ),
            pool_sweep_interval_s=_from_env(
                env, "POOL_SWEEP_INTERVAL", pos_float, DEFAULT_POOL_SWEEP_INTERVAL_S,
            ),
            loop_window_s=_from_env(env, "LOOP_WINDOW", pos_float, DEFAULT_LOOP_WINDOW_S),
            loop_threshold=_from_env(env, "LOOP_THRESHOLD", pos_int, DEFAULT_LOOP_THRESHOLD),
            loop_prune_interval_s=_from_env(
                env, "LOOP_PRUNE_INTERVAL", pos_float, DEFAULT_LOOP_PRUNE_INTERVAL_S,
            ),
            audit_enabled=_from_env(env, "AUDIT_ENABLED", _env_bool, True),
            audit_db_path=_from_env(
                env, "AUDIT_DB", lambda raw: Path(raw).expanduser(), DEFAULT_AUDIT_DB_PATH,
            ),
            audit_queue_size=_from_env(
                env, "AUDIT_QUEUE_SIZE", pos_int, DEFAULT_AUDIT_QUEUE_SIZE,
            ),
            audit_retention_days=_from_env(
                env, "AUDIT_RETENTION_DAYS", pos_int, DEFAULT_AUDIT_RETENTION_DAYS,
            ),
            max_plan_steps=_from_env(env, "MAX_PLAN_STEPS", pos_int, DEFAULT_MAX_PLAN_STEPS),
        )


# ---------------------------------------------------------------------------
# Tool server configuration files
# ---------------------------------------------------------------------------


def _load_from_path(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Server config file not found: {path}")
    text = path.read_text()
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Server config must be a mapping: {path}")
    return data


def load_server_config(path: str | Path) -> list[ServerIdentity]:
    """Load tool server identities from a JSON or YAML config file.

    Expects the ``{"mcpServers": {name: {...}}}`` layout used by desktop
    assistant configs.
    """
    return servers_from_mapping(_load_from_path(Path(path)))
