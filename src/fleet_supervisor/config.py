"""Supervisor configuration from environment variables and an optional env file."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

DEFAULT_INTERVAL_SEC = 15 * 60
DEFAULT_HEARTBEAT_STALE_SEC = 15 * 60
DEFAULT_MAX_RESTART_ATTEMPTS = 3
DEFAULT_FRAMEWORK_PATHS = (".claude/commands/", ".claude/orchestrator/")
DEFAULT_AGENT_COMMAND = "npx tsx .claude/orchestrator/src/index.ts"
DEFAULT_VALIDATE_COMMANDS = ("make lint", "make test")
DEFAULT_MEMORY_BASE_URL = "https://api.supermemory.ai"
MEMORY_ENTITY_CONTEXT = (
    "This is an error fix record from a build-agent supervisor. Extract the error pattern, "
    "root cause, fix approach, and outcome as separate searchable facts."
)


def state_dir() -> Path:
    return Path.home() / ".fleet"


def load_env_file(path: Path) -> dict[str, str]:
    if not path.exists():
        return {}
    data: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        if raw.startswith("export "):
            raw = raw[len("export ") :].strip()
        key, value = raw.split("=", 1)
        data[key.strip()] = value.strip().strip("\"").strip("'")
    return data


def merged_environment(env_file_override: Path | None = None) -> dict[str, str]:
    env_file = env_file_override or Path(
        os.environ.get("FLEET_SUPERVISOR_ENV_FILE", str(state_dir() / "supervisor.env"))
    )
    return {**load_env_file(env_file.expanduser()), **os.environ}


class _Reader:
    """Typed lookups over a merged environment; bad values fall back to defaults."""

    def __init__(self, env: Mapping[str, str]) -> None:
        self._env = env

    def string(self, key: str, default: str = "") -> str:
        raw = self._env.get(key)
        if raw is None:
            return default
        return str(raw).strip()

    def path(self, key: str, default: Path) -> Path:
        raw = self.string(key)
        return Path(raw).expanduser().resolve() if raw else default.expanduser().resolve()

    def integer(self, key: str, default: int, *, min_value: int = 0) -> int:
        raw = self._env.get(key)
        if raw is None:
            return default
        try:
            return max(min_value, int(str(raw).strip()))
        except ValueError:
            return default

    def number(self, key: str, default: float) -> float:
        raw = self._env.get(key)
        if raw is None:
            return default
        try:
            return float(str(raw).strip())
        except ValueError:
            return default

    def items(self, key: str, default: tuple[str, ...], *, sep: str = ",") -> tuple[str, ...]:
        raw = self._env.get(key)
        if raw is None:
            return default
        items = tuple(part.strip() for part in str(raw).split(sep) if part.strip())
        return items or default


@dataclass(frozen=True)
class SupervisorConfig:
    interval_sec: int
    heartbeat_stale_sec: int
    max_restart_attempts: int
    registry_file: Path
    audit_log_file: Path
    supervisor_pid_file: Path
    kill_grace_sec: float
    agent_command: tuple[str, ...]
    telegram_token: str
    telegram_chat_id: int | None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "SupervisorConfig":
        read = _Reader(env if env is not None else merged_environment())
        base = state_dir()
        chat_raw = read.string("TELEGRAM_CHAT_ID")
        chat_id: int | None = None
        if chat_raw.lstrip("-").isdigit():
            chat_id = int(chat_raw)
        return cls(
            interval_sec=read.integer("FLEET_MONITOR_INTERVAL_SEC", DEFAULT_INTERVAL_SEC, min_value=1),
            heartbeat_stale_sec=read.integer("FLEET_HEARTBEAT_STALE_SEC", DEFAULT_HEARTBEAT_STALE_SEC, min_value=1),
            max_restart_attempts=read.integer("FLEET_MAX_RESTART_ATTEMPTS", DEFAULT_MAX_RESTART_ATTEMPTS),
            registry_file=read.path("FLEET_REGISTRY_FILE", base / "registry.yaml"),
            audit_log_file=read.path("FLEET_AUDIT_LOG_FILE", base / "improvement-log.md"),
            supervisor_pid_file=read.path("FLEET_SUPERVISOR_PID_FILE", base / "supervisor.pid"),
            kill_grace_sec=max(0.0, read.number("FLEET_KILL_GRACE_SEC", 2.0)),
            agent_command=tuple(shlex.split(read.string("FLEET_AGENT_COMMAND", DEFAULT_AGENT_COMMAND))),
            telegram_token=read.string("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=chat_id,
        )

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_token and self.telegram_chat_id is not None)


@dataclass(frozen=True)
class InterventorConfig:
    framework_dir: Path
    framework_paths: tuple[str, ...]
    validate_commands: tuple[str, ...]
    validate_timeout_sec: int
    session_command: str
    session_model: str
    diagnosis_max_turns: int
    fix_max_turns: int
    session_timeout_sec: int
    diagnosis_budget_usd: float
    fix_budget_usd: float

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "InterventorConfig":
        read = _Reader(env if env is not None else merged_environment())
        return cls(
            framework_dir=read.path("FLEET_FRAMEWORK_DIR", Path.cwd()),
            framework_paths=read.items("FLEET_FRAMEWORK_PATHS", DEFAULT_FRAMEWORK_PATHS),
            validate_commands=read.items("FLEET_VALIDATE_COMMANDS", DEFAULT_VALIDATE_COMMANDS, sep=";"),
            validate_timeout_sec=read.integer("FLEET_VALIDATE_TIMEOUT_SEC", 180, min_value=1),
            session_command=read.string("FLEET_SESSION_CMD", "claude") or "claude",
            session_model=read.string("FLEET_SESSION_MODEL"),
            diagnosis_max_turns=read.integer("FLEET_DIAGNOSIS_MAX_TURNS", 15, min_value=1),
            fix_max_turns=read.integer("FLEET_FIX_MAX_TURNS", 30, min_value=1),
            session_timeout_sec=read.integer("FLEET_INTERVENTION_TIMEOUT_SEC", 300, min_value=1),
            diagnosis_budget_usd=read.number("FLEET_DIAGNOSIS_BUDGET_USD", 0.50),
            fix_budget_usd=read.number("FLEET_FIX_BUDGET_USD", 2.00),
        )


@dataclass(frozen=True)
class MemoryConfig:
    api_key: str
    enabled: bool
    base_url: str
    container_tag_prefix: str
    search_threshold: float
    search_limit: int
    timeout_sec: int
    entity_context: str = MEMORY_ENTITY_CONTEXT

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "MemoryConfig":
        read = _Reader(env if env is not None else merged_environment())
        api_key = read.string("FLEET_MEMORY_API_KEY")
        return cls(
            api_key=api_key,
            enabled=bool(api_key),
            base_url=(read.string("FLEET_MEMORY_BASE_URL", DEFAULT_MEMORY_BASE_URL) or DEFAULT_MEMORY_BASE_URL).rstrip("/"),
            container_tag_prefix=read.string("FLEET_MEMORY_CONTAINER_PREFIX", "project_"),
            search_threshold=read.number("FLEET_MEMORY_SEARCH_THRESHOLD", 0.4),
            search_limit=read.integer("FLEET_MEMORY_SEARCH_LIMIT", 5, min_value=1),
            timeout_sec=read.integer("FLEET_MEMORY_TIMEOUT_SEC", 10, min_value=1),
        )


def describe(config: Any) -> dict[str, Any]:
    """JSON-friendly view of a config dataclass with secrets masked."""
    payload: dict[str, Any] = {}
    for key, value in vars(config).items():
        if key in {"telegram_token", "api_key"}:
            payload[key] = "[REDACTED]" if value else ""
        elif isinstance(value, Path):
            payload[key] = str(value)
        elif isinstance(value, tuple):
            payload[key] = list(value)
        else:
            payload[key] = value
    return payload
