"""Shared project registry (``~/.fleet/registry.yaml``).

The registry is written by agents (heartbeats) and by the supervisor
(recovery). There is no row-level locking: the supervisor reads it once and
writes it once per cycle, and a single supervisor instance per host is
enforced separately by the monitor's PID lock.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml

from .config import state_dir
from .models import ProjectRecord, Registry, now_iso
from .process import pid_alive

_log = logging.getLogger("fleet_supervisor.registry")


def default_registry_path() -> Path:
    return state_dir() / "registry.yaml"


def registry_from_payload(payload: Any) -> Registry:
    """Build a registry from the parsed file.

    Rows the supervisor cannot supervise (not a mapping, or without a path)
    and unknown top-level keys are carried through so that a write only
    changes the fields the supervisor owns.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("projects"), dict):
        return Registry()
    projects: dict[str, ProjectRecord] = {}
    passthrough: dict[str, Any] = {}
    for name, row in payload["projects"].items():
        if not isinstance(row, dict) or not row.get("path"):
            _log.warning("registry row %r has no usable path; leaving it untouched", name)
            passthrough[name] = row
            continue
        record = ProjectRecord.from_dict(str(name), row)
        projects[record.name] = record
    return Registry(
        projects=projects,
        last_updated=str(payload.get("lastUpdated") or ""),
        passthrough=passthrough,
        extra={key: value for key, value in payload.items() if key not in ("projects", "lastUpdated")},
    )


def _write_yaml_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(payload, handle, sort_keys=True, default_flow_style=False, width=4096)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            os.unlink(temp_path)


class RegistryStore:
    """Read-modify-write access to the registry backing file."""

    def __init__(self, path: Path | None = None, *, alive: Callable[[int | None], bool] = pid_alive) -> None:
        self.path = (path or default_registry_path()).expanduser()
        self._alive = alive

    def read(self) -> Registry:
        """Return the registry; missing or corrupt files yield an empty one."""
        if not self.path.exists():
            return Registry()
        try:
            payload = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as err:
            _log.warning("registry unreadable, treating as empty: %s (%s)", self.path, err)
            return Registry()
        return registry_from_payload(payload)

    def write(self, registry: Registry) -> None:
        registry.last_updated = now_iso()
        _write_yaml_atomic(self.path, registry.to_dict())

    def prune_dead(self) -> Registry:
        """Mark records whose agent PID is gone as idle and clear the PID."""
        registry = self.read()
        for record in registry.projects.values():
            if record.agent_pid is not None and not self._alive(record.agent_pid):
                _log.info("pruning %s: pid %s is dead", record.name, record.agent_pid)
                record.status = "idle"
                record.agent_pid = None
        self.write(registry)
        return registry

    def register(self, record: ProjectRecord) -> Registry:
        registry = self.read()
        if not record.registered_at:
            record.registered_at = now_iso()
        registry.passthrough.pop(record.name, None)
        registry.projects[record.name] = record
        self.write(registry)
        return registry

    def deregister(self, name: str) -> Registry:
        registry = self.read()
        registry.projects.pop(name, None)
        registry.passthrough.pop(name, None)
        self.write(registry)
        return registry

    def update_heartbeat(self, name: str, phase: int | None, pid: int | None, status: str) -> Registry:
        registry = self.read()
        record = registry.projects.get(name)
        if record is not None:
            record.heartbeat = now_iso()
            record.current_phase = phase
            record.status = status
            record.agent_pid = pid if status == "running" else None
        self.write(registry)
        return registry

    def get(self, name: str) -> ProjectRecord | None:
        return self.read().projects.get(name)

    def list(self) -> list[ProjectRecord]:
        return list(self.read().projects.values())
