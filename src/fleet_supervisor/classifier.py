"""Stall classification for running projects.

Decision tree, evaluated per running project:

- heartbeat age negative (clock skew) or under the threshold -> healthy
- agent PID missing or dead                                  -> orchestrator_crashed (high)
- agent snapshot lists a pending failure                     -> execution_error (high)
- agent snapshot ``last_updated`` also stale                 -> session_hung (medium)
- otherwise                                                  -> session_hung (low)

``agent_waiting_for_input`` is never produced here: telling a waiting agent
from a hung one needs the agent's output log, which this layer does not
read, so both are treated as hung.

Classification never mutates the record or any file.
"""

from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Any, Callable, Iterable

import yaml

from .models import (
    Confidence,
    ProjectRecord,
    StallClassification,
    StallType,
    now_utc,
    parse_iso,
)
from .process import pid_alive

SNAPSHOT_RELATIVE_PATH = Path(".agents") / "manifest.yaml"
_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)


def read_agent_snapshot(project_path: str | Path) -> dict[str, Any] | None:
    """Load the agent's own state snapshot, or ``None`` when unavailable."""
    path = Path(project_path) / SNAPSHOT_RELATIVE_PATH
    if not path.exists():
        return None
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError):
        return None
    return payload if isinstance(payload, dict) else None


def pending_failures(snapshot: dict[str, Any]) -> list[dict[str, Any]]:
    failures = snapshot.get("failures")
    if not isinstance(failures, list):
        return []
    return [
        item
        for item in failures
        if isinstance(item, dict) and str(item.get("resolution", "")).strip().lower() == "pending"
    ]


def heartbeat_age_sec(project: ProjectRecord, now: dt.datetime | None = None) -> float:
    current = now or now_utc()
    beat = parse_iso(project.heartbeat) or _EPOCH
    return (current - beat).total_seconds()


def classify_stall(
    project: ProjectRecord,
    stale_threshold_sec: float,
    *,
    now: dt.datetime | None = None,
    alive: Callable[[int | None], bool] = pid_alive,
    snapshot_reader: Callable[[str | Path], dict[str, Any] | None] = read_agent_snapshot,
) -> StallClassification | None:
    """Return why ``project`` is stalled, or ``None`` when it is healthy."""
    current = now or now_utc()
    age = heartbeat_age_sec(project, current)
    if age < 0 or age < stale_threshold_sec:
        return None

    age_min = round(age / 60)
    pid = project.agent_pid
    if pid is None or not alive(pid):
        return StallClassification(
            project=project,
            stall_type=StallType.ORCHESTRATOR_CRASHED.value,
            confidence=Confidence.HIGH.value,
            details="No agent PID recorded" if pid is None else f"PID {pid} is dead",
            heartbeat_age_sec=age,
        )

    snapshot = snapshot_reader(project.path)
    if snapshot is not None:
        pending = pending_failures(snapshot)
        if pending:
            return StallClassification(
                project=project,
                stall_type=StallType.EXECUTION_ERROR.value,
                confidence=Confidence.HIGH.value,
                details=f"PID {pid} alive, {len(pending)} pending failure(s) in agent snapshot",
                heartbeat_age_sec=age,
            )
        snapshot_updated = parse_iso(snapshot.get("last_updated"))
        if snapshot_updated is not None:
            snapshot_age = (current - snapshot_updated).total_seconds()
            if snapshot_age > stale_threshold_sec:
                return StallClassification(
                    project=project,
                    stall_type=StallType.SESSION_HUNG.value,
                    confidence=Confidence.MEDIUM.value,
                    details=f"PID {pid} alive, agent snapshot also stale ({round(snapshot_age / 60)} min)",
                    heartbeat_age_sec=age,
                )

    return StallClassification(
        project=project,
        stall_type=StallType.SESSION_HUNG.value,
        confidence=Confidence.LOW.value,
        details=f"PID {pid} alive, heartbeat stale ({age_min} min), no snapshot clues",
        heartbeat_age_sec=age,
    )


def classify_all(
    projects: Iterable[ProjectRecord],
    stale_threshold_sec: float,
    *,
    now: dt.datetime | None = None,
    alive: Callable[[int | None], bool] = pid_alive,
    snapshot_reader: Callable[[str | Path], dict[str, Any] | None] = read_agent_snapshot,
) -> tuple[int, list[StallClassification]]:
    """Classify every running project; returns (checked, stalled)."""
    checked = 0
    stalled: list[StallClassification] = []
    for project in projects:
        if project.status != "running":
            continue
        checked += 1
        result = classify_stall(
            project,
            stale_threshold_sec,
            now=now,
            alive=alive,
            snapshot_reader=snapshot_reader,
        )
        if result is not None:
            stalled.append(result)
    return checked, stalled
