"""Shared data model for the fleet supervisor.

Records that cross a file boundary (registry rows) keep the camelCase wire
names used by the agents that write them; everything else is snake_case.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


PROJECT_STATUSES = ("idle", "running", "stalled", "complete", "error")
RECORD_WIRE_KEYS = frozenset(
    {
        "name",
        "path",
        "status",
        "heartbeat",
        "currentPhase",
        "frameworkVersion",
        "agentPid",
        "registeredAt",
        "lastCompletedPhase",
    }
)


def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def now_iso() -> str:
    return now_utc().isoformat()


def parse_iso(value: Any) -> dt.datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    raw = str(value).strip()
    if not raw or not raw.lstrip("-").isdigit():
        return None
    return int(raw)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class StallType(str, Enum):
    """Why a project stopped making progress."""
    ORCHESTRATOR_CRASHED = "orchestrator_crashed"
    AGENT_WAITING_FOR_INPUT = "agent_waiting_for_input"
    EXECUTION_ERROR = "execution_error"
    SESSION_HUNG = "session_hung"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ActionType(str, Enum):
    RESTART = "restart"
    RESTART_WITH_PREAMBLE = "restart_with_preamble"
    ESCALATE = "escalate"
    DIAGNOSE = "diagnose"
    SKIP = "skip"


class BugLocation(str, Enum):
    FRAMEWORK_BUG = "framework_bug"
    PROJECT_BUG = "project_bug"
    HUMAN_REQUIRED = "human_required"


# ---------------------------------------------------------------------------
# Registry records
# ---------------------------------------------------------------------------

@dataclass
class ProjectRecord:
    """One supervised project as stored in the shared registry.

    Keys the supervisor does not own are kept in ``extra`` and written back
    unchanged, as is a status value it does not recognise.
    """
    name: str
    path: str
    status: str = "idle"
    heartbeat: str = ""
    current_phase: int | None = None
    framework_version: str = "unknown"
    agent_pid: int | None = None
    registered_at: str = ""
    last_completed_phase: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, raw: dict[str, Any]) -> "ProjectRecord":
        status = raw.get("status")
        if status is None or str(status).strip() == "":
            status = "idle"
        elif str(status).strip().lower() in PROJECT_STATUSES:
            status = str(status).strip().lower()
        return cls(
            name=str(raw.get("name") or name),
            path=str(raw.get("path") or ""),
            status=status,
            heartbeat=str(raw.get("heartbeat") or ""),
            current_phase=_optional_int(raw.get("currentPhase")),
            framework_version=str(raw.get("frameworkVersion") or "unknown"),
            agent_pid=_optional_int(raw.get("agentPid")),
            registered_at=str(raw.get("registeredAt") or ""),
            last_completed_phase=_optional_int(raw.get("lastCompletedPhase")),
            extra={key: value for key, value in raw.items() if key not in RECORD_WIRE_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "name": self.name,
                "path": self.path,
                "status": self.status,
                "heartbeat": self.heartbeat,
                "currentPhase": self.current_phase,
                "frameworkVersion": self.framework_version,
                "agentPid": self.agent_pid,
                "registeredAt": self.registered_at,
                "lastCompletedPhase": self.last_completed_phase,
            }
        )
        return payload


@dataclass
class Registry:
    projects: dict[str, ProjectRecord] = field(default_factory=dict)
    last_updated: str = ""
    # rows that cannot be supervised (no path, not a mapping), written back as read
    passthrough: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        rows = dict(self.passthrough)
        rows.update({name: record.to_dict() for name, record in self.projects.items()})
        payload = dict(self.extra)
        payload.update({"projects": rows, "lastUpdated": self.last_updated})
        return payload


# ---------------------------------------------------------------------------
# Per-cycle values
# ---------------------------------------------------------------------------

@dataclass
class StallClassification:
    project: ProjectRecord
    stall_type: str
    confidence: str
    details: str
    heartbeat_age_sec: float


@dataclass
class RecoveryAction:
    type: str
    classification: StallClassification
    retry_count: int

    @property
    def project(self) -> ProjectRecord:
        return self.classification.project


class RestartHistory:
    """Retry counters keyed by (project, phase).

    Owned by the monitor loop and passed into the recovery engine. Moving a
    project to a different phase starts a fresh budget. Nothing is persisted:
    a new supervisor process gives every project a clean recovery budget.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[int | None, int]] = {}

    def count(self, project: str, phase: int | None) -> int:
        entry = self._entries.get(project)
        if entry is None or entry[0] != phase:
            return 0
        return entry[1]

    def increment(self, project: str, phase: int | None) -> int:
        updated = self.count(project, phase) + 1
        self._entries[project] = (phase, updated)
        return updated

    def reset(self, project: str) -> None:
        self._entries.pop(project, None)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: {"phase": phase, "count": count} for name, (phase, count) in self._entries.items()}


@dataclass
class DiagnosticResult:
    bug_location: str
    confidence: str
    root_cause: str
    file_path: str | None
    error_category: str
    multi_project_pattern: bool = False
    affected_projects: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HotFixResult:
    success: bool
    file_path: str
    lines_changed: int = 0
    validation_passed: bool = False
    reverted_on_failure: bool = False
    details: str = ""
    session_cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PropagationResult:
    project: str
    success: bool
    files_copied: list[str] = field(default_factory=list)
    new_version: str = "unknown"
    restarted: bool = False
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AuditEntry:
    """One improvement-log entry; one is written per recovery action."""
    timestamp: str
    project: str
    phase: int | None
    stall_type: str
    action: str
    outcome: str
    details: str = ""
    bug_location: str = ""
    root_cause: str = ""
    file_path: str = ""
    fix_applied: bool | None = None
    propagated_to: list[str] = field(default_factory=list)
    memory_record_id: str = ""
    memory_retrieved_ids: list[str] = field(default_factory=list)


@dataclass
class CycleResult:
    projects_checked: int = 0
    stalled: int = 0
    recovered: int = 0
    escalated: int = 0
    interventions_attempted: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
