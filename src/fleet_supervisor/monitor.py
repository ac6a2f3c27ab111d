"""Monitor loop: one supervisor per host, one recovery action per stalled project per cycle."""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import signal
import threading
import time
from pathlib import Path
from typing import Any, Callable

from .audit import AuditLog
from .classifier import classify_all
from .config import SupervisorConfig
from .interventor import Interventor, fix_signature
from .models import (
    ActionType,
    AuditEntry,
    CycleResult,
    ProjectRecord,
    RecoveryAction,
    Registry,
    RestartHistory,
    StallClassification,
    now_iso,
    now_utc,
)
from .notifier import TelegramNotifier
from .process import ProcessController, pid_alive
from .recovery import determine_recovery, execute_recovery
from .registry import RegistryStore

_log = logging.getLogger("fleet_supervisor.monitor")


class SupervisorLockError(RuntimeError):
    """Another supervisor instance holds the PID lock."""


class SupervisorLock:
    """PID-file lock guarding the single supervisor instance per host."""

    def __init__(self, path: Path, *, alive: Callable[[int | None], bool] = pid_alive) -> None:
        self.path = path
        self.acquired = False
        self._alive = alive

    def holder(self) -> int | None:
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        if raw.isdigit():
            return int(raw)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        pid = payload.get("pid") if isinstance(payload, dict) else None
        return pid if isinstance(pid, int) and not isinstance(pid, bool) else None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        existing = self.holder()
        if existing and existing != os.getpid() and self._alive(existing):
            raise SupervisorLockError(f"Another supervisor is already running (pid={existing}, lock={self.path}).")
        self.path.unlink(missing_ok=True)

        payload = {"pid": os.getpid(), "created_at": now_iso(), "lock_file": str(self.path)}
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            fd = os.open(str(self.path), flags)
        except FileExistsError as err:
            raise SupervisorLockError(f"Another supervisor claimed the lock first ({self.path}).") from err
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2, sort_keys=True))
            handle.write("\n")
        self.acquired = True

    def release(self) -> None:
        if not self.acquired:
            return
        self.path.unlink(missing_ok=True)
        self.acquired = False


class Monitor:
    def __init__(
        self,
        config: SupervisorConfig,
        store: RegistryStore,
        controller: ProcessController,
        notifier: TelegramNotifier,
        interventor: Interventor,
        audit: AuditLog,
        *,
        history: RestartHistory | None = None,
        clock: Callable[[], dt.datetime] = now_utc,
        alive: Callable[[int | None], bool] = pid_alive,
    ) -> None:
        self.config = config
        self.store = store
        self.controller = controller
        self.notifier = notifier
        self.interventor = interventor
        self.audit = audit
        self.history = history or RestartHistory()
        self._clock = clock
        self._alive = alive
        self._failed_fixes: dict[tuple[str, int | None], set[tuple[str, str | None]]] = {}
        self._refreshed: set[str] = set()
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleResult:
        """Read once, recover each stalled project in turn, write once.

        Failures inside one project's handling are logged and audited; only a
        failure to persist the registry escapes.
        """
        registry = self.store.read()
        checked, stalled = classify_all(
            registry.projects.values(),
            self.config.heartbeat_stale_sec,
            now=self._clock(),
            alive=self._alive,
        )
        result = CycleResult(projects_checked=checked, stalled=len(stalled))
        self._refreshed = set()

        for classification in stalled:
            project = classification.project
            if project.name in self._refreshed:
                self.audit.append(
                    self._entry(classification, ActionType.SKIP.value, "No action needed: agent restarted by fix propagation")
                )
                continue
            retry_count = self.history.count(project.name, project.current_phase)
            action = determine_recovery(classification, retry_count, self.config.max_restart_attempts)
            try:
                entry = self._apply(action, stalled, registry, result)
            except Exception as err:  # noqa: BLE001
                _log.exception("recovery of %s failed", project.name)
                result.errors += 1
                entry = self._entry(classification, action.type, f"Recovery failed with error: {err}")
            self.audit.append(entry)

        self.store.write(registry)
        _log.info(
            "cycle complete: %s checked, %s stalled, %s recovered, %s escalated, %s interventions, %s errors",
            result.projects_checked,
            result.stalled,
            result.recovered,
            result.escalated,
            result.interventions_attempted,
            result.errors,
        )
        return result

    def _entry(self, classification: StallClassification, action: str, outcome: str, **extra: Any) -> AuditEntry:
        project = classification.project
        return AuditEntry(
            timestamp=now_iso(),
            project=project.name,
            phase=project.current_phase,
            stall_type=str(classification.stall_type),
            action=action,
            outcome=outcome,
            details=classification.details,
            **extra,
        )

    def _apply(
        self,
        action: RecoveryAction,
        stalled: list[StallClassification],
        registry: Registry,
        result: CycleResult,
    ) -> AuditEntry:
        classification = action.classification
        project = classification.project
        action_type = action.type
        if action_type == ActionType.DIAGNOSE.value:
            return self._intervene(classification, stalled, registry, result)

        executed = execute_recovery(action, self.controller, self.notifier, self.config.max_restart_attempts)

        if action_type in (ActionType.RESTART.value, ActionType.RESTART_WITH_PREAMBLE.value):
            self.history.increment(project.name, project.current_phase)
            if executed.spawned:
                project.status = "running"
                project.agent_pid = executed.new_pid
                project.heartbeat = now_iso()
                result.recovered += 1
            else:
                project.status = "error"
                project.agent_pid = None
                result.errors += 1
        elif action_type == ActionType.ESCALATE.value:
            project.status = "stalled"
            stopped = self._stop_agent(project)
            result.escalated += 1
            if stopped:
                return self._entry(classification, action_type, f"{executed.text}; {stopped}")
        return self._entry(classification, action_type, executed.text)

    def _stop_agent(self, project: ProjectRecord) -> str:
        """Clear the record's PID, stopping the agent first if it is still alive."""
        pid = project.agent_pid
        project.agent_pid = None
        if pid is None or not self._alive(pid):
            return ""
        if self.controller.kill(pid):
            _log.info("stopped agent pid %s of escalated project %s", pid, project.name)
            return f"stopped agent PID {pid}"
        _log.warning("could not stop agent pid %s of escalated project %s", pid, project.name)
        return f"agent PID {pid} could not be stopped and is orphaned"

    def _intervene(
        self,
        classification: StallClassification,
        stalled: list[StallClassification],
        registry: Registry,
        result: CycleResult,
    ) -> AuditEntry:
        project = classification.project
        key = (project.name, project.current_phase)
        result.interventions_attempted += 1
        outcome = self.interventor.handle(
            classification,
            stalled,
            registry,
            failed_fixes=self._failed_fixes.get(key, set()),
        )

        self._refreshed.update(item.project for item in outcome.propagation if item.restarted)
        stopped = ""
        if outcome.fixed:
            self._failed_fixes.pop(key, None)
            result.recovered += 1
            if outcome.new_pid is not None:
                project.status = "running"
                project.agent_pid = outcome.new_pid
                project.heartbeat = now_iso()
            else:
                project.status = "error"
                project.agent_pid = None
        else:
            if outcome.fix is not None:
                self._failed_fixes.setdefault(key, set()).add(fix_signature(outcome.diagnostic))
            result.escalated += 1
            project.status = "stalled"
            stopped = self._stop_agent(project)

        diagnostic = outcome.diagnostic
        return self._entry(
            classification,
            ActionType.DIAGNOSE.value,
            f"{outcome.outcome}; {stopped}" if stopped else outcome.outcome,
            bug_location=diagnostic.bug_location,
            root_cause=diagnostic.root_cause,
            file_path=(outcome.fix.file_path if outcome.fix else diagnostic.file_path) or "",
            fix_applied=outcome.fixed if outcome.fix is not None else None,
            propagated_to=outcome.propagated_to,
            memory_record_id=outcome.memory_record_id,
            memory_retrieved_ids=list(outcome.memory_retrieved_ids),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def stop(self, *_: Any) -> None:
        self._stop.set()

    def run_once(self) -> CycleResult:
        lock = SupervisorLock(self.config.supervisor_pid_file, alive=self._alive)
        lock.acquire()
        try:
            return self.run_cycle()
        finally:
            lock.release()

    def start(self, *, install_signal_handlers: bool = True, max_cycles: int | None = None) -> int:
        """Run cycles until SIGINT/SIGTERM (or ``max_cycles``), then release the lock.

        Cycles never overlap: the next one starts ``interval_sec`` after the
        previous one started, or immediately if it ran longer than that.
        Supervised agents are left running on shutdown.
        """
        lock = SupervisorLock(self.config.supervisor_pid_file, alive=self._alive)
        lock.acquire()
        previous: dict[int, Any] = {}
        if install_signal_handlers:
            for signum in (signal.SIGINT, signal.SIGTERM):
                previous[signum] = signal.signal(signum, self.stop)
        _log.info(
            "supervisor started (pid=%s, interval=%ss, lock=%s)",
            os.getpid(),
            self.config.interval_sec,
            self.config.supervisor_pid_file,
        )
        cycles = 0
        try:
            while not self._stop.is_set():
                started = time.monotonic()
                self.run_cycle()
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                elapsed = time.monotonic() - started
                self._stop.wait(max(0.0, self.config.interval_sec - elapsed))
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            lock.release()
            _log.info("supervisor stopped after %s cycle(s)", cycles)
        return 0
