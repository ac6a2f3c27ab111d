import datetime as dt
import json
import os
import pathlib
import sys
import tempfile
import unittest
from unittest import mock

import yaml


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from fleet_supervisor.audit import AuditLog
from fleet_supervisor.config import SupervisorConfig
from fleet_supervisor.interventor import InterventionOutcome
from fleet_supervisor.models import (
    DiagnosticResult,
    HotFixResult,
    ProjectRecord,
    PropagationResult,
    Registry,
    RestartHistory,
)
from fleet_supervisor.monitor import Monitor, SupervisorLock, SupervisorLockError
from fleet_supervisor.notifier import SendResult
from fleet_supervisor.process import SpawnResult
from fleet_supervisor.registry import RegistryStore

NOW = dt.datetime(2026, 5, 1, 12, 0, tzinfo=dt.timezone.utc)
STALE = (NOW - dt.timedelta(minutes=30)).isoformat()
FOREIGN_PID = 424242


class _Controller:
    def __init__(self, kill_ok=True):
        self.restarted = []
        self.killed = []
        self.kill_ok = kill_ok

    def restart(self, record, preamble=None):
        self.restarted.append((record.name, preamble))
        return True, SpawnResult(ok=True, pid=4321)

    def kill(self, pid):
        self.killed.append(pid)
        return self.kill_ok


class _Notifier:
    configured = True

    def __init__(self):
        self.escalations = []

    def send_escalation(self, *args):
        self.escalations.append(args)
        return SendResult(ok=True)


class _Interventor:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def handle(self, classification, all_stalled, registry, *, failed_fixes=()):
        self.calls.append({"project": classification.project.name, "failed_fixes": set(failed_fixes)})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _diagnostic():
    return DiagnosticResult(
        bug_location="project_bug",
        confidence="high",
        root_cause="off by one",
        file_path="src/app.ts",
        error_category="test_failure",
        affected_projects=["alpha"],
    )


def _record(name, path, pid=100, status="running", heartbeat=STALE, phase=2):
    return ProjectRecord(
        name=name,
        path=str(path),
        status=status,
        heartbeat=heartbeat,
        current_phase=phase,
        agent_pid=pid,
        framework_version="v1",
    )


def _write_failure_snapshot(project_dir: pathlib.Path) -> None:
    snapshot = project_dir / ".agents" / "manifest.yaml"
    snapshot.parent.mkdir(parents=True)
    snapshot.write_text(
        yaml.safe_dump(
            {
                "failures": [{"task": "build", "error": "tsc exited 2", "resolution": "pending"}],
                "last_updated": NOW.isoformat(),
            }
        ),
        encoding="utf-8",
    )


class SupervisorLockTests(unittest.TestCase):
    def test_acquire_and_release(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "state" / "supervisor.pid"
            lock = SupervisorLock(path, alive=lambda pid: True)
            lock.acquire()
            payload = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(payload["pid"], os.getpid())
            self.assertEqual(lock.holder(), os.getpid())
            lock.release()
            self.assertFalse(path.exists())

    def test_live_holder_blocks(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "supervisor.pid"
            path.write_text(json.dumps({"pid": FOREIGN_PID}), encoding="utf-8")
            lock = SupervisorLock(path, alive=lambda pid: True)
            with self.assertRaises(SupervisorLockError):
                lock.acquire()
            self.assertFalse(lock.acquired)
            self.assertEqual(lock.holder(), FOREIGN_PID)

    def test_stale_lock_is_replaced(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "supervisor.pid"
            path.write_text(str(FOREIGN_PID), encoding="utf-8")
            lock = SupervisorLock(path, alive=lambda pid: False)
            self.assertEqual(lock.holder(), FOREIGN_PID)
            lock.acquire()
            self.assertEqual(lock.holder(), os.getpid())
            lock.release()

    def test_release_without_acquire_keeps_foreign_file(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "supervisor.pid"
            path.write_text(str(FOREIGN_PID), encoding="utf-8")
            SupervisorLock(path).release()
            self.assertTrue(path.exists())


class MonitorCycleTests(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.root = pathlib.Path(self._td.name)
        self.config = SupervisorConfig.from_env(
            {
                "FLEET_REGISTRY_FILE": str(self.root / "registry.yaml"),
                "FLEET_AUDIT_LOG_FILE": str(self.root / "improvement-log.md"),
                "FLEET_SUPERVISOR_PID_FILE": str(self.root / "supervisor.pid"),
            }
        )
        self.store = RegistryStore(self.config.registry_file)
        self.audit = AuditLog(self.config.audit_log_file)
        self.controller = _Controller()
        self.notifier = _Notifier()
        self.history = RestartHistory()

    def tearDown(self):
        self._td.cleanup()

    def _monitor(self, interventor=None, live_pids=()):
        live = set(live_pids)
        return Monitor(
            self.config,
            self.store,
            self.controller,
            self.notifier,
            interventor or _Interventor(),
            self.audit,
            history=self.history,
            clock=lambda: NOW,
            alive=lambda pid: pid in live,
        )

    def _seed(self, *records):
        self.store.write(Registry(projects={record.name: record for record in records}))

    def test_crashed_agent_is_restarted(self):
        self._seed(
            _record("alpha", self.root / "alpha"),
            _record("idle-one", self.root / "idle", status="idle", pid=None),
        )
        result = self._monitor().run_cycle()
        self.assertEqual(result.projects_checked, 1)
        self.assertEqual(result.stalled, 1)
        self.assertEqual(result.recovered, 1)
        self.assertEqual(self.controller.restarted, [("alpha", None)])
        self.assertEqual(self.history.count("alpha", 2), 1)

        alpha = self.store.get("alpha")
        self.assertEqual(alpha.status, "running")
        self.assertEqual(alpha.agent_pid, 4321)
        self.assertNotEqual(alpha.heartbeat, STALE)
        log = self.audit.read_text()
        self.assertIn("alpha (Phase 2)", log)
        self.assertIn("Killed PID 100, restarted agent (new PID 4321)", log)

    def test_healthy_fleet_writes_registry_without_actions(self):
        self._seed(_record("alpha", self.root / "alpha", heartbeat=(NOW - dt.timedelta(minutes=1)).isoformat()))
        result = self._monitor(live_pids=[100]).run_cycle()
        self.assertEqual((result.projects_checked, result.stalled), (1, 0))
        self.assertEqual(self.controller.restarted, [])
        self.assertTrue(self.store.read().last_updated)
        self.assertEqual(self.audit.read_text(), "")

    def test_hung_session_escalates_after_restart_budget(self):
        self._seed(_record("alpha", self.root / "alpha"))
        self.history.increment("alpha", 2)
        self.history.increment("alpha", 2)
        result = self._monitor(live_pids=[100]).run_cycle()
        self.assertEqual(result.escalated, 1)
        self.assertEqual(self.controller.restarted, [])
        self.assertEqual(self.controller.killed, [100])
        self.assertEqual(len(self.notifier.escalations), 1)
        self.assertEqual(self.notifier.escalations[0][2], "session_hung")
        alpha = self.store.get("alpha")
        self.assertEqual(alpha.status, "stalled")
        self.assertIsNone(alpha.agent_pid)
        log = self.audit.read_text()
        self.assertIn("Escalated to Telegram", log)
        self.assertIn("stopped agent PID 100", log)

    def test_escalation_records_agent_that_could_not_be_stopped(self):
        self.controller.kill_ok = False
        self._seed(_record("alpha", self.root / "alpha"))
        self.history.increment("alpha", 2)
        self.history.increment("alpha", 2)
        with self.assertLogs("fleet_supervisor.monitor", level="WARNING"):
            self._monitor(live_pids=[100]).run_cycle()
        self.assertEqual(self.controller.killed, [100])
        self.assertIsNone(self.store.get("alpha").agent_pid)
        self.assertIn("agent PID 100 could not be stopped and is orphaned", self.audit.read_text())

    def test_failed_intervention_is_remembered_for_next_attempt(self):
        alpha_dir = self.root / "alpha"
        _write_failure_snapshot(alpha_dir)
        self._seed(_record("alpha", alpha_dir))
        failed = InterventionOutcome(
            fixed=False,
            outcome="Escalated: fix failed: tests still red",
            diagnostic=_diagnostic(),
            fix=HotFixResult(success=False, file_path="src/app.ts", details="tests still red"),
            escalated=True,
        )
        interventor = _Interventor(failed, failed)
        monitor = self._monitor(interventor, live_pids=[100])

        first = monitor.run_cycle()
        self.assertEqual((first.interventions_attempted, first.escalated), (1, 1))
        alpha = self.store.get("alpha")
        self.assertEqual(alpha.status, "stalled")
        self.assertIsNone(alpha.agent_pid)
        self.assertEqual(self.controller.killed, [100])

        alpha.status = "running"
        alpha.agent_pid = 100
        alpha.heartbeat = STALE
        self._seed(alpha)
        monitor.run_cycle()
        self.assertEqual(interventor.calls[0]["failed_fixes"], set())
        self.assertEqual(interventor.calls[1]["failed_fixes"], {("test_failure", "src/app.ts")})
        log = self.audit.read_text()
        self.assertIn("- **Bug Location:** project_bug", log)
        self.assertIn("- **Fix Applied:** no", log)

    def test_fix_with_propagation_skips_refreshed_projects(self):
        alpha_dir = self.root / "alpha"
        _write_failure_snapshot(alpha_dir)
        self._seed(_record("alpha", alpha_dir), _record("beta", self.root / "beta", pid=None))
        fixed = InterventionOutcome(
            fixed=True,
            outcome="Fixed framework bug in .claude/commands/build.md, propagated to 2 project(s)",
            diagnostic=_diagnostic(),
            fix=HotFixResult(success=True, file_path=".claude/commands/build.md", validation_passed=True),
            propagation=[
                PropagationResult(project="alpha", success=True, restarted=True),
                PropagationResult(project="beta", success=True, restarted=True),
            ],
            new_pid=888,
            memory_record_id="mem_1",
        )
        result = self._monitor(_Interventor(fixed), live_pids=[100]).run_cycle()
        self.assertEqual(result.stalled, 2)
        self.assertEqual(result.recovered, 1)
        self.assertEqual(self.controller.restarted, [])
        alpha = self.store.get("alpha")
        self.assertEqual((alpha.status, alpha.agent_pid), ("running", 888))
        log = self.audit.read_text()
        self.assertIn("agent restarted by fix propagation", log)
        self.assertIn("- **Propagated To:** alpha, beta", log)
        self.assertIn("- **Memory Record:** mem_1", log)

    def test_one_failing_project_does_not_block_others(self):
        alpha_dir = self.root / "alpha"
        _write_failure_snapshot(alpha_dir)
        self._seed(_record("alpha", alpha_dir), _record("beta", self.root / "beta", pid=None))
        result = self._monitor(_Interventor(RuntimeError("session runner missing")), live_pids=[100]).run_cycle()
        self.assertEqual(result.errors, 1)
        self.assertEqual(result.recovered, 1)
        self.assertEqual(self.controller.restarted, [("beta", None)])
        self.assertIn("Recovery failed with error: session runner missing", self.audit.read_text())

    def test_registry_write_failure_propagates(self):
        self._seed(_record("alpha", self.root / "alpha"))
        monitor = self._monitor()
        with mock.patch.object(self.store, "write", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                monitor.run_cycle()


class MonitorLifecycleTests(unittest.TestCase):
    def _monitor(self, root: pathlib.Path, live_pids=()):
        config = SupervisorConfig.from_env(
            {
                "FLEET_REGISTRY_FILE": str(root / "registry.yaml"),
                "FLEET_AUDIT_LOG_FILE": str(root / "improvement-log.md"),
                "FLEET_SUPERVISOR_PID_FILE": str(root / "supervisor.pid"),
                "FLEET_MONITOR_INTERVAL_SEC": "1",
            }
        )
        live = set(live_pids)
        return Monitor(
            config,
            RegistryStore(config.registry_file),
            _Controller(),
            _Notifier(),
            _Interventor(),
            AuditLog(config.audit_log_file),
            clock=lambda: NOW,
            alive=lambda pid: pid in live,
        )

    def test_run_once_refuses_when_lock_is_held(self):
        with tempfile.TemporaryDirectory() as td:
            root = pathlib.Path(td)
            (root / "supervisor.pid").write_text(str(FOREIGN_PID), encoding="utf-8")
            with self.assertRaises(SupervisorLockError):
                self._monitor(root, live_pids=[FOREIGN_PID]).run_once()
            self.assertFalse((root / "registry.yaml").exists())

    def test_run_once_releases_lock(self):
        with tempfile.TemporaryDirectory() as td:
            root = pathlib.Path(td)
            result = self._monitor(root).run_once()
            self.assertEqual(result.projects_checked, 0)
            self.assertFalse((root / "supervisor.pid").exists())
            self.assertTrue((root / "registry.yaml").exists())

    def test_start_runs_bounded_cycles_and_releases_lock(self):
        with tempfile.TemporaryDirectory() as td:
            root = pathlib.Path(td)
            monitor = self._monitor(root)
            self.assertEqual(monitor.start(install_signal_handlers=False, max_cycles=1), 0)
            self.assertFalse((root / "supervisor.pid").exists())
            self.assertTrue((root / "registry.yaml").exists())

    def test_stop_before_start_exits_cleanly(self):
        with tempfile.TemporaryDirectory() as td:
            root = pathlib.Path(td)
            monitor = self._monitor(root)
            monitor.stop()
            self.assertEqual(monitor.start(install_signal_handlers=False), 0)
            self.assertFalse((root / "supervisor.pid").exists())
            self.assertFalse((root / "registry.yaml").exists())


if __name__ == "__main__":
    unittest.main()
