import os
import pathlib
import signal
import sys
import tempfile
import time
import unittest
from unittest import mock


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from fleet_supervisor.models import ProjectRecord
from fleet_supervisor.process import PREAMBLE_ENV_VAR, ProcessController, SpawnResult, pid_alive


class PidAliveTests(unittest.TestCase):
    def test_none_and_non_positive_are_dead(self):
        self.assertFalse(pid_alive(None))
        self.assertFalse(pid_alive(0))
        self.assertFalse(pid_alive(-5))

    def test_no_such_process_is_dead(self):
        with mock.patch("fleet_supervisor.process.os.kill", side_effect=ProcessLookupError):
            self.assertFalse(pid_alive(999999))

    def test_permission_denied_is_alive(self):
        with mock.patch("fleet_supervisor.process.os.kill", side_effect=PermissionError):
            self.assertTrue(pid_alive(1))

    def test_current_process_is_alive(self):
        self.assertTrue(pid_alive(os.getpid()))

    def test_zombie_counts_as_dead(self):
        completed = mock.Mock(returncode=0, stdout="Z+\n")
        with mock.patch("fleet_supervisor.process.os.kill", return_value=None), mock.patch(
            "fleet_supervisor.process.subprocess.run", return_value=completed
        ):
            self.assertFalse(pid_alive(4242))


class KillTests(unittest.TestCase):
    def test_absent_pid_counts_as_killed(self):
        controller = ProcessController(["true"], alive=lambda pid: False)
        with mock.patch("fleet_supervisor.process.os.kill") as kill:
            self.assertTrue(controller.kill(None))
            self.assertTrue(controller.kill(1234))
        kill.assert_not_called()

    def test_graceful_exit_skips_sigkill(self):
        states = iter([True, False])
        controller = ProcessController(["true"], grace_sec=1.0, poll_sec=0.01, alive=lambda pid: next(states, False))
        with mock.patch("fleet_supervisor.process.os.kill") as kill:
            self.assertTrue(controller.kill(1234))
        kill.assert_called_once_with(1234, signal.SIGTERM)

    def test_stubborn_process_gets_sigkill(self):
        controller = ProcessController(["true"], grace_sec=0.05, poll_sec=0.01, alive=lambda pid: True)
        with mock.patch("fleet_supervisor.process.os.kill") as kill:
            self.assertTrue(controller.kill(1234))
        self.assertEqual(kill.call_args_list[0], mock.call(1234, signal.SIGTERM))
        self.assertEqual(kill.call_args_list[-1], mock.call(1234, signal.SIGKILL))

    def test_kill_never_raises(self):
        controller = ProcessController(["true"], alive=lambda pid: True)
        with mock.patch("fleet_supervisor.process.os.kill", side_effect=PermissionError("denied")):
            self.assertFalse(controller.kill(1234))


class SpawnTests(unittest.TestCase):
    def test_missing_directory_is_reported(self):
        controller = ProcessController(["true"])
        result = controller.spawn("/definitely/not/here")
        self.assertFalse(result.ok)
        self.assertIn("not found", result.error)

    def test_missing_executable_is_reported(self):
        with tempfile.TemporaryDirectory() as td:
            controller = ProcessController(["fleet-agent-binary-that-does-not-exist"])
            result = controller.spawn(td)
            self.assertFalse(result.ok)
            self.assertTrue(result.error)

    def test_spawn_runs_detached_in_project_dir_with_preamble(self):
        with tempfile.TemporaryDirectory() as td:
            script = (
                "import os, pathlib; "
                f"pathlib.Path('marker.txt').write_text(os.environ.get('{PREAMBLE_ENV_VAR}', 'none'))"
            )
            controller = ProcessController([sys.executable, "-c", script])
            result = controller.spawn(td, preamble="strict")
            self.assertTrue(result.ok)
            self.assertIsInstance(result.pid, int)
            marker = pathlib.Path(td) / "marker.txt"
            deadline = time.monotonic() + 10
            while time.monotonic() < deadline and not (marker.exists() and marker.read_text()):
                time.sleep(0.05)
            self.assertEqual(marker.read_text(), "strict")

    def test_restart_kills_then_spawns(self):
        controller = ProcessController(["true"], alive=lambda pid: False)
        record = ProjectRecord(name="alpha", path="/work/alpha", status="running", agent_pid=55)
        with mock.patch.object(controller, "spawn", return_value=SpawnResult(ok=True, pid=66)) as spawn:
            killed, spawned = controller.restart(record, "strict")
        self.assertTrue(killed)
        self.assertEqual(spawned.pid, 66)
        spawn.assert_called_once_with("/work/alpha", "strict")


if __name__ == "__main__":
    unittest.main()
