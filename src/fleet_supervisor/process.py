"""Agent process liveness, termination and detached spawning."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

from .config import DEFAULT_AGENT_COMMAND
from .models import ProjectRecord

PREAMBLE_ENV_VAR = "FLEET_AUTONOMOUS_PREAMBLE"

_log = logging.getLogger("fleet_supervisor.process")


def pid_alive(pid: int | None) -> bool:
    """Signal-0 liveness check shared by every component.

    A missing process is dead; a process we may not signal is alive but
    foreign. Unreaped zombies count as dead so they get restarted.
    """
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    if os.name != "nt":
        try:
            proc = subprocess.run(
                ["ps", "-p", str(pid), "-o", "stat="],
                capture_output=True,
                text=True,
                timeout=1,
            )
            stat = (proc.stdout or "").strip()
            if proc.returncode == 0 and "Z" in stat:
                return False
        except (OSError, subprocess.SubprocessError):
            pass
    return True


@dataclass(frozen=True)
class SpawnResult:
    ok: bool
    pid: int | None = None
    error: str = ""


class ProcessController:
    """Kills and (re)spawns the external agent process of a project."""

    def __init__(
        self,
        agent_command: Sequence[str] | None = None,
        *,
        grace_sec: float = 2.0,
        poll_sec: float = 0.1,
        alive: Callable[[int | None], bool] = pid_alive,
    ) -> None:
        self._command = list(agent_command or DEFAULT_AGENT_COMMAND.split())
        self._grace_sec = max(0.0, grace_sec)
        self._poll_sec = max(0.01, poll_sec)
        self._alive = alive

    def kill(self, pid: int | None) -> bool:
        """SIGTERM, wait out the grace window, then SIGKILL. Never raises."""
        if pid is None or not self._alive(pid):
            return True
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return True
        except OSError as err:
            _log.warning("SIGTERM to pid %s failed: %s", pid, err)
            return False
        deadline = time.monotonic() + self._grace_sec
        while time.monotonic() < deadline:
            if not self._alive(pid):
                return True
            time.sleep(self._poll_sec)
        if not self._alive(pid):
            return True
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            return True
        except OSError as err:
            _log.warning("SIGKILL to pid %s failed: %s", pid, err)
            return False
        _log.info("pid %s ignored SIGTERM; sent SIGKILL", pid)
        return True

    def spawn(self, project_path: str | Path, preamble: str | None = None) -> SpawnResult:
        """Launch the agent detached from the supervisor's lifecycle."""
        cwd = Path(project_path)
        if not cwd.is_dir():
            return SpawnResult(ok=False, error=f"project directory not found: {cwd}")
        env = os.environ.copy()
        env.pop(PREAMBLE_ENV_VAR, None)
        if preamble:
            env[PREAMBLE_ENV_VAR] = preamble
        kwargs: dict[str, Any] = {
            "cwd": str(cwd),
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
            "env": env,
            "close_fds": True,
        }
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        try:
            proc = subprocess.Popen(self._command, **kwargs)
        except (OSError, ValueError) as err:
            _log.error("spawn failed in %s: %s", cwd, err)
            return SpawnResult(ok=False, error=str(err))
        _log.info("spawned agent in %s (pid=%s, preamble=%s)", cwd, proc.pid, preamble or "none")
        return SpawnResult(ok=True, pid=int(proc.pid))

    def restart(self, record: ProjectRecord, preamble: str | None = None) -> tuple[bool, SpawnResult]:
        """Kill the record's current agent (if any) and spawn a replacement."""
        killed = self.kill(record.agent_pid)
        return killed, self.spawn(record.path, preamble)
