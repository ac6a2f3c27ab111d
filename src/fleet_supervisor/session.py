"""AI session runner and strict transcript parsing.

Sessions are black boxes that return free text with a JSON object embedded
somewhere in it. ``extract_last_json_object`` takes the last top-level
object that decodes cleanly; callers validate its shape themselves and
treat anything else as a failed session.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, Sequence

from .commands import TIMEOUT_RETURNCODE, run_command

READ_ONLY_TOOLS = ("Read", "Glob", "Grep")
WRITE_TOOLS = ("Read", "Glob", "Grep", "Bash", "Edit", "Write")

# Nested CLI sessions refuse to start when this marker is inherited.
_NESTED_SESSION_ENV = ("CLAUDECODE",)

_log = logging.getLogger("fleet_supervisor.session")


@dataclass(frozen=True)
class SessionResult:
    ok: bool
    text: str = ""
    cost_usd: float = 0.0
    error: str = ""


class SessionRunnerProtocol(Protocol):
    def run(
        self,
        prompt: str,
        cwd: Path,
        *,
        allowed_tools: Sequence[str],
        max_turns: int,
        timeout_sec: int,
        budget_usd: float | None = None,
    ) -> SessionResult:
        ...


def extract_last_json_object(text: str) -> dict[str, Any] | None:
    decoder = json.JSONDecoder()
    last: dict[str, Any] | None = None
    idx = 0
    length = len(text)
    while idx < length:
        start = text.find("{", idx)
        if start < 0:
            break
        try:
            candidate, end = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            idx = start + 1
            continue
        if isinstance(candidate, dict):
            last = candidate
        idx = end
    return last


def parse_cli_envelope(stdout: str) -> tuple[str, float]:
    """Return (result text, total cost) from ``--output-format json`` output."""
    raw = stdout.strip()
    if not raw:
        return "", 0.0
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return raw, 0.0
    if not isinstance(payload, dict):
        return raw, 0.0
    text = payload.get("result")
    try:
        cost = float(payload.get("total_cost_usd", 0.0) or 0.0)
    except (TypeError, ValueError):
        cost = 0.0
    if not isinstance(text, str):
        return raw, cost
    return text, cost


class SessionRunner:
    """Runs one non-interactive CLI session per call."""

    def __init__(self, command: str = "claude", model: str = "") -> None:
        self._command = command
        self._model = model

    def build_command(
        self,
        prompt: str,
        *,
        allowed_tools: Sequence[str],
        max_turns: int,
        budget_usd: float | None = None,
    ) -> list[str]:
        cmd = [self._command]
        if self._model:
            cmd.extend(["--model", self._model])
        cmd.extend(
            [
                "-p",
                prompt,
                "--output-format",
                "json",
                "--max-turns",
                str(max_turns),
                "--allowedTools",
                ",".join(allowed_tools),
                "--permission-mode",
                "bypassPermissions",
            ]
        )
        if budget_usd is not None and budget_usd > 0:
            cmd.extend(["--max-budget-usd", f"{budget_usd:.2f}"])
        return cmd

    def run(
        self,
        prompt: str,
        cwd: Path,
        *,
        allowed_tools: Sequence[str],
        max_turns: int,
        timeout_sec: int,
        budget_usd: float | None = None,
    ) -> SessionResult:
        cmd = self.build_command(prompt, allowed_tools=allowed_tools, max_turns=max_turns, budget_usd=budget_usd)
        _log.info("starting session in %s (tools=%s, max_turns=%s)", cwd, ",".join(allowed_tools), max_turns)
        result = run_command(cmd, cwd=cwd, timeout_sec=timeout_sec, drop_env=_NESTED_SESSION_ENV)
        text, cost = parse_cli_envelope(result.stdout or "")
        if result.returncode == TIMEOUT_RETURNCODE:
            _log.warning("session in %s timed out after %ss", cwd, timeout_sec)
            return SessionResult(ok=False, text=text, cost_usd=cost, error=f"session timed out after {timeout_sec}s")
        if result.returncode != 0:
            details = (result.stderr or "").strip() or text
            _log.warning("session in %s failed (rc=%s): %s", cwd, result.returncode, details[:500])
            return SessionResult(ok=False, text=text, cost_usd=cost, error=details or f"exit code {result.returncode}")
        return SessionResult(ok=True, text=text, cost_usd=cost)
