"""Outbound Telegram notifications for escalations.

Plain HTTPS calls against the Bot API. Nothing here raises: delivery
failures come back as ``SendResult(ok=False, ...)`` so the monitor can log
them and move on. Unresolved stalls are re-escalated on a later cycle, so
delivery is at-least-once at best.
"""

from __future__ import annotations

import html
import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib import error as urlerr
from urllib import request

from .models import DiagnosticResult, HotFixResult

TELEGRAM_BASE = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096

_log = logging.getLogger("fleet_supervisor.notifier")


@dataclass(frozen=True)
class SendResult:
    ok: bool
    description: str = ""
    error_code: int | None = None
    result: Any = None


def escape_html(text: str) -> str:
    return html.escape(str(text), quote=False)


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split ``text`` into chunks of at most ``limit`` chars, preferring newlines."""
    if len(text) <= limit:
        return [text]
    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        split_idx = remaining.rfind("\n", 0, limit + 1)
        if split_idx <= 0:
            chunks.append(remaining[:limit])
            remaining = remaining[limit:]
            continue
        chunks.append(remaining[:split_idx])
        remaining = remaining[split_idx + 1 :]
    return chunks


def format_escalation(
    project: str,
    phase: int | None,
    stall_type: str,
    details: str,
    action_taken: str,
    retry_count: int,
    max_restarts: int,
) -> str:
    return "\n".join(
        [
            "<b>🔴 Supervisor Escalation</b>",
            "",
            f"<b>Project:</b> {escape_html(project)}",
            f"<b>Phase:</b> {phase if phase is not None else 'unknown'}",
            f"<b>Stall Type:</b> {escape_html(stall_type)}",
            f"<b>Details:</b> {escape_html(details)}",
            f"<b>Action Taken:</b> {escape_html(action_taken)}",
            f"<b>Restarts:</b> {retry_count}/{max_restarts}",
        ]
    )


def format_fix_failure(project: str, phase: int | None, diagnostic: DiagnosticResult, fix: HotFixResult) -> str:
    reverted = "Fix was reverted." if fix.reverted_on_failure else ""
    return "\n".join(
        [
            "<b>🔴 Hot Fix Failed: Escalation</b>",
            "",
            f"<b>Project:</b> {escape_html(project)}",
            f"<b>Phase:</b> {phase if phase is not None else 'unknown'}",
            f"<b>Bug Type:</b> {escape_html(diagnostic.bug_location)}",
            f"<b>Root Cause:</b> {escape_html(diagnostic.root_cause)}",
            f"<b>File:</b> {escape_html(diagnostic.file_path or 'unknown')}",
            f"<b>Fix Attempted:</b> {escape_html(fix.details)}",
            f"<b>Validation:</b> {'Passed' if fix.validation_passed else 'Failed'}",
            f"<b>Fix Cost:</b> ${fix.session_cost_usd:.2f}",
            "",
            f"<b>Action needed:</b> Manual fix required. {reverted}".rstrip(),
        ]
    )


class TelegramNotifier:
    def __init__(
        self,
        token: str = "",
        chat_id: int | None = None,
        *,
        base_url: str = TELEGRAM_BASE,
        timeout_sec: int = 15,
    ) -> None:
        self._token = token.strip()
        self._chat_id = chat_id
        self._base_url = base_url.rstrip("/")
        self._timeout = max(1, timeout_sec)

    @property
    def configured(self) -> bool:
        return bool(self._token) and self._chat_id is not None

    def _call(self, method: str, body: dict[str, Any] | None = None) -> SendResult:
        url = f"{self._base_url}/bot{self._token}/{method}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json", "User-Agent": "fleet-supervisor/notifier"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self._timeout) as resp:  # nosec B310
                raw = resp.read().decode("utf-8", errors="replace")
        except urlerr.HTTPError as err:
            raw = err.read().decode("utf-8", errors="replace") if err.fp is not None else ""
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                payload = {}
            description = str(payload.get("description") or err.reason) if isinstance(payload, dict) else str(err.reason)
            return SendResult(ok=False, description=description, error_code=int(err.code))
        except (urlerr.URLError, TimeoutError, OSError) as err:
            return SendResult(ok=False, description=f"Network error: {self._redact(str(err))}")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return SendResult(ok=False, description="invalid JSON response")
        if not isinstance(payload, dict):
            return SendResult(ok=False, description="invalid JSON response")
        return SendResult(
            ok=bool(payload.get("ok", False)),
            description=str(payload.get("description", "")),
            error_code=payload.get("error_code"),
            result=payload.get("result"),
        )

    def _redact(self, text: str) -> str:
        if self._token:
            return text.replace(self._token, "[REDACTED]")
        return text

    def get_me(self) -> SendResult:
        if not self._token:
            return SendResult(ok=False, description="telegram not configured")
        return self._call("getMe")

    def send_message(self, text: str, parse_mode: str = "HTML") -> SendResult:
        """Send ``text`` in as many chunks as needed; stops at the first failure."""
        if not self.configured:
            return SendResult(ok=False, description="telegram not configured")
        last = SendResult(ok=False, description="no chunks")
        for chunk in split_message(text):
            body: dict[str, Any] = {"chat_id": self._chat_id, "text": chunk}
            if parse_mode:
                body["parse_mode"] = parse_mode
            last = self._call("sendMessage", body)
            if not last.ok and last.error_code == 400 and parse_mode == "HTML":
                last = self._call("sendMessage", {"chat_id": self._chat_id, "text": chunk})
            if not last.ok:
                _log.warning("telegram delivery failed: %s", last.description)
                break
        return last

    def send_escalation(
        self,
        project: str,
        phase: int | None,
        stall_type: str,
        details: str,
        action_taken: str,
        retry_count: int,
        max_restarts: int,
    ) -> SendResult:
        return self.send_message(
            format_escalation(project, phase, stall_type, details, action_taken, retry_count, max_restarts)
        )

    def send_fix_failure(
        self,
        project: str,
        phase: int | None,
        diagnostic: DiagnosticResult,
        fix: HotFixResult,
    ) -> SendResult:
        return self.send_message(format_fix_failure(project, phase, diagnostic, fix))
