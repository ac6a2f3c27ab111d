"""Append-only, human-readable improvement log.

One markdown entry per recovery action. The supervisor only ever appends:
the file is never rewritten or truncated. Write failures are logged and
dropped so audit I/O can never abort a cycle.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .models import AuditEntry

LOG_HEADER = "# Fleet Supervisor Improvement Log\n\nAppend-only record of supervisor recovery actions.\n\n"

_log = logging.getLogger("fleet_supervisor.audit")


def format_entry(entry: AuditEntry) -> str:
    phase = entry.phase if entry.phase is not None else "?"
    lines = [
        f"### {entry.timestamp} - {entry.project} (Phase {phase})",
        "",
        f"- **Stall Type:** {entry.stall_type}",
        f"- **Action:** {entry.action}",
        f"- **Outcome:** {entry.outcome}",
    ]
    if entry.details:
        lines.append(f"- **Details:** {entry.details}")
    if entry.bug_location:
        lines.append(f"- **Bug Location:** {entry.bug_location}")
    if entry.root_cause:
        lines.append(f"- **Root Cause:** {entry.root_cause}")
    if entry.file_path:
        lines.append(f"- **File:** {entry.file_path}")
    if entry.fix_applied is not None:
        lines.append(f"- **Fix Applied:** {'yes' if entry.fix_applied else 'no'}")
    if entry.propagated_to:
        lines.append(f"- **Propagated To:** {', '.join(entry.propagated_to)}")
    if entry.memory_record_id:
        lines.append(f"- **Memory Record:** {entry.memory_record_id}")
    if entry.memory_retrieved_ids:
        lines.append(f"- **Memory Recalled:** {', '.join(entry.memory_retrieved_ids)}")
    return "\n".join(lines) + "\n\n"


class AuditLog:
    def __init__(self, path: Path) -> None:
        self.path = path.expanduser()

    def append(self, entry: AuditEntry) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            needs_header = not self.path.exists() or self.path.stat().st_size == 0
            with self.path.open("a", encoding="utf-8") as handle:
                if needs_header:
                    handle.write(LOG_HEADER)
                handle.write(format_entry(entry))
        except OSError as err:
            _log.warning("audit append failed for %s: %s", self.path, err)
            return False
        return True

    def read_text(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")
