"""Optional long-term memory of past fixes.

A thin HTTP client for a Supermemory-compatible API. Every call is
best-effort: network, auth and decode failures are logged and come back as
empty results, so a missing or broken provider behaves exactly like no
provider at all.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable
from urllib import error as urllib_error
from urllib import request as urllib_request

from .config import MemoryConfig

_log = logging.getLogger("fleet_supervisor.memory")


@dataclass(frozen=True)
class MemoryMatch:
    id: str
    text: str
    similarity: float = 0.0
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FixRecord:
    content: str
    custom_id: str
    container_tag: str
    metadata: dict[str, str]
    entity_context: str = ""

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "content": self.content,
            "customId": self.custom_id,
            "containerTag": self.container_tag,
            "metadata": self.metadata,
        }
        if self.entity_context:
            payload["entityContext"] = self.entity_context
        return payload


def dedupe_matches(matches: Iterable[MemoryMatch]) -> list[MemoryMatch]:
    seen: set[str] = set()
    unique: list[MemoryMatch] = []
    for match in matches:
        if match.id in seen:
            continue
        seen.add(match.id)
        unique.append(match)
    return unique


def format_matches(matches: Iterable[MemoryMatch]) -> str:
    """Render recalled fixes as a prompt block."""
    return "\n---\n".join(
        f"[{match.similarity:.2f}] {match.text}\n  Metadata: {json.dumps(match.metadata, sort_keys=True)}"
        for match in matches
    )


def _match_from_row(row: Any) -> MemoryMatch | None:
    if not isinstance(row, dict):
        return None
    # Hybrid search returns either a memory or a document chunk per row.
    text = row.get("memory") or row.get("chunk") or ""
    try:
        similarity = float(row.get("similarity", 0.0) or 0.0)
    except (TypeError, ValueError):
        similarity = 0.0
    metadata = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
    return MemoryMatch(
        id=str(row.get("id") or ""),
        text=str(text),
        similarity=similarity,
        metadata={str(k): str(v) for k, v in metadata.items()},
    )


class MemoryClient:
    def __init__(self, config: MemoryConfig) -> None:
        self._config = config
        self._base_url = config.base_url.rstrip("/")
        self._timeout = max(1, config.timeout_sec)

    @property
    def config(self) -> MemoryConfig:
        return self._config

    def container_tag(self, project_name: str) -> str:
        return f"{self._config.container_tag_prefix}{project_name}"

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any] | None:
        req = urllib_request.Request(
            f"{self._base_url}{path}",
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self._config.api_key}",
                "Content-Type": "application/json",
                "User-Agent": "fleet-supervisor/memory",
            },
        )
        try:
            with urllib_request.urlopen(req, timeout=self._timeout) as resp:  # nosec B310
                raw = resp.read().decode("utf-8", errors="replace")
        except (urllib_error.URLError, TimeoutError, OSError) as exc:
            _log.warning("memory request %s failed: %s", path, self._redact(str(exc))[:300])
            return None
        try:
            payload = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            _log.warning("memory request %s returned invalid JSON", path)
            return None
        return payload if isinstance(payload, dict) else None

    def _redact(self, text: str) -> str:
        if self._config.api_key:
            return text.replace(self._config.api_key, "[REDACTED]")
        return text

    def recall(self, query: str, container_tag: str | None = None) -> list[MemoryMatch]:
        body: dict[str, Any] = {
            "q": query,
            "searchMode": "hybrid",
            "limit": self._config.search_limit,
            "threshold": self._config.search_threshold,
            "rerank": True,
            "rewriteQuery": True,
        }
        if container_tag:
            body["containerTag"] = container_tag
        payload = self._post("/v4/search", body)
        if not payload:
            return []
        rows = payload.get("results")
        if not isinstance(rows, list):
            return []
        return [match for match in (_match_from_row(row) for row in rows) if match is not None and match.id]

    def store(self, record: FixRecord) -> str | None:
        payload = self._post("/v3/documents", record.to_payload())
        if not payload or not payload.get("id"):
            return None
        return str(payload["id"])

    def health(self) -> bool:
        return self._post("/v3/documents/list", {"limit": 1}) is not None


def create_memory_client(config: MemoryConfig) -> MemoryClient | None:
    if not config.enabled or not config.api_key:
        return None
    return MemoryClient(config)
