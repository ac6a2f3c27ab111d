"""Copies a fixed framework file into every outdated project.

The framework tree is canonical: a project's copy of the file is always
overwritten. Each target is handled independently, so one unreachable
project never blocks the rest. Records are updated in memory only; the
monitor persists the registry once at the end of its cycle.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Callable, Iterable, Sequence

from .config import DEFAULT_FRAMEWORK_PATHS
from .models import ProjectRecord, PropagationResult, Registry, now_iso
from .process import ProcessController
from .version import framework_version

_log = logging.getLogger("fleet_supervisor.propagator")


class Propagator:
    def __init__(
        self,
        framework_dir: Path,
        controller: ProcessController,
        *,
        framework_paths: Sequence[str] = DEFAULT_FRAMEWORK_PATHS,
        version_fn: Callable[[], str] | None = None,
    ) -> None:
        self.framework_dir = framework_dir
        self._controller = controller
        self._framework_paths = tuple(framework_paths)
        self._version_fn = version_fn

    def current_version(self) -> str:
        if self._version_fn is not None:
            return self._version_fn()
        return framework_version(self.framework_dir, self._framework_paths)

    def get_outdated(self, registry: Registry, current_version: str) -> list[ProjectRecord]:
        return [record for record in registry.projects.values() if record.framework_version != current_version]

    def _relative(self, fixed_file_path: str) -> str:
        candidate = Path(fixed_file_path)
        if candidate.is_absolute():
            candidate = candidate.resolve().relative_to(self.framework_dir.resolve())
        if ".." in candidate.parts:
            raise ValueError(f"path escapes the framework tree: {fixed_file_path}")
        return candidate.as_posix()

    def propagate(
        self,
        fixed_file_path: str,
        targets: Iterable[ProjectRecord],
        *,
        new_version: str | None = None,
    ) -> list[PropagationResult]:
        targets = list(targets)
        version = new_version or self.current_version()
        try:
            rel = self._relative(fixed_file_path)
        except ValueError as err:
            return [PropagationResult(project=t.name, success=False, new_version=version, error=str(err)) for t in targets]
        source = self.framework_dir / rel
        if not source.is_file():
            error = f"Source file not found: {source}"
            _log.error("propagation aborted: %s", error)
            return [PropagationResult(project=t.name, success=False, new_version=version, error=error) for t in targets]

        results: list[PropagationResult] = []
        for record in targets:
            try:
                results.append(self._propagate_one(source, rel, record, version))
            except Exception as err:  # noqa: BLE001
                _log.exception("propagation to %s failed", record.name)
                results.append(PropagationResult(project=record.name, success=False, new_version=version, error=str(err)))
        return results

    def _propagate_one(self, source: Path, rel: str, record: ProjectRecord, version: str) -> PropagationResult:
        root = Path(record.path)
        if not root.is_dir():
            return PropagationResult(
                project=record.name,
                success=False,
                new_version=version,
                error=f"project directory not found: {root}",
            )
        dest = root / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
        record.framework_version = version

        _, spawned = self._controller.restart(record)
        if spawned.ok:
            record.status = "running"
            record.agent_pid = spawned.pid
            record.heartbeat = now_iso()
        else:
            _log.warning("copied fix to %s but restart failed: %s", record.name, spawned.error)
            record.status = "error"
            record.agent_pid = None
        _log.info("propagated %s to %s (restarted=%s)", rel, record.name, spawned.ok)
        return PropagationResult(
            project=record.name,
            success=True,
            files_copied=[rel],
            new_version=version,
            restarted=spawned.ok,
            error="" if spawned.ok else spawned.error,
        )
