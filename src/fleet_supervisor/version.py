"""Framework version token.

The token is a short content hash over the shared framework paths, so an
uncommitted hot fix already changes it and ``get_outdated`` picks up every
project that has not received the fix yet. When none of the paths exist the
token falls back to the framework tree's short git revision, then
``"unknown"``.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable

from .commands import git_output

UNKNOWN_VERSION = "unknown"


def _iter_files(root: Path, rel: str) -> list[Path]:
    target = root / rel
    if target.is_file():
        return [target]
    if not target.is_dir():
        return []
    return sorted(
        path
        for path in target.rglob("*")
        if path.is_file() and "node_modules" not in path.parts and "__pycache__" not in path.parts
    )


def content_hash(framework_dir: Path, paths: Iterable[str]) -> str | None:
    hasher = hashlib.sha256()
    seen = False
    for rel in paths:
        for path in _iter_files(framework_dir, rel):
            seen = True
            hasher.update(path.relative_to(framework_dir).as_posix().encode("utf-8"))
            hasher.update(b"\0")
            try:
                hasher.update(path.read_bytes())
            except OSError:
                hasher.update(b"unreadable")
    if not seen:
        return None
    return hasher.hexdigest()[:12]


def framework_version(framework_dir: Path, paths: Iterable[str]) -> str:
    token = content_hash(framework_dir, paths)
    if token:
        return token
    if framework_dir.is_dir():
        ok, output = git_output(framework_dir, ["rev-parse", "--short", "HEAD"], timeout_sec=10)
        if ok and output:
            return output.splitlines()[0].strip()
    return UNKNOWN_VERSION
