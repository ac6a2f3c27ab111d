"""Bounded subprocess helpers: timed commands, validation suites and git."""

from __future__ import annotations

import hashlib
import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import Sequence

TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127

NON_INTERACTIVE_ENV_OVERRIDES = {
    "CI": "1",
    "GIT_TERMINAL_PROMPT": "0",
    "PIP_NO_INPUT": "1",
}

_log = logging.getLogger("fleet_supervisor.commands")


def build_subprocess_env(extra_env: dict[str, str] | None = None, *, drop: Sequence[str] = ()) -> dict[str, str]:
    env = os.environ.copy()
    env.update(NON_INTERACTIVE_ENV_OVERRIDES)
    for key in drop:
        env.pop(key, None)
    if extra_env:
        env.update(extra_env)
    return env


def run_command(
    cmd: list[str],
    cwd: Path,
    timeout_sec: int,
    *,
    extra_env: dict[str, str] | None = None,
    drop_env: Sequence[str] = (),
) -> subprocess.CompletedProcess[str]:
    """Run ``cmd`` with a hard wall-clock timeout.

    A missing executable returns 127 and a timeout kills the process and
    returns 124, so callers only ever inspect ``returncode``.
    """
    env = build_subprocess_env(extra_env, drop=drop_env)
    try:
        process = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            text=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
        )
    except FileNotFoundError as err:
        missing = err.filename or (cmd[0] if cmd else "")
        return subprocess.CompletedProcess(
            cmd,
            returncode=NOT_FOUND_RETURNCODE,
            stdout="",
            stderr=f"[ENOENT] command not found: {missing}",
        )
    except OSError as err:
        return subprocess.CompletedProcess(cmd, returncode=NOT_FOUND_RETURNCODE, stdout="", stderr=str(err))
    start = time.monotonic()

    while True:
        elapsed = time.monotonic() - start
        try:
            stdout, stderr = process.communicate(timeout=1)
            return subprocess.CompletedProcess(cmd, returncode=process.returncode or 0, stdout=stdout, stderr=stderr)
        except subprocess.TimeoutExpired:
            if elapsed >= timeout_sec:
                process.kill()
                stdout, stderr = process.communicate()
                timeout_msg = f"\n[TIMEOUT] command exceeded {timeout_sec}s: {' '.join(cmd)}"
                return subprocess.CompletedProcess(
                    cmd,
                    returncode=TIMEOUT_RETURNCODE,
                    stdout=stdout or "",
                    stderr=(stderr or "") + timeout_msg,
                )


def run_validations(repo: Path, validate_commands: Sequence[str], timeout_sec: int) -> tuple[bool, str]:
    """Run each validation command in order; stop at the first failure."""
    for raw in validate_commands:
        try:
            cmd = shlex.split(raw)
        except ValueError as err:
            return False, f"Validation command parse failed for `{raw}`: {err}"
        if not cmd:
            continue
        _log.info("running validation in %s: %s", repo, raw)
        result = run_command(cmd, cwd=repo, timeout_sec=timeout_sec)
        if result.returncode != 0:
            details = (result.stdout + "\n" + result.stderr).strip()
            return False, f"Validation failed for `{raw}`:\n{details}"
    return True, "ok"


def git_output(repo: Path, args: list[str], timeout_sec: int = 60) -> tuple[bool, str]:
    result = run_command(["git", *args], cwd=repo, timeout_sec=timeout_sec)
    merged = (result.stdout + "\n" + result.stderr).strip()
    if result.returncode != 0:
        return False, merged
    return True, result.stdout.strip()


def lines_changed(repo: Path, paths: Sequence[str]) -> int:
    """Added plus removed lines for ``paths`` per ``git diff --numstat``."""
    if not paths:
        return 0
    ok, output = git_output(repo, ["diff", "--numstat", "--", *paths])
    if not ok:
        return 0
    total = 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        for value in parts[:2]:
            if value.isdigit():
                total += int(value)
    return total


def git_toplevel(repo: Path) -> Path | None:
    ok, output = git_output(repo, ["rev-parse", "--show-toplevel"])
    if not ok or not output:
        return None
    return Path(output)


def _fingerprint(path: Path) -> str:
    if not path.is_file():
        return ""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for block in iter(lambda: handle.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


def worktree_snapshot(repo: Path) -> dict[str, tuple[str, str]]:
    """Dirty paths under ``repo`` mapped to (porcelain status, content digest).

    Untracked files are listed one by one. Paths are relative to the git
    top-level directory. Outside a repository the snapshot is empty.
    """
    top = git_toplevel(repo)
    if top is None:
        return {}
    # -z keeps the leading status column intact and disables path quoting
    result = run_command(
        ["git", "status", "--porcelain", "-z", "--untracked-files=all", "--", "."],
        cwd=repo,
        timeout_sec=60,
    )
    if result.returncode != 0:
        return {}
    snapshot: dict[str, tuple[str, str]] = {}
    entries = iter(result.stdout.split("\0"))
    for entry in entries:
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        snapshot[path] = (status, _fingerprint(top / path))
        if status[0] in "RC":
            source = next(entries, "")
            if source and status[0] == "R":
                snapshot[source] = (" D", "")
    return snapshot


def changed_since(before: dict[str, tuple[str, str]], after: dict[str, tuple[str, str]]) -> list[str]:
    return sorted(path for path in set(before) | set(after) if before.get(path) != after.get(path))


def _is_new(status: str) -> bool:
    return status == "??" or status[0] in "AR"


def revert_changes(
    repo: Path,
    before: dict[str, tuple[str, str]],
    after: dict[str, tuple[str, str]],
) -> tuple[bool, str]:
    """Undo every change made between two snapshots of the same tree.

    Modified and deleted tracked files are restored from HEAD and files
    created in between are removed. Paths that were already dirty in
    ``before`` are never touched; if any of them changed, the revert is
    reported as incomplete. Success is confirmed against a fresh snapshot.
    """
    touched = changed_since(before, after)
    if not touched:
        return True, "nothing to revert"
    top = git_toplevel(repo)
    if top is None:
        return False, f"not a git work tree: {repo}"

    preexisting = [path for path in touched if path in before]
    created = [path for path in touched if path not in before and _is_new(after[path][0])]
    restore = [path for path in touched if path not in before and path not in created]
    messages: list[str] = []
    ok = True

    if restore:
        restored, output = git_output(top, ["checkout", "HEAD", "--", *restore])
        ok = ok and restored
        if not restored:
            messages.append(f"restore failed: {output}")
    if created:
        staged = [path for path in created if after[path][0] != "??"]
        if staged:
            unstaged, output = git_output(top, ["rm", "-r", "-q", "--cached", "--ignore-unmatch", "--", *staged])
            if not unstaged:
                messages.append(f"unstage failed: {output}")
        cleaned, output = git_output(top, ["clean", "-f", "-q", "--", *created])
        if not cleaned:
            messages.append(f"clean failed: {output}")
        for path in created:
            try:
                (top / path).unlink(missing_ok=True)
            except OSError as err:
                messages.append(f"remove failed for {path}: {err}")

    current = worktree_snapshot(repo)
    residual = [path for path in created + restore if path in current]
    if residual:
        ok = False
        messages.append(f"still changed after revert: {', '.join(residual)}")
    if preexisting:
        ok = False
        messages.append(f"left alone, edited before the session: {', '.join(preexisting)}")
    if ok and not messages:
        return True, f"reverted {len(created) + len(restore)} path(s)"
    return ok, "; ".join(messages)
