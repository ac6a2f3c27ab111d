"""Diagnosis, bug location and hot fixes for ``execution_error`` stalls.

Pipeline for one stalled project (sessions run strictly one at a time):

1. recall similar past fixes from memory (optional)
2. diagnose in a read-only session
3. refine the bug location with cross-project correlation and path rules
4. escalate without fixing when the gate says so
5. apply a single-file fix in a write-enabled session
6. validate framework fixes; revert everything the session touched on failure
7. propagate framework fixes and restart the affected agents
8. store a fix record in memory (optional)

Every failure mode degrades toward ``human_required`` and escalation; a
fix is never reported as successful without confirmation.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Collection, Iterable, Sequence

from .commands import (
    changed_since,
    git_toplevel,
    lines_changed,
    revert_changes,
    run_validations,
    worktree_snapshot,
)
from .config import DEFAULT_FRAMEWORK_PATHS, InterventorConfig
from .memory import FixRecord, MemoryClient, dedupe_matches, format_matches
from .models import (
    BugLocation,
    Confidence,
    DiagnosticResult,
    HotFixResult,
    ProjectRecord,
    PropagationResult,
    Registry,
    StallClassification,
)
from .notifier import TelegramNotifier
from .process import ProcessController
from .propagator import Propagator
from .session import READ_ONLY_TOOLS, WRITE_TOOLS, SessionRunnerProtocol, extract_last_json_object

MAX_FIX_LINES = 30
PROJECT_PATH_PREFIXES = ("src/", "tests/")
PROJECT_PATH_MARKERS = ("/src/", "/tests/")
AUTH_ERROR_CATEGORY = "integration_auth"
AUTH_KEYWORDS = ("credential", "api key", "token", "authentication")

_log = logging.getLogger("fleet_supervisor.interventor")


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def build_diagnosis_prompt(
    project: ProjectRecord,
    classification: StallClassification,
    memory_context: str | None = None,
) -> str:
    lines = [
        "You are diagnosing why an autonomous build agent stalled.",
        "",
        f"Project: {project.name}",
        f"Path: {project.path}",
        f"Phase: {project.current_phase if project.current_phase is not None else 'unknown'}",
        f"Stall type: {classification.stall_type}",
        f"Details: {classification.details}",
        f"Heartbeat age: {round(classification.heartbeat_age_sec / 60)} minutes",
        "",
    ]
    if memory_context:
        lines.extend(
            [
                "Similar past fixes (most relevant first):",
                memory_context,
                "",
            ]
        )
    lines.extend(
        [
            "Instructions:",
            "1. Read .agents/manifest.yaml for the failures section and recent state",
            "2. Check .agents/progress/ for the latest progress file to see blocked tasks",
            "3. If there are error details, trace them to the specific source file and line",
            "4. Determine the root cause: which file has the bug and what needs to change",
            "",
            "Respond with ONLY a JSON object (no markdown, no explanation):",
            "{",
            '  "rootCause": "description of the bug",',
            '  "filePath": "path/to/broken/file or null",',
            '  "errorCategory": "syntax_error|test_failure|integration_auth|etc",',
            '  "bugLocation": "framework_bug|project_bug|human_required",',
            '  "confidence": "high|medium|low"',
            "}",
        ]
    )
    return "\n".join(lines)


def build_fix_prompt(
    diagnostic: DiagnosticResult,
    is_framework: bool,
    validate_commands: Sequence[str] = (),
) -> str:
    context = (
        "You are fixing a bug in the shared agent framework."
        if is_framework
        else "You are fixing a project-specific bug in generated agent code."
    )
    verify = " && ".join(validate_commands) if validate_commands else "the project's build and test commands"
    return "\n".join(
        [
            context,
            "",
            f"Root cause: {diagnostic.root_cause}",
            f"File: {diagnostic.file_path or 'unknown'}",
            f"Error category: {diagnostic.error_category}",
            "",
            "Constraints:",
            "- Fix must be in a SINGLE file only",
            f"- Fix must be under {MAX_FIX_LINES} lines of changes",
            f"- After fixing, run: {verify}",
            "- If the fix requires changes to multiple files, do NOT make the fix. Instead respond with:",
            '  {"success": false, "reason": "multi-file fix required"}',
            "",
            "After fixing, respond with ONLY a JSON object (no markdown):",
            "{",
            '  "success": true,',
            '  "filePath": "path/to/fixed/file",',
            '  "linesChanged": 5,',
            '  "details": "what was changed"',
            "}",
        ]
    )


# ---------------------------------------------------------------------------
# Diagnosis
# ---------------------------------------------------------------------------

def _human_required(project: ProjectRecord, classification: StallClassification, reason: str) -> DiagnosticResult:
    return DiagnosticResult(
        bug_location=BugLocation.HUMAN_REQUIRED.value,
        confidence=Confidence.LOW.value,
        root_cause=reason,
        file_path=None,
        error_category=str(classification.stall_type),
        affected_projects=[project.name],
    )


def parse_diagnosis(payload: Any, project_name: str) -> DiagnosticResult | None:
    """Validate a diagnosis object; ``None`` unless every field has the right shape."""
    if not isinstance(payload, dict):
        return None
    root_cause = payload.get("rootCause")
    file_path = payload.get("filePath")
    category = payload.get("errorCategory")
    location = payload.get("bugLocation")
    confidence = payload.get("confidence")
    if not isinstance(root_cause, str) or not root_cause.strip():
        return None
    if file_path is not None and not isinstance(file_path, str):
        return None
    if not isinstance(category, str) or not category.strip():
        return None
    if location not in {item.value for item in BugLocation}:
        return None
    if confidence not in {item.value for item in Confidence}:
        return None
    return DiagnosticResult(
        bug_location=location,
        confidence=confidence,
        root_cause=root_cause.strip(),
        file_path=(file_path.strip() or None) if isinstance(file_path, str) else None,
        error_category=category.strip(),
        affected_projects=[project_name],
    )


def diagnose(
    project: ProjectRecord,
    classification: StallClassification,
    runner: SessionRunnerProtocol,
    config: InterventorConfig,
    memory_context: str | None = None,
) -> DiagnosticResult:
    """Run a read-only diagnosis session. Never raises."""
    prompt = build_diagnosis_prompt(project, classification, memory_context)
    try:
        session = runner.run(
            prompt,
            Path(project.path),
            allowed_tools=READ_ONLY_TOOLS,
            max_turns=config.diagnosis_max_turns,
            timeout_sec=config.session_timeout_sec,
            budget_usd=config.diagnosis_budget_usd,
        )
    except Exception as err:  # noqa: BLE001
        _log.exception("diagnosis session crashed for %s", project.name)
        return _human_required(project, classification, f"Diagnosis session failed: {err}")
    if not session.ok:
        return _human_required(project, classification, f"Diagnosis session failed: {session.error}")
    parsed = parse_diagnosis(extract_last_json_object(session.text), project.name)
    if parsed is None:
        _log.warning("diagnosis for %s returned no valid result", project.name)
        return _human_required(project, classification, "Diagnosis session returned no parseable result")
    _log.info(
        "diagnosis for %s: %s/%s in %s (cost $%.2f)",
        project.name,
        parsed.bug_location,
        parsed.confidence,
        parsed.file_path or "unknown file",
        session.cost_usd,
    )
    return parsed


# ---------------------------------------------------------------------------
# Bug location
# ---------------------------------------------------------------------------

def _shared_pattern(all_stalled: Sequence[StallClassification], current: str | None) -> list[str]:
    groups: dict[tuple[str, int | None], list[str]] = {}
    for item in all_stalled:
        key = (str(item.stall_type), item.project.current_phase)
        groups.setdefault(key, []).append(item.project.name)
    if current is not None:
        for names in groups.values():
            if current in names and len(names) >= 2:
                return names
        return []
    for names in groups.values():
        if len(names) >= 2:
            return names
    return []


def is_auth_issue(diagnostic: DiagnosticResult) -> bool:
    if diagnostic.error_category == AUTH_ERROR_CATEGORY:
        return True
    cause = diagnostic.root_cause.lower()
    return any(keyword in cause for keyword in AUTH_KEYWORDS)


def classify_bug_location(
    diagnostic: DiagnosticResult,
    all_stalled: Sequence[StallClassification],
    *,
    current_project: str | None = None,
    framework_paths: Iterable[str] = DEFAULT_FRAMEWORK_PATHS,
) -> DiagnosticResult:
    """Refine a diagnosis; returns a new result and leaves the input untouched."""
    current = current_project or (diagnostic.affected_projects[0] if diagnostic.affected_projects else None)
    updated = DiagnosticResult(**diagnostic.to_dict())

    shared = _shared_pattern(all_stalled, current)
    if shared:
        updated.bug_location = BugLocation.FRAMEWORK_BUG.value
        updated.confidence = Confidence.HIGH.value
        updated.multi_project_pattern = True
        updated.affected_projects = shared
    elif updated.file_path:
        path = updated.file_path.replace("\\", "/")
        if any(prefix in path for prefix in framework_paths):
            updated.bug_location = BugLocation.FRAMEWORK_BUG.value
            if updated.confidence == Confidence.LOW.value:
                updated.confidence = Confidence.MEDIUM.value
        elif path.startswith(PROJECT_PATH_PREFIXES) or any(marker in path for marker in PROJECT_PATH_MARKERS):
            updated.bug_location = BugLocation.PROJECT_BUG.value

    if is_auth_issue(updated):
        updated.bug_location = BugLocation.HUMAN_REQUIRED.value
    return updated


def fix_signature(diagnostic: DiagnosticResult) -> tuple[str, str | None]:
    return diagnostic.error_category, diagnostic.file_path


def should_escalate(diagnostic: DiagnosticResult, previous_fix_failed: bool) -> bool:
    if diagnostic.bug_location == BugLocation.HUMAN_REQUIRED.value:
        return True
    if previous_fix_failed:
        return True
    return not diagnostic.file_path and diagnostic.confidence == Confidence.LOW.value


# ---------------------------------------------------------------------------
# Hot fixes
# ---------------------------------------------------------------------------

def _relative_to(path: str, root: Path) -> str | None:
    candidate = Path(path)
    if not candidate.is_absolute():
        return candidate.as_posix()
    try:
        return candidate.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        return None


def _fix_failure(diagnostic: DiagnosticResult, details: str, cost: float = 0.0) -> HotFixResult:
    return HotFixResult(
        success=False,
        file_path=diagnostic.file_path or "unknown",
        details=details,
        session_cost_usd=cost,
    )


def _run_fix_session(
    cwd: Path,
    diagnostic: DiagnosticResult,
    runner: SessionRunnerProtocol,
    config: InterventorConfig,
    is_framework: bool,
) -> tuple[dict[str, Any] | None, float, str]:
    prompt = build_fix_prompt(diagnostic, is_framework, config.validate_commands if is_framework else ())
    try:
        session = runner.run(
            prompt,
            cwd,
            allowed_tools=WRITE_TOOLS,
            max_turns=config.fix_max_turns,
            timeout_sec=config.session_timeout_sec,
            budget_usd=config.fix_budget_usd,
        )
    except Exception as err:  # noqa: BLE001
        _log.exception("fix session crashed in %s", cwd)
        return None, 0.0, f"Fix session failed: {err}"
    if not session.ok:
        return None, session.cost_usd, f"Fix session failed: {session.error}"
    payload = extract_last_json_object(session.text)
    if payload is None or payload.get("success") is not True:
        reason = payload.get("reason") if isinstance(payload, dict) else None
        return None, session.cost_usd, str(reason or "Fix session returned no success confirmation")
    return payload, session.cost_usd, ""


def _reported_lines(payload: dict[str, Any]) -> int:
    value = payload.get("linesChanged")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


def apply_framework_fix(
    diagnostic: DiagnosticResult,
    runner: SessionRunnerProtocol,
    config: InterventorConfig,
) -> HotFixResult:
    """Fix a framework bug in the framework tree, validate it, revert on failure.

    The tree is snapshotted (tracked and untracked files) around the fix
    session; on failure exactly the changes made in between are undone.
    Edits that were already uncommitted before the session are left alone.
    """
    root = config.framework_dir
    before = worktree_snapshot(root)
    payload, cost, error = _run_fix_session(root, diagnostic, runner, config, is_framework=True)
    after = worktree_snapshot(root)
    touched = changed_since(before, after)

    if payload is None:
        reverted = False
        if touched:
            reverted, revert_output = revert_changes(root, before, after)
            _log.warning(
                "partial framework edits after failed session (%s); reverted=%s: %s",
                ", ".join(touched),
                reverted,
                revert_output,
            )
        result = _fix_failure(diagnostic, error, cost)
        result.reverted_on_failure = reverted
        return result

    reported = str(payload.get("filePath") or diagnostic.file_path or "unknown")
    rel = _relative_to(reported, root)
    top = git_toplevel(root) or root
    measured = lines_changed(top, touched)
    changed = measured or _reported_lines(payload)
    if len(touched) > 1 or changed > MAX_FIX_LINES:
        _log.warning(
            "framework fix exceeds single-file budget (%s file(s), %s lines); validating anyway",
            len(touched),
            changed,
        )

    passed, output = run_validations(root, config.validate_commands, config.validate_timeout_sec)
    if not passed:
        reverted, revert_output = revert_changes(root, before, after)
        if reverted:
            details = f"Fix applied but validation failed, reverted: {output[:500]}"
        else:
            _log.error("revert incomplete in %s: %s", root, revert_output)
            details = f"Fix applied but validation failed, revert incomplete ({revert_output[:300]}): {output[:500]}"
        _log.warning("framework fix in %s failed validation; reverted=%s", reported, reverted)
        return HotFixResult(
            success=False,
            file_path=rel or reported,
            lines_changed=changed,
            validation_passed=False,
            reverted_on_failure=reverted,
            details=details,
            session_cost_usd=cost,
        )

    return HotFixResult(
        success=True,
        file_path=rel or reported,
        lines_changed=changed,
        validation_passed=True,
        details=str(payload.get("details") or "Fix applied and validated"),
        session_cost_usd=cost,
    )


def apply_project_fix(
    project: ProjectRecord,
    diagnostic: DiagnosticResult,
    runner: SessionRunnerProtocol,
    config: InterventorConfig,
) -> HotFixResult:
    """Fix a project bug in the project's tree; the session verifies its own work."""
    root = Path(project.path)
    payload, cost, error = _run_fix_session(root, diagnostic, runner, config, is_framework=False)
    if payload is None:
        return _fix_failure(diagnostic, error, cost)
    reported = str(payload.get("filePath") or diagnostic.file_path or "unknown")
    rel = _relative_to(reported, root) or reported
    return HotFixResult(
        success=True,
        file_path=rel,
        lines_changed=lines_changed(root, [rel]) or _reported_lines(payload),
        validation_passed=True,
        details=str(payload.get("details") or "Project fix session completed"),
        session_cost_usd=cost,
    )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

@dataclass
class InterventionOutcome:
    fixed: bool
    outcome: str
    diagnostic: DiagnosticResult
    fix: HotFixResult | None = None
    propagation: list[PropagationResult] = field(default_factory=list)
    new_pid: int | None = None
    escalated: bool = False
    memory_record_id: str = ""
    memory_retrieved_ids: list[str] = field(default_factory=list)

    @property
    def propagated_to(self) -> list[str]:
        return [item.project for item in self.propagation if item.success]


class Interventor:
    """Runs the diagnose / fix / propagate pipeline for one stalled project."""

    def __init__(
        self,
        config: InterventorConfig,
        runner: SessionRunnerProtocol,
        controller: ProcessController,
        notifier: TelegramNotifier,
        propagator: Propagator,
        memory: MemoryClient | None = None,
        *,
        version_fn: Callable[[], str] | None = None,
    ) -> None:
        self.config = config
        self._runner = runner
        self._controller = controller
        self._notifier = notifier
        self._propagator = propagator
        self._memory = memory
        self._version_fn = version_fn or propagator.current_version

    def recall(self, classification: StallClassification) -> tuple[str, list[str]]:
        if self._memory is None:
            return "", []
        project = classification.project
        phase = project.current_phase if project.current_phase is not None else "unknown"
        query = f"{classification.stall_type}: {classification.details} (Phase {phase})"
        scoped = self._memory.recall(query, self._memory.container_tag(project.name))
        cross = self._memory.recall(query)
        matches = dedupe_matches([*scoped, *cross])
        if not matches:
            return "", []
        return format_matches(matches), [match.id for match in matches]

    def _store(self, classification: StallClassification, diagnostic: DiagnosticResult, fix: HotFixResult, outcome: str) -> str:
        if self._memory is None:
            return ""
        project = classification.project
        stamp = dt.datetime.now(dt.timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        record = FixRecord(
            content="\n".join(
                [
                    f"## Fix Record: {diagnostic.error_category}",
                    "",
                    f"**Error:** {classification.stall_type}: {classification.details}",
                    f"**Root Cause:** {diagnostic.root_cause}",
                    f"**Fix:** {fix.details}",
                    f"**File:** {fix.file_path}",
                    f"**Lines Changed:** {fix.lines_changed}",
                    f"**Outcome:** {outcome}",
                ]
            ),
            custom_id=f"fix_{stamp}_{diagnostic.error_category}",
            container_tag=self._memory.container_tag(project.name),
            metadata={
                "error_category": diagnostic.error_category,
                "phase": str(project.current_phase if project.current_phase is not None else 0),
                "project": project.name,
                "fix_type": "code_change",
                "bug_location": diagnostic.bug_location,
                "severity": "critical" if diagnostic.confidence == Confidence.HIGH.value else "warning",
                "resolved": "true",
            },
            entity_context=self._memory.config.entity_context,
        )
        return self._memory.store(record) or ""

    def _restart(self, project: ProjectRecord) -> int | None:
        _, spawned = self._controller.restart(project)
        if not spawned.ok:
            _log.error("restart after fix failed for %s: %s", project.name, spawned.error)
            return None
        return spawned.pid

    def _escalate(self, project: ProjectRecord, diagnostic: DiagnosticResult, fix: HotFixResult) -> None:
        result = self._notifier.send_fix_failure(project.name, project.current_phase, diagnostic, fix)
        if not result.ok:
            _log.warning("fix-failure escalation for %s not delivered: %s", project.name, result.description)

    def handle(
        self,
        classification: StallClassification,
        all_stalled: Sequence[StallClassification],
        registry: Registry,
        *,
        failed_fixes: Collection[tuple[str, str | None]] = (),
    ) -> InterventionOutcome:
        """Diagnose and, when safe, fix one stalled project.

        ``failed_fixes`` holds the (error category, file) signatures of fixes
        that already failed for this project and phase; a diagnosis matching
        one of them is escalated without another attempt.
        """
        project = classification.project
        memory_context, retrieved = self.recall(classification)

        raw = diagnose(project, classification, self._runner, self.config, memory_context or None)
        diagnostic = classify_bug_location(
            raw,
            all_stalled,
            current_project=project.name,
            framework_paths=self.config.framework_paths,
        )

        previous_fix_failed = fix_signature(diagnostic) in set(failed_fixes)
        if should_escalate(diagnostic, previous_fix_failed):
            self._escalate(
                project,
                diagnostic,
                HotFixResult(
                    success=False,
                    file_path=diagnostic.file_path or "unknown",
                    details=f"Escalated without fix attempt: {diagnostic.root_cause}",
                ),
            )
            return InterventionOutcome(
                fixed=False,
                outcome=f"Escalated: {diagnostic.root_cause}",
                diagnostic=diagnostic,
                escalated=True,
                memory_retrieved_ids=retrieved,
            )

        propagation: list[PropagationResult] = []
        new_pid: int | None = None
        if diagnostic.bug_location == BugLocation.FRAMEWORK_BUG.value:
            fix = apply_framework_fix(diagnostic, self._runner, self.config)
            if fix.success:
                current_version = self._version_fn()
                targets = self._propagator.get_outdated(registry, current_version)
                own = next((target for target in targets if target.name == project.name), None)
                if own is None:
                    own = project
                    targets.append(project)
                propagation = self._propagator.propagate(fix.file_path, targets, new_version=current_version)
                mine = next((item for item in propagation if item.project == project.name), None)
                if mine is not None and mine.restarted:
                    new_pid = own.agent_pid
                else:
                    new_pid = self._restart(project)
                reached = sum(1 for item in propagation if item.success)
                outcome = f"Fixed framework bug in {fix.file_path}, propagated to {reached} project(s)"
            else:
                outcome = ""
        else:
            fix = apply_project_fix(project, diagnostic, self._runner, self.config)
            if fix.success:
                new_pid = self._restart(project)
                outcome = f"Fixed project bug in {fix.file_path}"
            else:
                outcome = ""

        if fix.success:
            record_id = self._store(classification, diagnostic, fix, outcome)
            if new_pid is None:
                outcome += " (agent restart failed)"
            _log.info("%s: %s", project.name, outcome)
            return InterventionOutcome(
                fixed=True,
                outcome=outcome,
                diagnostic=diagnostic,
                fix=fix,
                propagation=propagation,
                new_pid=new_pid,
                memory_record_id=record_id,
                memory_retrieved_ids=retrieved,
            )

        self._escalate(project, diagnostic, fix)
        return InterventionOutcome(
            fixed=False,
            outcome=f"Escalated: fix failed: {fix.details}",
            diagnostic=diagnostic,
            fix=fix,
            escalated=True,
            memory_retrieved_ids=retrieved,
        )
