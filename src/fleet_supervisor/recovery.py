"""Recovery decisions and their execution.

``determine_recovery`` is a pure function of the classification and the
retry count; ceilings are parameters so the whole policy can be checked
with a table of (stall type, count) -> action.

| stall type               | action                                            |
|--------------------------|---------------------------------------------------|
| orchestrator_crashed     | restart, no ceiling                               |
| session_hung             | restart while count < 2, then escalate            |
| agent_waiting_for_input  | restart_with_preamble while count < max, escalate |
| execution_error          | diagnose (handled by the interventor)             |
| anything else            | escalate                                          |
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import ActionType, RecoveryAction, StallClassification, StallType
from .notifier import TelegramNotifier
from .process import ProcessController

SESSION_HUNG_MAX_RESTARTS = 2
STRICT_PREAMBLE = "strict"
STRICT_NO_ASK_PREAMBLE = "strict-no-ask"

_log = logging.getLogger("fleet_supervisor.recovery")


def determine_recovery(
    classification: StallClassification,
    retry_count: int,
    max_restarts: int,
    *,
    hung_max_restarts: int = SESSION_HUNG_MAX_RESTARTS,
) -> RecoveryAction:
    stall_type = str(classification.stall_type)
    if stall_type == StallType.ORCHESTRATOR_CRASHED.value:
        action = ActionType.RESTART
    elif stall_type == StallType.SESSION_HUNG.value:
        action = ActionType.ESCALATE if retry_count >= hung_max_restarts else ActionType.RESTART
    elif stall_type == StallType.AGENT_WAITING_FOR_INPUT.value:
        action = ActionType.ESCALATE if retry_count >= max_restarts else ActionType.RESTART_WITH_PREAMBLE
    elif stall_type == StallType.EXECUTION_ERROR.value:
        action = ActionType.DIAGNOSE
    else:
        action = ActionType.ESCALATE
    return RecoveryAction(type=action.value, classification=classification, retry_count=retry_count)


def preamble_for(retry_count: int) -> str:
    return STRICT_NO_ASK_PREAMBLE if retry_count >= 2 else STRICT_PREAMBLE


@dataclass(frozen=True)
class ExecutionOutcome:
    text: str
    new_pid: int | None = None
    spawned: bool = False


def execute_recovery(
    action: RecoveryAction,
    controller: ProcessController,
    notifier: TelegramNotifier,
    max_restarts: int,
) -> ExecutionOutcome:
    """Carry out restart / restart_with_preamble / escalate. Never raises."""
    project = action.project
    pid = project.agent_pid
    pid_text = pid if pid is not None else "none"

    if action.type in (ActionType.RESTART.value, ActionType.RESTART_WITH_PREAMBLE.value):
        preamble = preamble_for(action.retry_count) if action.type == ActionType.RESTART_WITH_PREAMBLE.value else None
        killed, spawned = controller.restart(project, preamble)
        kill_text = f"Killed PID {pid_text}" if killed else f"Failed to kill PID {pid_text}"
        label = f"restarted with {preamble} preamble" if preamble else "restarted agent"
        if spawned.ok:
            _log.info("%s: %s (new pid %s)", project.name, label, spawned.pid)
            return ExecutionOutcome(text=f"{kill_text}, {label} (new PID {spawned.pid})", new_pid=spawned.pid, spawned=True)
        _log.error("%s: restart failed: %s", project.name, spawned.error)
        return ExecutionOutcome(text=f"{kill_text}, failed to spawn new agent: {spawned.error}")

    if action.type == ActionType.ESCALATE.value:
        classification = action.classification
        if not notifier.configured:
            return ExecutionOutcome(text="Escalation required but no notifier configured; logged locally only")
        result = notifier.send_escalation(
            project.name,
            project.current_phase,
            str(classification.stall_type),
            classification.details,
            f"Escalated after {action.retry_count} restart(s)",
            action.retry_count,
            max_restarts,
        )
        if result.ok:
            return ExecutionOutcome(text=f"Escalated to Telegram: {classification.details}")
        return ExecutionOutcome(
            text=f"Escalation failed (Telegram error: {result.description or 'unknown'}), logged locally"
        )

    if action.type == ActionType.DIAGNOSE.value:
        return ExecutionOutcome(text="Diagnosis requested: delegated to interventor")

    if action.type == ActionType.SKIP.value:
        return ExecutionOutcome(text="No action needed")

    return ExecutionOutcome(text=f"Unknown action type: {action.type}")
