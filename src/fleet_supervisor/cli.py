"""CLI entrypoint for the fleet supervisor."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .audit import AuditLog
from .config import InterventorConfig, MemoryConfig, SupervisorConfig, describe, merged_environment
from .interventor import Interventor
from .memory import create_memory_client
from .models import Registry
from .monitor import Monitor, SupervisorLockError
from .notifier import TelegramNotifier
from .process import ProcessController
from .propagator import Propagator
from .registry import RegistryStore
from .session import SessionRunner
from .version import framework_version

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )


def build_monitor(
    config: SupervisorConfig,
    interventor_config: InterventorConfig,
    memory_config: MemoryConfig,
) -> Monitor:
    controller = ProcessController(config.agent_command, grace_sec=config.kill_grace_sec)
    notifier = TelegramNotifier(config.telegram_token, config.telegram_chat_id)
    propagator = Propagator(
        interventor_config.framework_dir,
        controller,
        framework_paths=interventor_config.framework_paths,
    )
    interventor = Interventor(
        interventor_config,
        SessionRunner(interventor_config.session_command, interventor_config.session_model),
        controller,
        notifier,
        propagator,
        create_memory_client(memory_config),
    )
    return Monitor(
        config,
        RegistryStore(config.registry_file),
        controller,
        notifier,
        interventor,
        AuditLog(config.audit_log_file),
    )


def render_status(registry: Registry) -> str:
    if not registry.projects:
        return "No projects registered."
    header = f"{'PROJECT':<24} {'STATUS':<9} {'PHASE':>5} {'PID':>8}  {'VERSION':<12} HEARTBEAT"
    rows = [header]
    for record in sorted(registry.projects.values(), key=lambda item: item.name):
        phase = "-" if record.current_phase is None else str(record.current_phase)
        pid = "-" if record.agent_pid is None else str(record.agent_pid)
        rows.append(
            f"{record.name:<24} {record.status:<9} {phase:>5} {pid:>8}  {record.framework_version:<12} "
            f"{record.heartbeat or '-'}"
        )
    return "\n".join(rows)


def _summary(registry: Registry) -> dict[str, Any]:
    counts: dict[str, int] = {}
    for record in registry.projects.values():
        counts[record.status] = counts.get(record.status, 0) + 1
    return {"projects": len(registry.projects), "by_status": counts, "last_updated": registry.last_updated}


def _check(
    config: SupervisorConfig,
    interventor_config: InterventorConfig,
    memory_config: MemoryConfig,
) -> dict[str, Any]:
    notifier = TelegramNotifier(config.telegram_token, config.telegram_chat_id)
    telegram: dict[str, Any] = {"configured": notifier.configured}
    if notifier.configured:
        me = notifier.get_me()
        telegram["ok"] = me.ok
        if me.ok and isinstance(me.result, dict):
            telegram["bot"] = me.result.get("username", "")
        elif not me.ok:
            telegram["error"] = me.description
    memory_client = create_memory_client(memory_config)
    memory: dict[str, Any] = {"configured": memory_client is not None}
    if memory_client is not None:
        memory["ok"] = memory_client.health()
    ok = all(section.get("ok", True) for section in (telegram, memory))
    return {
        "ok": ok,
        "telegram": telegram,
        "memory": memory,
        "framework_version": framework_version(interventor_config.framework_dir, interventor_config.framework_paths),
        "supervisor": describe(config),
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Fleet supervisor for autonomous build agents")
    parser.add_argument("--env-file", default="", help="optional KEY=VALUE env file")
    parser.add_argument("--log-level", default="INFO", help="logging level (default INFO)")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("start", help="run the monitor loop until interrupted")
    sub.add_parser("run-once", help="run exactly one monitor cycle")
    status = sub.add_parser("status", help="prune dead agents and list projects")
    status.add_argument("--json", action="store_true")
    sub.add_parser("prune", help="mark projects with dead agent PIDs as idle")
    sub.add_parser("check", help="check notifier and memory connectivity")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    env = merged_environment(Path(args.env_file).expanduser() if args.env_file else None)
    config = SupervisorConfig.from_env(env)
    interventor_config = InterventorConfig.from_env(env)
    memory_config = MemoryConfig.from_env(env)

    try:
        if args.command == "start":
            return build_monitor(config, interventor_config, memory_config).start()
        if args.command == "run-once":
            result = build_monitor(config, interventor_config, memory_config).run_once()
            print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
            return 0
        if args.command == "status":
            registry = RegistryStore(config.registry_file).prune_dead()
            if args.json:
                print(json.dumps(registry.to_dict(), indent=2, sort_keys=True))
            else:
                print(render_status(registry))
            return 0
        if args.command == "prune":
            registry = RegistryStore(config.registry_file).prune_dead()
            print(json.dumps(_summary(registry), indent=2, sort_keys=True))
            return 0
        if args.command == "check":
            payload = _check(config, interventor_config, memory_config)
            print(json.dumps(payload, indent=2, sort_keys=True))
            return 0 if payload["ok"] else 1
    except SupervisorLockError as err:
        print(json.dumps({"ok": False, "error": str(err), "command": args.command}, indent=2, sort_keys=True))
        return 1
    except (RuntimeError, ValueError, OSError) as err:
        print(
            json.dumps(
                {
                    "ok": False,
                    "error": str(err),
                    "command": args.command,
                    "registry": str(config.registry_file),
                },
                indent=2,
                sort_keys=True,
            )
        )
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
