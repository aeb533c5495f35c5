from __future__ import annotations

from typing import Any, Dict

from ...contracts.v1 import DaemonResponse
from ...kernel import machines as daemons
from ...kernel.room import require_room
from ...kernel.store import fleet_transaction, load_fleet_state
from ...util.time import utc_now_ms
from .common import arg_opt, arg_str, ok, op_handler, reliability


@op_handler("machine_register")
def handle_machine_register(args: Dict[str, Any]) -> DaemonResponse:
    harnesses = args.get("available_harnesses")
    models = args.get("available_models")
    if harnesses is not None and not isinstance(harnesses, list):
        raise ValueError("available_harnesses must be a list")
    if models is not None and not isinstance(models, list):
        raise ValueError("available_models must be a list")
    with fleet_transaction() as fleet:
        m = daemons.register_machine(
            fleet,
            arg_str(args, "machine_id"),
            now_ms=utc_now_ms(),
            hostname=str(args.get("hostname") or ""),
            os_name=str(args.get("os") or ""),
            available_harnesses=harnesses,
            available_models=models,
        )
    return ok({"machine": m.model_dump()})


@op_handler("machine_update_daemon_status")
def handle_machine_update_daemon_status(args: Dict[str, Any]) -> DaemonResponse:
    with fleet_transaction() as fleet:
        m = daemons.update_daemon_status(
            fleet, arg_str(args, "machine_id"), connected=bool(args.get("connected")), now_ms=utc_now_ms()
        )
    return ok({"machine": m.model_dump()})


@op_handler("machine_daemon_heartbeat")
def handle_machine_daemon_heartbeat(args: Dict[str, Any]) -> DaemonResponse:
    with fleet_transaction() as fleet:
        m = daemons.daemon_heartbeat(fleet, arg_str(args, "machine_id"), now_ms=utc_now_ms())
    return ok({"machine_id": m.machine_id, "last_seen_at": m.last_seen_at})


@op_handler("machine_send_command")
def handle_machine_send_command(args: Dict[str, Any]) -> DaemonResponse:
    payload = args.get("payload")
    if payload is not None and not isinstance(payload, dict):
        raise ValueError("payload must be an object")
    if isinstance(payload, dict) and payload.get("chatroom_id"):
        require_room(str(payload.get("chatroom_id")))
    cfg = reliability()
    with fleet_transaction() as fleet:
        cmd = daemons.send_command(
            fleet, arg_str(args, "machine_id"), arg_str(args, "type"), now_ms=utc_now_ms(), cfg=cfg, payload=payload
        )
    return ok({"command": cmd.model_dump()})


@op_handler("machine_pending_commands")
def handle_machine_pending_commands(args: Dict[str, Any]) -> DaemonResponse:
    fleet = load_fleet_state()
    cmds = daemons.get_pending_commands(fleet, arg_str(args, "machine_id"))
    return ok({"commands": [c.model_dump() for c in cmds]})


@op_handler("machine_ack_command")
def handle_machine_ack_command(args: Dict[str, Any]) -> DaemonResponse:
    result = args.get("result")
    if result is not None and not isinstance(result, dict):
        raise ValueError("result must be an object")
    with fleet_transaction() as fleet:
        cmd = daemons.ack_command(
            fleet, arg_str(args, "command_id"), arg_str(args, "status"), now_ms=utc_now_ms(), result=result
        )
    return ok({"command": cmd.model_dump()})


@op_handler("machine_save_team_agent_config")
def handle_machine_save_team_agent_config(args: Dict[str, Any]) -> DaemonResponse:
    room = require_room(arg_str(args, "chatroom_id"))
    role = room.require_role(arg_str(args, "role"))
    agent_type = arg_opt(args, "type")
    if agent_type is not None and agent_type not in ("remote", "custom"):
        raise ValueError(f"invalid agent type: {agent_type}")
    with fleet_transaction() as fleet:
        c = daemons.save_team_agent_config(
            fleet,
            room.chatroom_id,
            role,
            now_ms=utc_now_ms(),
            type=agent_type,
            machine_id=arg_opt(args, "machine_id"),
            model=arg_opt(args, "model"),
            agent_harness=arg_opt(args, "agent_harness"),
            working_dir=arg_opt(args, "working_dir"),
        )
    return ok({"config": c.model_dump()})


@op_handler("machine_list")
def handle_machine_list(args: Dict[str, Any]) -> DaemonResponse:
    fleet = load_fleet_state()
    cfg = reliability()
    now = utc_now_ms()
    return ok(
        {
            "machines": [
                {**m.model_dump(), "stale": daemons.is_daemon_stale(m, now_ms=now, cfg=cfg)}
                for _, m in sorted(fleet.machines.items())
            ]
        }
    )
