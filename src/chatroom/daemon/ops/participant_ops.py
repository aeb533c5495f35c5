from __future__ import annotations

from typing import Any, Dict

from ...contracts.v1 import DaemonResponse
from ...kernel import participants as registry
from ...kernel.errors import ParticipantNotFound
from ...kernel.store import load_fleet_state, load_room_state, room_transaction
from ...util.time import utc_now_ms
from .common import arg_opt, arg_opt_int, arg_str, ok, op_handler, reliability, room_arg


@op_handler("participant_join")
def handle_participant_join(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    role = arg_str(args, "role")
    cfg = reliability()
    fleet = load_fleet_state()
    with room_transaction(room) as st:
        result = registry.join(
            st,
            role,
            connection_id=arg_opt(args, "connection_id"),
            now_ms=utc_now_ms(),
            cfg=cfg,
            ready_until=arg_opt_int(args, "ready_until"),
            fleet=fleet,
        )
    return ok(result)


@op_handler("participant_leave")
def handle_participant_leave(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    with room_transaction(room) as st:
        p = registry.leave(st, arg_str(args, "role"))
    return ok({"role": p.role})


@op_handler("participant_heartbeat")
def handle_participant_heartbeat(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    role = arg_str(args, "role")
    cfg = reliability()
    with room_transaction(room) as st:
        applied, reason = registry.heartbeat(
            st, role, connection_id=arg_opt(args, "connection_id"), now_ms=utc_now_ms(), cfg=cfg
        )
    return ok({"applied": applied, "reason": reason})


@op_handler("participant_update_status")
def handle_participant_update_status(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    cfg = reliability()
    with room_transaction(room) as st:
        p = registry.update_status(
            st,
            arg_str(args, "role"),
            arg_str(args, "status"),
            now_ms=utc_now_ms(),
            cfg=cfg,
            expires_at=arg_opt_int(args, "expires_at"),
        )
    return ok({"participant": p.model_dump()})


@op_handler("participant_get")
def handle_participant_get(args: Dict[str, Any]) -> DaemonResponse:
    st = load_room_state(room_arg(args))
    role = arg_str(args, "role")
    p = registry.get_by_role(st, role)
    if p is None:
        raise ParticipantNotFound(f"participant not found: {role}")
    now = utc_now_ms()
    return ok({"participant": p.model_dump(), "ghost": p.is_ghost(now)})


@op_handler("participant_list")
def handle_participant_list(args: Dict[str, Any]) -> DaemonResponse:
    st = load_room_state(room_arg(args))
    cfg = reliability()
    fleet = load_fleet_state()
    now = utc_now_ms()
    return ok(
        {
            "participants": [
                {
                    **p.model_dump(),
                    "ghost": p.is_ghost(now),
                    "reachable": registry.is_reachable(st, p.role, now_ms=now, cfg=cfg, fleet=fleet),
                }
                for p in registry.list_participants(st)
            ],
            "all_roles_ready": registry.all_roles_ready(st, now_ms=now, cfg=cfg, fleet=fleet),
        }
    )
