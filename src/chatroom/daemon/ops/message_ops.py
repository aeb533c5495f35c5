from __future__ import annotations

from typing import Any, Dict

from ...contracts.v1 import DaemonResponse
from ...kernel import handoff as router
from ...kernel.store import fleet_transaction, load_fleet_state, load_room_state, room_transaction
from ...util.time import utc_now_ms
from .common import arg_opt, arg_str, ok, op_handler, reliability, room_arg


@op_handler("message_send")
def handle_message_send(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    cfg = reliability()
    with room_transaction(room) as st:
        with fleet_transaction() as fleet:
            result = router.send_message(
                st,
                fleet,
                sender_role=arg_opt(args, "sender_role") or "user",
                content=arg_str(args, "content"),
                now_ms=utc_now_ms(),
                cfg=cfg,
                target_role=arg_opt(args, "target_role"),
                type=arg_opt(args, "type") or "message",
            )
    return ok(result)


@op_handler("task_started")
def handle_task_started(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    cfg = reliability()
    with room_transaction(room) as st:
        task = router.task_started(
            st,
            arg_str(args, "role"),
            now_ms=utc_now_ms(),
            cfg=cfg,
            classification=arg_opt(args, "classification"),
            task_id=arg_opt(args, "task_id"),
        )
    return ok({"task": task.model_dump()})


@op_handler("handoff")
def handle_handoff(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    cfg = reliability()
    with room_transaction(room) as st:
        with fleet_transaction() as fleet:
            result = router.handoff(
                st,
                fleet,
                sender_role=arg_str(args, "sender_role"),
                content=arg_str(args, "content"),
                target_role=arg_str(args, "target_role"),
                now_ms=utc_now_ms(),
                cfg=cfg,
            )
    # A refused handoff is a normal answer, not a daemon error.
    return ok(result)


@op_handler("handoff_options")
def handle_handoff_options(args: Dict[str, Any]) -> DaemonResponse:
    st = load_room_state(room_arg(args))
    opts = router.get_handoff_options(
        st, arg_str(args, "role"), now_ms=utc_now_ms(), cfg=reliability(), fleet=load_fleet_state()
    )
    return ok({"options": opts.model_dump()})


@op_handler("context_window")
def handle_context_window(args: Dict[str, Any]) -> DaemonResponse:
    st = load_room_state(room_arg(args))
    return ok(router.get_context_window(st))
