"""Task Store ops. Every mutation runs inside one chatroom transaction."""
from __future__ import annotations

from typing import Any, Dict

from ...contracts.v1 import DaemonResponse
from ...kernel import tasks as task_store
from ...kernel.participants import all_roles_ready
from ...kernel.store import load_fleet_state, load_room_state, room_transaction
from ...util.conv import coerce_int
from ...util.time import utc_now_ms
from .common import arg_opt, arg_str, ok, op_handler, reliability, room_arg


def _dump(task) -> Dict[str, Any]:
    return task.model_dump()


@op_handler("task_create")
def handle_task_create(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    content = arg_str(args, "content")
    cfg = reliability()
    with room_transaction(room) as st:
        task = task_store.create_task(
            st,
            content=content,
            created_by=arg_opt(args, "created_by") or "user",
            now_ms=utc_now_ms(),
            cfg=cfg,
            is_backlog=bool(args.get("is_backlog", False)),
            target_role=arg_opt(args, "target_role"),
        )
    return ok({"task": _dump(task)})


@op_handler("task_move_to_queue")
def handle_task_move_to_queue(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    task_id = arg_str(args, "task_id")
    cfg = reliability()
    fleet = load_fleet_state()
    with room_transaction(room) as st:
        now = utc_now_ms()
        task = task_store.move_to_queue(st, task_id, now_ms=now)
        promoted = None
        if all_roles_ready(st, now_ms=now, cfg=cfg, fleet=fleet):
            promoted = task_store.promote_next_task(st, now_ms=now)
    return ok({"task": _dump(task), "promoted_task_id": promoted.id if promoted else None})


@op_handler("task_claim")
def handle_task_claim(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    role = arg_str(args, "role")
    with room_transaction(room) as st:
        task = task_store.claim_task(st, role, now_ms=utc_now_ms())
    return ok({"task": _dump(task)})


@op_handler("task_start")
def handle_task_start(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    role = arg_str(args, "role")
    cfg = reliability()
    with room_transaction(room) as st:
        task = task_store.start_task(st, role, now_ms=utc_now_ms(), cfg=cfg)
    return ok({"task": _dump(task)})


@op_handler("task_complete")
def handle_task_complete(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    role = arg_str(args, "role")
    cfg = reliability()
    fleet = load_fleet_state()
    with room_transaction(room) as st:
        now = utc_now_ms()
        ready = all_roles_ready(st, now_ms=now, cfg=cfg, fleet=fleet)
        task, promoted = task_store.complete_task(st, role, now_ms=now, promote=ready)
    return ok({"task": _dump(task), "promoted_task_id": promoted.id if promoted else None})


@op_handler("task_mark_backlog_complete")
def handle_task_mark_backlog_complete(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    with room_transaction(room) as st:
        task = task_store.mark_backlog_complete(st, arg_str(args, "task_id"), now_ms=utc_now_ms())
    return ok({"task": _dump(task)})


@op_handler("task_close_backlog")
def handle_task_close_backlog(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    with room_transaction(room) as st:
        task = task_store.close_backlog_task(st, arg_str(args, "task_id"), now_ms=utc_now_ms())
    return ok({"task": _dump(task)})


@op_handler("task_send_back_for_rework")
def handle_task_send_back_for_rework(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    with room_transaction(room) as st:
        task = task_store.send_back_for_rework(
            st, arg_str(args, "task_id"), now_ms=utc_now_ms(), feedback=str(args.get("feedback") or "")
        )
    return ok({"task": _dump(task)})


@op_handler("task_cancel")
def handle_task_cancel(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    task_id = arg_str(args, "task_id")
    cfg = reliability()
    fleet = load_fleet_state()
    with room_transaction(room) as st:
        now = utc_now_ms()
        ready = all_roles_ready(st, now_ms=now, cfg=cfg, fleet=fleet)
        task, promoted = task_store.cancel_task(
            st, task_id, now_ms=now, by=arg_opt(args, "by") or "user", promote=ready
        )
    return ok({"task": _dump(task), "promoted_task_id": promoted.id if promoted else None})


@op_handler("task_pending_for_role")
def handle_task_pending_for_role(args: Dict[str, Any]) -> DaemonResponse:
    st = load_room_state(room_arg(args))
    items = task_store.get_pending_tasks_for_role(st, arg_str(args, "role"))
    return ok({"tasks": [_dump(t) for t in items]})


@op_handler("task_list")
def handle_task_list(args: Dict[str, Any]) -> DaemonResponse:
    st = load_room_state(room_arg(args))
    items = task_store.list_tasks(
        st,
        status_filter=arg_opt(args, "status"),
        limit=coerce_int(args.get("limit"), default=50, minimum=1),
    )
    return ok({"tasks": [_dump(t) for t in items]})


@op_handler("task_counts")
def handle_task_counts(args: Dict[str, Any]) -> DaemonResponse:
    st = load_room_state(room_arg(args))
    return ok({"counts": task_store.get_task_counts(st)})
