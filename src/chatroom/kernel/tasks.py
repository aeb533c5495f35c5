"""Task Store operations.

Pure functions over a RoomState loaded inside `room_transaction`. They raise
ChatroomError subclasses on failed preconditions; the caller's transaction
then writes nothing.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from ..contracts.v1 import ALL_STATUSES, BUSY_STATUSES, Task
from ..util.conv import norm_role
from .errors import NoAcknowledgedTask, NoInProgressTask, NoPendingTask, TaskLimitReached, TaskNotFound
from .settings import ReliabilityConfig
from .store import RoomState
from .task_fsm import transition_task

logger = logging.getLogger("chatroom.tasks")

LIST_LIMIT_MAX = 100


def _move(st: RoomState, task: Task, to: str, *, trigger: str, now_ms: int, by: str = "system", **kw) -> Task:
    src = task.status
    transition_task(task, to, trigger=trigger, now_ms=now_ms, **kw)
    st.emit("task.transition", by=by, data={"task_id": task.id, "from": src, "to": to, "trigger": trigger})
    return task


def get_task(st: RoomState, task_id: str) -> Task:
    t = st.tasks.get(str(task_id or "").strip())
    if t is None:
        raise TaskNotFound(f"task not found: {task_id}")
    return t


def role_is_busy(st: RoomState, role: str) -> bool:
    return bool(st.tasks_for_role(role, BUSY_STATUSES))


def get_active_task(st: RoomState, role: str) -> Optional[Task]:
    """The task the role is working on (acknowledged or in_progress), if any."""
    found = st.tasks_for_role(role, ("acknowledged", "in_progress"))
    return found[0] if found else None


def create_task(
    st: RoomState,
    *,
    content: str,
    created_by: str,
    now_ms: int,
    cfg: ReliabilityConfig,
    is_backlog: bool = False,
    target_role: Optional[str] = None,
    source_message_id: Optional[str] = None,
    classification: Optional[str] = None,
) -> Task:
    room = st.room
    role = room.require_role(target_role) if target_role else room.entry_point
    if not role:
        raise ValueError("chatroom has no team roles")

    open_count = sum(1 for t in st.tasks.values() if not t.is_terminal)
    if open_count >= cfg.max_active_tasks:
        raise TaskLimitReached(
            f"chatroom already has {open_count} open tasks",
            details={"limit": cfg.max_active_tasks},
        )

    if is_backlog:
        status, qpos = "backlog", None
    elif role_is_busy(st, role):
        status, qpos = "queued", st.next_queue_position()
    else:
        status, qpos = "pending", None

    task = Task(
        chatroom_id=st.chatroom_id,
        content=content,
        created_by=norm_role(created_by) or "user",
        origin="backlog" if is_backlog else "chat",
        status=status,  # type: ignore[arg-type]
        target_role=role,
        queue_position=qpos,
        source_message_id=source_message_id,
        classification=classification,  # type: ignore[arg-type]
        created_at=now_ms,
        updated_at=now_ms,
    )
    st.tasks[task.id] = task
    st.emit(
        "task.create",
        by=task.created_by,
        data={"task_id": task.id, "status": status, "origin": task.origin, "target_role": role},
    )
    logger.info(
        "task %s created as %s for %s",
        task.id,
        status,
        role,
        extra={"chatroom_id": st.chatroom_id, "role": role, "task_id": task.id},
    )
    return task


def move_to_queue(st: RoomState, task_id: str, *, now_ms: int) -> Task:
    task = get_task(st, task_id)
    return _move(st, task, "queued", trigger="moveToQueue", now_ms=now_ms, by="user", queue_position=st.next_queue_position())


def claim_task(st: RoomState, role: str, *, now_ms: int) -> Task:
    r = st.room.require_role(role)
    pending = sorted(st.tasks_for_role(r, ("pending",)), key=lambda t: t.created_at)
    if not pending:
        raise NoPendingTask(f"no pending task for {r}")
    return _move(st, pending[0], "acknowledged", trigger="claimTask", now_ms=now_ms, by=r, assigned_to=r)


def start_task(st: RoomState, role: str, *, now_ms: int, cfg: ReliabilityConfig) -> Task:
    r = st.room.require_role(role)
    acked = st.tasks_for_role(r, ("acknowledged",))
    if not acked:
        raise NoAcknowledgedTask(f"no acknowledged task for {r}")
    task = _move(st, acked[0], "in_progress", trigger="startTask", now_ms=now_ms, by=r)

    p = st.participant(r)
    if p is not None:
        p.status = "active"
        p.active_until = now_ms + cfg.active_ttl_ms
        p.ready_until = None
    return task


def complete_task(st: RoomState, role: str, *, now_ms: int, promote: bool = True) -> Tuple[Task, Optional[Task]]:
    """Finish the role's in_progress task; optionally promote the next queued one.

    `promote` is the caller's readiness verdict (see participants.all_roles_ready).
    """
    r = st.room.require_role(role)
    running = st.tasks_for_role(r, ("in_progress",))
    if not running:
        raise NoInProgressTask(f"no in_progress task for {r}")
    task = running[0]
    to = "completed" if task.origin == "chat" else "pending_user_review"
    _move(st, task, to, trigger="completeTask", now_ms=now_ms, by=r)
    promoted = promote_next_task(st, now_ms=now_ms) if promote else None
    return task, promoted


def mark_backlog_complete(st: RoomState, task_id: str, *, now_ms: int) -> Task:
    return _move(st, get_task(st, task_id), "completed", trigger="markBacklogComplete", now_ms=now_ms, by="user")


def close_backlog_task(st: RoomState, task_id: str, *, now_ms: int) -> Task:
    return _move(st, get_task(st, task_id), "closed", trigger="closeBacklogTask", now_ms=now_ms, by="user")


def send_back_for_rework(st: RoomState, task_id: str, *, now_ms: int, feedback: str = "") -> Task:
    task = get_task(st, task_id)
    if task.status != "pending_user_review":
        # Let transition_task produce the error with the valid targets.
        return _move(st, task, "pending", trigger="sendBackForRework", now_ms=now_ms, by="user")
    fb = (feedback or "").strip()
    if fb:
        task.feedback = fb
    if role_is_busy(st, task.target_role):
        return _move(
            st,
            task,
            "queued",
            trigger="sendBackForRework",
            now_ms=now_ms,
            by="user",
            queue_position=st.next_queue_position(),
        )
    return _move(st, task, "pending", trigger="sendBackForRework", now_ms=now_ms, by="user")


def cancel_task(
    st: RoomState, task_id: str, *, now_ms: int, by: str = "user", promote: bool = True
) -> Tuple[Task, Optional[Task]]:
    """Close a task. Cancelling the task that held its role frees the queue like a completion does.

    `promote` is the caller's readiness verdict, as for complete_task.
    """
    task = get_task(st, task_id)
    freed = task.status in BUSY_STATUSES
    _move(st, task, "closed", trigger="cancelTask", now_ms=now_ms, by=by)
    promoted = promote_next_task(st, now_ms=now_ms) if (promote and freed) else None
    return task, promoted


def promote_next_task(st: RoomState, *, now_ms: int) -> Optional[Task]:
    """queued -> pending for the lowest queue position whose role is idle."""
    queued = sorted(
        (t for t in st.tasks.values() if t.status == "queued"),
        key=lambda t: (t.queue_position if t.queue_position is not None else 0, t.created_at),
    )
    for t in queued:
        if role_is_busy(st, t.target_role):
            continue
        return _move(st, t, "pending", trigger="promoteNextTask", now_ms=now_ms)
    return None


def reset_stuck_task(st: RoomState, task: Task, *, now_ms: int, reason: str) -> Task:
    logger.warning(
        "resetting task %s (%s) to pending: %s",
        task.id,
        task.status,
        reason,
        extra={"chatroom_id": st.chatroom_id, "role": task.target_role, "task_id": task.id},
    )
    return _move(st, task, "pending", trigger="resetStuckTask", now_ms=now_ms)


def reset_role_tasks(st: RoomState, role: str, *, statuses: Tuple[str, ...], now_ms: int, reason: str) -> List[str]:
    out: List[str] = []
    for t in st.tasks_for_role(role, statuses):
        reset_stuck_task(st, t, now_ms=now_ms, reason=reason)
        out.append(t.id)
    return out


def get_pending_tasks_for_role(st: RoomState, role: str) -> List[Task]:
    r = st.room.require_role(role)
    return sorted(st.tasks_for_role(r, ("pending",)), key=lambda t: t.created_at)


def list_tasks(st: RoomState, *, status_filter: Optional[str] = None, limit: int = 50) -> List[Task]:
    n = max(1, min(int(limit or 50), LIST_LIMIT_MAX))
    f = (status_filter or "").strip()
    if not f:
        items = list(st.tasks.values())
    elif f == "active":
        items = [t for t in st.tasks.values() if not t.is_terminal]
    elif f in ALL_STATUSES:
        items = [t for t in st.tasks.values() if t.status == f]
    else:
        raise ValueError(f"unknown status filter: {f}")
    big = 1 << 62
    items.sort(key=lambda t: (t.queue_position if t.queue_position is not None else big, t.created_at))
    return items[:n]


def get_task_counts(st: RoomState) -> Dict[str, int]:
    counts = {s: 0 for s in ALL_STATUSES}
    for t in st.tasks.values():
        counts[t.status] = counts.get(t.status, 0) + 1
    return counts
