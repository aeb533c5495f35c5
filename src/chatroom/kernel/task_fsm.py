"""Task lifecycle transitions.

Both origins share one status enum but walk different graphs. Every status
change goes through `transition_task`, which checks the edge against the
task's origin and the named trigger and applies the field rules for the
target status.
"""
from __future__ import annotations

import logging
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..contracts.v1 import TERMINAL_STATUSES, Task
from .errors import InvalidTransition

logger = logging.getLogger("chatroom.tasks")

_NON_TERMINAL = ("backlog", "queued", "pending", "acknowledged", "in_progress", "pending_user_review")

Edge = Tuple[str, str, str]  # (from, to, trigger)

_SHARED: List[Edge] = [
    ("queued", "pending", "promoteNextTask"),
    ("pending", "acknowledged", "claimTask"),
    ("acknowledged", "in_progress", "startTask"),
    ("acknowledged", "pending", "resetStuckTask"),
    ("in_progress", "pending", "resetStuckTask"),
]

_CHAT: List[Edge] = _SHARED + [
    ("in_progress", "completed", "completeTask"),
]

_BACKLOG: List[Edge] = _SHARED + [
    ("backlog", "queued", "moveToQueue"),
    ("in_progress", "pending_user_review", "completeTask"),
    ("pending_user_review", "completed", "markBacklogComplete"),
    ("pending_user_review", "closed", "closeBacklogTask"),
    ("pending_user_review", "queued", "sendBackForRework"),
    ("pending_user_review", "pending", "sendBackForRework"),
]


def _index(edges: List[Edge]) -> Dict[Tuple[str, str], FrozenSet[str]]:
    out: Dict[Tuple[str, str], set] = {}
    for src, dst, trig in edges:
        out.setdefault((src, dst), set()).add(trig)
    for src in _NON_TERMINAL:
        out.setdefault((src, "closed"), set()).add("cancelTask")
    return {k: frozenset(v) for k, v in out.items()}


TRANSITIONS: Dict[str, Dict[Tuple[str, str], FrozenSet[str]]] = {
    "chat": _index(_CHAT),
    "backlog": _index(_BACKLOG),
}


def valid_targets(origin: str, status: str) -> List[str]:
    table = TRANSITIONS.get(origin) or {}
    return sorted({dst for (src, dst) in table if src == status})


def can_transition(origin: str, status: str, to: str, trigger: str) -> bool:
    trigs = (TRANSITIONS.get(origin) or {}).get((status, to))
    return bool(trigs) and trigger in trigs  # type: ignore[operator]


def transition_task(
    task: Task,
    to: str,
    *,
    trigger: str,
    now_ms: int,
    assigned_to: Optional[str] = None,
    queue_position: Optional[int] = None,
) -> Task:
    src = task.status
    if not can_transition(task.origin, src, to, trigger):
        raise InvalidTransition(
            f"cannot move {task.origin} task {task.id} from {src} to {to} via {trigger}",
            details={"task_id": task.id, "status": src, "to": to, "trigger": trigger, "valid": valid_targets(task.origin, src)},
        )

    if to == "acknowledged":
        if not assigned_to:
            raise ValueError("assigned_to is required when acknowledging a task")
        task.assigned_to = assigned_to
        task.acknowledged_at = now_ms
    elif to == "in_progress":
        task.started_at = now_ms
    else:
        task.assigned_to = None
        task.acknowledged_at = None
        if to in ("backlog", "queued", "pending"):
            task.started_at = None

    if to == "queued":
        if queue_position is None:
            raise ValueError("queue_position is required when queueing a task")
        task.queue_position = queue_position
    else:
        task.queue_position = None

    if to in TERMINAL_STATUSES or to == "pending_user_review":
        task.completed_at = now_ms
    elif to in ("queued", "pending"):
        task.completed_at = None

    task.status = to  # type: ignore[assignment]
    task.updated_at = now_ms

    logger.info(
        "task %s: %s -> %s",
        task.id,
        src,
        to,
        extra={"chatroom_id": task.chatroom_id, "role": task.target_role, "task_id": task.id, "trigger": trigger},
    )
    return task
