"""Message routing, task classification and role-to-role handoffs.

The router works on a chatroom state and, when it may need to wake an
offline agent, the fleet state; callers hold both transactions
(chatroom first). Routing refusals are returned as data so the agent can be
told where to go instead; they never raise.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..contracts.v1 import ChatMessage, HandoffOptions, HandoffRestriction, Task
from ..util.conv import norm_role
from .dispatch import auto_restart_offline_agent
from .errors import AlreadyClassified, ClassificationRequired, InvalidRole, NoAcknowledgedTask, NoInProgressTask
from .participants import all_roles_ready, is_reachable
from .room import USER_ROLE
from .settings import ReliabilityConfig
from .store import FleetState, RoomState
from .tasks import complete_task, create_task, get_active_task, start_task

logger = logging.getLogger("chatroom.handoff")

CLASSIFICATIONS = ("question", "new_feature", "follow_up")
MESSAGE_TYPES = ("message", "handoff", "join", "interrupt")


def _origin_message_id(st: RoomState, task: Task) -> Optional[str]:
    src = st.find_message(task.source_message_id)
    return src.task_origin_message_id if src is not None else None


def effective_classification(st: RoomState, task: Task) -> Optional[str]:
    """A follow-up inherits the classification of the message it continues."""
    if task.classification != "follow_up":
        return task.classification
    origin = st.find_message(_origin_message_id(st, task))
    return origin.classification if origin is not None else None


def _maybe_dispatch(
    st: RoomState, fleet: Optional[FleetState], role: str, *, now_ms: int, cfg: ReliabilityConfig, trigger: str
) -> Optional[Dict[str, Any]]:
    if fleet is None or role == USER_ROLE:
        return None
    if is_reachable(st, role, now_ms=now_ms, cfg=cfg, fleet=fleet):
        return None
    return auto_restart_offline_agent(fleet, st.chatroom_id, role, now_ms=now_ms, cfg=cfg, trigger=trigger).to_dict()


def send_message(
    st: RoomState,
    fleet: Optional[FleetState],
    *,
    sender_role: str,
    content: str,
    now_ms: int,
    cfg: ReliabilityConfig,
    target_role: Optional[str] = None,
    type: str = "message",
) -> Dict[str, Any]:
    room = st.room
    sender = room.require_role(sender_role, allow_user=True)
    if type not in MESSAGE_TYPES:
        raise ValueError(f"invalid message type: {type}")
    if target_role:
        target: Optional[str] = room.require_role(target_role, allow_user=True)
    elif sender == USER_ROLE:
        target = room.entry_point
    else:
        target = None

    msg = ChatMessage(
        chatroom_id=st.chatroom_id,
        sender_role=sender,
        content=content,
        target_role=target,
        type=type,  # type: ignore[arg-type]
        created_at=now_ms,
    )
    st.messages.append(msg)
    st.emit("message.send", by=sender, data={"message_id": msg.id, "target_role": target or "", "type": type})

    task_id = None
    dispatch = None
    if sender == USER_ROLE and type == "message" and target and target != USER_ROLE:
        task = create_task(
            st,
            content=content,
            created_by=USER_ROLE,
            now_ms=now_ms,
            cfg=cfg,
            target_role=target,
            source_message_id=msg.id,
        )
        task_id = task.id
        dispatch = _maybe_dispatch(st, fleet, target, now_ms=now_ms, cfg=cfg, trigger="message")

    return {"message": msg.model_dump(), "task_id": task_id, "dispatch": dispatch}


def task_started(
    st: RoomState,
    role: str,
    *,
    now_ms: int,
    cfg: ReliabilityConfig,
    classification: Optional[str] = None,
    task_id: Optional[str] = None,
) -> Task:
    r = st.room.require_role(role)
    acked = st.tasks_for_role(r, ("acknowledged",))
    if not acked or (task_id and acked[0].id != task_id):
        raise NoAcknowledgedTask(f"no acknowledged task for {r}", details={"task_id": task_id or ""})
    task = acked[0]

    if classification is not None and classification not in CLASSIFICATIONS:
        raise ValueError(f"invalid classification: {classification}")
    if classification and task.classification and task.classification != classification:
        raise AlreadyClassified(
            f"task {task.id} is already classified as {task.classification}",
            details={"classification": task.classification},
        )

    src = st.find_message(task.source_message_id)
    from_user = src is not None and src.sender_role == USER_ROLE
    if r == st.room.entry_point and from_user and not task.classification and not classification:
        raise ClassificationRequired(f"{r} must classify the user's message before starting it")

    start_task(st, r, now_ms=now_ms, cfg=cfg)

    if classification and not task.classification:
        task.classification = classification  # type: ignore[assignment]
        if src is not None:
            src.classification = classification  # type: ignore[assignment]
            if classification == "follow_up":
                src.task_origin_message_id = _latest_classified_user_message_id(st, exclude=src.id)
                if src.task_origin_message_id is None:
                    logger.info(
                        "follow_up without an earlier classified request",
                        extra={"chatroom_id": st.chatroom_id, "role": r, "task_id": task.id},
                    )
    return task


def _latest_classified_user_message_id(st: RoomState, *, exclude: str) -> Optional[str]:
    for m in reversed(st.messages):
        if m.id == exclude:
            continue
        if m.sender_role == USER_ROLE and m.type == "message" and m.classification in ("question", "new_feature"):
            return m.id
    return None


def _restriction_to_user(st: RoomState, sender: str, task: Optional[Task]) -> Optional[HandoffRestriction]:
    room = st.room
    review_roles = room.review_roles
    if task is not None and review_roles and effective_classification(st, task) == "new_feature":
        reviewed = sender in review_roles or norm_role(task.created_by) in review_roles
        if not reviewed:
            target = review_roles[0]
            return HandoffRestriction(
                message=f"new_feature work must go through {target} before it is returned to the user",
                suggested_target=target,
            )
    entry = room.entry_point
    if len(room.team_roles) > 2 and sender != entry:
        return HandoffRestriction(
            message=f"Cannot hand off directly to user; only {entry} reports back to the user",
            suggested_target=entry,
        )
    return None


def handoff(
    st: RoomState,
    fleet: Optional[FleetState],
    *,
    sender_role: str,
    content: str,
    target_role: str,
    now_ms: int,
    cfg: ReliabilityConfig,
) -> Dict[str, Any]:
    room = st.room
    sender = room.require_role(sender_role)
    running = st.tasks_for_role(sender, ("in_progress",))
    if not running:
        raise NoInProgressTask(f"{sender} has no in_progress task to hand off")
    task = running[0]
    target = room.require_role(target_role, allow_user=True)
    if target == sender:
        raise InvalidRole(f"{sender} cannot hand off to itself")

    if target == USER_ROLE:
        restriction = _restriction_to_user(st, sender, task)
        if restriction is not None:
            logger.info(
                "handoff %s -> user refused; suggest %s",
                sender,
                restriction.suggested_target,
                extra={"chatroom_id": st.chatroom_id, "role": sender, "task_id": task.id},
            )
            return {"success": False, "error": restriction.model_dump()}

    promote = target == USER_ROLE and all_roles_ready(st, now_ms=now_ms, cfg=cfg, fleet=fleet)
    _, promoted = complete_task(st, sender, now_ms=now_ms, promote=promote)

    p = st.participant(sender)
    if p is not None:
        p.status = "waiting"
        p.ready_until = now_ms + cfg.heartbeat_ttl_ms
        p.active_until = None

    msg = ChatMessage(
        chatroom_id=st.chatroom_id,
        sender_role=sender,
        content=content,
        target_role=target,
        type="handoff",
        classification=task.classification,
        task_origin_message_id=_origin_message_id(st, task),
        created_at=now_ms,
    )
    st.messages.append(msg)
    st.emit("message.handoff", by=sender, data={"message_id": msg.id, "task_id": task.id, "target_role": target})

    new_task_id = None
    dispatch = None
    if target != USER_ROLE:
        new_task = create_task(
            st,
            content=content,
            created_by=sender,
            now_ms=now_ms,
            cfg=cfg,
            target_role=target,
            source_message_id=msg.id,
            classification=task.classification,
        )
        new_task_id = new_task.id
        dispatch = _maybe_dispatch(st, fleet, target, now_ms=now_ms, cfg=cfg, trigger="handoff")

    return {
        "success": True,
        "completed_task_id": task.id,
        "new_task_id": new_task_id,
        "message_id": msg.id,
        "promoted_task_id": promoted.id if promoted is not None else None,
        "dispatch": dispatch,
    }


def get_handoff_options(
    st: RoomState,
    role: str,
    *,
    now_ms: int,
    cfg: ReliabilityConfig,
    fleet: Optional[FleetState] = None,
) -> HandoffOptions:
    room = st.room
    r = room.require_role(role)
    task = get_active_task(st, r)
    restriction = _restriction_to_user(st, r, task)

    available: List[str] = []
    for other in room.team_roles:
        if other == r:
            continue
        p = st.participant(other)
        if p is None or p.status != "waiting":
            continue
        if is_reachable(st, other, now_ms=now_ms, cfg=cfg, fleet=fleet):
            available.append(other)

    return HandoffOptions(
        role=r,
        classification=effective_classification(st, task) if task is not None else None,
        can_handoff_to_user=restriction is None,
        restriction_reason=restriction.message if restriction is not None else None,
        suggested_target=restriction.suggested_target if restriction is not None else None,
        available_roles=available,
        team_roles=room.team_roles,
        entry_point=room.entry_point,
    )


def get_context_window(st: RoomState) -> Dict[str, Any]:
    """The latest non-follow-up user request and everything after it."""
    start = 0
    origin: Optional[ChatMessage] = None
    for i in range(len(st.messages) - 1, -1, -1):
        m = st.messages[i]
        if m.sender_role == USER_ROLE and m.type == "message" and m.classification != "follow_up":
            start, origin = i, m
            break
    return {
        "origin_message": origin.model_dump() if origin is not None else None,
        "classification": origin.classification if origin is not None else None,
        "messages": [m.model_dump() for m in st.messages[start:]],
    }
