from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..contracts.v1 import ChatMessage, Participant
from ..util.conv import norm_role
from .errors import ParticipantNotFound
from .machines import is_daemon_stale
from .settings import ReliabilityConfig
from .store import FleetState, RoomState
from .tasks import promote_next_task, reset_role_tasks, role_is_busy

logger = logging.getLogger("chatroom.participants")


def get_by_role(st: RoomState, role: str) -> Optional[Participant]:
    return st.participant(role)


def list_participants(st: RoomState) -> List[Participant]:
    return [st.participants[r] for r in sorted(st.participants)]


def is_reachable(st: RoomState, role: str, *, now_ms: int, cfg: ReliabilityConfig, fleet: Optional[FleetState] = None) -> bool:
    """Live participant record and, for remote agents, a live supervising daemon."""
    p = st.participant(role)
    if p is None or p.is_ghost(now_ms):
        return False
    if fleet is None:
        return True
    agent = fleet.agent_config(st.chatroom_id, role)
    if agent is None or agent.type != "remote" or not agent.machine_id:
        return True
    machine = fleet.machines.get(agent.machine_id)
    return machine is not None and not is_daemon_stale(machine, now_ms=now_ms, cfg=cfg)


def all_roles_ready(st: RoomState, *, now_ms: int, cfg: ReliabilityConfig, fleet: Optional[FleetState] = None) -> bool:
    """Every non-entry role that has a participant record is reachable.

    A role that never joined does not block; a ghost record does.
    """
    entry = st.room.entry_point
    for role in st.room.team_roles:
        if role == entry:
            continue
        if st.participant(role) is None:
            continue
        if not is_reachable(st, role, now_ms=now_ms, cfg=cfg, fleet=fleet):
            return False
    return True


def join(
    st: RoomState,
    role: str,
    *,
    connection_id: Optional[str],
    now_ms: int,
    cfg: ReliabilityConfig,
    ready_until: Optional[int] = None,
    fleet: Optional[FleetState] = None,
) -> Dict[str, Any]:
    r = st.room.require_role(role)
    prev = st.participant(r)

    recovered: List[str] = []
    if prev is not None and prev.status == "active":
        # The agent restarted mid-task; its work goes back to the pool.
        recovered = reset_role_tasks(
            st, r, statuses=("acknowledged", "in_progress"), now_ms=now_ms, reason=f"{r} rejoined while active"
        )

    p = prev
    if p is None:
        p = Participant(chatroom_id=st.chatroom_id, role=r, joined_at=now_ms)
        st.participants[r] = p
        st.messages.append(ChatMessage(chatroom_id=st.chatroom_id, sender_role=r, type="join", created_at=now_ms))
        st.emit("participant.join", by=r, data={"connection_id": connection_id or ""})
        logger.info("%s joined", r, extra={"chatroom_id": st.chatroom_id, "role": r})

    p.status = "waiting"
    p.ready_until = ready_until if ready_until is not None else now_ms + cfg.heartbeat_ttl_ms
    p.active_until = None
    p.connection_id = connection_id or None

    promoted = None
    if r == st.room.entry_point and not role_is_busy(st, r):
        if all_roles_ready(st, now_ms=now_ms, cfg=cfg, fleet=fleet):
            promoted = promote_next_task(st, now_ms=now_ms)

    return {
        "participant": p.model_dump(),
        "recovered_task_ids": recovered,
        "promoted_task_id": promoted.id if promoted is not None else None,
    }


def leave(st: RoomState, role: str) -> Participant:
    r = norm_role(role)
    p = st.participants.pop(r, None)
    if p is None:
        raise ParticipantNotFound(f"participant not found: {role}")
    st.emit("participant.leave", by=r)
    return p


def heartbeat(
    st: RoomState, role: str, *, connection_id: Optional[str], now_ms: int, cfg: ReliabilityConfig
) -> Tuple[bool, str]:
    """Extend the participant's deadline. Stale signals are dropped, not errors."""
    p = st.participant(role)
    if p is None:
        return False, "participant_not_found"
    if (p.connection_id or None) != (connection_id or None):
        logger.debug(
            "ignoring heartbeat from superseded connection",
            extra={"chatroom_id": st.chatroom_id, "role": p.role},
        )
        return False, "connection_mismatch"
    extended = now_ms + cfg.heartbeat_ttl_ms
    if p.status == "waiting":
        p.ready_until = extended
    else:
        p.active_until = max(p.active_until or 0, extended)
    return True, ""


def update_status(
    st: RoomState,
    role: str,
    status: str,
    *,
    now_ms: int,
    cfg: ReliabilityConfig,
    expires_at: Optional[int] = None,
) -> Participant:
    p = st.participant(role)
    if p is None:
        raise ParticipantNotFound(f"participant not found: {role}")
    if status == "active":
        p.status = "active"
        p.active_until = expires_at if expires_at is not None else now_ms + cfg.active_ttl_ms
        p.ready_until = None
    elif status == "waiting":
        p.status = "waiting"
        p.ready_until = expires_at if expires_at is not None else now_ms + cfg.heartbeat_ttl_ms
        p.active_until = None
    else:
        raise ValueError(f"invalid participant status: {status}")
    return p


def remove_ghosts(st: RoomState, *, now_ms: int) -> List[Dict[str, Any]]:
    """Delete every ghost; its in_progress work goes back to pending."""
    removed: List[Dict[str, Any]] = []
    for role in sorted(st.participants):
        p = st.participants[role]
        if not p.is_ghost(now_ms):
            continue
        del st.participants[role]
        recovered = reset_role_tasks(st, role, statuses=("in_progress",), now_ms=now_ms, reason=f"{role} went stale")
        st.emit("participant.remove_ghost", by="system", data={"role": role, "recovered_task_ids": recovered})
        logger.warning(
            "removed stale participant %s (%s)",
            role,
            p.status,
            extra={"chatroom_id": st.chatroom_id, "role": role},
        )
        removed.append({"role": role, "recovered_task_ids": recovered})
    return removed
