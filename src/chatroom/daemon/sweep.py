"""Reconciliation sweep for chatroomd.

Runs on a fixed interval from the daemon's background thread and on demand
(`cleanup_stale_agents`). Each pass, in order:

1. Fleet: daemons past their heartbeat TTL are marked disconnected.
2. Per chatroom, in one transaction:
   a. ghost participants are deleted and their in_progress work reset;
   b. acknowledged tasks whose assignee is gone are reset once their
      acknowledgement timeout passes;
   c. pending tasks nobody picked up within their timeout get their role
      restarted (remote agents) or a warning (custom agents);
   d. queued tasks whose role is idle are promoted once every role is ready.

Every write is decided from state read inside the same transaction, so
overlapping passes are harmless. A failing chatroom is logged and retried on
the next pass; the sweep itself never raises.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..kernel.dispatch import auto_restart_offline_agent
from ..kernel.machines import mark_stale_daemons
from ..kernel.participants import all_roles_ready, is_reachable, remove_ghosts
from ..kernel.room import Room, list_room_ids, load_room
from ..kernel.settings import ReliabilityConfig, load_reliability_config
from ..kernel.store import FleetState, RoomState, fleet_transaction, room_transaction
from ..kernel.tasks import promote_next_task, reset_stuck_task
from ..util.time import utc_now_ms

logger = logging.getLogger("chatroom.sweep")


@dataclass
class SweepSummary:
    machines_marked_stale: List[str] = field(default_factory=list)
    participants_removed: List[Dict[str, Any]] = field(default_factory=list)
    tasks_recovered: List[str] = field(default_factory=list)
    tasks_promoted: List[str] = field(default_factory=list)
    restarts_requested: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    failed_chatrooms: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machines_marked_stale": list(self.machines_marked_stale),
            "participants_removed": list(self.participants_removed),
            "tasks_recovered": list(self.tasks_recovered),
            "tasks_promoted": list(self.tasks_promoted),
            "restarts_requested": list(self.restarts_requested),
            "warnings": list(self.warnings),
            "failed_chatrooms": list(self.failed_chatrooms),
        }

    @property
    def changed(self) -> bool:
        return bool(
            self.machines_marked_stale
            or self.participants_removed
            or self.tasks_recovered
            or self.tasks_promoted
            or self.restarts_requested
        )


class SweepManager:
    """Finds and repairs state left behind by agents and daemons that went away."""

    def tick(self, *, home: Optional[Path] = None, now_ms: Optional[int] = None, cfg: Optional[ReliabilityConfig] = None) -> SweepSummary:
        # `home` is accepted for symmetry with the daemon loop; paths resolve via CHATROOM_HOME.
        now = utc_now_ms() if now_ms is None else int(now_ms)
        c = cfg or load_reliability_config()
        summary = SweepSummary()

        try:
            with fleet_transaction() as fleet:
                summary.machines_marked_stale = mark_stale_daemons(fleet, now_ms=now, cfg=c)
        except Exception:
            logger.exception("sweep: fleet pass failed")

        for cid in list_room_ids():
            room = load_room(cid)
            if room is None:
                continue
            try:
                self._tick_room(room, now, c, summary)
            except Exception:
                summary.failed_chatrooms.append(cid)
                logger.exception("sweep: chatroom pass failed", extra={"chatroom_id": cid})

        if summary.changed:
            logger.info(
                "sweep: stale_daemons=%d ghosts=%d recovered=%d promoted=%d restarts=%d",
                len(summary.machines_marked_stale),
                len(summary.participants_removed),
                len(summary.tasks_recovered),
                len(summary.tasks_promoted),
                len(summary.restarts_requested),
            )
        return summary

    def _tick_room(self, room: Room, now: int, cfg: ReliabilityConfig, summary: SweepSummary) -> None:
        with room_transaction(room) as st:
            with fleet_transaction() as fleet:
                self._remove_ghosts(st, now, summary)
                self._recover_acknowledged(st, now, cfg, summary)
                self._restart_for_pending(st, fleet, now, cfg, summary)
                self._promote_idle_queue(st, fleet, now, cfg, summary)
            if st.events:
                st.emit("sweep.pass", by="system", data={"ts_ms": now})

    def _remove_ghosts(self, st: RoomState, now: int, summary: SweepSummary) -> None:
        for item in remove_ghosts(st, now_ms=now):
            summary.participants_removed.append({"chatroom_id": st.chatroom_id, "role": item["role"]})
            summary.tasks_recovered.extend(item["recovered_task_ids"])

    def _recover_acknowledged(self, st: RoomState, now: int, cfg: ReliabilityConfig, summary: SweepSummary) -> None:
        for t in list(st.tasks.values()):
            if t.status != "acknowledged" or t.acknowledged_at is None:
                continue
            if now - t.acknowledged_at <= cfg.task_acknowledged_timeout_ms:
                continue
            p = st.participant(t.assigned_to or t.target_role)
            if p is not None and not p.is_ghost(now):
                continue
            reset_stuck_task(st, t, now_ms=now, reason="acknowledged but never started")
            summary.tasks_recovered.append(t.id)

    def _restart_for_pending(
        self, st: RoomState, fleet: FleetState, now: int, cfg: ReliabilityConfig, summary: SweepSummary
    ) -> None:
        seen: set = set()
        for t in sorted(st.tasks.values(), key=lambda x: x.created_at):
            if t.status != "pending" or t.target_role in seen:
                continue
            if now - t.updated_at <= cfg.task_pending_timeout_ms:
                continue
            if is_reachable(st, t.target_role, now_ms=now, cfg=cfg, fleet=fleet):
                continue
            seen.add(t.target_role)
            extra = {"chatroom_id": st.chatroom_id, "role": t.target_role, "task_id": t.id}

            agent = fleet.agent_config(st.chatroom_id, t.target_role)
            if agent is None:
                logger.info("pending task has no live agent and no agent config", extra=extra)
                continue
            if agent.type == "custom":
                logger.warning("pending task waiting on a custom agent that is offline; restart it manually", extra=extra)
                summary.warnings.append({"chatroom_id": st.chatroom_id, "role": t.target_role, "task_id": t.id})
                continue
            res = auto_restart_offline_agent(fleet, st.chatroom_id, t.target_role, now_ms=now, cfg=cfg, trigger="sweep")
            if res.requested:
                summary.restarts_requested.append({"chatroom_id": st.chatroom_id, "role": t.target_role, **res.to_dict()})

    def _promote_idle_queue(
        self, st: RoomState, fleet: FleetState, now: int, cfg: ReliabilityConfig, summary: SweepSummary
    ) -> None:
        if not any(t.status == "queued" for t in st.tasks.values()):
            return
        if not all_roles_ready(st, now_ms=now, cfg=cfg, fleet=fleet):
            return
        while True:
            promoted = promote_next_task(st, now_ms=now)
            if promoted is None:
                return
            summary.tasks_promoted.append(promoted.id)
