"""Auto-restart for offline remote agents.

Any number of triggers (message to an offline role, handoff, sweep) for the
same (machine, chatroom, role) collapse into one pending stop-agent + start-agent pair
until the daemon acknowledges the start. Nothing here touches tasks.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..contracts.v1 import CommandPayload
from ..util.conv import norm_role, opt_str
from .machines import enqueue_command, has_pending_start, is_daemon_stale
from .settings import ReliabilityConfig
from .store import FleetState

logger = logging.getLogger("chatroom.dispatch")


@dataclass
class DispatchResult:
    requested: bool
    reason: str = ""
    machine_id: Optional[str] = None
    command_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "reason": self.reason,
            "machine_id": self.machine_id,
            "command_ids": list(self.command_ids),
        }


def auto_restart_offline_agent(
    fleet: FleetState,
    chatroom_id: str,
    role: str,
    *,
    now_ms: int,
    cfg: ReliabilityConfig,
    model: Optional[str] = None,
    trigger: str = "",
) -> DispatchResult:
    r = norm_role(role)
    log_extra = {"chatroom_id": chatroom_id, "role": r, "trigger": trigger}

    agent = fleet.agent_config(chatroom_id, r)
    if agent is None:
        return DispatchResult(False, "no_agent_config")
    if agent.type != "remote":
        return DispatchResult(False, "not_remote")
    mid = agent.machine_id
    if not mid:
        return DispatchResult(False, "no_machine")

    if has_pending_start(fleet, mid, chatroom_id, r):
        logger.debug("restart already pending", extra={**log_extra, "machine_id": mid})
        return DispatchResult(False, "already_pending", machine_id=mid)

    machine = fleet.machines.get(mid)
    if machine is None or is_daemon_stale(machine, now_ms=now_ms, cfg=cfg):
        # Queued commands would never be picked up; the next pass retries.
        logger.info("daemon offline; restart deferred", extra={**log_extra, "machine_id": mid})
        return DispatchResult(False, "daemon_offline", machine_id=mid)

    harness = agent.agent_harness
    if harness and machine.available_harnesses and harness not in machine.available_harnesses:
        logger.warning(
            "harness %s not available on %s; cannot restart",
            harness,
            mid,
            extra={**log_extra, "machine_id": mid},
        )
        return DispatchResult(False, "harness_unavailable", machine_id=mid)

    resolved_model = opt_str(model) or agent.model or cfg.default_agent_model
    payload = CommandPayload(
        chatroom_id=chatroom_id,
        role=r,
        model=resolved_model,
        agent_harness=harness,
        working_dir=agent.working_dir,
    )
    stop = enqueue_command(fleet, mid, "stop-agent", payload.model_copy(), now_ms=now_ms)
    start = enqueue_command(fleet, mid, "start-agent", payload.model_copy(), now_ms=now_ms)
    logger.warning(
        "requested restart of %s on %s (model=%s)",
        r,
        mid,
        resolved_model,
        extra={**log_extra, "machine_id": mid, "command_id": start.id},
    )
    return DispatchResult(True, "", machine_id=mid, command_ids=[stop.id, start.id])
