"""Daemon registry: machines, team agent configs and the command queue."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..contracts.v1 import CommandPayload, Machine, MachineCommand, TeamAgentConfig
from ..util.conv import norm_role, opt_str
from .errors import AgentConfigNotFound, CommandNotFound, HarnessUnavailable, MachineNotFound
from .settings import ReliabilityConfig
from .store import FleetState

logger = logging.getLogger("chatroom.machines")

ACK_STATUSES = ("processing", "completed", "failed")


def _str_list(v: Any) -> List[str]:
    if not isinstance(v, list):
        return []
    return [s for s in (str(x).strip() for x in v) if s]


def require_machine(fleet: FleetState, machine_id: str) -> Machine:
    m = fleet.machines.get(str(machine_id or "").strip())
    if m is None:
        raise MachineNotFound(f"machine not found: {machine_id}")
    return m


def is_daemon_stale(machine: Machine, *, now_ms: int, cfg: ReliabilityConfig) -> bool:
    return (not machine.daemon_connected) or (now_ms - machine.last_seen_at > cfg.daemon_heartbeat_ttl_ms)


def register_machine(
    fleet: FleetState,
    machine_id: str,
    *,
    now_ms: int,
    hostname: str = "",
    os_name: str = "",
    available_harnesses: Optional[List[str]] = None,
    available_models: Optional[List[str]] = None,
) -> Machine:
    mid = str(machine_id or "").strip()
    if not mid:
        raise ValueError("missing machine_id")
    m = fleet.machines.get(mid)
    if m is None:
        m = Machine(machine_id=mid, registered_at=now_ms, last_seen_at=now_ms)
        fleet.machines[mid] = m
        logger.info("registered machine %s", mid, extra={"machine_id": mid})
    m.hostname = hostname or m.hostname
    m.os = os_name or m.os
    if available_harnesses is not None:
        m.available_harnesses = _str_list(available_harnesses)
    if available_models is not None:
        m.available_models = _str_list(available_models)
    m.last_seen_at = now_ms
    m.daemon_connected = True
    return m


def update_daemon_status(fleet: FleetState, machine_id: str, *, connected: bool, now_ms: int) -> Machine:
    m = require_machine(fleet, machine_id)
    m.daemon_connected = bool(connected)
    if connected:
        m.last_seen_at = now_ms
    return m


def daemon_heartbeat(fleet: FleetState, machine_id: str, *, now_ms: int) -> Machine:
    m = require_machine(fleet, machine_id)
    m.last_seen_at = now_ms
    m.daemon_connected = True
    return m


def mark_stale_daemons(fleet: FleetState, *, now_ms: int, cfg: ReliabilityConfig) -> List[str]:
    out: List[str] = []
    for mid, m in sorted(fleet.machines.items()):
        if m.daemon_connected and now_ms - m.last_seen_at > cfg.daemon_heartbeat_ttl_ms:
            m.daemon_connected = False
            out.append(mid)
            logger.warning(
                "daemon on %s missed heartbeats for %sms; marked disconnected",
                mid,
                now_ms - m.last_seen_at,
                extra={"machine_id": mid},
            )
    return out


def save_team_agent_config(
    fleet: FleetState,
    chatroom_id: str,
    role: str,
    *,
    now_ms: int,
    type: Optional[str] = None,
    machine_id: Optional[str] = None,
    model: Optional[str] = None,
    agent_harness: Optional[str] = None,
    working_dir: Optional[str] = None,
) -> TeamAgentConfig:
    """Merge into the (chatroom, role) config. A missing value never erases a stored one."""
    r = norm_role(role)
    cur = fleet.agent_config(chatroom_id, r)
    if cur is None:
        cur = TeamAgentConfig(chatroom_id=chatroom_id, role=r, type=(type or "remote"), updated_at=now_ms)  # type: ignore[arg-type]
    elif type:
        cur.type = type  # type: ignore[assignment]
    if opt_str(machine_id):
        cur.machine_id = opt_str(machine_id)
    if opt_str(model):
        cur.model = opt_str(model)
    if opt_str(agent_harness):
        cur.agent_harness = opt_str(agent_harness)
    if opt_str(working_dir):
        cur.working_dir = opt_str(working_dir)
    cur.updated_at = now_ms
    fleet.put_agent_config(cur)
    return cur


def enqueue_command(fleet: FleetState, machine_id: str, type: str, payload: CommandPayload, *, now_ms: int) -> MachineCommand:
    cmd = MachineCommand(machine_id=machine_id, type=type, payload=payload, created_at=now_ms)  # type: ignore[arg-type]
    fleet.add_command(cmd)
    logger.info(
        "queued %s for %s",
        type,
        machine_id,
        extra={
            "machine_id": machine_id,
            "command_id": cmd.id,
            "chatroom_id": payload.chatroom_id,
            "role": payload.role,
        },
    )
    return cmd


def has_pending_start(fleet: FleetState, machine_id: str, chatroom_id: str, role: str) -> bool:
    r = norm_role(role)
    return any(
        c.type == "start-agent" and c.payload.chatroom_id == chatroom_id and norm_role(c.payload.role) == r
        for c in fleet.commands_for(machine_id, "pending")
    )


def send_command(
    fleet: FleetState,
    machine_id: str,
    type: str,
    *,
    now_ms: int,
    cfg: ReliabilityConfig,
    payload: Optional[Dict[str, Any]] = None,
) -> MachineCommand:
    """Explicit command from an operator or UI.

    start-agent resolves harness/working dir/model from the payload then the
    stored config, and writes the resolved values back so a later automatic
    restart reuses the same model.
    """
    machine = require_machine(fleet, machine_id)
    if type not in ("start-agent", "stop-agent", "ping", "status"):
        raise ValueError(f"invalid command type: {type}")
    p = CommandPayload.model_validate(payload or {})

    if type in ("start-agent", "stop-agent"):
        if not p.chatroom_id or not p.role:
            raise ValueError(f"{type} requires chatroom_id and role")
        p.role = norm_role(p.role)

    if type == "start-agent":
        stored = fleet.agent_config(p.chatroom_id or "", p.role or "")
        harness = p.agent_harness or (stored.agent_harness if stored else None)
        working_dir = p.working_dir or (stored.working_dir if stored else None)
        model = p.model or (stored.model if stored else None) or cfg.default_agent_model
        if not harness:
            raise AgentConfigNotFound(f"no agent harness configured for {p.role}")
        if machine.available_harnesses and harness not in machine.available_harnesses:
            raise HarnessUnavailable(
                f"harness {harness!r} is not available on {machine.machine_id}",
                details={"available": list(machine.available_harnesses)},
            )
        p.agent_harness, p.working_dir, p.model = harness, working_dir, model
        save_team_agent_config(
            fleet,
            p.chatroom_id or "",
            p.role or "",
            now_ms=now_ms,
            type="remote",
            machine_id=machine.machine_id,
            model=model,
            agent_harness=harness,
            working_dir=working_dir,
        )

    return enqueue_command(fleet, machine.machine_id, type, p, now_ms=now_ms)


def get_pending_commands(fleet: FleetState, machine_id: str) -> List[MachineCommand]:
    require_machine(fleet, machine_id)
    return sorted(fleet.commands_for(machine_id, "pending"), key=lambda c: c.created_at)


def ack_command(
    fleet: FleetState,
    command_id: str,
    status: str,
    *,
    now_ms: int,
    result: Optional[Dict[str, Any]] = None,
) -> MachineCommand:
    if status not in ACK_STATUSES:
        raise ValueError(f"invalid ack status: {status}")
    cmd = fleet.commands.get(str(command_id or "").strip())
    if cmd is None:
        raise CommandNotFound(f"command not found: {command_id}")
    fleet.set_command_status(cmd, status)
    if result is not None:
        cmd.result = dict(result)
    if status in ("completed", "failed"):
        cmd.processed_at = now_ms
    return cmd
