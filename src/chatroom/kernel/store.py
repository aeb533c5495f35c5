"""File-backed state with serializable single-writer transactions.

Two lock domains:

- chatroom: rooms/<id>/state/room.json (tasks, participants, messages)
- fleet:    fleet/fleet.json (machines, team agent configs, commands)

A transaction holds the domain's lockfile, loads the document, yields the
live state object and writes it back atomically only when the block exits
cleanly. An exception anywhere in the block leaves the file untouched.
Lock order is always chatroom then fleet.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..contracts.v1 import ChatMessage, Machine, MachineCommand, Participant, Task, TeamAgentConfig
from ..paths import fleet_dir
from ..util.conv import norm_role
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from .ledger import append_event
from .room import Room

logger = logging.getLogger("chatroom.store")

# Finished commands kept for inspection; pending/processing are never pruned.
MAX_FINISHED_COMMANDS = 500
# Chat history kept in room.json. Messages an open task still points at are kept past the cap.
MAX_MESSAGES = 500


@dataclass
class RoomState:
    room: Room
    tasks: Dict[str, Task] = field(default_factory=dict)
    participants: Dict[str, Participant] = field(default_factory=dict)
    messages: List[ChatMessage] = field(default_factory=list)
    queue_counter: int = 0
    # Ledger events buffered until the transaction commits.
    events: List[Tuple[str, str, Dict[str, Any]]] = field(default_factory=list)

    @property
    def chatroom_id(self) -> str:
        return self.room.chatroom_id

    def emit(self, kind: str, *, by: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.events.append((kind, by, dict(data or {})))

    def next_queue_position(self) -> int:
        self.queue_counter += 1
        return self.queue_counter

    def tasks_for_role(self, role: str, statuses: Iterable[str]) -> List[Task]:
        r = norm_role(role)
        wanted = set(statuses)
        return [t for t in self.tasks.values() if t.target_role == r and t.status in wanted]

    def participant(self, role: str) -> Optional[Participant]:
        return self.participants.get(norm_role(role))

    def find_message(self, message_id: Optional[str]) -> Optional[ChatMessage]:
        if not message_id:
            return None
        for m in reversed(self.messages):
            if m.id == message_id:
                return m
        return None

    def _prune_messages(self) -> None:
        excess = len(self.messages) - MAX_MESSAGES
        if excess <= 0:
            return
        pinned = set()
        for t in self.tasks.values():
            if t.is_terminal or not t.source_message_id:
                continue
            pinned.add(t.source_message_id)
            src = self.find_message(t.source_message_id)
            if src is not None and src.task_origin_message_id:
                pinned.add(src.task_origin_message_id)
        head = [m for m in self.messages[:excess] if m.id in pinned]
        self.messages = head + self.messages[excess:]
        logger.debug("trimmed %d messages", excess - len(head), extra={"chatroom_id": self.chatroom_id})

    def to_doc(self) -> Dict[str, Any]:
        self._prune_messages()
        return {
            "v": 1,
            "chatroom_id": self.chatroom_id,
            "queue_counter": self.queue_counter,
            "tasks": {tid: t.model_dump() for tid, t in self.tasks.items()},
            "participants": {r: p.model_dump() for r, p in self.participants.items()},
            "messages": [m.model_dump() for m in self.messages],
        }


def _room_state_from_doc(room: Room, doc: Dict[str, Any]) -> RoomState:
    st = RoomState(room=room)
    st.queue_counter = int(doc.get("queue_counter") or 0)
    for tid, raw in (doc.get("tasks") or {}).items():
        st.tasks[str(tid)] = Task.model_validate(raw)
    for role, raw in (doc.get("participants") or {}).items():
        st.participants[norm_role(role)] = Participant.model_validate(raw)
    for raw in doc.get("messages") or []:
        st.messages.append(ChatMessage.model_validate(raw))
    return st


def load_room_state(room: Room) -> RoomState:
    """Read-only snapshot (no lock). Writes must go through room_transaction."""
    return _room_state_from_doc(room, read_json(room.state_path))


def _flush_events(room: Room, events: List[Tuple[str, str, Dict[str, Any]]]) -> None:
    for kind, by, data in events:
        try:
            append_event(room.ledger_path, kind=kind, chatroom_id=room.chatroom_id, by=by, data=data)
        except OSError:
            logger.exception("ledger append failed", extra={"chatroom_id": room.chatroom_id})


@contextmanager
def room_transaction(room: Room) -> Iterator[RoomState]:
    with locked(room.lock_path):
        st = load_room_state(room)
        yield st
        atomic_write_json(room.state_path, st.to_doc())
        events, st.events = st.events, []
        _flush_events(room, events)


def _config_key(chatroom_id: str, role: str) -> str:
    return f"{chatroom_id}/{norm_role(role)}"


@dataclass
class FleetState:
    machines: Dict[str, Machine] = field(default_factory=dict)
    agent_configs: Dict[str, TeamAgentConfig] = field(default_factory=dict)
    commands: Dict[str, MachineCommand] = field(default_factory=dict)
    # (machine_id, status) -> command ids in creation order.
    _by_machine_status: Dict[Tuple[str, str], List[str]] = field(default_factory=dict)

    def agent_config(self, chatroom_id: str, role: str) -> Optional[TeamAgentConfig]:
        return self.agent_configs.get(_config_key(chatroom_id, role))

    def put_agent_config(self, cfg: TeamAgentConfig) -> None:
        self.agent_configs[_config_key(cfg.chatroom_id, cfg.role)] = cfg

    def add_command(self, cmd: MachineCommand) -> None:
        self.commands[cmd.id] = cmd
        self._by_machine_status.setdefault((cmd.machine_id, cmd.status), []).append(cmd.id)

    def set_command_status(self, cmd: MachineCommand, status: str) -> None:
        ids = self._by_machine_status.get((cmd.machine_id, cmd.status))
        if ids and cmd.id in ids:
            ids.remove(cmd.id)
        cmd.status = status  # type: ignore[assignment]
        self._by_machine_status.setdefault((cmd.machine_id, status), []).append(cmd.id)

    def commands_for(self, machine_id: str, status: str) -> List[MachineCommand]:
        ids = self._by_machine_status.get((machine_id, status)) or []
        return [self.commands[i] for i in ids if i in self.commands]

    def _prune_finished(self) -> None:
        finished = [c for c in self.commands.values() if c.status in ("completed", "failed")]
        if len(finished) <= MAX_FINISHED_COMMANDS:
            return
        finished.sort(key=lambda c: (c.processed_at or c.created_at))
        for c in finished[: len(finished) - MAX_FINISHED_COMMANDS]:
            self.commands.pop(c.id, None)
            ids = self._by_machine_status.get((c.machine_id, c.status))
            if ids and c.id in ids:
                ids.remove(c.id)

    def to_doc(self) -> Dict[str, Any]:
        self._prune_finished()
        return {
            "v": 1,
            "machines": {mid: m.model_dump() for mid, m in self.machines.items()},
            "agent_configs": {k: c.model_dump() for k, c in self.agent_configs.items()},
            "commands": [c.model_dump() for c in sorted(self.commands.values(), key=lambda c: c.created_at)],
        }


def _fleet_path():
    return fleet_dir() / "fleet.json"


def load_fleet_state() -> FleetState:
    """Read-only snapshot (no lock). Writes must go through fleet_transaction."""
    doc = read_json(_fleet_path())
    fs = FleetState()
    for mid, raw in (doc.get("machines") or {}).items():
        fs.machines[str(mid)] = Machine.model_validate(raw)
    for raw in (doc.get("agent_configs") or {}).values():
        fs.put_agent_config(TeamAgentConfig.model_validate(raw))
    for raw in doc.get("commands") or []:
        fs.add_command(MachineCommand.model_validate(raw))
    return fs


@contextmanager
def fleet_transaction() -> Iterator[FleetState]:
    with locked(fleet_dir() / ".lock"):
        fs = load_fleet_state()
        yield fs
        atomic_write_json(_fleet_path(), fs.to_doc())
