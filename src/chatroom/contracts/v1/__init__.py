from __future__ import annotations

from .event import Event, EventKind
from .ipc import DaemonError, DaemonRequest, DaemonResponse, error_response
from .machine import (
    AgentType,
    CommandPayload,
    CommandStatus,
    CommandType,
    Machine,
    MachineCommand,
    TeamAgentConfig,
)
from .message import ChatMessage, HandoffOptions, HandoffRestriction, MessageType
from .participant import Participant, ParticipantStatus
from .task import (
    ALL_STATUSES,
    BUSY_STATUSES,
    TERMINAL_STATUSES,
    Classification,
    Task,
    TaskOrigin,
    TaskStatus,
)

__all__ = [
    "ALL_STATUSES",
    "AgentType",
    "BUSY_STATUSES",
    "ChatMessage",
    "Classification",
    "CommandPayload",
    "CommandStatus",
    "CommandType",
    "DaemonError",
    "DaemonRequest",
    "DaemonResponse",
    "Event",
    "EventKind",
    "HandoffOptions",
    "HandoffRestriction",
    "Machine",
    "MachineCommand",
    "MessageType",
    "Participant",
    "ParticipantStatus",
    "TERMINAL_STATUSES",
    "Task",
    "TaskOrigin",
    "TaskStatus",
    "TeamAgentConfig",
    "error_response",
]
