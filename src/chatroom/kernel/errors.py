"""Kernel error types.

Precondition failures in the task/participant/machine operations are normal
races between agents (two claims, a start after a sweep reset, ...). They
abort the owning transaction, which then writes nothing. The daemon maps
`code` onto DaemonError.code.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ChatroomError(Exception):
    code = "chatroom_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})


class ChatroomNotFound(ChatroomError):
    code = "chatroom_not_found"


class TaskNotFound(ChatroomError):
    code = "task_not_found"


class NoPendingTask(ChatroomError):
    code = "no_pending_task"


class NoAcknowledgedTask(ChatroomError):
    code = "no_acknowledged_task"


class NoInProgressTask(ChatroomError):
    code = "no_in_progress_task"


class InvalidTransition(ChatroomError):
    code = "invalid_transition"


class TaskLimitReached(ChatroomError):
    code = "task_limit_reached"


class ClassificationRequired(ChatroomError):
    code = "classification_required"


class AlreadyClassified(ChatroomError):
    code = "already_classified"


class ParticipantNotFound(ChatroomError):
    code = "participant_not_found"


class InvalidRole(ChatroomError):
    code = "invalid_role"


class MachineNotFound(ChatroomError):
    code = "machine_not_found"


class CommandNotFound(ChatroomError):
    code = "command_not_found"


class AgentConfigNotFound(ChatroomError):
    code = "agent_config_not_found"


class HarnessUnavailable(ChatroomError):
    code = "harness_unavailable"
