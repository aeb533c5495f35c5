from __future__ import annotations

import uuid
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


TaskStatus = Literal[
    "backlog",
    "queued",
    "pending",
    "acknowledged",
    "in_progress",
    "pending_user_review",
    "completed",
    "closed",
]
TaskOrigin = Literal["chat", "backlog"]
Classification = Literal["question", "new_feature", "follow_up"]

TERMINAL_STATUSES: Tuple[str, ...] = ("completed", "closed")
# Statuses that occupy a role: a role holds at most one task in any of these.
BUSY_STATUSES: Tuple[str, ...] = ("pending", "acknowledged", "in_progress")
ALL_STATUSES: List[str] = [
    "backlog",
    "queued",
    "pending",
    "acknowledged",
    "in_progress",
    "pending_user_review",
    "completed",
    "closed",
]


def new_task_id() -> str:
    return "t_" + uuid.uuid4().hex[:16]


class Task(BaseModel):
    v: int = 1
    id: str = Field(default_factory=new_task_id)
    chatroom_id: str
    content: str
    created_by: str
    origin: TaskOrigin = "chat"
    status: TaskStatus
    # Role the task is routed to; survives resets so the task finds its way back.
    target_role: str
    assigned_to: Optional[str] = None
    classification: Optional[Classification] = None
    queue_position: Optional[int] = None
    source_message_id: Optional[str] = None
    feedback: Optional[str] = None
    acknowledged_at: Optional[int] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    created_at: int
    updated_at: int

    model_config = ConfigDict(extra="ignore")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
