from __future__ import annotations

import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .task import Classification


MessageType = Literal["message", "handoff", "join", "interrupt"]


def new_message_id() -> str:
    return "m_" + uuid.uuid4().hex[:16]


class ChatMessage(BaseModel):
    v: int = 1
    id: str = Field(default_factory=new_message_id)
    chatroom_id: str
    sender_role: str
    content: str = ""
    target_role: Optional[str] = None
    type: MessageType = "message"
    classification: Optional[Classification] = None
    # For follow-ups: the classified user message this one continues.
    task_origin_message_id: Optional[str] = None
    created_at: int

    model_config = ConfigDict(extra="ignore")


class HandoffRestriction(BaseModel):
    """Returned (not raised) when a handoff is refused by routing rules."""

    code: str = "handoff_restricted"
    message: str
    suggested_target: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class HandoffOptions(BaseModel):
    """Facts a prompt/text generator needs to describe the caller's handoff choices."""

    role: str
    classification: Optional[Classification] = None
    can_handoff_to_user: bool = True
    restriction_reason: Optional[str] = None
    suggested_target: Optional[str] = None
    available_roles: List[str] = Field(default_factory=list)
    team_roles: List[str] = Field(default_factory=list)
    entry_point: Optional[str] = None

    model_config = ConfigDict(extra="forbid")
