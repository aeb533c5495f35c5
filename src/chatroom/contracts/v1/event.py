from __future__ import annotations

import uuid
from typing import Any, Dict, Literal

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


EventKind = Literal[
    "chatroom.create",
    "task.create",
    "task.transition",
    "participant.join",
    "participant.leave",
    "participant.remove_ghost",
    "message.send",
    "message.handoff",
    "sweep.pass",
]


class Event(BaseModel):
    """One ledger line. `by` is the role (or "system") that caused it."""

    v: int = 1
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    ts: str = Field(default_factory=utc_now_iso)
    kind: EventKind
    chatroom_id: str
    by: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")
