from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


ParticipantStatus = Literal["active", "waiting"]


class Participant(BaseModel):
    """One live agent seat in a chatroom, keyed by role."""

    v: int = 1
    chatroom_id: str
    role: str
    status: ParticipantStatus = "waiting"
    connection_id: Optional[str] = None
    ready_until: Optional[int] = None
    active_until: Optional[int] = None
    joined_at: int

    model_config = ConfigDict(extra="ignore")

    def is_ghost(self, now_ms: int) -> bool:
        """Past its own deadline: the agent behind it stopped signalling."""
        if self.status == "waiting":
            return self.ready_until is not None and self.ready_until < now_ms
        return self.active_until is not None and self.active_until < now_ms
