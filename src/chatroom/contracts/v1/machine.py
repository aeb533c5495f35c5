from __future__ import annotations

import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


AgentType = Literal["remote", "custom"]
CommandType = Literal["start-agent", "stop-agent", "ping", "status"]
CommandStatus = Literal["pending", "processing", "completed", "failed"]


def new_command_id() -> str:
    return "cmd_" + uuid.uuid4().hex[:16]


class Machine(BaseModel):
    """A registered daemon that can start/stop agent processes on its host."""

    v: int = 1
    machine_id: str
    hostname: str = ""
    os: str = ""
    available_harnesses: List[str] = Field(default_factory=list)
    available_models: List[str] = Field(default_factory=list)
    registered_at: int
    last_seen_at: int
    daemon_connected: bool = True

    model_config = ConfigDict(extra="ignore")


class TeamAgentConfig(BaseModel):
    """How a (chatroom, role) is hosted. Only `remote` agents can be restarted."""

    v: int = 1
    chatroom_id: str
    role: str
    type: AgentType = "remote"
    machine_id: Optional[str] = None
    model: Optional[str] = None
    agent_harness: Optional[str] = None
    working_dir: Optional[str] = None
    updated_at: int

    model_config = ConfigDict(extra="ignore")


class CommandPayload(BaseModel):
    chatroom_id: Optional[str] = None
    role: Optional[str] = None
    model: Optional[str] = None
    agent_harness: Optional[str] = None
    working_dir: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class MachineCommand(BaseModel):
    v: int = 1
    id: str = Field(default_factory=new_command_id)
    machine_id: str
    type: CommandType
    payload: CommandPayload = Field(default_factory=CommandPayload)
    status: CommandStatus = "pending"
    result: Optional[Dict[str, Any]] = None
    created_at: int
    processed_at: Optional[int] = None

    model_config = ConfigDict(extra="ignore")
