from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ... import __version__
from ...daemon.server import call_daemon
from ...paths import ensure_home


class CreateChatroomRequest(BaseModel):
    team_roles: List[str]
    title: str = Field(default="")
    team_id: str = Field(default="")
    team_entry_point: Optional[str] = None
    review_roles: Optional[List[str]] = None
    by: str = Field(default="user")


class SendMessageRequest(BaseModel):
    content: str
    sender_role: str = Field(default="user")
    target_role: Optional[str] = None
    type: Literal["message", "handoff", "join", "interrupt"] = Field(default="message")


class HandoffRequest(BaseModel):
    sender_role: str
    target_role: str
    content: str


class TaskStartedRequest(BaseModel):
    classification: Optional[Literal["question", "new_feature", "follow_up"]] = None
    task_id: Optional[str] = None


class JoinRequest(BaseModel):
    connection_id: Optional[str] = None
    ready_until: Optional[int] = None


class HeartbeatRequest(BaseModel):
    connection_id: Optional[str] = None


class RegisterMachineRequest(BaseModel):
    machine_id: str
    hostname: str = Field(default="")
    os: str = Field(default="")
    available_harnesses: List[str] = Field(default_factory=list)
    available_models: List[str] = Field(default_factory=list)


class DaemonStatusRequest(BaseModel):
    connected: bool


class SendCommandRequest(BaseModel):
    type: Literal["start-agent", "stop-agent", "ping", "status"]
    payload: Dict[str, Any] = Field(default_factory=dict)


class AckCommandRequest(BaseModel):
    status: Literal["processing", "completed", "failed"]
    result: Optional[Dict[str, Any]] = None


class AgentConfigRequest(BaseModel):
    type: Optional[Literal["remote", "custom"]] = None
    machine_id: Optional[str] = None
    model: Optional[str] = None
    agent_harness: Optional[str] = None
    working_dir: Optional[str] = None


def _require_token_if_configured(request: Request) -> Optional[JSONResponse]:
    token = str(os.environ.get("CHATROOM_WEB_TOKEN") or "").strip()
    if not token:
        return None
    auth = str(request.headers.get("authorization") or "").strip()
    if auth != f"Bearer {token}":
        return JSONResponse(
            status_code=401,
            content={"ok": False, "error": {"code": "unauthorized", "message": "missing/invalid token", "details": {}}},
        )
    return None


def _daemon(req: Dict[str, Any]) -> Dict[str, Any]:
    resp = call_daemon(req)
    if not resp.get("ok") and isinstance(resp.get("error"), dict) and resp["error"].get("code") == "daemon_unavailable":
        raise HTTPException(status_code=503, detail={"code": "daemon_unavailable", "message": "chatroomd unavailable"})
    return resp


def create_app() -> FastAPI:
    app = FastAPI(title="chatroom web", version=__version__)

    @app.middleware("http")
    async def _auth(request: Request, call_next):  # type: ignore[no-untyped-def]
        blocked = _require_token_if_configured(request)
        if blocked is not None:
            return blocked
        return await call_next(request)

    @app.get("/api/v1/ping")
    async def ping() -> Dict[str, Any]:
        home = ensure_home()
        resp = _daemon({"op": "ping"})
        return {"ok": True, "result": {"home": str(home), "daemon": resp.get("result", {}), "version": __version__}}

    @app.get("/api/v1/health")
    async def health() -> Dict[str, Any]:
        daemon_ok = bool(call_daemon({"op": "ping"}).get("ok", False))
        return {
            "ok": daemon_ok,
            "result": {"version": __version__, "daemon": "running" if daemon_ok else "stopped"},
        }

    # Chatrooms

    @app.get("/api/v1/chatrooms")
    async def chatrooms() -> Dict[str, Any]:
        return _daemon({"op": "chatrooms"})

    @app.post("/api/v1/chatrooms")
    async def chatroom_create(req: CreateChatroomRequest) -> Dict[str, Any]:
        return _daemon({"op": "chatroom_create", "args": req.model_dump()})

    @app.get("/api/v1/chatrooms/{chatroom_id}")
    async def chatroom_show(chatroom_id: str) -> Dict[str, Any]:
        return _daemon({"op": "chatroom_show", "args": {"chatroom_id": chatroom_id}})

    @app.post("/api/v1/chatrooms/{chatroom_id}/messages")
    async def message_send(chatroom_id: str, req: SendMessageRequest) -> Dict[str, Any]:
        return _daemon({"op": "message_send", "args": {"chatroom_id": chatroom_id, **req.model_dump()}})

    @app.post("/api/v1/chatrooms/{chatroom_id}/handoff")
    async def handoff(chatroom_id: str, req: HandoffRequest) -> Dict[str, Any]:
        return _daemon({"op": "handoff", "args": {"chatroom_id": chatroom_id, **req.model_dump()}})

    @app.get("/api/v1/chatrooms/{chatroom_id}/context")
    async def context_window(chatroom_id: str) -> Dict[str, Any]:
        return _daemon({"op": "context_window", "args": {"chatroom_id": chatroom_id}})

    @app.get("/api/v1/chatrooms/{chatroom_id}/ledger")
    async def ledger_tail(chatroom_id: str, limit: int = 50) -> Dict[str, Any]:
        return _daemon({"op": "ledger_tail", "args": {"chatroom_id": chatroom_id, "limit": limit}})

    @app.get("/api/v1/chatrooms/{chatroom_id}/tasks")
    async def task_list(chatroom_id: str, status: str = "", limit: int = 50) -> Dict[str, Any]:
        return _daemon({"op": "task_list", "args": {"chatroom_id": chatroom_id, "status": status, "limit": limit}})

    @app.get("/api/v1/chatrooms/{chatroom_id}/tasks/counts")
    async def task_counts(chatroom_id: str) -> Dict[str, Any]:
        return _daemon({"op": "task_counts", "args": {"chatroom_id": chatroom_id}})

    # Agent-facing (per role)

    @app.post("/api/v1/chatrooms/{chatroom_id}/roles/{role}/join")
    async def participant_join(chatroom_id: str, role: str, req: JoinRequest) -> Dict[str, Any]:
        return _daemon({"op": "participant_join", "args": {"chatroom_id": chatroom_id, "role": role, **req.model_dump()}})

    @app.post("/api/v1/chatrooms/{chatroom_id}/roles/{role}/heartbeat")
    async def participant_heartbeat(chatroom_id: str, role: str, req: HeartbeatRequest) -> Dict[str, Any]:
        return _daemon(
            {"op": "participant_heartbeat", "args": {"chatroom_id": chatroom_id, "role": role, **req.model_dump()}}
        )

    @app.post("/api/v1/chatrooms/{chatroom_id}/roles/{role}/claim")
    async def task_claim(chatroom_id: str, role: str) -> Dict[str, Any]:
        return _daemon({"op": "task_claim", "args": {"chatroom_id": chatroom_id, "role": role}})

    @app.post("/api/v1/chatrooms/{chatroom_id}/roles/{role}/started")
    async def task_started(chatroom_id: str, role: str, req: TaskStartedRequest) -> Dict[str, Any]:
        return _daemon({"op": "task_started", "args": {"chatroom_id": chatroom_id, "role": role, **req.model_dump()}})

    @app.get("/api/v1/chatrooms/{chatroom_id}/roles/{role}/handoff_options")
    async def handoff_options(chatroom_id: str, role: str) -> Dict[str, Any]:
        return _daemon({"op": "handoff_options", "args": {"chatroom_id": chatroom_id, "role": role}})

    @app.post("/api/v1/chatrooms/{chatroom_id}/roles/{role}/agent_config")
    async def save_agent_config(chatroom_id: str, role: str, req: AgentConfigRequest) -> Dict[str, Any]:
        return _daemon(
            {
                "op": "machine_save_team_agent_config",
                "args": {"chatroom_id": chatroom_id, "role": role, **req.model_dump()},
            }
        )

    # Machine daemons

    @app.get("/api/v1/machines")
    async def machines() -> Dict[str, Any]:
        return _daemon({"op": "machine_list"})

    @app.post("/api/v1/machines")
    async def machine_register(req: RegisterMachineRequest) -> Dict[str, Any]:
        return _daemon({"op": "machine_register", "args": req.model_dump()})

    @app.post("/api/v1/machines/{machine_id}/heartbeat")
    async def machine_heartbeat(machine_id: str) -> Dict[str, Any]:
        return _daemon({"op": "machine_daemon_heartbeat", "args": {"machine_id": machine_id}})

    @app.post("/api/v1/machines/{machine_id}/status")
    async def machine_status(machine_id: str, req: DaemonStatusRequest) -> Dict[str, Any]:
        return _daemon(
            {"op": "machine_update_daemon_status", "args": {"machine_id": machine_id, "connected": req.connected}}
        )

    @app.get("/api/v1/machines/{machine_id}/commands")
    async def pending_commands(machine_id: str) -> Dict[str, Any]:
        return _daemon({"op": "machine_pending_commands", "args": {"machine_id": machine_id}})

    @app.post("/api/v1/machines/{machine_id}/commands")
    async def send_command(machine_id: str, req: SendCommandRequest) -> Dict[str, Any]:
        return _daemon(
            {"op": "machine_send_command", "args": {"machine_id": machine_id, "type": req.type, "payload": req.payload}}
        )

    @app.post("/api/v1/commands/{command_id}/ack")
    async def ack_command(command_id: str, req: AckCommandRequest) -> Dict[str, Any]:
        return _daemon(
            {"op": "machine_ack_command", "args": {"command_id": command_id, "status": req.status, "result": req.result}}
        )

    @app.post("/api/v1/sweep")
    async def sweep() -> Dict[str, Any]:
        return _daemon({"op": "cleanup_stale_agents"})

    return app
