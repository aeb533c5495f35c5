from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class DaemonRequest(BaseModel):
    """One JSON line sent to chatroomd: `{"op": ..., "args": {...}}`."""

    v: int = 1
    op: str
    args: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class DaemonError(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class DaemonResponse(BaseModel):
    v: int = 1
    ok: bool
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[DaemonError] = None

    model_config = ConfigDict(extra="forbid")


def error_response(code: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> DaemonResponse:
    return DaemonResponse(ok=False, error=DaemonError(code=code, message=message, details=(details or {})))
