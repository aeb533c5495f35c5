from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, Optional

from ...contracts.v1 import DaemonResponse, error_response
from ...kernel.errors import ChatroomError
from ...kernel.room import Room, require_room
from ...kernel.settings import ReliabilityConfig, load_reliability_config

logger = logging.getLogger("chatroom.daemon")

Handler = Callable[[Dict[str, Any]], DaemonResponse]


def op_handler(op: str) -> Callable[[Handler], Handler]:
    """Translate kernel errors into DaemonResponse errors for one op."""

    def deco(fn: Handler) -> Handler:
        @functools.wraps(fn)
        def wrapper(args: Dict[str, Any]) -> DaemonResponse:
            try:
                return fn(args)
            except ChatroomError as e:
                logger.info(
                    "%s rejected: %s",
                    op,
                    e.message,
                    extra={"op": op, "chatroom_id": args.get("chatroom_id"), "role": args.get("role")},
                )
                return error_response(e.code, e.message, details=e.details)
            except ValueError as e:
                return error_response("invalid_args", str(e))

        return wrapper

    return deco


def ok(result: Optional[Dict[str, Any]] = None) -> DaemonResponse:
    return DaemonResponse(ok=True, result=(result or {}))


def arg_str(args: Dict[str, Any], key: str, *, required: bool = True) -> str:
    v = str(args.get(key) or "").strip()
    if required and not v:
        raise ValueError(f"missing {key}")
    return v


def arg_opt(args: Dict[str, Any], key: str) -> Optional[str]:
    v = str(args.get(key) or "").strip()
    return v or None


def arg_opt_int(args: Dict[str, Any], key: str) -> Optional[int]:
    v = args.get(key)
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be an integer") from e


def room_arg(args: Dict[str, Any]) -> Room:
    return require_room(arg_str(args, "chatroom_id"))


def reliability() -> ReliabilityConfig:
    return load_reliability_config()
