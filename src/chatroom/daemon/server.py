from __future__ import annotations

import json
import logging
import os
import signal
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from .. import __version__
from ..contracts.v1 import DaemonError, DaemonRequest, DaemonResponse, error_response
from ..kernel.ledger import append_event, tail_events
from ..kernel.registry import load_registry
from ..kernel.room import create_room, list_room_ids, load_room
from ..paths import ensure_home
from ..util.conv import coerce_int
from ..util.fs import atomic_write_text
from ..util.obslog import configure_logging
from ..util.time import utc_now_iso
from .ops import machine_ops, message_ops, participant_ops, task_ops
from .ops.common import op_handler, ok, reliability, room_arg
from .sweep import SweepManager

logger = logging.getLogger("chatroom.daemon")

SWEEP = SweepManager()


@dataclass
class DaemonPaths:
    home: Path

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def sock_path(self) -> Path:
        return self.daemon_dir / "chatroomd.sock"

    @property
    def pid_path(self) -> Path:
        return self.daemon_dir / "chatroomd.pid"

    @property
    def log_path(self) -> Path:
        return self.daemon_dir / "chatroomd.log"


def default_paths() -> DaemonPaths:
    return DaemonPaths(home=ensure_home())


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            s.sendall(b'{"op":"ping"}\n')
            _ = s.recv(1024)
            return True
    except OSError:
        return False


def _write_pid(pid_path: Path) -> None:
    atomic_write_text(pid_path, str(os.getpid()) + "\n")


def _remove_stale_socket(sock_path: Path) -> None:
    try:
        if sock_path.exists() and not _is_socket_alive(sock_path):
            sock_path.unlink()
    except OSError:
        pass


def _recv_json_line(conn: socket.socket) -> Dict[str, Any]:
    buf = b""
    while b"\n" not in buf:
        chunk = conn.recv(65536)
        if not chunk:
            break
        buf += chunk
        if len(buf) > 2_000_000:
            break
    line = buf.split(b"\n", 1)[0]
    try:
        obj = json.loads(line.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        return {}
    return obj if isinstance(obj, dict) else {}


def _send_json(conn: socket.socket, obj: Dict[str, Any]) -> None:
    data = (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
    conn.sendall(data)


@op_handler("chatroom_create")
def _handle_chatroom_create(args: Dict[str, Any]) -> DaemonResponse:
    roles = args.get("team_roles")
    if not isinstance(roles, list):
        raise ValueError("team_roles must be a list")
    review = args.get("review_roles")
    if review is not None and not isinstance(review, list):
        raise ValueError("review_roles must be a list")
    room = create_room(
        load_registry(),
        team_roles=[str(r) for r in roles],
        title=str(args.get("title") or ""),
        team_id=str(args.get("team_id") or ""),
        entry_point=str(args.get("team_entry_point") or "") or None,
        review_roles=[str(r) for r in review] if review is not None else None,
    )
    append_event(
        room.ledger_path,
        kind="chatroom.create",
        chatroom_id=room.chatroom_id,
        by=str(args.get("by") or "user"),
        data={"team_roles": room.team_roles, "team_entry_point": room.entry_point},
    )
    return ok(room.summary())


def _handle_chatroom_show(args: Dict[str, Any]) -> DaemonResponse:
    cid = str(args.get("chatroom_id") or "").strip()
    if not cid:
        return error_response("invalid_args", "missing chatroom_id")
    room = load_room(cid)
    if room is None:
        return error_response("chatroom_not_found", f"chatroom not found: {cid}")
    return ok({"chatroom": room.summary()})


def _handle_chatrooms(args: Dict[str, Any]) -> DaemonResponse:
    out = []
    for cid in list_room_ids():
        room = load_room(cid)
        if room is not None:
            out.append(room.summary())
    return ok({"chatrooms": out})


@op_handler("ledger_tail")
def _handle_ledger_tail(args: Dict[str, Any]) -> DaemonResponse:
    room = room_arg(args)
    limit = min(coerce_int(args.get("limit"), default=50, minimum=1), 1000)
    return ok({"events": tail_events(room.ledger_path, limit)})


def _handle_cleanup_stale_agents(args: Dict[str, Any]) -> DaemonResponse:
    summary = SWEEP.tick(cfg=reliability())
    return ok(summary.to_dict())


_OPS: Dict[str, Callable[[Dict[str, Any]], DaemonResponse]] = {
    "chatroom_create": _handle_chatroom_create,
    "chatroom_show": _handle_chatroom_show,
    "chatrooms": _handle_chatrooms,
    "ledger_tail": _handle_ledger_tail,
    "task_create": task_ops.handle_task_create,
    "task_move_to_queue": task_ops.handle_task_move_to_queue,
    "task_claim": task_ops.handle_task_claim,
    "task_start": task_ops.handle_task_start,
    "task_complete": task_ops.handle_task_complete,
    "task_mark_backlog_complete": task_ops.handle_task_mark_backlog_complete,
    "task_close_backlog": task_ops.handle_task_close_backlog,
    "task_send_back_for_rework": task_ops.handle_task_send_back_for_rework,
    "task_cancel": task_ops.handle_task_cancel,
    "task_pending_for_role": task_ops.handle_task_pending_for_role,
    "task_list": task_ops.handle_task_list,
    "task_counts": task_ops.handle_task_counts,
    "participant_join": participant_ops.handle_participant_join,
    "participant_leave": participant_ops.handle_participant_leave,
    "participant_heartbeat": participant_ops.handle_participant_heartbeat,
    "participant_update_status": participant_ops.handle_participant_update_status,
    "participant_get": participant_ops.handle_participant_get,
    "participant_list": participant_ops.handle_participant_list,
    "machine_register": machine_ops.handle_machine_register,
    "machine_update_daemon_status": machine_ops.handle_machine_update_daemon_status,
    "machine_daemon_heartbeat": machine_ops.handle_machine_daemon_heartbeat,
    "machine_send_command": machine_ops.handle_machine_send_command,
    "machine_pending_commands": machine_ops.handle_machine_pending_commands,
    "machine_ack_command": machine_ops.handle_machine_ack_command,
    "machine_save_team_agent_config": machine_ops.handle_machine_save_team_agent_config,
    "machine_list": machine_ops.handle_machine_list,
    "message_send": message_ops.handle_message_send,
    "task_started": message_ops.handle_task_started,
    "handoff": message_ops.handle_handoff,
    "handoff_options": message_ops.handle_handoff_options,
    "context_window": message_ops.handle_context_window,
    "cleanup_stale_agents": _handle_cleanup_stale_agents,
}


def handle_request(req: DaemonRequest) -> Tuple[DaemonResponse, bool]:
    op = str(req.op or "").strip()
    args = req.args or {}

    if op == "ping":
        return DaemonResponse(ok=True, result={"version": __version__, "pid": os.getpid(), "ts": utc_now_iso()}), False

    if op == "shutdown":
        return DaemonResponse(ok=True, result={"message": "shutting down"}), True

    handler = _OPS.get(op)
    if handler is None:
        return error_response("unknown_op", f"unknown op: {op}"), False
    return handler(args), False


def serve_forever(paths: Optional[DaemonPaths] = None) -> int:
    p = paths or default_paths()
    p.daemon_dir.mkdir(parents=True, exist_ok=True)
    configure_logging(component="chatroomd")

    _remove_stale_socket(p.sock_path)
    if p.sock_path.exists() and _is_socket_alive(p.sock_path):
        logger.info("another chatroomd is already serving %s", p.sock_path)
        return 0

    stop_event = threading.Event()

    def _signal_handler(signum: int, frame: Any) -> None:
        stop_event.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    def _sweep_loop() -> None:
        while not stop_event.is_set():
            cfg = reliability()
            try:
                SWEEP.tick(home=p.home, cfg=cfg)
            except Exception:
                logger.exception("sweep loop iteration failed")
            stop_event.wait(cfg.sweep_interval_ms / 1000.0)

    threading.Thread(target=_sweep_loop, name="chatroom-sweep", daemon=True).start()

    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
        s.bind(str(p.sock_path))
        s.listen(50)
        s.settimeout(1.0)  # Allow periodic check of stop_event
        _write_pid(p.pid_path)
        logger.info("chatroomd listening on %s (version %s)", p.sock_path, __version__)

        should_exit = False
        while not should_exit and not stop_event.is_set():
            try:
                conn, _ = s.accept()
            except socket.timeout:
                continue
            except OSError:
                continue
            try:
                raw = _recv_json_line(conn)
                try:
                    req = DaemonRequest.model_validate(raw)
                except Exception as e:
                    resp = error_response("invalid_request", "invalid request", details={"error": str(e)})
                else:
                    try:
                        resp, should_exit = handle_request(req)
                    except Exception as e:
                        logger.exception("op failed", extra={"op": req.op})
                        resp = error_response("internal_error", str(e) or type(e).__name__)
                try:
                    _send_json(conn, resp.model_dump())
                except (BrokenPipeError, ConnectionResetError, OSError):
                    # Client disconnected before response was sent - not an error
                    pass
            finally:
                try:
                    conn.close()
                except OSError:
                    pass

    stop_event.set()
    for path in (p.sock_path, p.pid_path):
        try:
            if path.exists():
                path.unlink()
        except OSError:
            pass
    logger.info("chatroomd stopped")
    return 0


def call_daemon(req: Dict[str, Any], *, paths: Optional[DaemonPaths] = None, timeout_s: float = 60.0) -> Dict[str, Any]:
    p = paths or default_paths()
    try:
        request = DaemonRequest.model_validate(req)
    except Exception as e:
        return DaemonResponse(
            ok=False,
            error=DaemonError(code="invalid_request", message="invalid request", details={"error": str(e)}),
        ).model_dump()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(p.sock_path))
            s.sendall((json.dumps(request.model_dump(), ensure_ascii=False) + "\n").encode("utf-8"))
            data = b""
            while b"\n" not in data:
                chunk = s.recv(65536)
                if not chunk:
                    break
                data += chunk
        line = data.split(b"\n", 1)[0]
        obj = json.loads(line.decode("utf-8", errors="replace"))
        return DaemonResponse.model_validate(obj).model_dump()
    except Exception:
        return DaemonResponse(ok=False, error=DaemonError(code="daemon_unavailable", message="daemon unavailable")).model_dump()


def read_pid(paths: Optional[DaemonPaths] = None) -> int:
    p = paths or default_paths()
    try:
        txt = p.pid_path.read_text(encoding="utf-8").strip()
        return int(txt) if txt.isdigit() else 0
    except OSError:
        return 0
