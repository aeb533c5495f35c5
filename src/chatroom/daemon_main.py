from __future__ import annotations

import argparse
import json
import os
import signal
import subprocess
import sys
from typing import Callable, Dict, Optional

from .daemon.server import DaemonPaths, call_daemon, default_paths, read_pid, serve_forever


def _is_running(paths: DaemonPaths) -> bool:
    return bool(call_daemon({"op": "ping"}, paths=paths, timeout_s=2.0).get("ok"))


def _cmd_run(paths: DaemonPaths) -> int:
    return int(serve_forever(paths))


def _cmd_start(paths: DaemonPaths) -> int:
    if _is_running(paths):
        print("chatroomd: already running")
        return 0
    paths.daemon_dir.mkdir(parents=True, exist_ok=True)
    env = dict(os.environ, CHATROOM_HOME=str(paths.home))
    with paths.log_path.open("a", encoding="utf-8") as log_f:
        proc = subprocess.Popen(
            [sys.executable, "-m", "chatroom.daemon_main", "run"],
            stdin=subprocess.DEVNULL,
            stdout=log_f,
            stderr=log_f,
            env=env,
            start_new_session=True,
        )
    print(f"chatroomd: started pid={proc.pid} log={paths.log_path}")
    return 0


def _cmd_stop(paths: DaemonPaths) -> int:
    if call_daemon({"op": "shutdown"}, paths=paths, timeout_s=2.0).get("ok"):
        print("chatroomd: shutdown requested")
        return 0
    pid = read_pid(paths)
    if pid <= 0:
        print("chatroomd: not running")
        return 0
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        print("chatroomd: not running (stale pid file)")
        return 0
    print(f"chatroomd: SIGTERM sent to pid={pid}")
    return 0


def _cmd_status(paths: DaemonPaths) -> int:
    resp = call_daemon({"op": "ping"}, paths=paths, timeout_s=2.0)
    if not resp.get("ok"):
        print("chatroomd: not running")
        return 1
    info = resp.get("result") or {}
    print(f"chatroomd: running pid={info.get('pid')} version={info.get('version')} home={paths.home}")
    return 0


def _cmd_sweep(paths: DaemonPaths) -> int:
    resp = call_daemon({"op": "cleanup_stale_agents"}, paths=paths)
    if not resp.get("ok"):
        err = resp.get("error") or {}
        print(f"chatroomd: sweep failed: {err.get('code')}: {err.get('message')}", file=sys.stderr)
        return 1
    print(json.dumps(resp.get("result") or {}, indent=2, ensure_ascii=False))
    return 0


_COMMANDS: Dict[str, Callable[[DaemonPaths], int]] = {
    "run": _cmd_run,
    "start": _cmd_start,
    "stop": _cmd_stop,
    "status": _cmd_status,
    "sweep": _cmd_sweep,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="chatroomd", description="chatroom reconciliation daemon (single writer)")
    sub = parser.add_subparsers(dest="cmd", required=True)
    sub.add_parser("run", help="Serve in the foreground")
    sub.add_parser("start", help="Start in the background")
    sub.add_parser("stop", help="Ask the running daemon to exit")
    sub.add_parser("status", help="Report whether the daemon answers")
    sub.add_parser("sweep", help="Run one reconciliation pass now and print its summary")
    args = parser.parse_args(argv)
    return _COMMANDS[args.cmd](default_paths())


if __name__ == "__main__":
    raise SystemExit(main())
