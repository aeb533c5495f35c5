from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional

import uvicorn

from ...daemon.server import call_daemon
from ...util.obslog import configure_logging

logger = logging.getLogger("chatroom.web")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="chatroom-web", description="HTTP port in front of chatroomd (FastAPI)")
    parser.add_argument("--host", default=os.environ.get("CHATROOM_WEB_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("CHATROOM_WEB_PORT", "8849")))
    parser.add_argument(
        "--token",
        default=None,
        help="Require `Authorization: Bearer <token>` (default: $CHATROOM_WEB_TOKEN, unset means open)",
    )
    args = parser.parse_args(argv)

    configure_logging(component="chatroom-web")
    if args.token:
        os.environ["CHATROOM_WEB_TOKEN"] = str(args.token)

    if not call_daemon({"op": "ping"}, timeout_s=2.0).get("ok"):
        print("error: chatroomd is not running. Start it with: chatroomd start", file=sys.stderr)
        return 1
    if str(args.host) not in ("127.0.0.1", "localhost", "::1") and not os.environ.get("CHATROOM_WEB_TOKEN"):
        logger.warning("serving on %s without CHATROOM_WEB_TOKEN; every route is unauthenticated", args.host)

    uvicorn.run(
        "chatroom.ports.web.app:create_app",
        factory=True,
        host=str(args.host),
        port=int(args.port),
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
