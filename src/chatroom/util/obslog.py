"""JSON-lines logging for chatroomd.

Every line carries the correlation fields passed through `extra=`, so a
log line can be matched with the ledger event written in the same
transaction:

    logger.info("task %s claimed", tid, extra={"chatroom_id": cid, "role": "builder", "task_id": tid})
"""
from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

CORRELATION_KEYS = ("op", "chatroom_id", "role", "task_id", "machine_id", "command_id", "trigger")

LEVEL_ENV = "CHATROOM_LOG_LEVEL"


class JsonlFormatter(logging.Formatter):
    def __init__(self, *, component: str):
        super().__init__()
        self.component = str(component or "").strip() or "chatroom"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "component": self.component,
            "msg": record.getMessage(),
        }
        for key in CORRELATION_KEYS:
            value = getattr(record, key, None)
            if value is not None and str(value).strip():
                payload[key] = str(value).strip()
        data = getattr(record, "data", None)
        if isinstance(data, dict) and data:
            payload["data"] = data
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def resolve_level(level: Optional[str] = None) -> int:
    """Explicit level, else $CHATROOM_LOG_LEVEL, else INFO. Unknown names mean INFO."""
    name = str(level or os.environ.get(LEVEL_ENV) or "INFO").strip().upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(*, component: str, level: Optional[str] = None, stream: Optional[TextIO] = None) -> logging.Handler:
    """Install one JSONL stream handler on the root logger.

    Calling it again replaces the handler it installed earlier; handlers
    owned by someone else (pytest's capture, for one) are left alone.
    """
    root = logging.getLogger()
    lvl = resolve_level(level)
    for h in list(root.handlers):
        if isinstance(h.formatter, JsonlFormatter):
            root.removeHandler(h)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonlFormatter(component=component))
    handler.setLevel(lvl)
    root.addHandler(handler)
    root.setLevel(lvl)
    return handler
