from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..contracts.v1 import Event


def append_event(
    ledger_path: Path,
    *,
    kind: str,
    chatroom_id: str,
    by: str,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    event = Event(kind=kind, chatroom_id=chatroom_id, by=by, data=(data or {}))  # type: ignore[arg-type]
    ledger_path.parent.mkdir(parents=True, exist_ok=True)
    payload = event.model_dump()
    with ledger_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=False) + "\n")
    return payload


def read_last_lines(path: Path, n: int) -> List[str]:
    if n <= 0:
        return []
    if not path.exists():
        return []
    with path.open("rb") as f:
        f.seek(0, 2)
        size = f.tell()
        block = 8192
        data = b""
        while size > 0 and data.count(b"\n") <= n:
            step = min(block, size)
            f.seek(size - step)
            data = f.read(step) + data
            size -= step
    lines = data.splitlines()[-n:]
    return [ln.decode("utf-8", errors="replace") for ln in lines]


def tail_events(path: Path, n: int) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for ln in read_last_lines(path, n):
        try:
            obj = json.loads(ln)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            out.append(obj)
    return out
