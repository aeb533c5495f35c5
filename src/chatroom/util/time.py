from __future__ import annotations

import time
from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_now_ms() -> int:
    """Wall clock in integer milliseconds; every deadline and TTL compares against this."""
    return int(time.time() * 1000)
