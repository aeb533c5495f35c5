from __future__ import annotations

from typing import Any, Optional


def coerce_int(value: Any, *, default: int, minimum: Optional[int] = None) -> int:
    """Coerce user-authored config (YAML may give "90000" or 9e4) into an int."""
    if value is None or isinstance(value, bool):
        v = int(default)
    else:
        try:
            v = int(value)
        except (TypeError, ValueError):
            v = int(default)
    if minimum is not None and v < minimum:
        return int(default)
    return v


def opt_str(value: Any) -> Optional[str]:
    """Strip a loosely-typed string; blank becomes None."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def norm_role(value: Any) -> str:
    return str(value or "").strip().lower()
