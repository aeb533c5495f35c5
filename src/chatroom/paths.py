from __future__ import annotations

import os
from pathlib import Path


def chatroom_home() -> Path:
    env = os.environ.get("CHATROOM_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".chatroom").resolve()


def ensure_home() -> Path:
    home = chatroom_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def rooms_dir() -> Path:
    return ensure_home() / "rooms"


def fleet_dir() -> Path:
    return ensure_home() / "fleet"
