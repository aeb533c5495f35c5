from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..paths import ensure_home
from ..util.fs import atomic_write_json, read_json
from ..util.time import utc_now_iso


@dataclass
class Registry:
    """$CHATROOM_HOME/registry.json: one summary entry per chatroom.

    The per-room directory stays the source of truth; this index only
    serves lookups by title/team without opening every room.yaml.
    """

    path: Path
    doc: Dict[str, Any]

    @property
    def rooms(self) -> Dict[str, Dict[str, Any]]:
        d = self.doc.get("rooms")
        if not isinstance(d, dict):
            d = {}
            self.doc["rooms"] = d
        return d

    def entry(self, chatroom_id: str) -> Optional[Dict[str, Any]]:
        e = self.rooms.get(str(chatroom_id or "").strip())
        return e if isinstance(e, dict) else None

    def add(self, chatroom_id: str, *, title: str, team_id: str, path: Path, created_at: str) -> None:
        self.rooms[chatroom_id] = {
            "chatroom_id": chatroom_id,
            "title": title,
            "team_id": team_id,
            "path": str(path),
            "created_at": created_at,
        }
        self.save()

    def save(self) -> None:
        self.doc["v"] = 1
        self.doc["updated_at"] = utc_now_iso()
        atomic_write_json(self.path, self.doc)


def load_registry() -> Registry:
    path = ensure_home() / "registry.json"
    doc = read_json(path)
    if not doc:
        now = utc_now_iso()
        doc = {"v": 1, "created_at": now, "updated_at": now, "rooms": {}}
    return Registry(path=path, doc=doc)
