from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # type: ignore

from ..paths import rooms_dir
from ..util.conv import norm_role
from ..util.fs import atomic_write_text
from ..util.time import utc_now_iso
from .errors import ChatroomNotFound, InvalidRole
from .registry import Registry

USER_ROLE = "user"
DEFAULT_REVIEW_ROLES = ["reviewer"]


def _random_chatroom_id() -> str:
    return "c_" + uuid.uuid4().hex[:12]


@dataclass
class Room:
    chatroom_id: str
    path: Path
    doc: Dict[str, Any]

    @property
    def ledger_path(self) -> Path:
        return self.path / "ledger.jsonl"

    @property
    def state_path(self) -> Path:
        return self.path / "state" / "room.json"

    @property
    def lock_path(self) -> Path:
        return self.path / "state" / ".lock"

    @property
    def team_roles(self) -> List[str]:
        raw = self.doc.get("team_roles")
        if not isinstance(raw, list):
            return []
        return [norm_role(r) for r in raw if norm_role(r)]

    @property
    def entry_point(self) -> Optional[str]:
        ep = norm_role(self.doc.get("team_entry_point"))
        if ep:
            return ep
        roles = self.team_roles
        return roles[0] if roles else None

    @property
    def review_roles(self) -> List[str]:
        raw = self.doc.get("review_roles")
        if not isinstance(raw, list):
            raw = DEFAULT_REVIEW_ROLES
        return [norm_role(r) for r in raw if norm_role(r) in self.team_roles]

    def has_role(self, role: str) -> bool:
        return norm_role(role) in self.team_roles

    def require_role(self, role: str, *, allow_user: bool = False) -> str:
        r = norm_role(role)
        if allow_user and r == USER_ROLE:
            return r
        if not self.has_role(r):
            raise InvalidRole(f"role not in team: {role!r}", details={"team_roles": self.team_roles})
        return r

    def summary(self) -> Dict[str, Any]:
        return {
            "chatroom_id": self.chatroom_id,
            "title": self.doc.get("title") or "",
            "team_id": self.doc.get("team_id") or "",
            "team_roles": self.team_roles,
            "team_entry_point": self.entry_point,
            "review_roles": self.review_roles,
            "created_at": self.doc.get("created_at") or "",
            "updated_at": self.doc.get("updated_at") or "",
        }


def load_room(chatroom_id: str) -> Optional[Room]:
    cid = str(chatroom_id or "").strip()
    if not cid:
        return None
    rp = rooms_dir() / cid
    p = rp / "room.yaml"
    if not p.exists():
        return None
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError:
        return None
    if not isinstance(doc, dict):
        return None
    return Room(chatroom_id=cid, path=rp, doc=doc)


def require_room(chatroom_id: str) -> Room:
    room = load_room(chatroom_id)
    if room is None:
        raise ChatroomNotFound(f"chatroom not found: {chatroom_id}")
    return room


def list_room_ids() -> List[str]:
    base = rooms_dir()
    if not base.exists():
        return []
    return sorted(p.parent.name for p in base.glob("*/room.yaml"))


def create_room(
    reg: Registry,
    *,
    team_roles: List[str],
    title: str = "",
    team_id: str = "",
    entry_point: Optional[str] = None,
    review_roles: Optional[List[str]] = None,
) -> Room:
    roles: List[str] = []
    for r in team_roles:
        nr = norm_role(r)
        if not nr:
            continue
        if nr == USER_ROLE:
            raise ValueError("'user' is reserved and cannot be a team role")
        if nr not in roles:
            roles.append(nr)
    if not roles:
        raise ValueError("team_roles must name at least one role")
    ep = norm_role(entry_point) or roles[0]
    if ep not in roles:
        raise ValueError(f"entry point {ep!r} is not a team role")

    now = utc_now_iso()
    chatroom_id = _random_chatroom_id()
    rp = rooms_dir() / chatroom_id
    (rp / "state").mkdir(parents=True, exist_ok=True)
    (rp / "ledger.jsonl").touch(exist_ok=True)

    doc: Dict[str, Any] = {
        "v": 1,
        "chatroom_id": chatroom_id,
        "title": title.strip() or "chatroom",
        "team_id": team_id.strip() or f"team-{len(roles)}",
        "team_roles": roles,
        "team_entry_point": ep,
        "review_roles": [norm_role(r) for r in (review_roles if review_roles is not None else DEFAULT_REVIEW_ROLES)],
        "created_at": now,
        "updated_at": now,
    }
    atomic_write_text(rp / "room.yaml", yaml.safe_dump(doc, allow_unicode=True, sort_keys=False))

    reg.add(chatroom_id, title=doc["title"], team_id=doc["team_id"], path=rp, created_at=now)
    return Room(chatroom_id=chatroom_id, path=rp, doc=doc)
