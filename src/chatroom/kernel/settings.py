"""Global settings for chatroomd.

Settings are stored in $CHATROOM_HOME/settings.yaml:

    default_agent_model: claude-sonnet-4
    reliability:
      heartbeat_interval_ms: 30000
      heartbeat_ttl_ms: 90000
      ...

Every kernel operation that compares timestamps receives a ReliabilityConfig
argument; nothing reads these values from module state.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore

from ..paths import ensure_home
from ..util.conv import coerce_int
from ..util.fs import atomic_write_text

logger = logging.getLogger("chatroom.settings")

DEFAULT_AGENT_MODEL = "claude-sonnet-4"
MAX_ACTIVE_TASKS = 100


@dataclass(frozen=True)
class ReliabilityConfig:
    """Liveness and timeout knobs, all in milliseconds."""

    heartbeat_interval_ms: int = 30_000
    # Two missed heartbeats plus slack before a waiting agent counts as gone.
    heartbeat_ttl_ms: int = 90_000
    active_ttl_ms: int = 3_600_000
    task_pending_timeout_ms: int = 300_000
    task_acknowledged_timeout_ms: int = 120_000
    daemon_heartbeat_interval_ms: int = 30_000
    daemon_heartbeat_ttl_ms: int = 120_000
    sweep_interval_ms: int = 60_000
    default_agent_model: str = DEFAULT_AGENT_MODEL
    max_active_tasks: int = MAX_ACTIVE_TASKS

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_RELIABILITY = ReliabilityConfig()


def _settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def load_settings() -> Dict[str, Any]:
    """Load global settings from $CHATROOM_HOME/settings.yaml."""
    p = _settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError:
        logger.warning("settings.yaml is not valid YAML; using defaults", exc_info=True)
        return {}
    return doc if isinstance(doc, dict) else {}


def save_settings(settings: Dict[str, Any]) -> None:
    atomic_write_text(_settings_path(), yaml.safe_dump(settings, allow_unicode=True, sort_keys=False))


def reliability_from_doc(doc: Optional[Dict[str, Any]]) -> ReliabilityConfig:
    """Build a ReliabilityConfig from a settings doc, falling back per key.

    A TTL that could expire between two on-time signals is rejected (with a
    warning) in favour of the default, together with its interval.
    """
    d = doc if isinstance(doc, dict) else {}
    rel = d.get("reliability")
    r = rel if isinstance(rel, dict) else {}
    dflt = DEFAULT_RELIABILITY

    def _ms(key: str) -> int:
        return coerce_int(r.get(key), default=getattr(dflt, key), minimum=1)

    hb_interval = _ms("heartbeat_interval_ms")
    hb_ttl = _ms("heartbeat_ttl_ms")
    if hb_ttl < 2 * hb_interval + 1:
        logger.warning(
            "heartbeat_ttl_ms=%s must exceed two heartbeat intervals (%s); using defaults",
            hb_ttl,
            hb_interval,
        )
        hb_interval, hb_ttl = dflt.heartbeat_interval_ms, dflt.heartbeat_ttl_ms

    d_interval = _ms("daemon_heartbeat_interval_ms")
    d_ttl = _ms("daemon_heartbeat_ttl_ms")
    if d_ttl < 3 * d_interval:
        logger.warning(
            "daemon_heartbeat_ttl_ms=%s must cover three daemon heartbeat intervals (%s); using defaults",
            d_ttl,
            d_interval,
        )
        d_interval, d_ttl = dflt.daemon_heartbeat_interval_ms, dflt.daemon_heartbeat_ttl_ms

    model = str(d.get("default_agent_model") or "").strip() or dflt.default_agent_model

    return ReliabilityConfig(
        heartbeat_interval_ms=hb_interval,
        heartbeat_ttl_ms=hb_ttl,
        active_ttl_ms=_ms("active_ttl_ms"),
        task_pending_timeout_ms=_ms("task_pending_timeout_ms"),
        task_acknowledged_timeout_ms=_ms("task_acknowledged_timeout_ms"),
        daemon_heartbeat_interval_ms=d_interval,
        daemon_heartbeat_ttl_ms=d_ttl,
        sweep_interval_ms=_ms("sweep_interval_ms"),
        default_agent_model=model,
        max_active_tasks=coerce_int(d.get("max_active_tasks"), default=dflt.max_active_tasks, minimum=1),
    )


def load_reliability_config() -> ReliabilityConfig:
    return reliability_from_doc(load_settings())
