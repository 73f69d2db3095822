"""
status_normalizer.py
====================
Turns whatever the panel reports about a server into one CanonicalStatus.

Panels (and different Crafty versions) disagree on field names: the player
count may be ``playerCount``, ``players`` or Crafty's integer ``online``;
CPU may be ``cpu`` or ``cpu_usage``, and so on.  Each canonical field looks
through its alternative keys in a fixed priority order, skipping keys whose
value has the wrong type, and falls back to ``False`` / ``0``.

The result is validated, never clamped: a negative count or a CPU
percentage above 100 means the payload cannot be trusted and
StatusUnavailable is raised.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from errors import StatusUnavailable

logger = logging.getLogger(__name__)

PLAYER_LIST_TYPES = (list, tuple)

# Alternative keys per canonical field, highest priority first.
ONLINE_KEYS = ("online", "running", "status")
PLAYER_COUNT_KEYS = ("playerCount", "player_count", "players", "online")
MAX_PLAYERS_KEYS = ("maxPlayers", "max_players", "max")
PING_KEYS = ("ping", "latency", "ping_ms")
TPS_KEYS = ("tps", "ticks_per_second")
CPU_KEYS = ("cpuUsage", "cpu_usage", "cpu_percent", "cpu")
RAM_KEYS = ("ramUsage", "ram_usage", "mem_percent", "memory_percent")
UPTIME_KEYS = ("uptime", "uptime_seconds")

ONLINE_STATES = {"running", "online"}


def _is_finite(value: float) -> bool:
    # ints beyond float range overflow inside isfinite
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


# ──────────────────────────────────────────────
#  Canonical record
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class CanonicalStatus:
    online: bool = False
    player_count: int = 0
    max_players: int = 0
    ping: float = 0
    tps: float = 0
    cpu_usage: float = 0
    ram_usage: float = 0
    uptime: float = 0

    def validate(self) -> "CanonicalStatus":
        """Raise StatusUnavailable if any field breaks its range."""
        non_negative = {
            "player_count": self.player_count,
            "max_players": self.max_players,
            "ping": self.ping,
            "tps": self.tps,
            "uptime": self.uptime,
        }
        for name, value in non_negative.items():
            if not _is_finite(value) or value < 0:
                raise StatusUnavailable(
                    f"Panel reported an invalid {name}: {value!r}", field=name,
                )
        for name, value in (("cpu_usage", self.cpu_usage), ("ram_usage", self.ram_usage)):
            if not _is_finite(value) or not 0 <= value <= 100:
                raise StatusUnavailable(
                    f"Panel reported {name} outside 0-100: {value!r}", field=name,
                )
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Wire form, in the camelCase the HTTP API has always used."""
        return {
            "online": self.online,
            "playerCount": self.player_count,
            "maxPlayers": self.max_players,
            "ping": self.ping,
            "tps": self.tps,
            "cpuUsage": self.cpu_usage,
            "ramUsage": self.ram_usage,
            "uptime": self.uptime,
        }


# ──────────────────────────────────────────────
#  Field readers
# ──────────────────────────────────────────────

def _as_number(value: Any) -> Optional[float]:
    """int/float or a numeric string; bools and everything else are not numbers."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _first_number(raw: Mapping[str, Any], keys: Sequence[str]) -> float:
    for key in keys:
        if key not in raw:
            continue
        number = _as_number(raw[key])
        if number is not None:
            return number
        logger.debug("Skipping status key %r: %r is not a number", key, raw[key])
    return 0


def _as_count(value: float, name: str) -> int:
    if isinstance(value, int):
        return value
    if not math.isfinite(value) or value != int(value):
        raise StatusUnavailable(f"Panel reported a non-integer {name}: {value!r}", field=name)
    return int(value)


def _read_online(raw: Mapping[str, Any]) -> bool:
    for key in ONLINE_KEYS:
        value = raw.get(key)
        if key in ("online", "running") and isinstance(value, bool):
            return value
        if key == "status" and isinstance(value, str):
            return value.strip().lower() in ONLINE_STATES
    return False


def _read_player_count(raw: Mapping[str, Any]) -> float:
    for key in PLAYER_COUNT_KEYS:
        if key not in raw:
            continue
        value = raw[key]
        if key == "players" and isinstance(value, PLAYER_LIST_TYPES):
            return len(value)
        number = _as_number(value)
        if number is not None:
            return number
    return 0


def _parse_started(value: Any) -> Optional[datetime]:
    """Crafty reports ``started`` as e.g. ``2024-05-01 12:00:00`` (local, naive)."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        started = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable 'started' value %r", value)
        return None
    if started.tzinfo is None:
        started = started.astimezone()
    return started


def _read_uptime(raw: Mapping[str, Any], online: bool, now: Optional[datetime]) -> float:
    for key in UPTIME_KEYS:
        if key in raw:
            number = _as_number(raw[key])
            if number is not None:
                return number

    if not online:
        return 0
    started = _parse_started(raw.get("started"))
    if started is None:
        return 0
    now = now or datetime.now(tz=timezone.utc)
    if now.tzinfo is None:
        now = now.astimezone()
    elapsed = (now - started).total_seconds()
    if elapsed < 0:
        logger.warning("Panel reports a start time in the future (%s); ignoring", raw.get("started"))
        return 0
    return int(elapsed)


# ──────────────────────────────────────────────
#  Entry point
# ──────────────────────────────────────────────

def normalize_status(raw: Any, *, now: Optional[datetime] = None) -> CanonicalStatus:
    """
    Reconcile a raw panel status payload into a validated CanonicalStatus.

    Accepts the bare stats object or Crafty's ``{"status": "ok", "data": {…}}``
    envelope.  Anything that is not a mapping raises StatusUnavailable.
    """
    if not isinstance(raw, Mapping):
        raise StatusUnavailable(
            f"Panel status payload is not an object ({type(raw).__name__})",
        )
    data = raw.get("data")
    if isinstance(data, Mapping) and raw.get("status") in ("ok", "success"):
        raw = data

    online = _read_online(raw)
    status = CanonicalStatus(
        online=online,
        player_count=_as_count(_read_player_count(raw), "player_count"),
        max_players=_as_count(_first_number(raw, MAX_PLAYERS_KEYS), "max_players"),
        ping=_first_number(raw, PING_KEYS),
        tps=_first_number(raw, TPS_KEYS),
        cpu_usage=_first_number(raw, CPU_KEYS),
        ram_usage=_first_number(raw, RAM_KEYS),
        uptime=_read_uptime(raw, online, now),
    )
    return status.validate()
