"""Domain models shared across services."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional


def _as_millis(raw: Any) -> int:
    """Read an epoch-millisecond field, treating absent or garbage values as 0."""
    if isinstance(raw, bool) or raw is None:
        return 0
    try:
        parsed = float(raw)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(parsed):
        return 0
    return int(parsed)


@dataclass(slots=True, frozen=True)
class SensorLimits:
    """Inclusive range configured for one sensor key."""

    min: float
    max: float
    label: str


@dataclass(slots=True)
class LivenessState:
    """Heartbeat bookkeeping stored under ``devices/{id}/state``.

    ``offline_since`` is the dedup latch for the offline episode: non-zero
    means an offline notification has already been emitted. ``online`` is
    informational only.
    """

    last_seen: int = 0
    online: Optional[bool] = None
    offline_since: int = 0
    online_since: int = 0

    @property
    def in_offline_episode(self) -> bool:
        return self.offline_since != 0

    @classmethod
    def from_raw(cls, raw: Any) -> "LivenessState":
        if not isinstance(raw, dict):
            return cls()
        online = raw.get("online")
        return cls(
            last_seen=_as_millis(raw.get("lastSeen")),
            online=online if isinstance(online, bool) else None,
            offline_since=_as_millis(raw.get("offlineSince")),
            online_since=_as_millis(raw.get("onlineSince")),
        )


@dataclass(slots=True)
class SensorLatch:
    """Last known range status for one (device, sensor key) pair."""

    out_of_range: bool = False
    last_sent_at: int = 0
    last_value: Optional[float] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "SensorLatch":
        if not isinstance(raw, dict):
            return cls()
        last_value = raw.get("lastValue")
        if isinstance(last_value, bool) or not isinstance(last_value, (int, float)):
            last_value = None
        return cls(
            out_of_range=bool(raw.get("outOfRange")),
            last_sent_at=_as_millis(raw.get("lastSentAt")),
            last_value=last_value,
        )
