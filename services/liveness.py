"""Heartbeat staleness evaluation for a single device."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.schemas import Notification, Severity
from models.records import LivenessState

logger = logging.getLogger(__name__)

# Written instead of deleting the field so that store rules requiring a number
# keep validating; readers treat 0 and absent alike.
OFFLINE_SINCE_CLEARED = 0


class LivenessTransition(str, Enum):
    offline = "offline"
    online = "online"


@dataclass
class LivenessDecision:
    """State fields to write under ``devices/{id}/state`` and the optional alert."""

    transition: Optional[LivenessTransition] = None
    updates: Dict[str, Any] = field(default_factory=dict)
    notification: Optional[Notification] = None

    @property
    def changed(self) -> bool:
        return self.transition is not None


def _zone(tz_name: str) -> tzinfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.warning("Unknown display time zone %r; rendering in UTC", tz_name)
        return timezone.utc


def format_last_seen(epoch_ms: int, tz_name: str) -> str:
    """Render a timestamp like ``1/2/2024, 3:04:05 PM`` in the given zone.

    Unknown zones render in UTC; timestamps outside the supported range are
    returned as raw epoch milliseconds.
    """
    try:
        moment = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).astimezone(
            _zone(tz_name)
        )
    except (OverflowError, OSError, ValueError):
        return f"{epoch_ms} ms"
    clock = moment.strftime("%I:%M:%S %p").lstrip("0")
    return f"{moment.month}/{moment.day}/{moment.year}, {clock}"


def evaluate_liveness(
    now: int,
    device_id: str,
    state: LivenessState,
    *,
    offline_threshold_ms: int,
    notify_back_online: bool = True,
    display_timezone: str = "UTC",
) -> LivenessDecision:
    if not state.last_seen:
        return LivenessDecision()

    stale = (now - state.last_seen) > offline_threshold_ms

    if stale and not state.in_offline_episode:
        notification = Notification(
            title=f"{device_id} offline",
            body=f"No heartbeat since {format_last_seen(state.last_seen, display_timezone)}",
            severity=Severity.critical,
            kind="device_offline",
            ts=now,
            device_id=device_id,
        )
        return LivenessDecision(
            transition=LivenessTransition.offline,
            updates={"online": False, "offlineSince": now},
            notification=notification,
        )

    if not stale and state.in_offline_episode:
        notification = None
        if notify_back_online:
            notification = Notification(
                title=f"{device_id} online",
                body="Device is back online.",
                severity=Severity.warning,
                kind="device_online",
                ts=now,
                device_id=device_id,
            )
        return LivenessDecision(
            transition=LivenessTransition.online,
            updates={
                "online": True,
                "onlineSince": now,
                "offlineSince": OFFLINE_SINCE_CLEARED,
            },
            notification=notification,
        )

    return LivenessDecision()
