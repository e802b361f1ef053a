"""Per-sensor range alerts with edge detection and a repeat-alert cooldown.

Each (device, sensor key) pair owns a latch at
``devices/{deviceId}/state/sensorAlerts/{sensorKey}`` recording the range status
seen on the previous write and when an alert last went out. A write is
evaluated against that latch only, so redelivered or repeated writes cannot
produce a second alert for the same transition.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from app.schemas import Notification, Severity
from datastore.base import TransactionConflict, TreeStore
from models.records import SensorLatch, SensorLimits

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _fmt(number: float) -> str:
    return f"{number:.15g}"


class SensorStatus(str, Enum):
    in_range = "in_range"
    back_normal = "back_normal"
    out_of_range_alert = "out_of_range_alert"
    out_of_range_suppressed = "out_of_range_suppressed"


@dataclass
class SensorDecision:
    status: SensorStatus
    latch_updates: Dict[str, Any] = field(default_factory=dict)
    notification: Optional[Notification] = None


def coerce_sensor_value(raw: Any) -> Optional[float]:
    """Extract a finite number from a bare value or a ``{"value": ...}`` object."""
    if isinstance(raw, dict):
        raw = raw.get("value")
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def evaluate_sensor(
    now: int,
    device_id: str,
    sensor_key: str,
    value: float,
    limits: SensorLimits,
    latch: SensorLatch,
    cooldown_ms: int,
) -> SensorDecision:
    out_low = value < limits.min
    out_high = value > limits.max
    expected = f"{_fmt(limits.min)}–{_fmt(limits.max)}"

    if not (out_low or out_high):
        if not latch.out_of_range:
            return SensorDecision(SensorStatus.in_range, {"lastValue": value})
        notification = Notification(
            title=f"{device_id} {limits.label} normal",
            body=f"{limits.label} is back in range at {_fmt(value)} (expected {expected}).",
            severity=Severity.warning,
            kind=f"sensor_{sensor_key}_back_normal",
            ts=now,
            device_id=device_id,
            sensor_key=sensor_key,
            value=value,
            min_value=limits.min,
            max_value=limits.max,
        )
        return SensorDecision(
            SensorStatus.back_normal,
            {"outOfRange": False, "lastSentAt": now, "lastValue": value},
            notification,
        )

    cooldown_passed = (now - latch.last_sent_at) > cooldown_ms
    if latch.out_of_range and not cooldown_passed:
        return SensorDecision(
            SensorStatus.out_of_range_suppressed,
            {"outOfRange": True, "lastValue": value},
        )

    which = "LOW" if out_low else "HIGH"
    notification = Notification(
        title=f"{device_id} {limits.label} {which}",
        body=f"{limits.label} is {_fmt(value)}. Expected {expected}.",
        severity=Severity.critical,
        kind=f"sensor_{sensor_key}_out_of_range",
        ts=now,
        device_id=device_id,
        sensor_key=sensor_key,
        value=value,
        min_value=limits.min,
        max_value=limits.max,
    )
    return SensorDecision(
        SensorStatus.out_of_range_alert,
        {"outOfRange": True, "lastSentAt": now, "lastValue": value},
        notification,
    )


class SensorRangeMonitor:
    """Evaluates sensor writes and commits latch plus notification atomically."""

    def __init__(
        self,
        store: TreeStore,
        limits: Mapping[str, SensorLimits],
        *,
        cooldown_ms: int,
        max_attempts: int = 5,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.limits = dict(limits)
        self.cooldown_ms = cooldown_ms
        self.max_attempts = max_attempts
        self._clock = clock or _now_ms

    def handle_write(
        self,
        device_id: str,
        sensor_key: str,
        raw: Any,
        now: Optional[int] = None,
    ) -> Optional[SensorDecision]:
        """Process one sensor write. Returns ``None`` when the write is ignored."""
        limits = self.limits.get(sensor_key)
        if limits is None or raw is None:
            return None
        value = coerce_sensor_value(raw)
        if value is None:
            logger.debug(
                "Ignoring non-numeric sensor payload",
                extra={"device_id": device_id, "sensor_key": sensor_key},
            )
            return None

        now = self._clock() if now is None else now
        latch_path = f"devices/{device_id}/state/sensorAlerts/{sensor_key}"

        for attempt in range(1, self.max_attempts + 1):
            current = self.store.get(latch_path)
            latch = SensorLatch.from_raw(current)
            decision = evaluate_sensor(
                now, device_id, sensor_key, value, limits, latch, self.cooldown_ms
            )

            merged = dict(current) if isinstance(current, dict) else {}
            merged.update(decision.latch_updates)
            updates: Dict[str, Any] = {latch_path: merged}
            if decision.notification is not None:
                notif_path = f"devices/{device_id}/notifications/{self.store.generate_key()}"
                updates[notif_path] = decision.notification.to_record()

            try:
                self.store.update(updates, expected={latch_path: current})
            except TransactionConflict:
                logger.info(
                    "Sensor latch changed concurrently; re-evaluating",
                    extra={"device_id": device_id, "sensor_key": sensor_key, "attempt": attempt},
                )
                continue

            if decision.notification is not None:
                logger.info(
                    "Sensor %s: %s",
                    decision.status.value,
                    decision.notification.title,
                    extra={"device_id": device_id, "sensor_key": sensor_key},
                )
            return decision

        raise TransactionConflict(latch_path)
