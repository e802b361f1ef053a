"""Periodic liveness sweep over every device."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.schemas import SweepReport
from datastore.base import TransactionConflict, TreeStore
from models.records import LivenessState
from services.liveness import LivenessDecision, LivenessTransition, evaluate_liveness

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _DeviceUnit:
    """Writes for one device that must land together or not at all."""

    device_id: str
    decision: LivenessDecision
    updates: Dict[str, Any]
    expected: Dict[str, Any]


class SweepDriver:
    """Runs the liveness evaluation for all devices and commits the results."""

    def __init__(
        self,
        store: TreeStore,
        *,
        offline_threshold_ms: int,
        notify_back_online: bool = True,
        display_timezone: str = "UTC",
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.offline_threshold_ms = offline_threshold_ms
        self.notify_back_online = notify_back_online
        self.display_timezone = display_timezone
        self._clock = clock or _now_ms

    def run(self, now: Optional[int] = None) -> SweepReport:
        now = self._clock() if now is None else now
        devices = self.store.get("devices") or {}
        report = SweepReport()

        units: List[_DeviceUnit] = []
        for device_id, device in devices.items():
            state_raw = device.get("state") if isinstance(device, dict) else None
            state = LivenessState.from_raw(state_raw)
            if not state.last_seen:
                report.skipped += 1
                continue

            report.evaluated += 1
            decision = evaluate_liveness(
                now,
                device_id,
                state,
                offline_threshold_ms=self.offline_threshold_ms,
                notify_back_online=self.notify_back_online,
                display_timezone=self.display_timezone,
            )
            if decision.changed:
                units.append(self._build_unit(device_id, state_raw, decision))

        committed, conflicts = self._commit(units)
        for unit in committed:
            if unit.decision.transition is LivenessTransition.offline:
                report.went_offline.append(unit.device_id)
            else:
                report.came_online.append(unit.device_id)
            if unit.decision.notification is not None:
                report.notifications += 1
        report.conflicts = conflicts

        logger.info(
            "Liveness sweep finished: %d evaluated, %d offline, %d online",
            report.evaluated,
            len(report.went_offline),
            len(report.came_online),
        )
        return report

    def _build_unit(
        self, device_id: str, state_raw: Dict[str, Any], decision: LivenessDecision
    ) -> _DeviceUnit:
        state_path = f"devices/{device_id}/state"
        updates: Dict[str, Any] = {
            f"{state_path}/{name}": value for name, value in decision.updates.items()
        }
        if decision.notification is not None:
            notif_path = f"devices/{device_id}/notifications/{self.store.generate_key()}"
            updates[notif_path] = decision.notification.to_record()

        # A heartbeat or another sweep landing between read and commit voids this decision.
        expected = {
            f"{state_path}/lastSeen": state_raw.get("lastSeen"),
            f"{state_path}/offlineSince": state_raw.get("offlineSince"),
        }
        return _DeviceUnit(device_id, decision, updates, expected)

    def _commit(self, units: List[_DeviceUnit]) -> Tuple[List[_DeviceUnit], List[str]]:
        if not units:
            return [], []

        updates: Dict[str, Any] = {}
        expected: Dict[str, Any] = {}
        for unit in units:
            updates.update(unit.updates)
            expected.update(unit.expected)
        try:
            self.store.update(updates, expected=expected)
            return units, []
        except TransactionConflict as exc:
            logger.info("Batched sweep commit conflicted on %s; committing per device", exc.path)

        committed: List[_DeviceUnit] = []
        conflicts: List[str] = []
        for unit in units:
            try:
                self.store.update(unit.updates, expected=unit.expected)
            except TransactionConflict:
                logger.warning(
                    "Device state changed during sweep; deferring to next tick",
                    extra={"device_id": unit.device_id},
                )
                conflicts.append(unit.device_id)
                continue
            committed.append(unit)
        return committed, conflicts
