"""Pydantic schemas for notification records, job reports and the HTTP API."""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_NOTIFICATION_BODY = "Device update"


def _optional_float(raw: Any) -> Optional[float]:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        return None
    try:
        value = float(raw)
    except (OverflowError, ValueError):
        return None
    return value if math.isfinite(value) else None


class Severity(str, Enum):
    """Notification severities, ordered from quiet to loud."""

    info = "info"
    warning = "warning"
    error = "error"
    critical = "critical"

    @classmethod
    def parse(cls, raw: Any) -> "Severity":
        """Lenient parse: missing or unrecognized severities become ``info``."""
        if isinstance(raw, cls):
            return raw
        candidate = str(raw or "").strip().lower()
        try:
            return cls(candidate)
        except ValueError:
            return cls.info


class Notification(BaseModel):
    """A record stored under ``devices/{deviceId}/notifications/{notifId}``.

    Field aliases are the camelCase names used in the store.
    """

    model_config = ConfigDict(populate_by_name=True)

    title: str
    body: str
    severity: Severity = Severity.info
    kind: str = Field(default="", alias="type")
    ts: int = 0
    device_id: str = Field(..., alias="deviceId")
    sensor_key: Optional[str] = Field(default=None, alias="sensorKey")
    value: Optional[float] = None
    min_value: Optional[float] = Field(default=None, alias="min")
    max_value: Optional[float] = Field(default=None, alias="max")
    pushed_at: Optional[int] = Field(default=None, alias="pushedAt")

    @field_validator("severity", mode="before")
    @classmethod
    def _lenient_severity(cls, value: Any) -> Severity:
        return Severity.parse(value)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_record(
        cls, raw: Any, device_id: str, default_title: str
    ) -> "Notification":
        """Build a notification from a stored record written by any producer.

        Device-originated records may omit fields or use ``message`` instead of
        ``body``; those are normalized here rather than rejected.
        """
        data = raw if isinstance(raw, dict) else {}
        ts = data.get("ts")
        pushed_at = data.get("pushedAt")
        sensor_key = data.get("sensorKey")
        return cls(
            title=str(data.get("title") or default_title),
            body=str(data.get("body") or data.get("message") or DEFAULT_NOTIFICATION_BODY),
            severity=data.get("severity"),
            kind=str(data.get("type") or ""),
            ts=ts if isinstance(ts, int) and not isinstance(ts, bool) else 0,
            device_id=str(data.get("deviceId") or device_id),
            sensor_key=sensor_key if isinstance(sensor_key, str) and sensor_key else None,
            value=_optional_float(data.get("value")),
            min_value=_optional_float(data.get("min")),
            max_value=_optional_float(data.get("max")),
            pushed_at=pushed_at if isinstance(pushed_at, int) else None,
        )


class DispatchStatus(str, Enum):
    missing = "missing"
    not_pushable = "not_pushable"
    no_tokens = "no_tokens"
    sent = "sent"


class DispatchReport(BaseModel):
    """Outcome of one dispatcher invocation."""

    status: DispatchStatus
    device_id: str
    notif_id: str
    delivered: List[str] = Field(default_factory=list)
    pruned: List[str] = Field(default_factory=list)
    retained: Dict[str, str] = Field(
        default_factory=dict, description="Token to transient error code."
    )
    prune_failures: List[str] = Field(default_factory=list)
    pushed_at: Optional[int] = None


class SweepReport(BaseModel):
    """Summary of one liveness sweep over every device."""

    evaluated: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0, description="Devices that never reported a heartbeat.")
    went_offline: List[str] = Field(default_factory=list)
    came_online: List[str] = Field(default_factory=list)
    notifications: int = Field(0, ge=0)
    conflicts: List[str] = Field(default_factory=list)


class PruneReport(BaseModel):
    collection: str
    cutoff: int
    deleted: int = Field(0, ge=0)


class HeartbeatRequest(BaseModel):
    ts: Optional[int] = Field(default=None, description="Epoch ms; defaults to server time.")


class SensorWriteRequest(BaseModel):
    value: float
    ts: Optional[int] = None


class NotificationCreateRequest(BaseModel):
    title: Optional[str] = None
    body: str
    severity: Severity = Severity.info
    type: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def _lenient_severity(cls, value: Any) -> Severity:
        return Severity.parse(value)


class NotificationCreatedResponse(BaseModel):
    notif_id: str


class StoredNotification(BaseModel):
    notif_id: str
    notification: Notification
