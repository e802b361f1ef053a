from __future__ import annotations

import json
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from models.records import SensorLimits


_OFFLINE_THRESHOLD_ENV = "OFFLINE_THRESHOLD_MS"
_SENSOR_COOLDOWN_ENV = "SENSOR_COOLDOWN_MS"
_SENSOR_LIMITS_ENV = "SENSOR_LIMITS_JSON"
_NOTIFY_BACK_ONLINE_ENV = "NOTIFY_BACK_ONLINE"
_DISPLAY_TIMEZONE_ENV = "DISPLAY_TIMEZONE"
_DEFAULT_TITLE_ENV = "DEFAULT_NOTIFICATION_TITLE"
_PUSH_SEVERITIES_ENV = "PUSH_SEVERITIES"
_PUSH_ICON_ENV = "PUSH_ICON"
_PUSH_TAG_PREFIX_ENV = "PUSH_TAG_PREFIX"
_PUSH_GATEWAY_URL_ENV = "PUSH_GATEWAY_URL"
_STORE_PATH_ENV = "MOCK_RTDB_PERSISTENCE_PATH"
_WORKER_COUNT_ENV = "TRIGGER_WORKER_COUNT"
_TRIGGER_ATTEMPTS_ENV = "TRIGGER_MAX_ATTEMPTS"
_LATCH_ATTEMPTS_ENV = "SENSOR_LATCH_MAX_ATTEMPTS"
_DOSE_RUN_KEEP_DAYS_ENV = "DOSE_RUN_KEEP_DAYS"
_NOTIFICATION_KEEP_DAYS_ENV = "NOTIFICATION_KEEP_DAYS"
_PRUNE_BATCH_SIZE_ENV = "PRUNE_BATCH_SIZE"
_LOG_LEVEL_ENV = "LOG_LEVEL"

DEFAULT_SENSOR_LIMITS: Mapping[str, SensorLimits] = {
    "pH": SensorLimits(min=7.5, max=10.5, label="pH"),
    "tempF": SensorLimits(min=75.0, max=82.0, label="Temp (°F)"),
    "sg": SensorLimits(min=1.023, max=1.027, label="Salinity (SG)"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    offline_threshold_ms: int
    sensor_cooldown_ms: int
    sensor_limits: Mapping[str, SensorLimits]
    notify_back_online: bool
    display_timezone: str
    default_notification_title: str
    push_severities: tuple[str, ...]
    push_icon: str
    push_tag_prefix: str
    push_gateway_url: Optional[str]
    store_persistence_path: Optional[str]
    trigger_workers: int
    trigger_max_attempts: int
    latch_max_attempts: int
    dose_run_keep_days: int
    notification_keep_days: int
    prune_batch_size: int
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in _TRUE_VALUES:
        return True
    if candidate in _FALSE_VALUES:
        return False
    return default


def _read_severities(default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(_PUSH_SEVERITIES_ENV)
    if value is None:
        return default
    parts = tuple(part.strip().lower() for part in value.split(",") if part.strip())
    return parts or default


def _read_sensor_limits(
    default: Mapping[str, SensorLimits],
) -> Mapping[str, SensorLimits]:
    value = os.getenv(_SENSOR_LIMITS_ENV)
    if value is None or not value.strip():
        return dict(default)
    try:
        payload = json.loads(value)
    except json.JSONDecodeError:
        return dict(default)
    if not isinstance(payload, dict):
        return dict(default)

    limits: dict[str, SensorLimits] = {}
    for key, entry in payload.items():
        if not isinstance(entry, dict):
            continue
        try:
            low = float(entry["min"])
            high = float(entry["max"])
        except (KeyError, TypeError, ValueError):
            continue
        limits[str(key)] = SensorLimits(
            min=low, max=high, label=str(entry.get("label") or key)
        )
    return limits or dict(default)


def _read_timezone(name: str, default: str) -> str:
    candidate = _read_str_env(name, default)
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return default
    return candidate


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        offline_threshold_ms=_read_positive_int(_OFFLINE_THRESHOLD_ENV, 4 * 60 * 1000),
        sensor_cooldown_ms=_read_positive_int(_SENSOR_COOLDOWN_ENV, 30 * 60 * 1000),
        sensor_limits=_read_sensor_limits(DEFAULT_SENSOR_LIMITS),
        notify_back_online=_read_bool(_NOTIFY_BACK_ONLINE_ENV, True),
        display_timezone=_read_timezone(_DISPLAY_TIMEZONE_ENV, "America/Chicago"),
        default_notification_title=_read_str_env(_DEFAULT_TITLE_ENV, "Device alert"),
        push_severities=_read_severities(("warning", "error", "critical")),
        push_icon=_read_str_env(_PUSH_ICON_ENV, "/icon-192.png"),
        push_tag_prefix=_read_str_env(_PUSH_TAG_PREFIX_ENV, "device"),
        push_gateway_url=_read_optional_env(_PUSH_GATEWAY_URL_ENV, None),
        store_persistence_path=_read_optional_env(_STORE_PATH_ENV, "./tmp/mock_rtdb.json"),
        trigger_workers=_read_positive_int(_WORKER_COUNT_ENV, 4),
        trigger_max_attempts=_read_positive_int(_TRIGGER_ATTEMPTS_ENV, 3),
        latch_max_attempts=_read_positive_int(_LATCH_ATTEMPTS_ENV, 5),
        dose_run_keep_days=_read_positive_int(_DOSE_RUN_KEEP_DAYS_ENV, 365),
        notification_keep_days=_read_positive_int(_NOTIFICATION_KEEP_DAYS_ENV, 30),
        prune_batch_size=_read_positive_int(_PRUNE_BATCH_SIZE_ENV, 500),
        log_level=_read_log_level("INFO"),
    )
