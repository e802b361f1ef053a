from __future__ import annotations

import pytest

from app.schemas import Notification, Severity


def test_from_record_keeps_sensor_range_details() -> None:
    notification = Notification.from_record(
        {
            "title": "d1 pH LOW",
            "body": "pH is 7. Expected 7.5–10.5.",
            "severity": "critical",
            "type": "sensor_pH_out_of_range",
            "ts": 1_700_000_000_000,
            "sensorKey": "pH",
            "value": 7,
            "min": "7.5",
            "max": 10.5,
        },
        "d1",
        "Device alert",
    )

    assert notification.sensor_key == "pH"
    assert notification.value == 7.0
    assert notification.min_value == 7.5
    assert notification.max_value == 10.5
    assert notification.to_record()["sensorKey"] == "pH"


@pytest.mark.parametrize("raw", [True, "high", "nan", None, {"v": 1}, [7.0]])
def test_from_record_drops_unusable_numbers(raw) -> None:
    notification = Notification.from_record(
        {"body": "x", "value": raw, "min": raw, "sensorKey": 5}, "d1", "Device alert"
    )

    assert notification.value is None
    assert notification.min_value is None
    assert notification.sensor_key is None


def test_from_record_normalizes_sparse_device_records() -> None:
    notification = Notification.from_record({"message": "Pump stalled"}, "d1", "Device alert")

    assert notification.title == "Device alert"
    assert notification.body == "Pump stalled"
    assert notification.severity is Severity.info
    assert notification.device_id == "d1"
