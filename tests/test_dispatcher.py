from __future__ import annotations

from typing import Any, List

import pytest

from app.schemas import DispatchStatus
from datastore.mock_rtdb import MockRealtimeDatabase
from messaging.base import (
    INVALID_TOKEN,
    TOKEN_NOT_REGISTERED,
    BatchResponse,
    MulticastMessage,
    PushDeliveryError,
)
from messaging.mock_fcm import MockPushProvider
from services.dispatcher import NotificationDispatcher

NOW = 1_700_000_000_000
NOTIF_PATH = "devices/d1/notifications/n1"


class RecordingStore(MockRealtimeDatabase):
    def __init__(self) -> None:
        super().__init__(name="test")
        self.reads: List[str] = []

    def get(self, path: str) -> Any:
        self.reads.append(path)
        return super().get(path)


class FailingDeleteStore(MockRealtimeDatabase):
    def __init__(self, broken_token: str) -> None:
        super().__init__(name="test")
        self.broken_token = broken_token

    def delete(self, path: str) -> None:
        if path.endswith(f"/{self.broken_token}"):
            raise OSError("store unavailable")
        super().delete(path)


def _seed(store: MockRealtimeDatabase, severity: str = "critical", tokens=("A", "B", "C")) -> None:
    store.set(
        NOTIF_PATH,
        {
            "title": "d1 pH LOW",
            "body": "pH is 7. Expected 7.5–10.5.",
            "severity": severity,
            "type": "sensor_pH_out_of_range",
            "ts": NOW - 1000,
            "deviceId": "d1",
        },
    )
    for token in tokens:
        store.set(f"devices/d1/pushTokens/{token}", True)


def _dispatcher(store: MockRealtimeDatabase, provider: MockPushProvider) -> NotificationDispatcher:
    return NotificationDispatcher(store, provider, tag_prefix="reef", clock=lambda: NOW)


def test_mixed_outcomes_prune_only_permanent_failures() -> None:
    store = MockRealtimeDatabase(name="test")
    _seed(store)
    provider = MockPushProvider()
    provider.fail_token("B", INVALID_TOKEN)
    provider.fail_token("C", "messaging/internal-error")

    report = _dispatcher(store, provider).dispatch("d1", "n1")

    assert report.status is DispatchStatus.sent
    assert report.delivered == ["A"]
    assert report.pruned == ["B"]
    assert report.retained == {"C": "messaging/internal-error"}
    assert set(store.get("devices/d1/pushTokens")) == {"A", "C"}
    assert store.get(f"{NOTIF_PATH}/pushedAt") == NOW
    assert report.pushed_at == NOW


def test_multicast_message_carries_routing_data_and_collapse_tag() -> None:
    store = MockRealtimeDatabase(name="test")
    _seed(store, tokens=("A", "B"))
    provider = MockPushProvider()

    _dispatcher(store, provider).dispatch("d1", "n1")

    assert len(provider.sent) == 1
    message = provider.sent[0]
    assert message.tokens == ["A", "B"]
    assert message.title == "d1 pH LOW"
    assert message.data == {
        "deviceId": "d1",
        "notifId": "n1",
        "severity": "critical",
        "type": "sensor_pH_out_of_range",
    }
    assert message.webpush is not None
    assert message.webpush.tag == "reef-d1"
    assert message.webpush.icon == message.webpush.badge == "/icon-192.png"


@pytest.mark.parametrize("severity", ["info", None, "loud"])
def test_quiet_severities_never_fetch_tokens(severity) -> None:
    store = RecordingStore()
    _seed(store, severity=severity)
    provider = MockPushProvider()

    report = _dispatcher(store, provider).dispatch("d1", "n1")

    assert report.status is DispatchStatus.not_pushable
    assert "devices/d1/pushTokens" not in store.reads
    assert provider.sent == []
    assert store.get(f"{NOTIF_PATH}/pushedAt") is None


def test_no_tokens_leaves_notification_unstamped() -> None:
    store = MockRealtimeDatabase(name="test")
    _seed(store, tokens=())
    provider = MockPushProvider()

    report = _dispatcher(store, provider).dispatch("d1", "n1")

    assert report.status is DispatchStatus.no_tokens
    assert provider.sent == []
    assert store.get(f"{NOTIF_PATH}/pushedAt") is None


def test_missing_record_is_reported() -> None:
    store = MockRealtimeDatabase(name="test")

    report = _dispatcher(store, MockPushProvider()).dispatch("d1", "gone")

    assert report.status is DispatchStatus.missing


def test_batch_failure_propagates_without_side_effects() -> None:
    store = MockRealtimeDatabase(name="test")
    _seed(store)
    provider = MockPushProvider()
    provider.fail_batches("quota exhausted")

    with pytest.raises(PushDeliveryError):
        _dispatcher(store, provider).dispatch("d1", "n1")

    assert set(store.get("devices/d1/pushTokens")) == {"A", "B", "C"}
    assert store.get(f"{NOTIF_PATH}/pushedAt") is None


def test_prune_failure_is_isolated_per_token() -> None:
    store = FailingDeleteStore(broken_token="A")
    _seed(store)
    provider = MockPushProvider()
    provider.fail_token("A", TOKEN_NOT_REGISTERED)
    provider.fail_token("B", "registration-token-not-registered")

    report = _dispatcher(store, provider).dispatch("d1", "n1")

    assert report.prune_failures == ["A"]
    assert report.pruned == ["B"]
    assert set(store.get("devices/d1/pushTokens")) == {"A", "C"}
    assert store.get(f"{NOTIF_PATH}/pushedAt") == NOW


def test_redispatch_is_safe_and_repeats_same_pruning_decision() -> None:
    store = MockRealtimeDatabase(name="test")
    _seed(store)
    provider = MockPushProvider()
    provider.fail_token("B", INVALID_TOKEN)
    dispatcher = _dispatcher(store, provider)

    first = dispatcher.dispatch("d1", "n1")
    second = dispatcher.dispatch("d1", "n1")

    assert first.pruned == ["B"]
    assert second.status is DispatchStatus.sent
    assert second.delivered == ["A", "C"]
    assert second.pruned == []
    assert set(store.get("devices/d1/pushTokens")) == {"A", "C"}
    assert len(provider.sent) == 2


def test_device_originated_record_with_message_field_is_normalized() -> None:
    store = MockRealtimeDatabase(name="test")
    store.set(NOTIF_PATH, {"message": "Dosing pump stalled", "severity": "ERROR"})
    store.set("devices/d1/pushTokens/A", True)
    provider = MockPushProvider()

    report = _dispatcher(store, provider).dispatch("d1", "n1")

    assert report.status is DispatchStatus.sent
    assert provider.sent[0].title == "Device alert"
    assert provider.sent[0].body == "Dosing pump stalled"
    assert provider.sent[0].data["severity"] == "error"


class ShortBatchProvider(MockPushProvider):
    def send_each_for_multicast(self, message: MulticastMessage) -> BatchResponse:
        batch = super().send_each_for_multicast(message)
        return BatchResponse(responses=batch.responses[:-1])


def test_provider_result_count_mismatch_is_a_batch_failure() -> None:
    store = MockRealtimeDatabase(name="test")
    _seed(store)
    store.set("devices/d1/pushTokens/D", True)

    with pytest.raises(PushDeliveryError):
        _dispatcher(store, ShortBatchProvider()).dispatch("d1", "n1")

    assert set(store.get("devices/d1/pushTokens")) == {"A", "B", "C", "D"}
    assert store.get(f"{NOTIF_PATH}/pushedAt") is None
