"""Fan a stored notification out to every push token registered for its device."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, List, Optional

from app.schemas import DispatchReport, DispatchStatus, Notification, Severity
from datastore.base import TreeStore
from messaging.base import (
    MulticastMessage,
    PushDeliveryError,
    PushProvider,
    WebpushDisplay,
    is_permanent_failure,
)

logger = logging.getLogger(__name__)

DEFAULT_PUSH_SEVERITIES = (Severity.warning, Severity.error, Severity.critical)


def _now_ms() -> int:
    return int(time.time() * 1000)


def token_keys(raw: Any) -> List[str]:
    if not isinstance(raw, dict):
        return []
    return [str(token) for token in raw if token]


def _allowed_severities(items: Iterable[Any]) -> frozenset[Severity]:
    allowed = set()
    for item in items:
        try:
            allowed.add(Severity(item))
        except ValueError:
            logger.warning("Ignoring unknown push severity %r", item)
    return frozenset(allowed)


class NotificationDispatcher:
    """Sends push messages for notification records and prunes dead tokens."""

    def __init__(
        self,
        store: TreeStore,
        provider: PushProvider,
        *,
        push_severities: Iterable[str] = DEFAULT_PUSH_SEVERITIES,
        default_title: str = "Device alert",
        icon: str = "/icon-192.png",
        tag_prefix: str = "device",
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.push_severities = _allowed_severities(push_severities)
        self.default_title = default_title
        self.icon = icon
        self.tag_prefix = tag_prefix
        self._clock = clock or _now_ms

    def dispatch(
        self,
        device_id: str,
        notif_id: str,
        record: Optional[Any] = None,
    ) -> DispatchReport:
        """Push one notification.

        Store reads and the batch send raise on failure so the caller can retry
        the whole dispatch. Token deletions fail independently of each other.
        """
        context = {"device_id": device_id, "notif_id": notif_id}
        notif_path = f"devices/{device_id}/notifications/{notif_id}"
        if record is None:
            record = self.store.get(notif_path)
        if record is None:
            logger.warning("Notification vanished before dispatch", extra=context)
            return DispatchReport(
                status=DispatchStatus.missing, device_id=device_id, notif_id=notif_id
            )

        notification = Notification.from_record(record, device_id, self.default_title)
        if notification.severity not in self.push_severities:
            return DispatchReport(
                status=DispatchStatus.not_pushable, device_id=device_id, notif_id=notif_id
            )

        tokens = token_keys(self.store.get(f"devices/{device_id}/pushTokens"))
        if not tokens:
            logger.info("No push tokens registered", extra=context)
            return DispatchReport(
                status=DispatchStatus.no_tokens, device_id=device_id, notif_id=notif_id
            )

        message = self._build_message(device_id, notif_id, notification, tokens)
        batch = self.provider.send_each_for_multicast(message)
        if len(batch.responses) != len(tokens):
            raise PushDeliveryError(
                f"Provider returned {len(batch.responses)} results for {len(tokens)} tokens"
            )
        logger.info(
            "Push batch sent",
            extra={
                **context,
                "success_count": batch.success_count,
                "failure_count": batch.failure_count,
            },
        )

        report = DispatchReport(status=DispatchStatus.sent, device_id=device_id, notif_id=notif_id)
        for token, outcome in zip(tokens, batch.responses):
            if outcome.success:
                report.delivered.append(token)
                continue
            code = outcome.error_code or ""
            if not is_permanent_failure(code):
                logger.warning(
                    "Transient push failure", extra={**context, "token": token, "error_code": code}
                )
                report.retained[token] = code
                continue
            try:
                self.store.delete(f"devices/{device_id}/pushTokens/{token}")
            except Exception:
                logger.exception("Failed to prune invalid token", extra={**context, "token": token})
                report.prune_failures.append(token)
                continue
            logger.info(
                "Removed invalid token", extra={**context, "token": token, "error_code": code}
            )
            report.pruned.append(token)

        pushed_at = self._clock()
        self.store.set(f"{notif_path}/pushedAt", pushed_at)
        report.pushed_at = pushed_at
        return report

    def _build_message(
        self,
        device_id: str,
        notif_id: str,
        notification: Notification,
        tokens: List[str],
    ) -> MulticastMessage:
        return MulticastMessage(
            tokens=tokens,
            title=notification.title,
            body=notification.body,
            data={
                "deviceId": device_id,
                "notifId": notif_id,
                "severity": notification.severity.value,
                "type": notification.kind,
            },
            webpush=WebpushDisplay(
                icon=self.icon,
                badge=self.icon,
                tag=f"{self.tag_prefix}-{device_id}",
            ),
        )
