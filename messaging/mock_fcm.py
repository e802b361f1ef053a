from __future__ import annotations

from threading import Lock
from typing import Dict, List, Optional
from uuid import uuid4

from messaging.base import (
    BatchResponse,
    MulticastMessage,
    PushDeliveryError,
    PushProvider,
    SendResponse,
)


class MockPushProvider(PushProvider):
    """In-memory provider that records messages and replays scripted outcomes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._failures: Dict[str, str] = {}
        self._batch_error: Optional[str] = None
        self.sent: List[MulticastMessage] = []

    def fail_token(self, token: str, error_code: str) -> None:
        with self._lock:
            self._failures[token] = error_code

    def fail_batches(self, reason: Optional[str]) -> None:
        """Make every subsequent send raise until called again with ``None``."""
        with self._lock:
            self._batch_error = reason

    def send_each_for_multicast(self, message: MulticastMessage) -> BatchResponse:
        with self._lock:
            if self._batch_error is not None:
                raise PushDeliveryError(self._batch_error)
            self.sent.append(message)
            failures = dict(self._failures)

        responses = []
        for token in message.tokens:
            code = failures.get(token)
            if code is None:
                responses.append(SendResponse(success=True, message_id=f"mock-{uuid4()}"))
            else:
                responses.append(SendResponse(success=False, error_code=code))
        return BatchResponse(responses=responses)
