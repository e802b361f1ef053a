"""Push provider interface: multicast request, per-token outcomes, failure classification."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

TOKEN_NOT_REGISTERED = "messaging/registration-token-not-registered"
INVALID_TOKEN = "messaging/invalid-registration-token"

PERMANENT_FAILURE_CODES = frozenset({TOKEN_NOT_REGISTERED, INVALID_TOKEN})

_CODE_NAMESPACE = "messaging/"


def is_permanent_failure(code: Optional[str]) -> bool:
    """True when the code means the token can never receive messages again."""
    if not code:
        return False
    candidate = code.strip().lower()
    if not candidate.startswith(_CODE_NAMESPACE):
        candidate = _CODE_NAMESPACE + candidate
    return candidate in PERMANENT_FAILURE_CODES


class PushDeliveryError(RuntimeError):
    """The batch send itself failed; no per-token outcome is available."""


@dataclass(frozen=True)
class WebpushDisplay:
    """Client display hint. Messages sharing a ``tag`` replace each other."""

    icon: str
    badge: str
    tag: str


@dataclass(frozen=True)
class MulticastMessage:
    tokens: List[str]
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)
    webpush: Optional[WebpushDisplay] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "tokens": list(self.tokens),
            "notification": {"title": self.title, "body": self.body},
            "data": dict(self.data),
        }
        if self.webpush is not None:
            payload["webpush"] = {
                "notification": {
                    "icon": self.webpush.icon,
                    "badge": self.webpush.badge,
                    "tag": self.webpush.tag,
                }
            }
        return payload


@dataclass(frozen=True)
class SendResponse:
    success: bool
    message_id: Optional[str] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class BatchResponse:
    responses: List[SendResponse]

    @property
    def success_count(self) -> int:
        return sum(1 for response in self.responses if response.success)

    @property
    def failure_count(self) -> int:
        return len(self.responses) - self.success_count


class PushProvider(ABC):
    """Abstract multicast push sender."""

    @abstractmethod
    def send_each_for_multicast(self, message: MulticastMessage) -> BatchResponse:
        """Send ``message`` to every token.

        Returns one :class:`SendResponse` per token, in token order. Raises
        :class:`PushDeliveryError` when the batch could not be submitted.
        """

    def close(self) -> None:
        """Release provider resources."""
