from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from messaging.base import (
    BatchResponse,
    MulticastMessage,
    PushDeliveryError,
    PushProvider,
    SendResponse,
)


class HttpPushGateway(PushProvider):
    """Provider that forwards multicast requests to a remote push gateway.

    The gateway accepts the message JSON at ``POST /send`` and answers with
    ``{"responses": [{"success": bool, "messageId": str, "error": {"code": str}}]}``
    in token order.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout, transport=transport
        )

    def close(self) -> None:
        self._client.close()

    def send_each_for_multicast(self, message: MulticastMessage) -> BatchResponse:
        try:
            response = self._client.post("/send", json=message.to_payload())
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise PushDeliveryError(
                f"Push gateway rejected batch with status {exc.response.status_code}."
            ) from exc
        except httpx.HTTPError as exc:
            raise PushDeliveryError(f"Push gateway unreachable: {exc}") from exc
        except ValueError as exc:
            raise PushDeliveryError("Push gateway returned invalid JSON.") from exc

        results = payload.get("responses") if isinstance(payload, dict) else None
        if not isinstance(results, list) or len(results) != len(message.tokens):
            raise PushDeliveryError(
                "Push gateway returned a result count that does not match the tokens."
            )
        return BatchResponse(responses=[self._parse_result(item) for item in results])

    @staticmethod
    def _parse_result(item: Any) -> SendResponse:
        if not isinstance(item, dict):
            return SendResponse(success=False, error_code="messaging/unknown-error")
        if item.get("success"):
            message_id = item.get("messageId")
            return SendResponse(
                success=True,
                message_id=str(message_id) if message_id is not None else None,
            )
        error: Dict[str, Any] = item.get("error") or {}
        code = error.get("code") if isinstance(error, dict) else None
        return SendResponse(success=False, error_code=str(code or "messaging/unknown-error"))
