from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the alerting service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def heartbeat(self, device_id: str, ts: Optional[int] = None) -> None:
        payload = {"ts": ts} if ts is not None else {}
        self._request("POST", f"/devices/{device_id}/heartbeat", json=payload)

    def write_sensor(self, device_id: str, sensor_key: str, value: float) -> None:
        self._request("PUT", f"/devices/{device_id}/sensors/{sensor_key}", json={"value": value})

    def register_token(self, device_id: str, token: str) -> None:
        self._request("PUT", f"/devices/{device_id}/push-tokens/{token}")

    def list_notifications(self, device_id: str, limit: int) -> List[Dict[str, Any]]:
        response = self._request(
            "GET", f"/devices/{device_id}/notifications", params={"limit": limit}
        )
        return response.json()

    def run_sweep(self) -> Dict[str, Any]:
        return self._request("POST", "/jobs/liveness-sweep").json()

    def run_prune(self, collection: str) -> Dict[str, Any]:
        return self._request("POST", f"/jobs/prune/{collection}").json()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            typer.secho(f"Could not reach {self._config.base_url}: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1) from exc
        return response

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: str | None = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
