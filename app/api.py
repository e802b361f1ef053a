"""HTTP route definitions for the service."""

from __future__ import annotations

import time
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.schemas import (
    HeartbeatRequest,
    Notification,
    NotificationCreateRequest,
    NotificationCreatedResponse,
    PruneReport,
    SensorWriteRequest,
    StoredNotification,
    SweepReport,
)
from datastore.base import InvalidPathError
from services.runtime import AlertingRuntime, build_default_runtime

router = APIRouter()


def get_runtime() -> AlertingRuntime:
    return build_default_runtime()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _bad_path(exc: InvalidPathError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post(
    "/devices/{device_id}/heartbeat",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Record a device heartbeat.",
)
async def post_heartbeat(
    device_id: str,
    payload: HeartbeatRequest | None = None,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> Response:
    ts = payload.ts if payload is not None and payload.ts is not None else _now_ms()
    try:
        runtime.store.set(f"devices/{device_id}/state/lastSeen", ts)
    except InvalidPathError as exc:
        raise _bad_path(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put(
    "/devices/{device_id}/sensors/{sensor_key}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Write the latest value for a sensor.",
)
async def put_sensor_value(
    device_id: str,
    sensor_key: str,
    payload: SensorWriteRequest,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> Response:
    ts = payload.ts if payload.ts is not None else _now_ms()
    try:
        runtime.store.set(
            f"devices/{device_id}/sensors/{sensor_key}", {"value": payload.value, "ts": ts}
        )
    except InvalidPathError as exc:
        raise _bad_path(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/devices/{device_id}/sensors/{sensor_key}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a sensor value.",
)
async def delete_sensor_value(
    device_id: str,
    sensor_key: str,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> Response:
    try:
        runtime.store.delete(f"devices/{device_id}/sensors/{sensor_key}")
    except InvalidPathError as exc:
        raise _bad_path(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put(
    "/devices/{device_id}/push-tokens/{token}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Register a push token for a device.",
)
async def register_push_token(
    device_id: str,
    token: str,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> Response:
    try:
        runtime.store.set(f"devices/{device_id}/pushTokens/{token}", True)
    except InvalidPathError as exc:
        raise _bad_path(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/devices/{device_id}/push-tokens/{token}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Unregister a push token.",
)
async def unregister_push_token(
    device_id: str,
    token: str,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> Response:
    try:
        runtime.store.delete(f"devices/{device_id}/pushTokens/{token}")
    except InvalidPathError as exc:
        raise _bad_path(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/devices/{device_id}/state",
    summary="Fetch liveness state and sensor latches for a device.",
)
async def get_device_state(
    device_id: str,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> dict:
    try:
        state = runtime.store.get(f"devices/{device_id}/state")
    except InvalidPathError as exc:
        raise _bad_path(exc) from exc
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {device_id!r} has no recorded state.",
        )
    return state


@router.post(
    "/devices/{device_id}/notifications",
    status_code=status.HTTP_201_CREATED,
    response_model=NotificationCreatedResponse,
    summary="Append a device-originated notification.",
)
async def create_notification(
    device_id: str,
    payload: NotificationCreateRequest,
    runtime: AlertingRuntime = Depends(get_runtime),
) -> NotificationCreatedResponse:
    notification = Notification(
        title=payload.title or f"{device_id} update",
        body=payload.body,
        severity=payload.severity,
        kind=payload.type,
        ts=_now_ms(),
        device_id=device_id,
    )
    try:
        notif_id = runtime.store.push(
            f"devices/{device_id}/notifications", notification.to_record()
        )
    except InvalidPathError as exc:
        raise _bad_path(exc) from exc
    return NotificationCreatedResponse(notif_id=notif_id)


@router.get(
    "/devices/{device_id}/notifications",
    response_model=List[StoredNotification],
    summary="List the most recent notifications for a device, newest first.",
)
async def list_notifications(
    device_id: str,
    limit: int = Query(20, ge=1, le=500),
    runtime: AlertingRuntime = Depends(get_runtime),
) -> List[StoredNotification]:
    try:
        records = runtime.store.query(f"devices/{device_id}/notifications", order_by="ts")
    except InvalidPathError as exc:
        raise _bad_path(exc) from exc
    newest = list(reversed(records))[:limit]
    title = runtime.dispatcher.default_title
    return [
        StoredNotification(
            notif_id=notif_id,
            notification=Notification.from_record(record, device_id, title),
        )
        for notif_id, record in newest
    ]


@router.post(
    "/jobs/liveness-sweep",
    response_model=SweepReport,
    summary="Evaluate heartbeat staleness for every device.",
)
def run_liveness_sweep(
    runtime: AlertingRuntime = Depends(get_runtime),
) -> SweepReport:
    return runtime.sweep.run()


@router.post(
    "/jobs/prune/dose-runs",
    response_model=PruneReport,
    summary="Delete dose runs older than the retention window.",
)
def prune_dose_runs(
    runtime: AlertingRuntime = Depends(get_runtime),
) -> PruneReport:
    return runtime.dose_run_retention.run()


@router.post(
    "/jobs/prune/notifications",
    response_model=PruneReport,
    summary="Delete notifications older than the retention window.",
)
def prune_notifications(
    runtime: AlertingRuntime = Depends(get_runtime),
) -> PruneReport:
    return runtime.notification_retention.run()


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
