"""Wiring of store triggers to handlers, and the process-wide runtime factory."""

from __future__ import annotations

import logging
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache
from threading import Condition
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from datastore.base import StoreEvent, TreeStore
from datastore.mock_rtdb import build_default_store
from messaging.base import PushProvider
from messaging.http_gateway import HttpPushGateway
from messaging.mock_fcm import MockPushProvider
from services.dispatcher import NotificationDispatcher
from services.retention import RetentionJob
from services.sensor_monitor import SensorRangeMonitor
from services.sweep import SweepDriver
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

SENSOR_PATTERN = "devices/{deviceId}/sensors/{sensorKey}"
NOTIFICATION_PATTERN = "devices/{deviceId}/notifications/{notifId}"

Job = Tuple[str, Dict[str, Any], Callable[..., Any], Tuple[Any, ...]]


class TriggerRuntime:
    """Runs store-triggered handlers on a worker pool with at-least-once retries.

    Sensor handlers fire on every write to a sensor path, dispatch fires only
    when a notification record is created.
    """

    def __init__(
        self,
        store: TreeStore,
        sensor_monitor: SensorRangeMonitor,
        dispatcher: NotificationDispatcher,
        workers: int = 4,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self.sensor_monitor = sensor_monitor
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="trigger")
        self._pending = 0
        self._closed = False
        self._cond = Condition()
        self._lanes: Dict[str, Deque[Job]] = {}
        self._unsubscribers = [
            store.subscribe(SENSOR_PATTERN, self._on_sensor_write),
            store.subscribe(NOTIFICATION_PATTERN, self._on_notification_write),
        ]

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until no handler is queued or running. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout)

    def shutdown(self, wait: bool = False) -> None:
        with self._cond:
            self._closed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self.executor.shutdown(wait=wait, cancel_futures=not wait)

    def _on_sensor_write(self, event: StoreEvent) -> None:
        device_id = event.params["deviceId"]
        sensor_key = event.params["sensorKey"]
        self._submit(
            "sensorRangeAlerts",
            {"device_id": device_id, "sensor_key": sensor_key},
            self.sensor_monitor.handle_write,
            device_id,
            sensor_key,
            event.after,
            lane=event.path,
        )

    def _on_notification_write(self, event: StoreEvent) -> None:
        if not event.created:
            return
        device_id = event.params["deviceId"]
        notif_id = event.params["notifId"]
        self._submit(
            "pushOnDeviceNotification",
            {"device_id": device_id, "notif_id": notif_id},
            self.dispatcher.dispatch,
            device_id,
            notif_id,
            event.after,
        )

    def _submit(
        self,
        trigger: str,
        context: Dict[str, Any],
        handler: Callable[..., Any],
        *args: Any,
        lane: Optional[str] = None,
    ) -> None:
        """Queue a handler run.

        Runs sharing a ``lane`` execute one at a time in submission order, so
        writes to one sensor path are evaluated in the order they were committed.
        """
        job: Job = (trigger, context, handler, args)
        with self._cond:
            if self._closed:
                logger.warning(
                    "Runtime stopped; dropping trigger", extra={**context, "trigger": trigger}
                )
                return
            self._pending += 1
            if lane is not None:
                if lane in self._lanes:
                    self._lanes[lane].append(job)
                    return
                self._lanes[lane] = deque()
        self._start(lane, job)

    def _start(self, lane: Optional[str], job: Job) -> None:
        trigger, context, handler, args = job
        try:
            future = self.executor.submit(self._run, trigger, context, handler, *args)
        except RuntimeError:
            logger.warning(
                "Worker pool shut down; dropping trigger", extra={**context, "trigger": trigger}
            )
            self._finished(lane)
            return
        future.add_done_callback(lambda _future: self._finished(lane))

    def _finished(self, lane: Optional[str]) -> None:
        next_job: Optional[Job] = None
        with self._cond:
            self._pending -= 1
            if lane is not None:
                queued = self._lanes[lane]
                if queued and not self._closed:
                    next_job = queued.popleft()
                else:
                    self._pending -= len(queued)
                    del self._lanes[lane]
            self._cond.notify_all()
        if next_job is not None:
            self._start(lane, next_job)

    def _run(
        self,
        trigger: str,
        context: Dict[str, Any],
        handler: Callable[..., Any],
        *args: Any,
    ) -> Any:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return handler(*args)
            except Exception:
                extra = {**context, "trigger": trigger, "attempt": attempt}
                if attempt == self.max_attempts:
                    logger.exception("Trigger failed after final attempt", extra=extra)
                    return None
                logger.warning("Trigger attempt failed; retrying", exc_info=True, extra=extra)
                time.sleep(self.retry_delay * attempt)
        return None


@dataclass
class AlertingRuntime:
    store: TreeStore
    provider: PushProvider
    sensor_monitor: SensorRangeMonitor
    dispatcher: NotificationDispatcher
    sweep: SweepDriver
    dose_run_retention: RetentionJob
    notification_retention: RetentionJob
    triggers: TriggerRuntime

    def shutdown(self) -> None:
        self.triggers.shutdown()
        self.provider.close()


def build_provider(settings: Settings) -> PushProvider:
    if settings.push_gateway_url:
        return HttpPushGateway(settings.push_gateway_url)
    logger.info("PUSH_GATEWAY_URL not set; using in-memory push provider")
    return MockPushProvider()


def build_runtime(
    store: TreeStore,
    provider: PushProvider,
    settings: Settings,
    clock: Optional[Callable[[], int]] = None,
    retry_delay: float = 0.5,
) -> AlertingRuntime:
    sensor_monitor = SensorRangeMonitor(
        store,
        settings.sensor_limits,
        cooldown_ms=settings.sensor_cooldown_ms,
        max_attempts=settings.latch_max_attempts,
        clock=clock,
    )
    dispatcher = NotificationDispatcher(
        store,
        provider,
        push_severities=settings.push_severities,
        default_title=settings.default_notification_title,
        icon=settings.push_icon,
        tag_prefix=settings.push_tag_prefix,
        clock=clock,
    )
    sweep = SweepDriver(
        store,
        offline_threshold_ms=settings.offline_threshold_ms,
        notify_back_online=settings.notify_back_online,
        display_timezone=settings.display_timezone,
        clock=clock,
    )
    triggers = TriggerRuntime(
        store,
        sensor_monitor,
        dispatcher,
        workers=settings.trigger_workers,
        max_attempts=settings.trigger_max_attempts,
        retry_delay=retry_delay,
    )
    return AlertingRuntime(
        store=store,
        provider=provider,
        sensor_monitor=sensor_monitor,
        dispatcher=dispatcher,
        sweep=sweep,
        dose_run_retention=RetentionJob(
            store, "doseRuns", settings.dose_run_keep_days, settings.prune_batch_size, clock=clock
        ),
        notification_retention=RetentionJob(
            store,
            "notifications",
            settings.notification_keep_days,
            settings.prune_batch_size,
            clock=clock,
        ),
        triggers=triggers,
    )


@lru_cache
def build_default_runtime() -> AlertingRuntime:
    """Factory that wires the runtime with the default store and provider."""
    settings = get_settings()
    return build_runtime(build_default_store(), build_provider(settings), settings)
