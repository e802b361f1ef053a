"""Age-based deletion of historical per-device records."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from app.schemas import PruneReport
from datastore.base import TreeStore

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


class RetentionJob:
    """Deletes ``devices/*/{collection}`` children whose ``ts`` is older than the cutoff."""

    def __init__(
        self,
        store: TreeStore,
        collection: str,
        keep_days: int,
        batch_size: int = 500,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.store = store
        self.collection = collection
        self.keep_days = keep_days
        self.batch_size = batch_size
        self._clock = clock or _now_ms

    def run(self, now: Optional[int] = None) -> PruneReport:
        now = self._clock() if now is None else now
        cutoff = now - self.keep_days * DAY_MS
        devices = self.store.get("devices") or {}

        deleted = 0
        for device_id in devices:
            path = f"devices/{device_id}/{self.collection}"
            while True:
                batch = self.store.query(path, order_by="ts", end_at=cutoff, limit=self.batch_size)
                if not batch:
                    break
                self.store.update({f"{path}/{key}": None for key, _ in batch})
                deleted += len(batch)
                if len(batch) < self.batch_size:
                    break

        logger.info(
            "Retention pass complete (older than %d days)",
            self.keep_days,
            extra={"collection": self.collection, "deleted": deleted},
        )
        return PruneReport(collection=self.collection, cutoff=cutoff, deleted=deleted)
