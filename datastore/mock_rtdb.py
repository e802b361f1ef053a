from __future__ import annotations

import copy
import json
import logging
import secrets
import time
from collections import deque
from functools import lru_cache
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Callable, Deque, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from datastore.base import (
    StoreEvent,
    StoreListener,
    TransactionConflict,
    TreeStore,
    split_path,
)
from settings import get_settings

logger = logging.getLogger(__name__)

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

Segments = Tuple[str, ...]
Subscription = Tuple[Segments, StoreListener]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _normalize(value: Any) -> Any:
    """Drop ``None`` children and empty mappings, mirroring how the tree stores data."""
    if isinstance(value, dict):
        cleaned = {}
        for key, child in value.items():
            child = _normalize(child)
            if child is not None:
                cleaned[str(key)] = child
        return cleaned or None
    if isinstance(value, tuple):
        return [_normalize(item) for item in value]
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    return value


def _is_wildcard(segment: str) -> bool:
    return segment.startswith("{") and segment.endswith("}")


def _segment_matches(pattern: str, segment: str) -> bool:
    return _is_wildcard(pattern) or pattern == segment


def _sort_key(value: Any) -> Tuple[int, Any]:
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, 0)


class MockRealtimeDatabase(TreeStore):
    """Thread-safe in-memory tree with optional JSON persistence and write triggers."""

    def __init__(
        self,
        name: str,
        persistence_path: Optional[Path] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.name = name
        self.persistence_path = persistence_path
        self._root: Dict[str, Any] = {}
        self._lock = Lock()
        self._listeners: List[Subscription] = []
        self._outbox: Deque[Tuple[StoreListener, StoreEvent]] = deque()
        self._emit_lock = RLock()
        self._clock = clock or _now_ms
        self._last_push_ms = -1
        self._last_random: List[int] = []
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def get(self, path: str) -> Any:
        segments = tuple(split_path(path))
        with self._lock:
            return copy.deepcopy(self._read(segments))

    def set(self, path: str, value: Any) -> None:
        self.update({path: value})

    def update(
        self,
        updates: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> None:
        writes = [
            (tuple(split_path(path)), _normalize(copy.deepcopy(value)))
            for path, value in updates.items()
        ]
        guards = [
            (path, tuple(split_path(path)), _normalize(copy.deepcopy(value)))
            for path, value in (expected or {}).items()
        ]
        if not writes:
            return

        with self._lock:
            for path, segments, value in guards:
                if self._read(segments) != value:
                    raise TransactionConflict(path)

            watched = self._collect_watched(writes)
            before = {key: copy.deepcopy(self._read(key[1])) for key in watched}
            for segments, value in writes:
                self._write(segments, value)
            after = {key: copy.deepcopy(self._read(key[1])) for key in watched}
            self._persist()
            self._outbox.extend(self._events(watched, before, after))

        self._flush_events()

    def generate_key(self) -> str:
        with self._lock:
            now = self._clock()
            duplicate = now == self._last_push_ms
            self._last_push_ms = now

            time_chars = []
            remaining = now
            for _ in range(8):
                time_chars.append(PUSH_CHARS[remaining % 64])
                remaining //= 64
            time_part = "".join(reversed(time_chars))

            if not duplicate or not self._last_random:
                self._last_random = [secrets.randbelow(64) for _ in range(12)]
            else:
                index = 11
                while index >= 0 and self._last_random[index] == 63:
                    self._last_random[index] = 0
                    index -= 1
                if index >= 0:
                    self._last_random[index] += 1

            return time_part + "".join(PUSH_CHARS[i] for i in self._last_random)

    def query(
        self,
        path: str,
        order_by: str,
        start_at: Optional[float] = None,
        end_at: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Any]]:
        segments = tuple(split_path(path))
        with self._lock:
            node = copy.deepcopy(self._read(segments))
        if not isinstance(node, dict):
            return []

        def child_field(child: Any) -> Any:
            return child.get(order_by) if isinstance(child, dict) else None

        ordered = sorted(
            node.items(),
            key=lambda item: (_sort_key(child_field(item[1])), item[0]),
        )
        if start_at is not None:
            lower = _sort_key(start_at)
            ordered = [item for item in ordered if _sort_key(child_field(item[1])) >= lower]
        if end_at is not None:
            upper = _sort_key(end_at)
            ordered = [item for item in ordered if _sort_key(child_field(item[1])) <= upper]
        if limit is not None:
            ordered = ordered[:limit]
        return ordered

    def subscribe(self, pattern: str, listener: StoreListener) -> Callable[[], None]:
        # Wildcard segments bypass key validation, so split manually.
        segments = tuple(segment for segment in pattern.strip("/").split("/") if segment)
        entry = (segments, listener)
        with self._lock:
            self._listeners.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return unsubscribe

    def _read(self, segments: Sequence[str]) -> Any:
        node: Any = self._root
        for segment in segments:
            if not isinstance(node, dict):
                return None
            node = node.get(segment)
            if node is None:
                return None
        return node

    def _write(self, segments: Segments, value: Any) -> None:
        if not segments:
            self._root = value if isinstance(value, dict) else {}
            return

        parents: List[Tuple[Dict[str, Any], str]] = []
        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = {}
                node[segment] = child
            parents.append((node, segment))
            node = child

        leaf = segments[-1]
        if value is None:
            node.pop(leaf, None)
        else:
            node[leaf] = value

        for parent, key in reversed(parents):
            if parent[key]:
                break
            del parent[key]

    def _collect_watched(
        self, writes: Sequence[Tuple[Segments, Any]]
    ) -> List[Tuple[Subscription, Segments]]:
        watched: Dict[Tuple[Subscription, Segments], None] = {}
        for entry in self._listeners:
            pattern = entry[0]
            depth = len(pattern)
            for segments, value in writes:
                if len(segments) >= depth:
                    candidate = segments[:depth]
                    if all(map(_segment_matches, pattern, candidate)):
                        watched[(entry, candidate)] = None
                    continue
                if not all(map(_segment_matches, pattern[: len(segments)], segments)):
                    continue
                rest = pattern[len(segments):]
                for node in (self._read(segments), value):
                    for tail in self._expand(node, rest):
                        watched[(entry, segments + tail)] = None
        return list(watched)

    def _expand(self, node: Any, pattern: Segments) -> Iterator[Segments]:
        if not pattern:
            yield ()
            return
        if not isinstance(node, dict):
            return
        for key, child in node.items():
            if _segment_matches(pattern[0], key):
                for tail in self._expand(child, pattern[1:]):
                    yield (key,) + tail

    def _events(
        self,
        watched: Sequence[Tuple[Subscription, Segments]],
        before: Mapping[Tuple[Subscription, Segments], Any],
        after: Mapping[Tuple[Subscription, Segments], Any],
    ) -> List[Tuple[StoreListener, StoreEvent]]:
        events = []
        for key in watched:
            if before[key] == after[key]:
                continue
            (pattern, listener), segments = key
            params = {
                name[1:-1]: segment
                for name, segment in zip(pattern, segments)
                if _is_wildcard(name)
            }
            event = StoreEvent(
                path="/".join(segments),
                params=params,
                before=before[key],
                after=after[key],
            )
            events.append((listener, event))
        return events

    def _flush_events(self) -> None:
        # Events leave the outbox in commit order, whichever writer drains it.
        with self._emit_lock:
            while True:
                with self._lock:
                    if not self._outbox:
                        return
                    listener, event = self._outbox.popleft()
                listener(event)

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        self.persistence_path.write_text(json.dumps(self._root, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable store snapshot at %s", self.persistence_path)
            data = {}

        if isinstance(data, dict):
            self._root = _normalize(data) or {}


@lru_cache
def build_default_store(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> MockRealtimeDatabase:
    settings = get_settings()
    store_path = settings.store_persistence_path if path is None else path
    persistence = Path(store_path) if store_path else None
    return MockRealtimeDatabase(name=name or "devices", persistence_path=persistence)
