"""Interface of the hierarchical key-value store the alerting core runs on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

_FORBIDDEN_KEY_CHARS = frozenset(".#$[]")


class InvalidPathError(ValueError):
    """Raised for empty paths or keys containing reserved characters."""


class TransactionConflict(RuntimeError):
    """A guarded update lost a race: a guarded path no longer holds the expected value."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Guarded path {path!r} changed concurrently.")
        self.path = path


@dataclass(frozen=True)
class StoreEvent:
    """A committed change to one concrete path matching a subscription pattern."""

    path: str
    params: Dict[str, str] = field(default_factory=dict)
    before: Any = None
    after: Any = None

    @property
    def created(self) -> bool:
        return self.before is None and self.after is not None

    @property
    def deleted(self) -> bool:
        return self.before is not None and self.after is None


StoreListener = Callable[[StoreEvent], None]


def split_path(path: str) -> List[str]:
    segments = [segment for segment in path.strip("/").split("/") if segment]
    for segment in segments:
        if _FORBIDDEN_KEY_CHARS.intersection(segment):
            raise InvalidPathError(f"Key {segment!r} contains a reserved character.")
    return segments


def join_path(*parts: str) -> str:
    return "/".join(part.strip("/") for part in parts if part.strip("/"))


class TreeStore(ABC):
    """Hierarchical store addressed by ``/``-delimited paths.

    Values are JSON-like: mappings, lists, strings, numbers and booleans.
    Writing ``None`` removes a path and empty mappings are never stored.
    """

    @abstractmethod
    def get(self, path: str) -> Any:
        """Return a deep copy of the value at ``path`` or ``None``."""

    @abstractmethod
    def set(self, path: str, value: Any) -> None:
        """Replace the value at ``path``."""

    @abstractmethod
    def update(
        self,
        updates: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Apply every write in ``updates`` atomically.

        When ``expected`` is given, each of its paths must currently hold the
        expected value (``None`` meaning absent), otherwise
        :class:`TransactionConflict` is raised and nothing is written.
        """

    @abstractmethod
    def generate_key(self) -> str:
        """Return a unique, chronologically ordered child key."""

    @abstractmethod
    def query(
        self,
        path: str,
        order_by: str,
        start_at: Optional[float] = None,
        end_at: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Any]]:
        """Return children of ``path`` ordered by child field ``order_by``."""

    @abstractmethod
    def subscribe(self, pattern: str, listener: StoreListener) -> Callable[[], None]:
        """Call ``listener`` after commit for each changed path matching ``pattern``.

        Returns a callable that removes the subscription.
        """

    def delete(self, path: str) -> None:
        self.set(path, None)

    def push(self, path: str, value: Any) -> str:
        key = self.generate_key()
        self.set(join_path(path, key), value)
        return key
