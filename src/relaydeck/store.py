"""Per-category state holders with change notifications."""
from __future__ import annotations

from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from .categories import Category
from .logging_utils import get_logger
from .models import DashboardSlot, Snapshot

log = get_logger(__name__)

Listener = Callable[[Category], None]
T = TypeVar("T")


class _CategoryStore(Generic[T]):
    """One value per category, replaced wholesale and observed by listeners."""

    def __init__(self) -> None:
        self._values: dict[Category, T] = {category: self._empty() for category in Category}
        self._listeners: list[Listener] = []

    def _empty(self) -> T:  # pragma: no cover - overridden
        raise NotImplementedError

    def get(self, category: Category | str) -> T:
        return self._values[Category.parse(category)]

    def replace(self, category: Category | str, value: T) -> None:
        resolved = Category.parse(category)
        self._values[resolved] = value
        self._notify(resolved)

    def clear(self) -> None:
        for category in Category:
            self._values[category] = self._empty()
            self._notify(category)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* with the category after every write; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, category: Category) -> None:
        for listener in list(self._listeners):
            try:
                listener(category)
            except Exception:
                log.exception("Store listener %r failed for %s", listener, category.value)


class SnapshotStore(_CategoryStore[Snapshot]):
    """Last known channel list, selection and strategy label per category."""

    def _empty(self) -> Snapshot:
        return Snapshot()

    def mark_pinged(self, category: Category | str) -> None:
        """Announce in-place latency updates made to the current snapshot."""

        self._notify(Category.parse(category))

    def active_channel_count(self, category: Category | str) -> int:
        return sum(1 for channel in self.get(category).channels if channel.is_active)

    def failover_channel_count(self, category: Category | str) -> int:
        return sum(1 for channel in self.get(category).channels if channel.takes_failover)


class DashboardCache(_CategoryStore[DashboardSlot]):
    """Metrics, stats and recent activity per category.

    Kept apart from :class:`SnapshotStore` so that switching categories
    shows the last data for that category instead of an empty view.
    """

    def _empty(self) -> DashboardSlot:
        return DashboardSlot()


class SystemStatus(str, Enum):
    CONNECTING = "connecting"
    RUNNING = "running"
    ERROR = "error"

    @classmethod
    def from_refresh(cls, last_refresh_success: Optional[bool]) -> "SystemStatus":
        if last_refresh_success is None:
            return cls.CONNECTING
        return cls.RUNNING if last_refresh_success else cls.ERROR

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self][0]

    @property
    def description(self) -> str:
        return _STATUS_LABELS[self][1]


_STATUS_LABELS = {
    SystemStatus.CONNECTING: ("Connecting", "Connecting to the relay"),
    SystemStatus.RUNNING: ("Running", "Relay reachable"),
    SystemStatus.ERROR: ("Connection failed", "Cannot reach the relay"),
}


__all__ = ["DashboardCache", "SnapshotStore", "SystemStatus"]
