"""
Append-only history buffers owned by offers and tracking sessions.

Entries are frozen dataclasses; the buffers only ever append.  When a
capacity is set the buffer is a ``deque(maxlen=capacity)`` ring buffer, so
the oldest entry is evicted in O(1) as soon as a new one would overflow it.
Entries are kept in arrival order, never re-sorted by timestamp: GPS and
network jitter mean consumers must tolerate approximate ordering.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Iterable, Iterator, Optional, TypeVar

from .enums import OfferStatus, TrackingEventType

T = TypeVar("T")

DEFAULT_LOCATION_CAPACITY = 1000
DEFAULT_EVENT_CAPACITY = 2000


# ── Entries ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StatusHistoryEntry:
    status: OfferStatus
    timestamp: datetime
    actor: int
    notes: Optional[str] = None
    location: Optional[tuple[float, float]] = None


@dataclass(frozen=True)
class TrackingEvent:
    event_type: TrackingEventType
    timestamp: datetime
    notes: Optional[str] = None
    location: Optional[tuple[float, float]] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    reported_by: Optional[int] = None


@dataclass(frozen=True)
class LocationFix:
    coordinates: tuple[float, float]
    timestamp: datetime
    accuracy: Optional[float] = None  # meters
    heading: Optional[float] = None  # degrees, 0-360
    speed: Optional[float] = None  # m/s


# ── Buffers ───────────────────────────────────────────────────────────


class AppendOnlyLog(Generic[T]):
    """Ordered log that supports appends only.  ``capacity=None`` is unbounded."""

    def __init__(self, entries: Iterable[T] = (), capacity: Optional[int] = None):
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be positive")
        self._entries: deque[T] = deque(maxlen=capacity)
        self.evicted = 0
        for entry in entries:
            self.append(entry)

    @property
    def capacity(self) -> Optional[int]:
        return self._entries.maxlen

    def append(self, entry: T) -> T:
        if self.capacity is not None and len(self._entries) == self.capacity:
            self.evicted += 1
        self._entries.append(entry)
        return entry

    def tail(self, n: int) -> list[T]:
        """The *n* most recent entries, oldest first."""
        if n <= 0:
            return []
        return list(self._entries)[-n:]

    @property
    def latest(self) -> Optional[T]:
        return self._entries[-1] if self._entries else None

    def to_list(self) -> list[T]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._entries))

    def __getitem__(self, index: int) -> T:
        return self._entries[index]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(len={len(self)}, capacity={self.capacity})"


class StatusHistory(AppendOnlyLog[StatusHistoryEntry]):
    """Unbounded audit trail of offer transitions."""

    def __init__(self, entries: Iterable[StatusHistoryEntry] = ()):
        super().__init__(entries, capacity=None)


class EventLog(AppendOnlyLog[TrackingEvent]):
    def __init__(
        self,
        entries: Iterable[TrackingEvent] = (),
        capacity: Optional[int] = DEFAULT_EVENT_CAPACITY,
    ):
        super().__init__(entries, capacity)

    def of_type(self, event_type: TrackingEventType) -> list[TrackingEvent]:
        return [e for e in self if e.event_type == event_type]


class LocationHistory(AppendOnlyLog[LocationFix]):
    def __init__(
        self,
        entries: Iterable[LocationFix] = (),
        capacity: Optional[int] = DEFAULT_LOCATION_CAPACITY,
    ):
        super().__init__(entries, capacity)
