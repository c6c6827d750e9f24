"""
ChronoHeal - Evidence Buffer
============================

Bounded, per-subject rolling store of ObservationUnits.

Each subject gets its own FIFO buffer, created on first write. When a push
takes a buffer past capacity, the oldest units are evicted first. Units are
appended as they are captured, so insertion order is chronological order.

Concurrency:
    The subject -> buffer map and each buffer's contents are guarded by
    their own lock. Reads copy a snapshot under the lock and return it.
    A push that races a ``recent()`` or ``by_time_range()`` call may or may
    not be included in that call's result; either outcome is a consistent
    sequence, so the race is benign.
"""

from collections import deque
from datetime import datetime
from threading import Lock
from typing import Iterator, Optional

from shared.constants import Defaults
from shared.schemas.incidents import ObservationUnit
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class EvidenceBuffer:
    """Capacity-bounded FIFO of observation units for one subject."""

    def __init__(self, capacity: int = Defaults.EVIDENCE_BUFFER_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._units: deque[ObservationUnit] = deque(maxlen=capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def push(self, unit: ObservationUnit) -> None:
        with self._lock:
            # deque(maxlen) drops from the left once full
            self._units.append(unit)

    def latest(self) -> Optional[ObservationUnit]:
        with self._lock:
            return self._units[-1] if self._units else None

    def recent(self, n: int) -> list[ObservationUnit]:
        """Last ``n`` units, oldest first."""
        if n <= 0:
            return []
        with self._lock:
            snapshot = list(self._units)
        return snapshot[-n:]

    def by_time_range(self, start: datetime, end: datetime) -> list[ObservationUnit]:
        """Units with ``start <= captured_at <= end``."""
        with self._lock:
            snapshot = list(self._units)
        return [u for u in snapshot if start <= u.captured_at <= end]

    def get_all(self) -> list[ObservationUnit]:
        with self._lock:
            return list(self._units)

    def size(self) -> int:
        with self._lock:
            return len(self._units)

    def clear(self) -> None:
        with self._lock:
            self._units.clear()

    def __len__(self) -> int:
        return self.size()

    def __iter__(self) -> Iterator[ObservationUnit]:
        return iter(self.get_all())


class EvidenceBufferRegistry:
    """
    Owns one EvidenceBuffer per subject.

    Buffers share the configured default capacity and are independent of
    each other. Every operation is total: reading an unknown subject yields
    an empty result rather than an error.
    """

    def __init__(self, capacity: int = Defaults.EVIDENCE_BUFFER_CAPACITY):
        self.capacity = capacity
        self._buffers: dict[str, EvidenceBuffer] = {}
        self._lock = Lock()

    def _get(self, subject: str) -> Optional[EvidenceBuffer]:
        with self._lock:
            return self._buffers.get(subject)

    def get_buffer(self, subject: str) -> EvidenceBuffer:
        """Get the subject's buffer, creating it if needed."""
        with self._lock:
            buffer = self._buffers.get(subject)
            if buffer is None:
                buffer = EvidenceBuffer(self.capacity)
                self._buffers[subject] = buffer
                logger.debug(f"Created evidence buffer for {subject}", extra={"capacity": self.capacity})
            return buffer

    def push(self, subject: str, unit: ObservationUnit) -> None:
        self.get_buffer(subject).push(unit)

    def latest(self, subject: str) -> Optional[ObservationUnit]:
        buffer = self._get(subject)
        return buffer.latest() if buffer else None

    def recent(self, subject: str, n: int) -> list[ObservationUnit]:
        buffer = self._get(subject)
        return buffer.recent(n) if buffer else []

    def by_time_range(self, subject: str, start: datetime, end: datetime) -> list[ObservationUnit]:
        buffer = self._get(subject)
        return buffer.by_time_range(start, end) if buffer else []

    def get_all(self, subject: str) -> list[ObservationUnit]:
        buffer = self._get(subject)
        return buffer.get_all() if buffer else []

    def size(self, subject: str) -> int:
        buffer = self._get(subject)
        return buffer.size() if buffer else 0

    def clear(self, subject: str) -> None:
        buffer = self._get(subject)
        if buffer:
            buffer.clear()

    def clear_all(self) -> None:
        with self._lock:
            buffers = list(self._buffers.values())
        for buffer in buffers:
            buffer.clear()

    def remove(self, subject: str) -> None:
        """Drop the subject's buffer entirely."""
        with self._lock:
            self._buffers.pop(subject, None)

    def has(self, subject: str) -> bool:
        with self._lock:
            return subject in self._buffers

    def subjects(self) -> list[str]:
        with self._lock:
            return list(self._buffers.keys())
