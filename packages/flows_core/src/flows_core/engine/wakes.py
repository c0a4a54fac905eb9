"""
Wake queues: the scheduler's index of pending wakes.

Keys are "instance:<instance_id>" (delay or retry wake) and
"trigger:<flow_id>" (At trigger). The queue is only an index; the instance
rows hold the authoritative wake_at, so the queue can always be rebuilt
from persistence.
"""

import heapq
import itertools
import threading
from abc import ABC, abstractmethod
from datetime import datetime


def instance_key(instance_id: str) -> str:
    return f"instance:{instance_id}"


def trigger_key(flow_id: str) -> str:
    return f"trigger:{flow_id}"


class WakeQueue(ABC):
    @abstractmethod
    def push(self, key: str, wake_at: datetime) -> None:
        """Add or move a wake. A key has at most one pending wake."""

    @abstractmethod
    def remove(self, key: str) -> None:
        pass

    @abstractmethod
    def pop_due(self, now: datetime) -> list[tuple[str, datetime]]:
        """Remove and return every wake with wake_at <= now, earliest first."""

    @abstractmethod
    def peek(self) -> datetime | None:
        """Earliest pending wake, if any."""

    @abstractmethod
    def __len__(self) -> int:
        pass


class InMemoryWakeQueue(WakeQueue):
    """Heap with lazy deletion."""

    def __init__(self):
        self._heap: list[tuple[datetime, int, str]] = []
        self._entries: dict[str, datetime] = {}
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def push(self, key: str, wake_at: datetime) -> None:
        with self._lock:
            self._entries[key] = wake_at
            heapq.heappush(self._heap, (wake_at, next(self._counter), key))

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def pop_due(self, now: datetime) -> list[tuple[str, datetime]]:
        due = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                wake_at, _, key = heapq.heappop(self._heap)
                if self._entries.get(key) == wake_at:
                    del self._entries[key]
                    due.append((key, wake_at))
        return due

    def peek(self) -> datetime | None:
        with self._lock:
            while self._heap:
                wake_at, _, key = self._heap[0]
                if self._entries.get(key) == wake_at:
                    return wake_at
                heapq.heappop(self._heap)
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
