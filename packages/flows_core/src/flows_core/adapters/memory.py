"""
In-process adapter implementations.

Used by tests and by single-process deployments. Writes notify subscribers
while the store lock is still held so records reach the bus in commit order.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

from flows_core.adapters.base import EventLog, PropertyStore, SegmentResolver, TimezoneProvider
from flows_core.adapters.schema import PropertySchema
from flows_core.contracts.envelope import Event, PropertyChange, utcnow
from flows_core.definitions.wallclock import get_zone

logger = logging.getLogger(__name__)

Now = Callable[[], datetime]


class InMemoryPropertyStore(PropertyStore):
    def __init__(self, schema: PropertySchema | None = None, now: Now | None = None):
        super().__init__(schema)
        self._now = now or utcnow
        self._data: dict[str, dict[str, Any]] = defaultdict(dict)
        self._lock = threading.RLock()

    def get(self, contact_id: str, key: str) -> Any:
        with self._lock:
            return self._data.get(contact_id, {}).get(key)

    def snapshot(self, contact_id: str) -> Mapping[str, Any]:
        with self._lock:
            return dict(self._data.get(contact_id, {}))

    def set(
        self,
        contact_id: str,
        key: str,
        value: Any,
        causation: Sequence[str] = (),
        change_id: str | None = None,
    ) -> PropertyChange | None:
        normalized = self.schema.validate(key, value)
        with self._lock:
            properties = self._data[contact_id]
            old_value = properties.get(key)
            if key in properties and old_value == normalized:
                return None
            properties[key] = normalized
            change = PropertyChange.create(
                contact_id=contact_id,
                key=key,
                old_value=old_value,
                new_value=normalized,
                occurred_at=self._now(),
                causation=tuple(causation),
                change_id=change_id,
            )
            logger.debug(
                f"Property {key} set for contact {contact_id}",
                extra={"contact_id": contact_id, "key": key, "change_id": change.change_id},
            )
            self._notify(change)
            return change

    def load(self, contact_id: str, properties: Mapping[str, Any]) -> None:
        """Seed properties without emitting change records (fixtures, imports)."""
        with self._lock:
            for key, value in properties.items():
                self._data[contact_id][key] = self.schema.validate(key, value)

    def contacts(self) -> list[str]:
        with self._lock:
            return list(self._data)


class InMemoryEventLog(EventLog):
    def __init__(self, now: Now | None = None):
        super().__init__()
        self._now = now or utcnow
        self._events: dict[str, list[Event]] = defaultdict(list)
        self._lock = threading.RLock()

    def append(
        self,
        contact_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        causation: Sequence[str] = (),
    ) -> Event:
        with self._lock:
            event = Event.create(
                contact_id=contact_id,
                event_type=event_type,
                payload=payload,
                occurred_at=self._now(),
                causation=tuple(causation),
            )
            self._events[contact_id].append(event)
            self._notify(event)
            return event

    def record(self, event: Event) -> None:
        """Keep an event appended by another process without re-publishing it."""
        with self._lock:
            history = self._events[event.contact_id]
            if any(e.event_id == event.event_id for e in history):
                return
            history.append(event)

    def history(self, contact_id: str) -> list[Event]:
        with self._lock:
            return list(self._events.get(contact_id, []))


class StaticSegmentResolver(SegmentResolver):
    """Segments as fixed lists of contact ids."""

    def __init__(self, segments: Mapping[str, Sequence[str]] | None = None):
        self._segments = {k: list(v) for k, v in (segments or {}).items()}

    def define(self, segment_id: str, contact_ids: Sequence[str]) -> None:
        self._segments[segment_id] = list(contact_ids)

    def resolve(self, segment_id: str) -> Sequence[str]:
        return list(self._segments.get(segment_id, []))


class PropertySegmentResolver(SegmentResolver):
    """
    Segments derived from a boolean-ish contact property.

    A contact belongs to segment "newsletter" when its property
    ``segment:newsletter`` (or the configured prefix) is truthy.
    """

    def __init__(self, store: InMemoryPropertyStore, prefix: str = "segment:"):
        self._store = store
        self._prefix = prefix

    def resolve(self, segment_id: str) -> Sequence[str]:
        key = f"{self._prefix}{segment_id}"
        return [c for c in self._store.contacts() if self._store.get(c, key)]


class PropertyTimezoneProvider(TimezoneProvider):
    """Reads the contact's ``timezone`` property, falling back to a default zone."""

    def __init__(self, store: PropertyStore, default: str = "UTC", key: str = "timezone"):
        self._store = store
        self._default = default
        self._key = key

    def timezone_of(self, contact_id: str) -> str:
        value = self._store.get(contact_id, self._key)
        if not value:
            return self._default
        try:
            get_zone(value)
        except ValueError:
            logger.warning(
                f"Contact {contact_id} has invalid timezone {value!r}, using {self._default}",
                extra={"contact_id": contact_id},
            )
            return self._default
        return value


class StaticTimezoneProvider(TimezoneProvider):
    def __init__(self, zones: Mapping[str, str] | None = None, default: str = "UTC"):
        self._zones = dict(zones or {})
        self._default = default

    def timezone_of(self, contact_id: str) -> str:
        return self._zones.get(contact_id, self._default)
