"""
Adapter interfaces onto the contact datastore.

The engine only talks to contacts through these. Implementations notify
subscribers after a write commits, in commit order; the engine subscribes
to publish the records onto the event bus.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from flows_core.adapters.schema import PropertySchema
from flows_core.contracts.envelope import Event, PropertyChange

ChangeSubscriber = Callable[[PropertyChange], None]
EventSubscriber = Callable[[Event], None]


class PropertyStore(ABC):
    """Validated key/value properties per contact."""

    def __init__(self, schema: PropertySchema | None = None):
        self.schema = schema or PropertySchema.permissive()
        self._subscribers: list[ChangeSubscriber] = []

    def subscribe(self, callback: ChangeSubscriber) -> None:
        self._subscribers.append(callback)

    def _notify(self, change: PropertyChange) -> None:
        for callback in list(self._subscribers):
            callback(change)

    @abstractmethod
    def get(self, contact_id: str, key: str) -> Any:
        pass

    @abstractmethod
    def snapshot(self, contact_id: str) -> Mapping[str, Any]:
        """Copy of every property of a contact."""
        pass

    @abstractmethod
    def set(
        self,
        contact_id: str,
        key: str,
        value: Any,
        causation: Sequence[str] = (),
        change_id: str | None = None,
    ) -> PropertyChange | None:
        """
        Validate and write one property.

        Returns the committed change, or None when the value was unchanged.
        ``change_id`` keeps an id already handed out for the write (one
        forwarded by another process); a new one is minted otherwise.

        Raises:
            ValidationError: the write was rejected; nothing changed and no
                record was emitted.
        """
        pass

    def contacts(self) -> list[str]:
        return []


class EventLog(ABC):
    """Append-only per-contact event history."""

    def __init__(self):
        self._subscribers: list[EventSubscriber] = []

    def subscribe(self, callback: EventSubscriber) -> None:
        self._subscribers.append(callback)

    def _notify(self, event: Event) -> None:
        for callback in list(self._subscribers):
            callback(event)

    @abstractmethod
    def append(
        self,
        contact_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        causation: Sequence[str] = (),
    ) -> Event:
        pass

    @abstractmethod
    def history(self, contact_id: str) -> list[Event]:
        pass

    def record(self, event: Event) -> None:
        """Keep an event appended by another process. Shared stores need nothing."""


class SegmentResolver(ABC):
    @abstractmethod
    def resolve(self, segment_id: str) -> Sequence[str]:
        """Contact ids belonging to a segment right now."""
        pass


class TimezoneProvider(ABC):
    @abstractmethod
    def timezone_of(self, contact_id: str) -> str:
        """IANA timezone name of a contact."""
        pass
