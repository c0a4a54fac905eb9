"""
Contact records and the bus envelope.

Event and PropertyChange are the records the datastore adapters emit.
BusEnvelope wraps them (and the engine's own scheduling messages) for the
event bus and for Redis Streams.

Causation lists the Completion Group causes that were open for the instance
that produced a record. Records from external writers have no causation.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from flows_core.contracts.types import MessageKind


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def json_default(value: Any) -> Any:
    """json.dumps default for property values (datetimes become ISO strings)."""
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@dataclass(frozen=True)
class Event:
    """A named occurrence for a contact (purchase, email open, ...)."""

    event_id: str
    event_type: str
    contact_id: str
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    causation: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        contact_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
        causation: tuple[str, ...] = (),
    ) -> "Event":
        return cls(
            event_id=new_id(),
            event_type=event_type,
            contact_id=contact_id,
            occurred_at=occurred_at or utcnow(),
            payload=payload or {},
            causation=tuple(causation),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            event_id=data["event_id"],
            event_type=data["event_type"],
            contact_id=data["contact_id"],
            occurred_at=_parse_ts(data["occurred_at"]),
            payload=data.get("payload") or {},
            causation=tuple(data.get("causation") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "contact_id": self.contact_id,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
            "causation": list(self.causation),
        }


@dataclass(frozen=True)
class PropertyChange:
    """A committed write of one contact property."""

    change_id: str
    contact_id: str
    key: str
    old_value: Any
    new_value: Any
    occurred_at: datetime
    causation: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        contact_id: str,
        key: str,
        old_value: Any,
        new_value: Any,
        occurred_at: datetime | None = None,
        causation: tuple[str, ...] = (),
        change_id: str | None = None,
    ) -> "PropertyChange":
        return cls(
            change_id=change_id or new_id(),
            contact_id=contact_id,
            key=key,
            old_value=old_value,
            new_value=new_value,
            occurred_at=occurred_at or utcnow(),
            causation=tuple(causation),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PropertyChange":
        return cls(
            change_id=data["change_id"],
            contact_id=data["contact_id"],
            key=data["key"],
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
            occurred_at=_parse_ts(data["occurred_at"]),
            causation=tuple(data.get("causation") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_id": self.change_id,
            "contact_id": self.contact_id,
            "key": self.key,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "occurred_at": self.occurred_at.isoformat(),
            "causation": list(self.causation),
        }


@dataclass
class BusEnvelope:
    """
    Standard wrapper for everything delivered by the event bus.

    Attributes:
        envelope_id: Unique identifier of this delivery
        kind: What the body holds (see MessageKind)
        contact_id: Serialization key; None only for TRIGGER_FIRE
        occurred_at: When the envelope was produced (UTC)
        body: Kind-specific data (Event.to_dict(), PropertyChange.to_dict(), ...)
        metadata: Transport details (stream message id, retry count)
    """

    envelope_id: str
    kind: MessageKind
    contact_id: str | None
    occurred_at: datetime
    body: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        kind: MessageKind,
        contact_id: str | None,
        body: dict[str, Any],
        envelope_id: str | None = None,
    ) -> "BusEnvelope":
        return cls(
            envelope_id=envelope_id or new_id(),
            kind=MessageKind(kind),
            contact_id=contact_id,
            occurred_at=utcnow(),
            body=body,
        )

    @classmethod
    def for_event(cls, event: Event) -> "BusEnvelope":
        return cls.create(MessageKind.EVENT, event.contact_id, event.to_dict())

    @classmethod
    def for_change(cls, change: PropertyChange) -> "BusEnvelope":
        return cls.create(MessageKind.PROPERTY_CHANGE, change.contact_id, change.to_dict())

    @classmethod
    def resume(cls, instance_id: str, contact_id: str, wake_at: datetime | None) -> "BusEnvelope":
        return cls.create(
            MessageKind.RESUME,
            contact_id,
            {
                "instance_id": instance_id,
                "wake_at": wake_at.isoformat() if wake_at else None,
            },
        )

    @classmethod
    def trigger_fire(cls, flow_id: str, cause_id: str | None = None) -> "BusEnvelope":
        """The envelope id doubles as the Completion Group cause of the fan-out."""
        return cls.create(MessageKind.TRIGGER_FIRE, None, {"flow_id": flow_id}, envelope_id=cause_id)

    @classmethod
    def spawn(cls, flow_id: str, contact_id: str, parent_cause: str) -> "BusEnvelope":
        return cls.create(
            MessageKind.SPAWN,
            contact_id,
            {"flow_id": flow_id, "causation": [parent_cause]},
        )

    @property
    def event(self) -> Event:
        return Event.from_dict(self.body)

    @property
    def change(self) -> PropertyChange:
        return PropertyChange.from_dict(self.body)

    @property
    def wake_at(self) -> datetime | None:
        value = self.body.get("wake_at")
        return _parse_ts(value) if value else None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BusEnvelope":
        return cls(
            envelope_id=data["envelope_id"],
            kind=MessageKind(data["kind"]),
            contact_id=data.get("contact_id") or None,
            occurred_at=_parse_ts(data["occurred_at"]),
            body=data.get("body", {}),
            metadata=data.get("metadata", {}),
        )

    @classmethod
    def from_stream_message(cls, msg_id: str, data: dict[str, str]) -> "BusEnvelope":
        """Parse a Redis Stream message into an envelope."""
        metadata = json.loads(data.get("metadata", "{}"))
        metadata["stream_msg_id"] = msg_id

        return cls(
            envelope_id=data["envelope_id"],
            kind=MessageKind(data["kind"]),
            contact_id=data.get("contact_id") or None,
            occurred_at=_parse_ts(data["occurred_at"]) if data.get("occurred_at") else utcnow(),
            body=json.loads(data.get("body", "{}")),
            metadata=metadata,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "envelope_id": self.envelope_id,
            "kind": self.kind.value,
            "contact_id": self.contact_id,
            "occurred_at": self.occurred_at.isoformat(),
            "body": self.body,
            "metadata": self.metadata,
        }

    def to_stream_data(self) -> dict[str, str]:
        """Convert to dictionary suitable for Redis Stream (all string values)."""
        return {
            "envelope_id": self.envelope_id,
            "kind": self.kind.value,
            "contact_id": self.contact_id or "",
            "occurred_at": self.occurred_at.isoformat(),
            "body": json.dumps(self.body, default=json_default),
            "metadata": json.dumps(self.metadata),
        }
