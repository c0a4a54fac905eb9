"""Contracts shared by the engine, the adapters and the stream transport."""

from flows_core.contracts.envelope import BusEnvelope, Event, PropertyChange
from flows_core.contracts.types import INTERNAL_EVENT_TYPES, InternalEventType, MessageKind

__all__ = [
    "BusEnvelope",
    "Event",
    "PropertyChange",
    "MessageKind",
    "InternalEventType",
    "INTERNAL_EVENT_TYPES",
]
