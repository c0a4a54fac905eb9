"""Adapters onto the contact datastore (properties, events, segments, timezones)."""

from flows_core.adapters.base import EventLog, PropertyStore, SegmentResolver, TimezoneProvider
from flows_core.adapters.memory import (
    InMemoryEventLog,
    InMemoryPropertyStore,
    PropertySegmentResolver,
    PropertyTimezoneProvider,
    StaticSegmentResolver,
    StaticTimezoneProvider,
)
from flows_core.adapters.schema import PropertySchema, PropertySpec

__all__ = [
    "EventLog",
    "PropertyStore",
    "SegmentResolver",
    "TimezoneProvider",
    "InMemoryEventLog",
    "InMemoryPropertyStore",
    "PropertySegmentResolver",
    "PropertyTimezoneProvider",
    "StaticSegmentResolver",
    "StaticTimezoneProvider",
    "PropertySchema",
    "PropertySpec",
]
