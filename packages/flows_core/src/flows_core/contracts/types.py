"""
Message kinds carried by the event bus, and engine-internal event types.
"""

from enum import Enum


class MessageKind(str, Enum):
    """
    Kinds of envelopes on the event bus.

    EVENT and PROPERTY_CHANGE come from the contact datastore adapters (or
    from actions writing back through them). The others are produced by the
    engine itself.
    """

    EVENT = "event"
    PROPERTY_CHANGE = "property_change"
    RESUME = "resume"  # Delay Scheduler wake for an instance
    TRIGGER_FIRE = "trigger_fire"  # Now/At trigger fan-out for a flow
    SPAWN = "spawn"  # one contact of a trigger fan-out

    def __str__(self) -> str:
        return self.value


class InternalEventType(str, Enum):
    """Event types published by the engine itself. Never matched by triggers."""

    COMPLETION_RESOLVED = "flows.completion_resolved"

    def __str__(self) -> str:
        return self.value


INTERNAL_EVENT_TYPES = frozenset(t.value for t in InternalEventType)
