"""
FlowEngine - the public face of the engine.

Wires the adapters, the store, the bus and the engine components together
and exposes the operations callers use: define/undefine flows, publish
events and property writes, inspect instances, await completion and drive
the clock.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from flowbase.settings import Settings, get_settings

from flows_core.actions.builtin import register_builtin_handlers
from flows_core.actions.registry import ActionHandlerRegistry
from flows_core.adapters.base import EventLog, PropertyStore, SegmentResolver, TimezoneProvider
from flows_core.adapters.memory import (
    InMemoryEventLog,
    InMemoryPropertyStore,
    PropertyTimezoneProvider,
    StaticSegmentResolver,
)
from flows_core.contracts.envelope import BusEnvelope, Event, PropertyChange, new_id
from flows_core.contracts.types import INTERNAL_EVENT_TYPES, MessageKind
from flows_core.definitions.models import At, FlowDefinition, Now
from flows_core.engine.bus import ContactSerializer, EventBus, LocalEventBus
from flows_core.engine.catalog import FlowCatalog
from flows_core.engine.clock import Clock, ManualClock, SystemClock
from flows_core.engine.completion import CompletionAggregator
from flows_core.engine.instances import FlowInstanceManager
from flows_core.engine.reporting import FailureReporter, LoggingFailureReporter
from flows_core.engine.retry import RetryPolicy
from flows_core.engine.scheduler import DelayScheduler
from flows_core.engine.state import FlowInstance
from flows_core.engine.triggers import TriggerMatcher
from flows_core.engine.wakes import InMemoryWakeQueue, WakeQueue
from flows_core.errors import ReservedEventTypeError, UnknownFlowError, UnknownInstanceError
from flows_core.persistence.repo import FlowStore, InMemoryFlowStore

logger = logging.getLogger(__name__)


class FlowEngine:
    """
    Flow execution engine.

    Every collaborator is optional; the defaults give a fully in-memory,
    synchronous engine on the system clock, which is what tests start from.
    """

    def __init__(
        self,
        properties: PropertyStore | None = None,
        events: EventLog | None = None,
        *,
        store: FlowStore | None = None,
        registry: ActionHandlerRegistry | None = None,
        segments: SegmentResolver | None = None,
        timezones: TimezoneProvider | None = None,
        clock: Clock | None = None,
        wake_queue: WakeQueue | None = None,
        bus: EventBus | None = None,
        retry_policy: RetryPolicy | None = None,
        failure_reporter: FailureReporter | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.clock = clock or SystemClock()
        self.properties = properties or InMemoryPropertyStore(now=self.clock.now)
        self.events = events or InMemoryEventLog(now=self.clock.now)
        self.store = store or InMemoryFlowStore()
        self.registry = registry or register_builtin_handlers(ActionHandlerRegistry())
        self.segments = segments or StaticSegmentResolver()
        self.reference_timezone = settings.REFERENCE_TIMEZONE
        self.timezones = timezones or PropertyTimezoneProvider(self.properties, default=self.reference_timezone)
        self.bus = bus or LocalEventBus()
        self.serializer = ContactSerializer()
        self.failure_reporter = failure_reporter or LoggingFailureReporter()

        self.catalog = FlowCatalog(self.store)
        self.scheduler = DelayScheduler(
            self.store,
            wake_queue or InMemoryWakeQueue(),
            self.clock,
            self.bus,
            reference_timezone=self.reference_timezone,
        )
        self.aggregator = CompletionAggregator(self.store, self.bus.publish, self.clock)
        self.instances = FlowInstanceManager(
            store=self.store,
            catalog=self.catalog,
            registry=self.registry,
            scheduler=self.scheduler,
            aggregator=self.aggregator,
            properties=self.properties,
            events=self.events,
            timezones=self.timezones,
            clock=self.clock,
            retry_policy=retry_policy or RetryPolicy.from_settings(settings),
            reporter=self.failure_reporter,
            reference_timezone=self.reference_timezone,
        )
        self.triggers = TriggerMatcher(self.catalog, self.instances, self.aggregator, self.segments)

        self.properties.subscribe(self.publish_property_change)
        self.events.subscribe(self.publish_event)

        self.bus.subscribe(MessageKind.EVENT, self._on_event)
        self.bus.subscribe(MessageKind.PROPERTY_CHANGE, self._on_property_change)
        self.bus.subscribe(MessageKind.RESUME, self._on_resume)
        self.bus.subscribe(MessageKind.TRIGGER_FIRE, self._on_trigger_fire)
        self.bus.subscribe(MessageKind.SPAWN, self._on_spawn)

    # =========================================================================
    # Flow definitions
    # =========================================================================

    def define_flow(self, definition: FlowDefinition | dict[str, Any]) -> str | None:
        """
        Register (or replace) a flow.

        Returns the cause id of the enrollment for a Now trigger, so callers
        can await_completion() on it; None for every other trigger.
        """
        if not isinstance(definition, FlowDefinition):
            definition = FlowDefinition.model_validate(definition)

        self.store.save_definition(definition)
        self.catalog.put(definition)
        logger.info(
            f"Flow {definition.flow_id} defined",
            extra={"flow_id": definition.flow_id, "trigger": definition.trigger.kind},
        )

        if isinstance(definition.trigger, Now):
            cause_id = new_id()
            self.bus.publish(BusEnvelope.trigger_fire(definition.flow_id, cause_id))
            return cause_id
        if isinstance(definition.trigger, At):
            self.scheduler.schedule_trigger(definition)
        return None

    def undefine_flow(self, flow_id: str) -> None:
        """Stop a flow from enrolling contacts. Running instances finish normally."""
        if not self.store.deactivate_definition(flow_id):
            raise UnknownFlowError(f"Flow {flow_id} is not defined", details={"flow_id": flow_id})
        self.catalog.deactivate(flow_id)
        self.scheduler.cancel_trigger(flow_id)
        logger.info(f"Flow {flow_id} undefined", extra={"flow_id": flow_id})

    def flows(self, active_only: bool = True) -> list[FlowDefinition]:
        return self.store.list_definitions(active_only=active_only)

    # =========================================================================
    # Inputs
    # =========================================================================

    def publish_event(self, event: Event) -> None:
        if event.event_type in INTERNAL_EVENT_TYPES:
            raise ReservedEventTypeError(event.event_type)
        self.bus.publish(BusEnvelope.for_event(event))

    def publish_property_change(self, change: PropertyChange) -> None:
        self.bus.publish(BusEnvelope.for_change(change))

    def emit_event(self, contact_id: str, event_type: str, payload: dict[str, Any] | None = None) -> Event:
        """
        Append an event to the contact's history; the engine reacts to it.

        Raises:
            ReservedEventTypeError: the type is one the engine publishes itself.
        """
        if event_type in INTERNAL_EVENT_TYPES:
            raise ReservedEventTypeError(event_type)
        return self.events.append(contact_id, event_type, payload or {})

    def set_property(self, contact_id: str, key: str, value: Any) -> PropertyChange | None:
        """
        Write a contact property.

        Raises:
            ValidationError: the write was rejected by the schema.
        """
        return self.properties.set(contact_id, key, value)

    # =========================================================================
    # Inspection and waiting
    # =========================================================================

    def query_instance_status(self, instance_id: str) -> FlowInstance:
        instance = self.store.get_instance(instance_id)
        if instance is None:
            raise UnknownInstanceError(f"Instance {instance_id} not found", details={"instance_id": instance_id})
        return instance

    def instances_for(self, contact_id: str, flow_id: str | None = None) -> list[FlowInstance]:
        return self.store.list_instances(contact_id=contact_id, flow_id=flow_id)

    def await_completion(self, cause_id: str, timeout: float | None = None) -> bool:
        return self.aggregator.await_completion(cause_id, timeout)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.bus.wait_idle(timeout)

    # =========================================================================
    # Time
    # =========================================================================

    def _manual_clock(self) -> ManualClock:
        if not isinstance(self.clock, ManualClock):
            raise TypeError("advance_clock/set_clock need the engine to run on a ManualClock")
        return self.clock

    def advance_clock(self, duration: timedelta) -> int:
        self._manual_clock().advance(duration)
        return self.tick()

    def set_clock(self, timestamp: datetime) -> int:
        self._manual_clock().set(timestamp)
        return self.tick()

    def tick(self) -> int:
        """Fire due wakes until none are left. Returns how many fired."""
        total = 0
        while True:
            fired = self.scheduler.tick()
            self.bus.wait_idle()
            if not fired:
                return total
            total += fired

    def recover(self) -> dict[str, int]:
        """
        Rebuild scheduler state after a restart.

        Instances left running with no wake (the process died mid-step) are
        resumed at their current step.
        """
        self.catalog.refresh()
        wakes = self.scheduler.recover()
        stalled = self.store.list_stalled()
        for instance in stalled:
            self.bus.publish(BusEnvelope.resume(instance.instance_id, instance.contact_id, None))
        logger.info(
            "Engine recovered",
            extra={"wakes": wakes, "stalled": len(stalled)},
        )
        return {"wakes": wakes, "stalled": len(stalled)}

    def close(self) -> None:
        self.bus.close()

    # =========================================================================
    # Bus handlers
    # =========================================================================

    def _on_event(self, envelope: BusEnvelope) -> None:
        event = envelope.event
        with self.serializer.exclusive(event.contact_id):
            for instance in self.instances.watching_instances(event.contact_id):
                self.instances.handle_event(instance, event)

            if event.event_type in INTERNAL_EVENT_TYPES:
                return

            matched = self.triggers.match_event(event, self.properties.snapshot(event.contact_id))
            self.triggers.fan_out(matched, event.contact_id, event.event_id, parents=event.causation)

    def _on_property_change(self, envelope: BusEnvelope) -> None:
        change = envelope.change
        with self.serializer.exclusive(change.contact_id):
            for instance in self.instances.watching_instances(change.contact_id):
                self.instances.handle_property_change(instance, change)

            matched = self.triggers.match_change(change, self.properties.snapshot(change.contact_id))
            self.triggers.fan_out(matched, change.contact_id, change.change_id, parents=change.causation)

    def _on_resume(self, envelope: BusEnvelope) -> None:
        with self.serializer.exclusive(envelope.contact_id):
            self.instances.resume(envelope.body["instance_id"], envelope.wake_at)

    def _on_trigger_fire(self, envelope: BusEnvelope) -> None:
        flow_id = envelope.body["flow_id"]
        cause_id = envelope.envelope_id
        definition = self.catalog.get(flow_id)
        if definition is None or not self.catalog.is_active(flow_id):
            logger.info(f"Trigger fired for inactive flow {flow_id}; ignored", extra={"flow_id": flow_id})
            self.aggregator.open(cause_id, [])
            return

        contacts = self.triggers.segment_contacts(definition)
        logger.info(
            f"Enrolling {len(contacts)} contact(s) into flow {flow_id}",
            extra={"flow_id": flow_id, "cause_id": cause_id, "contacts": len(contacts)},
        )
        self.aggregator.track_emission([cause_id], count=len(contacts))
        self.aggregator.open(cause_id, [])
        for contact_id in contacts:
            self.bus.publish(BusEnvelope.spawn(flow_id, contact_id, cause_id))

    def _on_spawn(self, envelope: BusEnvelope) -> None:
        flow_id = envelope.body["flow_id"]
        parents: Sequence[str] = tuple(envelope.body.get("causation") or ())
        origin = parents[0] if parents else envelope.envelope_id
        definition = self.catalog.get(flow_id)
        with self.serializer.exclusive(envelope.contact_id):
            flows = [definition] if definition is not None and self.catalog.is_active(flow_id) else []
            self.triggers.fan_out(
                flows,
                envelope.contact_id,
                envelope.envelope_id,
                parents=parents,
                origin_cause=origin,
            )
