"""
Delay Scheduler

Computes wake times for delay steps, keeps the wake queue, and turns due
wakes into RESUME / TRIGGER_FIRE envelopes on the bus.

Guarantees:
- a wake never fires before its wake_at;
- a wake for a terminal instance, or one whose wake_at has since changed,
  is dropped instead of resuming the instance;
- a queued wake whose instance no longer exists halts the scheduler with
  SchedulerDurabilityError; it is never silently dropped.
"""

import logging
from datetime import datetime

from flows_core.contracts.envelope import BusEnvelope
from flows_core.definitions.models import AbsoluteLocal, At, FlowDefinition, Relative, UntilComplete, UntilEvent
from flows_core.definitions.wallclock import get_zone, next_occurrence, parse_wall_clock
from flows_core.engine.bus import EventBus
from flows_core.engine.clock import Clock
from flows_core.engine.state import FlowInstance
from flows_core.engine.wakes import WakeQueue, instance_key, trigger_key
from flows_core.errors import SchedulerDurabilityError
from flows_core.persistence.repo import FlowStore

logger = logging.getLogger(__name__)


class DelayScheduler:
    def __init__(
        self,
        store: FlowStore,
        queue: WakeQueue,
        clock: Clock,
        bus: EventBus,
        reference_timezone: str = "UTC",
    ):
        self.store = store
        self.queue = queue
        self.clock = clock
        self.bus = bus
        self.reference_timezone = reference_timezone
        self.halted = False

    def compute_wake(self, delay, entered_at: datetime, zone_name: str | None = None) -> datetime | None:
        """
        Wake time for a delay entered at ``entered_at``.

        Returns None for delays that wait on events rather than time.
        """
        if isinstance(delay, Relative):
            return entered_at + delay.duration
        if isinstance(delay, AbsoluteLocal):
            zone = get_zone(zone_name or self.reference_timezone)
            return next_occurrence(parse_wall_clock(delay.at), entered_at, zone)
        if isinstance(delay, (UntilEvent, UntilComplete)):
            return None
        raise TypeError(f"Unknown delay spec: {delay!r}")

    def schedule(self, instance: FlowInstance, delay, zone_name: str | None = None) -> datetime | None:
        """
        Compute and register the wake for an instance entering a delay.

        The instance is persisted with its wake_at before the wake is queued,
        so a crash in between is repaired by recover().
        """
        wake_at = self.compute_wake(delay, self.clock.now(), zone_name)
        if wake_at is None:
            return None
        self._register(instance, wake_at)
        logger.info(
            f"Instance {instance.instance_id} sleeping until {wake_at.isoformat()}",
            extra={
                "instance_id": instance.instance_id,
                "contact_id": instance.contact_id,
                "delay": delay.kind,
                "wake_at": wake_at.isoformat(),
            },
        )
        return wake_at

    def schedule_retry(self, instance: FlowInstance, wake_at: datetime) -> None:
        self._register(instance, wake_at)

    def _register(self, instance: FlowInstance, wake_at: datetime) -> None:
        instance.wake_at = wake_at
        instance.updated_at = self.clock.now()
        self.store.save_instance(instance)
        self.queue.push(instance_key(instance.instance_id), wake_at)

    def schedule_trigger(self, definition: FlowDefinition) -> None:
        if not isinstance(definition.trigger, At):
            raise ValueError(f"Flow {definition.flow_id} does not have an At trigger")
        self.queue.push(trigger_key(definition.flow_id), definition.trigger.at)

    def cancel(self, instance_id: str) -> None:
        self.queue.remove(instance_key(instance_id))

    def cancel_trigger(self, flow_id: str) -> None:
        self.queue.remove(trigger_key(flow_id))

    def tick(self, now: datetime | None = None) -> int:
        """
        Fire every due wake. Returns the number of envelopes published.

        Raises:
            SchedulerDurabilityError: a queued wake refers to an instance that
                is not persisted. The scheduler stays halted until recover().
        """
        if self.halted:
            raise SchedulerDurabilityError("Scheduler is halted; run recover() after repairing the store")

        now = now or self.clock.now()
        fired = 0
        for key, wake_at in self.queue.pop_due(now):
            if wake_at > now:
                self.queue.push(key, wake_at)
                continue
            kind, _, ident = key.partition(":")
            if kind == "instance":
                fired += self._fire_instance(key, ident, wake_at)
            elif kind == "trigger":
                fired += self._fire_trigger(ident, now)
            else:
                logger.warning(f"Dropping unknown wake key {key}")
        return fired

    def _fire_instance(self, key: str, instance_id: str, wake_at: datetime) -> int:
        instance = self.store.get_instance(instance_id)
        if instance is None:
            self.queue.push(key, wake_at)
            self.halted = True
            logger.critical(
                f"Wake for unknown instance {instance_id}; halting scheduler",
                extra={"instance_id": instance_id, "wake_at": wake_at.isoformat()},
            )
            raise SchedulerDurabilityError(
                f"Queued wake refers to missing instance {instance_id}",
                details={"instance_id": instance_id, "wake_at": wake_at.isoformat()},
            )

        if instance.is_terminal or instance.wake_at != wake_at:
            logger.debug(
                f"Skipping stale wake for instance {instance_id}",
                extra={"instance_id": instance_id, "status": instance.status.value},
            )
            return 0

        self.bus.publish(BusEnvelope.resume(instance_id, instance.contact_id, wake_at))
        return 1

    def _fire_trigger(self, flow_id: str, now: datetime) -> int:
        if not self.store.is_active_definition(flow_id):
            logger.info(f"At trigger for inactive flow {flow_id} dropped")
            return 0
        if not self.store.claim_at_trigger(flow_id, now):
            return 0
        logger.info(f"At trigger fired for flow {flow_id}", extra={"flow_id": flow_id})
        self.bus.publish(BusEnvelope.trigger_fire(flow_id))
        return 1

    def recover(self) -> int:
        """
        Rebuild the wake queue from persisted instances and At triggers.

        Safe to run repeatedly; also clears a halt.
        """
        count = 0
        for instance in self.store.list_scheduled():
            self.queue.push(instance_key(instance.instance_id), instance.wake_at)
            count += 1
        for definition in self.store.pending_at_definitions():
            self.schedule_trigger(definition)
            count += 1
        self.halted = False
        logger.info(f"Scheduler recovered {count} wakes", extra={"wakes": count})
        return count
