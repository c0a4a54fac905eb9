"""
Flow Instance Manager

Owns instance state transitions: running steps, entering delays, handling
goals, retries and failures.

Every public method expects the caller to hold the contact's lock from the
engine's ContactSerializer; nothing here locks per contact on its own.
"""

import logging
from datetime import datetime
from functools import partial
from typing import Any

from flows_core.actions.registry import ActionContext, ActionHandlerRegistry, ActionOutcome
from flows_core.adapters.base import EventLog, PropertyStore, TimezoneProvider
from flows_core.contracts.envelope import Event, PropertyChange
from flows_core.contracts.types import INTERNAL_EVENT_TYPES, InternalEventType
from flows_core.definitions.models import (
    AbsoluteLocal,
    ActionStep,
    DecisionStep,
    DelayStep,
    FlowDefinition,
    Relative,
    UntilComplete,
    UntilEvent,
    enter_branch,
    next_pointer,
)
from flows_core.definitions.predicates import Condition, EventIs, PredicateContext, evaluate
from flows_core.engine.catalog import FlowCatalog
from flows_core.engine.clock import Clock
from flows_core.engine.completion import CompletionAggregator
from flows_core.engine.reporting import FailureReporter
from flows_core.engine.retry import RetryPolicy
from flows_core.engine.scheduler import DelayScheduler
from flows_core.engine.state import FlowInstance, InstanceStatus
from flows_core.errors import ReservedEventTypeError
from flows_core.persistence.repo import FlowStore

logger = logging.getLogger(__name__)


class FlowInstanceManager:
    def __init__(
        self,
        store: FlowStore,
        catalog: FlowCatalog,
        registry: ActionHandlerRegistry,
        scheduler: DelayScheduler,
        aggregator: CompletionAggregator,
        properties: PropertyStore,
        events: EventLog,
        timezones: TimezoneProvider,
        clock: Clock,
        retry_policy: RetryPolicy,
        reporter: FailureReporter,
        reference_timezone: str = "UTC",
    ):
        self.store = store
        self.catalog = catalog
        self.registry = registry
        self.scheduler = scheduler
        self.aggregator = aggregator
        self.properties = properties
        self.events = events
        self.timezones = timezones
        self.clock = clock
        self.retry_policy = retry_policy
        self.reporter = reporter
        self.reference_timezone = reference_timezone

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create(self, definition: FlowDefinition, contact_id: str, cause_id: str) -> FlowInstance:
        """
        Start a new instance at the first step.

        Raises:
            DuplicateInstanceError: the contact is already active in the flow.
        """
        instance = FlowInstance.start(definition.flow_id, contact_id, cause_id, self.clock.now())
        self.store.add_instance(instance)
        logger.info(
            f"Contact {contact_id} entered flow {definition.flow_id}",
            extra={
                "instance_id": instance.instance_id,
                "flow_id": definition.flow_id,
                "contact_id": contact_id,
                "cause_id": cause_id,
            },
        )
        return instance

    def advance(self, instance: FlowInstance) -> FlowInstance:
        """Run steps until the instance waits, finishes or fails."""
        definition = self.catalog.get(instance.flow_id)
        if definition is None:
            return self._finish(instance, InstanceStatus.FAILED, f"Flow {instance.flow_id} is not defined")

        instance.status = InstanceStatus.RUNNING
        while True:
            step = definition.step_at(instance.pointer)

            if step is None:
                return self._finish(instance, InstanceStatus.COMPLETED_BY_FINISH)

            if isinstance(step, ActionStep):
                if not self._run_action(instance, definition, step):
                    return instance
                continue

            if isinstance(step, DecisionStep):
                instance.pointer = self._choose_branch(instance, definition, step)
                continue

            if isinstance(step, DelayStep):
                self._enter_delay(instance, definition, step)
                return instance

            return self._finish(instance, InstanceStatus.FAILED, f"Unknown step kind {type(step).__name__}")

    def resume(self, instance_id: str, wake_at: datetime | None) -> FlowInstance | None:
        """Continue an instance whose delay or retry wake fired."""
        instance = self.store.get_instance(instance_id)
        if instance is None:
            logger.warning(f"Resume for unknown instance {instance_id}", extra={"instance_id": instance_id})
            return None
        if instance.is_terminal or instance.wake_at != wake_at:
            logger.debug(
                f"Ignoring stale resume for instance {instance_id}",
                extra={"instance_id": instance_id, "status": instance.status.value},
            )
            return instance

        instance.wake_at = None
        if instance.status == InstanceStatus.WAITING_ON_DELAY:
            self._step_past(instance)
        return self.advance(instance)

    def handle_event(self, instance: FlowInstance, event: Event) -> bool:
        """Goal check, then UntilEvent check. Returns True when the instance moved."""
        ctx = PredicateContext(
            properties=self.properties.snapshot(instance.contact_id),
            event=event,
            variables=instance.variables,
        )
        return self._handle(instance, ctx)

    def handle_property_change(self, instance: FlowInstance, change: PropertyChange) -> bool:
        ctx = PredicateContext(
            properties=self.properties.snapshot(instance.contact_id),
            change=change,
            variables=instance.variables,
        )
        return self._handle(instance, ctx)

    def watching_instances(self, contact_id: str) -> list[FlowInstance]:
        """Active instances whose flow declares a goal or waits on events."""
        watching = []
        for instance in self.store.list_active_for_contact(contact_id):
            definition = self.catalog.get(instance.flow_id)
            if definition is not None and definition.watches_events:
                watching.append(instance)
        return watching

    def complete_by_goal(self, instance: FlowInstance) -> FlowInstance:
        logger.info(
            f"Instance {instance.instance_id} reached its goal",
            extra={"instance_id": instance.instance_id, "flow_id": instance.flow_id},
        )
        return self._finish(instance, InstanceStatus.COMPLETED_BY_GOAL)

    # =========================================================================
    # Steps
    # =========================================================================

    def _handle(self, instance: FlowInstance, ctx: PredicateContext) -> bool:
        if instance.is_terminal:
            return False
        definition = self.catalog.get(instance.flow_id)
        if definition is None:
            return False

        if definition.goal is not None and definition.goal.evaluate(ctx):
            self.complete_by_goal(instance)
            return True

        if (
            instance.status == InstanceStatus.WAITING_ON_EVENT
            and instance.waiting_on is not None
            and evaluate(instance.waiting_on, ctx)
        ):
            if not self._continuation_resolved(instance, definition):
                return False
            instance.waiting_on = None
            self._step_past(instance, definition)
            self.advance(instance)
            return True
        return False

    def _continuation_resolved(self, instance: FlowInstance, definition: FlowDefinition) -> bool:
        """An UntilComplete wait only ends once its cause has actually resolved."""
        step = definition.step_at(instance.pointer)
        if not (isinstance(step, DelayStep) and isinstance(step.delay, UntilComplete)):
            return True
        cause_id = instance.variables.get(step.delay.ref)
        if cause_id and self.aggregator.is_resolved(cause_id):
            return True
        logger.warning(
            f"Instance {instance.instance_id} got a completion event for unresolved cause {cause_id}; ignored",
            extra={"instance_id": instance.instance_id, "cause_id": cause_id},
        )
        return False

    def _step_past(self, instance: FlowInstance, definition: FlowDefinition | None = None) -> None:
        definition = definition or self.catalog.get(instance.flow_id)
        following = next_pointer(definition.steps, instance.pointer)
        instance.pointer = following if following is not None else [len(definition.steps)]

    def _choose_branch(self, instance: FlowInstance, definition: FlowDefinition, step: DecisionStep) -> list[int]:
        ctx = PredicateContext(
            properties=self.properties.snapshot(instance.contact_id),
            variables=instance.variables,
        )
        chosen = len(step.branches)
        for index, branch in enumerate(step.branches):
            if branch.when.evaluate(ctx):
                chosen = index
                break
        logger.debug(
            f"Instance {instance.instance_id} took branch {chosen}",
            extra={"instance_id": instance.instance_id, "pointer": list(instance.pointer)},
        )
        following = enter_branch(definition.steps, instance.pointer, chosen)
        return following if following is not None else [len(definition.steps)]

    def _run_action(self, instance: FlowInstance, definition: FlowDefinition, step: ActionStep) -> bool:
        """Returns True when the step succeeded and the pointer moved on."""
        attempt = instance.attempts + 1
        ctx = ActionContext(
            contact_id=instance.contact_id,
            instance_id=instance.instance_id,
            flow_id=instance.flow_id,
            cause_id=instance.cause_id,
            now=self.clock.now(),
            properties=self.properties.snapshot(instance.contact_id),
            variables=dict(instance.variables),
            attempt=attempt,
            set_property_fn=partial(self._write_property, instance),
            emit_event_fn=partial(self._emit_event, instance),
        )
        result = self.registry.execute(step.handler, ctx, step.params)

        if result.outcome == ActionOutcome.SUCCESS:
            instance.variables.update(result.variables)
            instance.attempts = 0
            instance.last_error = None
            self._step_past(instance, definition)
            instance.updated_at = self.clock.now()
            self.store.save_instance(instance)
            return True

        instance.attempts = attempt
        instance.last_error = result.reason

        if result.outcome == ActionOutcome.RETRYABLE and self.retry_policy.should_retry(attempt):
            wake_at = self.clock.now() + self.retry_policy.backoff(attempt)
            logger.warning(
                f"Action {step.handler} failed for instance {instance.instance_id}, retrying",
                extra={
                    "instance_id": instance.instance_id,
                    "handler": step.handler,
                    "attempt": attempt,
                    "retry_at": wake_at.isoformat(),
                    "error": result.reason,
                },
            )
            self.scheduler.schedule_retry(instance, wake_at)
            return False

        if result.outcome == ActionOutcome.RETRYABLE:
            reason = f"Action {step.handler} failed after {attempt} attempts: {result.reason}"
        else:
            reason = f"Action {step.handler} failed: {result.reason}"
        self._finish(instance, InstanceStatus.FAILED, reason)
        return False

    def _enter_delay(self, instance: FlowInstance, definition: FlowDefinition, step: DelayStep) -> None:
        delay = step.delay
        instance.updated_at = self.clock.now()

        if isinstance(delay, (Relative, AbsoluteLocal)):
            instance.status = InstanceStatus.WAITING_ON_DELAY
            instance.waiting_on = None
            zone = self.reference_timezone
            if definition.local_time:
                zone = self.timezones.timezone_of(instance.contact_id)
            self.scheduler.schedule(instance, delay, zone)
            return

        if isinstance(delay, UntilEvent):
            instance.status = InstanceStatus.WAITING_ON_EVENT
            instance.waiting_on = delay.predicate.model_dump(mode="json")
            instance.wake_at = None
            self.store.save_instance(instance)
            return

        if isinstance(delay, UntilComplete):
            cause_id = instance.variables.get(delay.ref)
            if not cause_id:
                self._finish(
                    instance,
                    InstanceStatus.FAILED,
                    f"Variable {delay.ref!r} holds no cause to wait for",
                )
                return
            instance.status = InstanceStatus.WAITING_ON_EVENT
            instance.waiting_on = EventIs(
                event_type=InternalEventType.COMPLETION_RESOLVED.value,
                where=[Condition(source="payload", key="cause_id", value=cause_id)],
            ).model_dump(mode="json")
            instance.wake_at = None
            self.store.save_instance(instance)
            self.aggregator.register_continuation(cause_id, instance)
            return

        raise TypeError(f"Unknown delay spec: {delay!r}")

    def _finish(self, instance: FlowInstance, status: InstanceStatus, reason: str | None = None) -> FlowInstance:
        now = self.clock.now()
        instance.status = status
        instance.wake_at = None
        instance.waiting_on = None
        instance.finished_at = now
        instance.updated_at = now
        if reason:
            instance.failure_reason = reason
        self.store.save_instance(instance)
        self.scheduler.cancel(instance.instance_id)

        logger.info(
            f"Instance {instance.instance_id} finished: {status.value}",
            extra={
                "instance_id": instance.instance_id,
                "flow_id": instance.flow_id,
                "contact_id": instance.contact_id,
                "status": status.value,
            },
        )
        self.aggregator.notify_terminal(instance)
        if status == InstanceStatus.FAILED:
            self.reporter.report(instance, reason or "unknown failure")
        return instance

    # =========================================================================
    # Write-back from actions
    # =========================================================================

    def _write_property(self, instance: FlowInstance, key: str, value: Any) -> PropertyChange | None:
        causation = self.aggregator.causes_for(instance.instance_id)
        change = self.properties.set(instance.contact_id, key, value, causation)
        if change is not None:
            self.aggregator.track_emission(causation)
        return change

    def _emit_event(self, instance: FlowInstance, event_type: str, payload: dict[str, Any]) -> Event:
        if event_type in INTERNAL_EVENT_TYPES:
            raise ReservedEventTypeError(event_type)
        causation = self.aggregator.causes_for(instance.instance_id)
        event = self.events.append(instance.contact_id, event_type, payload, causation)
        self.aggregator.track_emission(causation)
        return event
