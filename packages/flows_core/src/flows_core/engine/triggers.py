"""
Trigger Matcher

Decides which flows a delivered event or property change enrolls the
contact into, and runs the fan-out: create the instances, register them
with the Completion Aggregator, then advance each one.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from flows_core.adapters.base import SegmentResolver
from flows_core.contracts.envelope import Event, PropertyChange
from flows_core.definitions.models import At, FlowDefinition, Now, OnEvent, OnPropertyChange
from flows_core.definitions.predicates import PredicateContext
from flows_core.engine.catalog import FlowCatalog
from flows_core.engine.completion import CompletionAggregator
from flows_core.engine.instances import FlowInstanceManager
from flows_core.engine.state import FlowInstance
from flows_core.errors import DuplicateInstanceError

logger = logging.getLogger(__name__)


class TriggerMatcher:
    def __init__(
        self,
        catalog: FlowCatalog,
        manager: FlowInstanceManager,
        aggregator: CompletionAggregator,
        segments: SegmentResolver,
    ):
        self.catalog = catalog
        self.manager = manager
        self.aggregator = aggregator
        self.segments = segments

    def match_event(self, event: Event, properties: Mapping[str, Any]) -> list[FlowDefinition]:
        ctx = PredicateContext(properties=properties, event=event)
        return [
            d
            for d in self.catalog.active()
            if isinstance(d.trigger, OnEvent) and d.trigger.predicate.evaluate(ctx)
        ]

    def match_change(self, change: PropertyChange, properties: Mapping[str, Any]) -> list[FlowDefinition]:
        ctx = PredicateContext(properties=properties, change=change)
        return [
            d
            for d in self.catalog.active()
            if isinstance(d.trigger, OnPropertyChange)
            and d.trigger.key == change.key
            and d.trigger.predicate.evaluate(ctx)
        ]

    def segment_contacts(self, definition: FlowDefinition) -> list[str]:
        if not isinstance(definition.trigger, (Now, At)):
            raise ValueError(f"Flow {definition.flow_id} is not segment-triggered")
        # dict.fromkeys keeps order and drops duplicates
        return list(dict.fromkeys(self.segments.resolve(definition.trigger.segment)))

    def fan_out(
        self,
        flows: Sequence[FlowDefinition],
        contact_id: str,
        cause_id: str,
        parents: Sequence[str] = (),
        origin_cause: str | None = None,
    ) -> list[FlowInstance]:
        """
        Enroll a contact into each flow and run the new instances.

        Caller holds the contact's serializer lock. A flow the contact is
        already active in is skipped (the new match is dropped). The fan-out
        is always reported to the aggregator, even when nothing spawned.
        """
        spawned: list[FlowInstance] = []
        for definition in flows:
            try:
                instance = self.manager.create(definition, contact_id, origin_cause or cause_id)
            except DuplicateInstanceError as e:
                logger.info(
                    f"Contact {contact_id} already active in flow {definition.flow_id}; trigger dropped",
                    extra={
                        "flow_id": definition.flow_id,
                        "contact_id": contact_id,
                        "cause_id": cause_id,
                        "existing_instance_id": e.existing_instance_id,
                    },
                )
                continue
            spawned.append(instance)

        self.aggregator.open(cause_id, [i.instance_id for i in spawned], parents)

        for instance in spawned:
            self.manager.advance(instance)
        return spawned
