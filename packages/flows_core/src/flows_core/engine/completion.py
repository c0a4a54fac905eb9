"""
Completion Aggregator

Tracks, per cause (an event, a property change or a trigger firing), every
instance it spawned directly or transitively, and resolves the cause once
all of them are terminal.

Transitive tracking works through emissions: when an instance emits an
event or property change, each unresolved group it belongs to counts one
pending emission. When that record's trigger fan-out runs, the spawned
instances join those parent groups and the emission is settled. A group
therefore cannot resolve while a member's output is still in flight.

Resolution wakes three kinds of waiters:
- threads blocked in await_completion();
- in-process callbacks registered with on_resolved();
- instances waiting on an UntilComplete delay (continuations), which get a
  ``flows.completion_resolved`` event on the bus.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Sequence

from flows_core.contracts.envelope import BusEnvelope, Event
from flows_core.contracts.types import InternalEventType
from flows_core.engine.clock import Clock
from flows_core.engine.state import CompletionGroup, FlowInstance
from flows_core.persistence.repo import FlowStore

logger = logging.getLogger(__name__)

SETTLED_CACHE_SIZE = 10000


class CompletionAggregator:
    def __init__(
        self,
        store: FlowStore,
        publish: Callable[[BusEnvelope], None],
        clock: Clock,
    ):
        self.store = store
        self._publish = publish
        self.clock = clock
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._callbacks: dict[str, list[Callable[[str], None]]] = {}
        # Causes whose fan-out spawned nothing; never persisted.
        self._settled: OrderedDict[str, None] = OrderedDict()

    # =========================================================================
    # Group bookkeeping
    # =========================================================================

    def open(self, cause_id: str, member_ids: Iterable[str], parents: Sequence[str] = ()) -> None:
        """
        Record the fan-out of ``cause_id``.

        Called exactly once per delivered event/change/spawn, even when
        nothing was spawned, so that emissions counted against ``parents``
        get settled.
        """
        members = set(member_ids)
        with self._lock:
            group = self.store.get_group(cause_id)
            if group is None and not members:
                self._remember_settled(cause_id)
                self._fire_callbacks(cause_id)
            else:
                if group is None:
                    group = CompletionGroup(cause_id=cause_id, created_at=self.clock.now())
                group.members |= members
                group.active |= members
                group.opened = True
                self._check(group)

            for parent_id in parents:
                parent = self.store.get_group(parent_id)
                if parent is None or parent.resolved:
                    logger.warning(
                        f"Emission settled against unknown or resolved group {parent_id}",
                        extra={"cause_id": cause_id, "parent_cause_id": parent_id},
                    )
                    continue
                parent.members |= members
                parent.active |= members
                parent.pending_emissions = max(0, parent.pending_emissions - 1)
                self._check(parent)

            self._changed.notify_all()

        if members:
            logger.info(
                f"Cause {cause_id} spawned {len(members)} instance(s)",
                extra={"cause_id": cause_id, "spawned": len(members), "parents": list(parents)},
            )

    def track_emission(self, parents: Sequence[str], count: int = 1) -> None:
        """Count ``count`` undelivered emissions against each parent group."""
        if not parents or count <= 0:
            return
        with self._lock:
            for parent_id in parents:
                group = self.store.get_group(parent_id)
                if group is None:
                    group = CompletionGroup(cause_id=parent_id, created_at=self.clock.now())
                if group.resolved:
                    continue
                group.pending_emissions += count
                self.store.save_group(group)

    def notify_terminal(self, instance: FlowInstance) -> None:
        with self._lock:
            for group in self.store.groups_for_instance(instance.instance_id):
                group.active.discard(instance.instance_id)
                self._check(group)
            self._changed.notify_all()

    def causes_for(self, instance_id: str) -> tuple[str, ...]:
        """Unresolved causes an instance belongs to; the causation of its emissions."""
        return tuple(g.cause_id for g in self.store.groups_for_instance(instance_id))

    def register_continuation(self, cause_id: str, instance: FlowInstance) -> None:
        """Resume ``instance`` (via a completion event) when ``cause_id`` resolves."""
        continuation = {"instance_id": instance.instance_id, "contact_id": instance.contact_id}
        with self._lock:
            group = self.store.get_group(cause_id)
            if (group is not None and group.resolved) or (group is None and cause_id in self._settled):
                self._publish_completion(cause_id, continuation)
                return
            if group is None:
                group = CompletionGroup(cause_id=cause_id, created_at=self.clock.now())
            group.continuations.append(continuation)
            self.store.save_group(group)

    def _check(self, group: CompletionGroup) -> None:
        # caller holds self._lock
        if not group.resolved and group.is_settled:
            group.resolved = True
            group.resolved_at = self.clock.now()
            self.store.save_group(group)
            self._on_resolved(group)
        else:
            self.store.save_group(group)

    def _on_resolved(self, group: CompletionGroup) -> None:
        logger.info(
            f"Completion group {group.cause_id} resolved",
            extra={"cause_id": group.cause_id, "members": len(group.members)},
        )
        for continuation in group.continuations:
            self._publish_completion(group.cause_id, continuation)
        self._fire_callbacks(group.cause_id)

    def _publish_completion(self, cause_id: str, continuation: dict[str, str]) -> None:
        event = Event.create(
            contact_id=continuation["contact_id"],
            event_type=InternalEventType.COMPLETION_RESOLVED.value,
            payload={"cause_id": cause_id, "instance_id": continuation["instance_id"]},
            occurred_at=self.clock.now(),
        )
        self._publish(BusEnvelope.for_event(event))

    def _fire_callbacks(self, cause_id: str) -> None:
        for callback in self._callbacks.pop(cause_id, []):
            try:
                callback(cause_id)
            except Exception:
                logger.error(f"Completion callback for {cause_id} failed", exc_info=True)

    def _remember_settled(self, cause_id: str) -> None:
        self._settled[cause_id] = None
        while len(self._settled) > SETTLED_CACHE_SIZE:
            self._settled.popitem(last=False)

    # =========================================================================
    # Waiting
    # =========================================================================

    def is_resolved(self, cause_id: str) -> bool:
        with self._lock:
            if cause_id in self._settled:
                return True
            group = self.store.get_group(cause_id)
            return bool(group and group.resolved)

    def on_resolved(self, cause_id: str, callback: Callable[[str], None]) -> None:
        with self._lock:
            if self.is_resolved(cause_id):
                resolved = True
            else:
                self._callbacks.setdefault(cause_id, []).append(callback)
                resolved = False
        if resolved:
            callback(cause_id)

    def await_completion(
        self,
        cause_id: str,
        timeout: float | None = None,
        poll_interval: float = 0.5,
    ) -> bool:
        """
        Block until ``cause_id`` resolves. Returns False on timeout.

        A cause the engine has not processed yet is simply not resolved, so
        the call waits for it. The store is re-read every ``poll_interval``
        seconds so groups resolved by another process are seen too.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while True:
                if self.is_resolved(cause_id):
                    return True
                if deadline is None:
                    wait_for = poll_interval
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    wait_for = min(poll_interval, remaining)
                self._changed.wait(wait_for)
