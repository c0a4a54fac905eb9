"""
Tests for the pooled event bus: concurrent delivery with per-contact ordering.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from flows_core.adapters.memory import InMemoryPropertyStore, StaticSegmentResolver
from flows_core.definitions.models import ActionStep, DelayStep, FlowDefinition, Now, OnEvent, Relative
from flows_core.definitions.predicates import event_is
from flows_core.engine.bus import ContactSerializer, LocalEventBus
from flows_core.engine.runtime import FlowEngine
from flows_core.engine.state import InstanceStatus


@pytest.fixture
def pooled_engine(clock, settings, schema):
    engine = FlowEngine(
        InMemoryPropertyStore(schema, now=clock.now),
        segments=StaticSegmentResolver(),
        clock=clock,
        bus=LocalEventBus(ThreadPoolExecutor(max_workers=8)),
        settings=settings,
    )
    yield engine
    engine.close()


def run_concurrently(fn, args_list):
    threads = [threading.Thread(target=fn, args=args) for args in args_list]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


class TestContactSerializer:
    """Tests for ContactSerializer."""

    def test_same_contact_is_exclusive(self):
        """Test that two sections for one contact never overlap."""
        serializer = ContactSerializer()
        inside = []
        overlaps = []

        def section():
            with serializer.exclusive("c1"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(True)
                time.sleep(0.001)
                inside.pop()

        run_concurrently(section, [()] * 20)

        assert overlaps == []
        assert serializer._locks == {}

    def test_reentrant(self):
        """Test that a thread can re-enter its contact's section."""
        serializer = ContactSerializer()
        with serializer.exclusive("c1"):
            with serializer.exclusive("c1"):
                pass
        assert serializer._locks == {}


class TestPooledBus:
    """Tests for engines delivering on a thread pool."""

    def test_concurrent_triggers_create_one_instance(self, pooled_engine):
        """Test that racing matches for one contact enroll it once."""
        pooled_engine.define_flow(
            FlowDefinition(
                flow_id="drip",
                trigger=OnEvent(predicate=event_is("ping")),
                steps=[DelayStep(delay=Relative(duration=timedelta(days=1)))],
            )
        )

        run_concurrently(lambda: pooled_engine.emit_event("c1", "ping"), [()] * 25)

        assert pooled_engine.wait_idle(timeout=10) is True
        assert len(pooled_engine.instances_for("c1", "drip")) == 1

    def test_many_contacts_complete(self, pooled_engine):
        """Test that independent contacts all run to completion."""
        pooled_engine.define_flow(
            FlowDefinition(
                flow_id="count",
                trigger=OnEvent(predicate=event_is("go")),
                steps=[
                    ActionStep(handler="increment_property", params={"key": "visits"}),
                    ActionStep(handler="increment_property", params={"key": "visits"}),
                ],
            )
        )
        contacts = [f"c{i}" for i in range(30)]

        run_concurrently(lambda c: pooled_engine.emit_event(c, "go"), [(c,) for c in contacts])

        assert pooled_engine.wait_idle(timeout=10) is True
        for contact_id in contacts:
            instances = pooled_engine.instances_for(contact_id, "count")
            assert [i.status for i in instances] == [InstanceStatus.COMPLETED_BY_FINISH]
            assert pooled_engine.properties.get(contact_id, "visits") == 2

    def test_now_trigger_completion(self, pooled_engine):
        """Test that a segment fan-out resolves once every contact finished."""
        contacts = [f"c{i}" for i in range(20)]
        pooled_engine.segments.define("everyone", contacts)

        cause = pooled_engine.define_flow(
            FlowDefinition(
                flow_id="blast",
                trigger=Now(segment="everyone"),
                steps=[ActionStep(handler="set_property", params={"key": "blasted", "value": True})],
            )
        )

        assert pooled_engine.await_completion(cause, timeout=10) is True
        assert pooled_engine.wait_idle(timeout=10) is True
        assert all(pooled_engine.properties.get(c, "blasted") is True for c in contacts)

    def test_delays_on_pool(self, pooled_engine):
        """Test that wakes fired by tick are delivered on the pool."""
        pooled_engine.define_flow(
            FlowDefinition(
                flow_id="later",
                trigger=OnEvent(predicate=event_is("go")),
                steps=[
                    DelayStep(delay=Relative(duration=timedelta(hours=1))),
                    ActionStep(handler="set_property", params={"key": "done", "value": True}),
                ],
            )
        )
        for contact_id in ("a", "b", "c"):
            pooled_engine.emit_event(contact_id, "go")
        pooled_engine.wait_idle(timeout=10)

        assert pooled_engine.advance_clock(timedelta(hours=1)) == 3
        assert all(pooled_engine.properties.get(c, "done") is True for c in ("a", "b", "c"))
