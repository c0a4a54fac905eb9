"""
Tests for persistence and recovery on the SQL flow store.

Each test gets a private in-memory SQLite database. A "restart" is a second
FlowEngine built on the same store with empty in-process state.
"""

from datetime import timedelta

import pytest

from flowbase.db import build_engine

from flows_core.adapters.memory import InMemoryPropertyStore, StaticSegmentResolver
from flows_core.definitions.models import (
    ActionStep,
    At,
    Branch,
    DecisionStep,
    DelayStep,
    FlowDefinition,
    OnEvent,
    OnPropertyChange,
    Relative,
)
from flows_core.definitions.predicates import event_is, prop
from flows_core.engine.runtime import FlowEngine
from flows_core.engine.state import FlowInstance, InstanceStatus
from flows_core.engine.wakes import instance_key
from flows_core.errors import DuplicateInstanceError, SchedulerDurabilityError
from flows_core.persistence.repo import SqlFlowStore


def delayed_flow(flow_id="later", days=1):
    return FlowDefinition(
        flow_id=flow_id,
        trigger=OnEvent(predicate=event_is("go")),
        steps=[
            DelayStep(delay=Relative(duration=timedelta(days=days))),
            ActionStep(handler="set_property", params={"key": "done", "value": True}),
        ],
    )


@pytest.fixture
def store():
    return SqlFlowStore.from_engine(build_engine("sqlite://"))


@pytest.fixture
def start_engine(store, clock, settings, schema):
    """Build engines sharing one store, each with its own contact store."""
    built = []

    def _start(segments=None):
        engine = FlowEngine(
            InMemoryPropertyStore(schema, now=clock.now),
            store=store,
            segments=segments or StaticSegmentResolver(),
            clock=clock,
            settings=settings,
        )
        built.append(engine)
        return engine

    yield _start
    for engine in built:
        engine.close()


class TestSqlFlowStore:
    """Tests for SqlFlowStore itself."""

    def test_definition_round_trip(self, store):
        """Test that a definition with decisions and a goal survives storage."""
        definition = FlowDefinition(
            flow_id="tiering",
            name="Tiering",
            trigger=OnPropertyChange(key="plan"),
            steps=[
                DecisionStep(
                    branches=[Branch(when=prop("plan", "eq", "pro"), steps=[ActionStep(handler="log")])],
                    otherwise=[DelayStep(delay=Relative(duration=timedelta(hours=1)))],
                )
            ],
            goal=prop("purchased", "eq", True),
        )
        store.save_definition(definition)

        assert store.get_definition("tiering") == definition
        assert store.is_active_definition("tiering") is True

        assert store.deactivate_definition("tiering") is True
        assert store.list_definitions() == []
        assert store.list_definitions(active_only=False) == [definition]
        assert store.get_definition("tiering") == definition
        assert store.deactivate_definition("missing") is False

    def test_one_active_instance_per_flow_and_contact(self, store, clock):
        """Test that the store rejects a second active instance."""
        first = FlowInstance.start("later", "c1", "cause-1", clock.now())
        store.add_instance(first)

        with pytest.raises(DuplicateInstanceError) as exc_info:
            store.add_instance(FlowInstance.start("later", "c1", "cause-2", clock.now()))
        assert exc_info.value.existing_instance_id == first.instance_id

        first.status = InstanceStatus.COMPLETED_BY_FINISH
        first.finished_at = clock.now()
        store.save_instance(first)
        store.add_instance(FlowInstance.start("later", "c1", "cause-3", clock.now()))

        assert len(store.list_instances(contact_id="c1")) == 2

    def test_wake_times_stay_timezone_aware(self, store, clock):
        """Test that wake_at comes back aware and equal to what was saved."""
        instance = FlowInstance.start("later", "c1", "cause-1", clock.now())
        instance.wake_at = clock.now() + timedelta(hours=3)
        store.add_instance(instance)

        loaded = store.get_instance(instance.instance_id)
        assert loaded.wake_at == instance.wake_at
        assert loaded.wake_at.tzinfo is not None
        assert [i.instance_id for i in store.list_scheduled()] == [instance.instance_id]

    def test_claim_at_trigger_once(self, store, clock):
        """Test that only the first claim of an At trigger wins."""
        store.save_definition(
            FlowDefinition(
                flow_id="launch",
                trigger=At(at=clock.now(), segment="beta"),
                steps=[ActionStep(handler="log")],
            )
        )
        assert [d.flow_id for d in store.pending_at_definitions()] == ["launch"]
        assert store.claim_at_trigger("launch", clock.now()) is True
        assert store.claim_at_trigger("launch", clock.now()) is False
        assert store.pending_at_definitions() == []


class TestRecovery:
    """Tests for restarting an engine on persisted state."""

    def test_delay_survives_restart(self, start_engine, store):
        """Test that a sleeping instance wakes on the engine that replaced its owner."""
        first = start_engine()
        first.define_flow(delayed_flow())
        first.emit_event("c1", "go")
        first.close()

        second = start_engine()
        assert second.recover() == {"wakes": 1, "stalled": 0}

        second.advance_clock(timedelta(days=1))

        instance = store.list_instances(contact_id="c1")[0]
        assert instance.status == InstanceStatus.COMPLETED_BY_FINISH
        assert second.properties.get("c1", "done") is True

    def test_stalled_instance_is_resumed(self, start_engine, store, clock):
        """Test that an instance left running mid-step is picked up on recovery."""
        first = start_engine()
        first.define_flow(
            FlowDefinition(
                flow_id="instant",
                trigger=OnEvent(predicate=event_is("go")),
                steps=[ActionStep(handler="set_property", params={"key": "done", "value": True})],
            )
        )
        # Crash between insert and the first step
        store.add_instance(FlowInstance.start("instant", "c1", "cause-1", clock.now()))

        second = start_engine()
        assert second.recover() == {"wakes": 0, "stalled": 1}
        assert second.properties.get("c1", "done") is True
        assert store.list_instances(contact_id="c1")[0].status == InstanceStatus.COMPLETED_BY_FINISH

    def test_recover_is_idempotent(self, start_engine):
        """Test that recovering twice does not fire a wake twice."""
        first = start_engine()
        first.define_flow(delayed_flow())
        first.emit_event("c1", "go")

        second = start_engine()
        second.recover()
        second.recover()

        assert second.advance_clock(timedelta(days=1)) == 1

    def test_completion_seen_by_other_engine(self, start_engine):
        """Test that a group resolved by one engine is visible to another."""
        first = start_engine()
        first.define_flow(
            FlowDefinition(
                flow_id="upgrade",
                trigger=OnPropertyChange(key="plan"),
                steps=[DelayStep(delay=Relative(duration=timedelta(hours=1)))],
            )
        )
        change = first.set_property("c1", "plan", "pro")
        second = start_engine()

        assert second.await_completion(change.change_id, timeout=0) is False
        first.advance_clock(timedelta(hours=1))
        assert second.await_completion(change.change_id, timeout=0) is True

    def test_at_trigger_fires_on_one_engine_only(self, start_engine, store, clock):
        """Test that two engines sharing a store fan out an At trigger once."""
        segments = StaticSegmentResolver({"beta": ["c1", "c2"]})
        first = start_engine(segments)
        first.define_flow(
            FlowDefinition(
                flow_id="launch",
                trigger=At(at=clock.now() + timedelta(minutes=5), segment="beta"),
                steps=[ActionStep(handler="log", params={"message": "launched"})],
            )
        )
        second = start_engine(segments)
        second.recover()

        first.advance_clock(timedelta(minutes=5))
        assert second.tick() == 0

        assert len(store.list_instances(flow_id="launch")) == 2


class TestSchedulerDurability:
    """Tests for the scheduler refusing to drop wakes."""

    def test_wake_for_missing_instance_halts(self, engine, clock):
        """Test that an orphaned wake halts the scheduler until recovery."""
        engine.scheduler.queue.push(instance_key("ghost"), clock.now())

        with pytest.raises(SchedulerDurabilityError):
            engine.advance_clock(timedelta(seconds=1))
        assert engine.scheduler.halted is True

        # The wake stays queued and the halt sticks
        with pytest.raises(SchedulerDurabilityError):
            engine.tick()
        assert len(engine.scheduler.queue) == 1

        engine.scheduler.queue.remove(instance_key("ghost"))
        engine.recover()
        assert engine.scheduler.halted is False
        assert engine.tick() == 0

    def test_stale_wake_is_skipped(self, engine, clock, properties):
        """Test that a wake whose instance moved on does not resume it."""
        engine.define_flow(delayed_flow())
        engine.emit_event("c1", "go")
        instance = engine.instances_for("c1")[0]

        # Replace the queued wake with one the instance no longer expects
        engine.scheduler.queue.push(instance_key(instance.instance_id), clock.now())

        assert engine.advance_clock(timedelta(seconds=1)) == 0
        assert properties.get("c1", "done") is None
        assert engine.instances_for("c1")[0].status == InstanceStatus.WAITING_ON_DELAY

        # Recovery rebuilds the real wake from the instance row
        engine.recover()
        engine.advance_clock(timedelta(days=1))
        assert properties.get("c1", "done") is True
