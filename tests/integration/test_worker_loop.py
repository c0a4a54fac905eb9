"""
Tests for the flows worker's message handling.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, call

import pytest

from flows_core.contracts.envelope import BusEnvelope, Event, PropertyChange
from flows_core.definitions.models import ActionStep, At, DelayStep, FlowDefinition, OnEvent, OnPropertyChange, Relative
from flows_core.definitions.predicates import event_is
from flows_core.errors import SchedulerDurabilityError
from flows_worker import main as worker


def set_prop(key, value):
    return ActionStep(handler="set_property", params={"key": key, "value": value})


@pytest.fixture
def consumer():
    return MagicMock()


def message(envelope, msg_id="1-0", stream="flows:events"):
    return (stream, msg_id, envelope)


class TestApplyRemoteState:
    """Tests for mirroring forwarded records into the worker's datastore."""

    def test_event_is_recorded_and_delivered(self, worker_engine):
        """Test that forwarded events join the history and still need delivery."""
        event = Event.create("c1", "signed_up")

        assert worker.apply_remote_state(worker_engine, BusEnvelope.for_event(event)) is True
        assert worker_engine.events.history("c1") == [event]

    def test_property_change_is_replayed(self, worker_engine):
        """Test that forwarded writes are applied by the local store."""
        change = PropertyChange.create("c1", "plan", old_value=None, new_value="pro")

        assert worker.apply_remote_state(worker_engine, BusEnvelope.for_change(change)) is False
        assert worker_engine.properties.get("c1", "plan") == "pro"

    def test_rejected_write_is_dropped(self, worker_engine):
        """Test that a write the schema refuses leaves the contact unchanged."""
        worker_engine.properties.set("c1", "plan", "free")
        change = PropertyChange.create("c1", "plan", old_value=None, new_value="enterprise")

        assert worker.apply_remote_state(worker_engine, BusEnvelope.for_change(change)) is False
        assert worker_engine.properties.get("c1", "plan") == "free"
        assert worker_engine.await_completion(change.change_id, timeout=0) is True

    def test_replayed_write_keeps_writer_change_id(self, worker_engine):
        """Test that the id handed to the writer is the cause of what the write sets off."""
        worker_engine.define_flow(
            FlowDefinition(
                flow_id="upgrade",
                trigger=OnPropertyChange(key="plan"),
                steps=[DelayStep(delay=Relative(duration=timedelta(hours=1)))],
            )
        )
        change = PropertyChange.create("c1", "plan", old_value=None, new_value="pro")

        worker.apply_remote_state(worker_engine, BusEnvelope.for_change(change))

        [instance] = worker_engine.instances_for("c1", "upgrade")
        assert instance.cause_id == change.change_id
        assert worker_engine.store.get_group(change.change_id).members == {instance.instance_id}
        assert worker_engine.await_completion(change.change_id, timeout=0) is False

    def test_no_op_write_settles_its_cause(self, worker_engine):
        """Test that a forwarded write of the current value still resolves the writer's id."""
        worker_engine.properties.load("c1", {"plan": "pro"})
        change = PropertyChange.create("c1", "plan", old_value=None, new_value="pro")

        assert worker.apply_remote_state(worker_engine, BusEnvelope.for_change(change)) is False
        assert worker_engine.await_completion(change.change_id, timeout=0) is True

    def test_trigger_fire_passes_through(self, worker_engine):
        """Test that engine messages are delivered unchanged."""
        assert worker.apply_remote_state(worker_engine, BusEnvelope.trigger_fire("launch")) is True


class TestProcessMessages:
    """Tests for batch delivery and acknowledgement."""

    def test_event_runs_flow_and_acks(self, worker_engine, consumer):
        """Test that a forwarded event runs its flow before the ACK."""
        worker_engine.define_flow(
            FlowDefinition(flow_id="welcome", trigger=OnEvent(predicate=event_is("signed_up")), steps=[set_prop("welcomed", True)])
        )
        envelope = BusEnvelope.for_event(Event.create("c1", "signed_up"))

        count = worker.process_messages(worker_engine, consumer, [message(envelope)])

        assert count == 1
        assert worker_engine.properties.get("c1", "welcomed") is True
        consumer.ack.assert_called_once_with("flows:events", "1-0")

    def test_forwarded_write_triggers_once(self, worker_engine, consumer):
        """Test that a forwarded write enrolls the contact once, and a repeat is a no-op."""
        worker_engine.define_flow(
            FlowDefinition(flow_id="upgrade", trigger=OnPropertyChange(key="plan"), steps=[set_prop("upgraded", True)])
        )
        first = BusEnvelope.for_change(PropertyChange.create("c1", "plan", None, "pro"))
        repeat = BusEnvelope.for_change(PropertyChange.create("c1", "plan", None, "pro"))

        worker.process_messages(worker_engine, consumer, [message(first, "1-0"), message(repeat, "2-0")])

        assert len(worker_engine.instances_for("c1", "upgrade")) == 1
        assert consumer.ack.call_args_list == [call("flows:events", "1-0"), call("flows:events", "2-0")]

    def test_fatal_error_leaves_batch_pending(self, worker_engine, consumer):
        """Test that nothing is acked when the engine reports a durability failure."""
        worker_engine.bus.fatal_error = SchedulerDurabilityError("wake for missing instance")
        envelope = BusEnvelope.for_event(Event.create("c1", "signed_up"))

        with pytest.raises(SchedulerDurabilityError):
            worker.process_messages(worker_engine, consumer, [message(envelope)])
        consumer.ack.assert_not_called()

    def test_reclaim_once(self, worker_engine, consumer):
        """Test that claimed messages are processed and acked."""
        envelope = BusEnvelope.for_event(Event.create("c1", "signed_up"))
        consumer.reclaim_pending.return_value = [("7-0", envelope)]

        assert worker.reclaim_once(worker_engine, consumer) == 1
        consumer.ack.assert_called_once_with(worker.settings.EVENTS_STREAM, "7-0")


class TestRefreshDefinitions:
    """Tests for picking up definitions written by other processes."""

    def test_refresh(self, worker_engine):
        """Test that flows stored elsewhere become active, with At triggers scheduled."""
        launch = FlowDefinition(
            flow_id="launch",
            trigger=At(at=datetime.now(timezone.utc) + timedelta(days=1), segment="beta"),
            steps=[ActionStep(handler="log")],
        )
        worker_engine.store.save_definition(launch)
        assert worker_engine.catalog.is_active("launch") is False

        worker.refresh_definitions(worker_engine)

        assert worker_engine.catalog.is_active("launch") is True
        assert worker_engine.scheduler.queue.peek() == launch.trigger.at
