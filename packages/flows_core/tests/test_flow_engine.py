"""
Tests for the flow engine: definitions, triggers, steps, delays and goals.
"""

from datetime import datetime, timedelta, timezone

import pytest

from flows_core.definitions.models import (
    AbsoluteLocal,
    ActionStep,
    At,
    Branch,
    DecisionStep,
    DelayStep,
    FlowDefinition,
    Now,
    OnEvent,
    OnPropertyChange,
    Relative,
    UntilEvent,
)
from flows_core.contracts.envelope import BusEnvelope, Event
from flows_core.definitions.predicates import changed_to, event_is, payload, prop
from flows_core.engine.state import InstanceStatus
from flows_core.errors import ReservedEventTypeError, UnknownFlowError, UnknownInstanceError, ValidationError


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def set_prop(key, value):
    return ActionStep(handler="set_property", params={"key": key, "value": value})


def wait(**kwargs):
    return DelayStep(delay=Relative(duration=timedelta(**kwargs)))


def flow(flow_id, trigger, *steps, **kwargs):
    return FlowDefinition(flow_id=flow_id, trigger=trigger, steps=list(steps), **kwargs)


def only_instance(engine, contact_id, flow_id):
    instances = engine.instances_for(contact_id, flow_id)
    assert len(instances) == 1
    return instances[0]


class TestDefineFlow:
    """Tests for defining and undefining flows."""

    def test_define_from_json(self, engine):
        """Test that a JSON definition is accepted."""
        cause = engine.define_flow(
            {
                "flow_id": "welcome",
                "name": "Welcome",
                "trigger": {"kind": "on_event", "predicate": {"kind": "event", "event_type": "signed_up"}},
                "steps": [
                    {"kind": "delay", "delay": {"kind": "relative", "duration": "P1D"}},
                    {"kind": "action", "handler": "set_property", "params": {"key": "welcomed", "value": True}},
                ],
            }
        )
        assert cause is None
        assert [d.flow_id for d in engine.flows()] == ["welcome"]

    def test_invalid_definition_rejected(self, engine):
        """Test that malformed definitions are rejected before storing anything."""
        with pytest.raises(ValueError):
            engine.define_flow({"flow_id": "broken", "trigger": {"kind": "sometime"}, "steps": []})
        assert engine.flows() == []

    def test_undefine_unknown_flow(self, engine):
        """Test that undefining an unknown flow raises."""
        with pytest.raises(UnknownFlowError):
            engine.undefine_flow("nope")

    def test_undefine_stops_enrollment_but_running_instances_finish(self, engine, properties):
        """Test that undefine only affects new enrollments."""
        engine.define_flow(flow("nurture", OnEvent(predicate=event_is("go")), wait(days=1), set_prop("nurtured", True)))
        engine.emit_event("c1", "go")

        engine.undefine_flow("nurture")
        engine.emit_event("c2", "go")
        engine.advance_clock(timedelta(days=1))

        assert only_instance(engine, "c1", "nurture").status == InstanceStatus.COMPLETED_BY_FINISH
        assert properties.get("c1", "nurtured") is True
        assert engine.instances_for("c2") == []
        assert engine.flows() == []
        assert [d.flow_id for d in engine.flows(active_only=False)] == ["nurture"]


class TestTriggers:
    """Tests for trigger matching and enrollment."""

    def test_on_event_runs_flow_to_completion(self, engine, properties):
        """Test that a matching event enrolls the contact and runs the steps."""
        engine.define_flow(flow("welcome", OnEvent(predicate=event_is("signed_up")), set_prop("welcomed", True)))

        engine.emit_event("c1", "signed_up")

        instance = only_instance(engine, "c1", "welcome")
        assert instance.status == InstanceStatus.COMPLETED_BY_FINISH
        assert instance.finished_at is not None
        assert properties.get("c1", "welcomed") is True

    def test_event_payload_filter(self, engine):
        """Test that trigger predicates see the event payload."""
        engine.define_flow(
            flow(
                "big-spender",
                OnEvent(predicate=event_is("order_placed", payload("total", "gte", 100))),
                set_prop("vip", True),
            )
        )

        engine.emit_event("c1", "order_placed", {"total": 20})
        engine.emit_event("c2", "order_placed", {"total": 250})

        assert engine.instances_for("c1") == []
        assert len(engine.instances_for("c2")) == 1

    def test_on_property_change(self, engine):
        """Test property-change triggers with a predicate on the new value."""
        engine.define_flow(
            flow(
                "tenth-newsletter",
                OnPropertyChange(key="newsletters_sent", predicate=changed_to(10)),
                set_prop("milestone", True),
            )
        )

        engine.set_property("c1", "newsletters_sent", 9)
        assert engine.instances_for("c1") == []

        engine.set_property("c1", "newsletters_sent", 10)
        assert len(engine.instances_for("c1")) == 1

    def test_internal_events_never_trigger(self, engine):
        """Test that engine-internal event types do not enroll contacts."""
        engine.define_flow(flow("sneaky", OnEvent(predicate=event_is("flows.completion_resolved")), set_prop("x", 1)))
        resolved = Event.create("c1", "flows.completion_resolved", {"cause_id": "abc"})
        engine.bus.publish(BusEnvelope.for_event(resolved))
        assert engine.instances_for("c1") == []

    def test_internal_event_types_are_reserved(self, engine):
        """Test that callers cannot emit or publish engine-internal event types."""
        with pytest.raises(ReservedEventTypeError):
            engine.emit_event("c1", "flows.completion_resolved", {"cause_id": "abc"})
        with pytest.raises(ReservedEventTypeError):
            engine.publish_event(Event.create("c1", "flows.completion_resolved"))
        assert engine.events.history("c1") == []

    def test_now_trigger_enrolls_segment(self, engine, segments, properties):
        """Test that a Now trigger enrolls every segment member at definition time."""
        segments.define("newsletter", ["c1", "c2", "c1"])

        cause = engine.define_flow(flow("blast", Now(segment="newsletter"), set_prop("blasted", True)))

        assert cause is not None
        assert engine.await_completion(cause, timeout=0) is True
        assert properties.get("c1", "blasted") is True
        assert properties.get("c2", "blasted") is True
        assert len(engine.instances_for("c1")) == 1
        assert only_instance(engine, "c2", "blast").cause_id == cause

    def test_now_trigger_empty_segment_resolves(self, engine):
        """Test that a fan-out over nobody resolves immediately."""
        cause = engine.define_flow(flow("nobody", Now(segment="empty"), set_prop("x", 1)))
        assert engine.await_completion(cause, timeout=0) is True

    def test_at_trigger_fires_once(self, engine, segments, clock):
        """Test that an At trigger enrolls its segment at the instant, once."""
        segments.define("beta", ["c1"])
        engine.define_flow(flow("launch", At(at=clock.now() + timedelta(hours=1), segment="beta"), set_prop("launched", True)))

        engine.advance_clock(timedelta(minutes=59))
        assert engine.instances_for("c1") == []

        engine.advance_clock(timedelta(minutes=1))
        assert len(engine.instances_for("c1")) == 1

        engine.advance_clock(timedelta(days=1))
        assert len(engine.instances_for("c1")) == 1

    def test_undefined_at_trigger_never_fires(self, engine, segments, clock):
        """Test that undefining an At flow cancels its trigger."""
        segments.define("beta", ["c1"])
        engine.define_flow(flow("launch", At(at=clock.now() + timedelta(hours=1), segment="beta"), set_prop("launched", True)))
        engine.undefine_flow("launch")

        engine.advance_clock(timedelta(hours=2))
        assert engine.instances_for("c1") == []


class TestOneActiveInstance:
    """Tests for the one-active-instance-per-flow-and-contact rule."""

    def test_second_trigger_dropped_while_active(self, engine):
        """Test that a match for an already-active contact is dropped."""
        engine.define_flow(flow("drip", OnEvent(predicate=event_is("ping")), wait(days=1), set_prop("dripped", True)))

        engine.emit_event("c1", "ping")
        engine.emit_event("c1", "ping")

        assert len(engine.instances_for("c1", "drip")) == 1

    def test_reentry_after_completion(self, engine):
        """Test that a contact can enter the flow again once the previous run ended."""
        engine.define_flow(flow("drip", OnEvent(predicate=event_is("ping")), wait(days=1), set_prop("dripped", True)))

        engine.emit_event("c1", "ping")
        engine.advance_clock(timedelta(days=1))
        engine.emit_event("c1", "ping")

        statuses = [i.status for i in engine.instances_for("c1", "drip")]
        assert statuses == [InstanceStatus.COMPLETED_BY_FINISH, InstanceStatus.WAITING_ON_DELAY]


class TestDecisions:
    """Tests for decision steps."""

    @pytest.fixture
    def tiered(self, engine):
        engine.define_flow(
            flow(
                "tiering",
                OnEvent(predicate=event_is("classify")),
                DecisionStep(
                    branches=[
                        Branch(when=prop("plan", "eq", "pro"), steps=[set_prop("tier", "gold")]),
                        Branch(when=prop("plan", "eq", "free"), steps=[]),
                    ],
                    otherwise=[set_prop("tier", "unknown")],
                ),
                set_prop("classified", True),
            )
        )
        return engine

    def test_first_matching_branch(self, tiered, properties):
        """Test that the first matching branch runs, then the flow continues."""
        properties.load("c1", {"plan": "pro"})
        tiered.emit_event("c1", "classify")
        assert properties.get("c1", "tier") == "gold"
        assert properties.get("c1", "classified") is True

    def test_empty_branch_continues(self, tiered, properties):
        """Test that an empty branch falls through to the next step."""
        properties.load("c1", {"plan": "free"})
        tiered.emit_event("c1", "classify")
        assert properties.get("c1", "tier") is None
        assert properties.get("c1", "classified") is True

    def test_otherwise(self, tiered, properties):
        """Test the otherwise sequence."""
        tiered.emit_event("c1", "classify")
        assert properties.get("c1", "tier") == "unknown"
        assert only_instance(tiered, "c1", "tiering").status == InstanceStatus.COMPLETED_BY_FINISH


class TestDelays:
    """Tests for delay steps."""

    def test_relative_delay(self, engine, properties, clock):
        """Test that a relative delay wakes exactly after its duration."""
        start = clock.now()
        engine.define_flow(flow("later", OnEvent(predicate=event_is("go")), wait(days=2), set_prop("done", True)))
        engine.emit_event("c1", "go")

        instance = only_instance(engine, "c1", "later")
        assert instance.status == InstanceStatus.WAITING_ON_DELAY
        assert instance.wake_at == start + timedelta(days=2)

        engine.advance_clock(timedelta(days=2) - timedelta(seconds=1))
        assert properties.get("c1", "done") is None

        engine.advance_clock(timedelta(seconds=1))
        assert properties.get("c1", "done") is True

    def test_absolute_local_in_contact_timezone(self, engine, properties):
        """Test 9am in New York for contacts entering before and after 9am local."""
        engine.define_flow(
            flow(
                "morning",
                OnEvent(predicate=event_is("go")),
                DelayStep(delay=AbsoluteLocal(at="9am")),
                set_prop("greeted", True),
                local_time=True,
            )
        )
        properties.load("early", {"timezone": "America/New_York"})
        properties.load("late", {"timezone": "America/New_York"})

        engine.set_clock(utc(2024, 1, 15, 3, 0))
        engine.emit_event("early", "go")
        assert only_instance(engine, "early", "morning").wake_at == utc(2024, 1, 15, 14, 0)

        engine.set_clock(utc(2024, 1, 15, 15, 0))
        assert properties.get("early", "greeted") is True

        engine.emit_event("late", "go")
        assert only_instance(engine, "late", "morning").wake_at == utc(2024, 1, 16, 14, 0)

        engine.set_clock(utc(2024, 1, 16, 13, 59))
        assert properties.get("late", "greeted") is None
        engine.set_clock(utc(2024, 1, 16, 14, 0))
        assert properties.get("late", "greeted") is True

    def test_absolute_local_uses_reference_timezone(self, engine):
        """Test that flows without local_time use the reference timezone."""
        engine.define_flow(flow("morning", OnEvent(predicate=event_is("go")), DelayStep(delay=AbsoluteLocal(at="9am"))))
        engine.emit_event("c1", "go")
        # Clock starts 2024-01-15 12:00 UTC and the reference zone is UTC
        assert only_instance(engine, "c1", "morning").wake_at == utc(2024, 1, 16, 9, 0)

    def test_until_event(self, engine, properties):
        """Test waiting for a matching event."""
        engine.define_flow(
            flow(
                "follow-up",
                OnEvent(predicate=event_is("email_sent")),
                DelayStep(delay=UntilEvent(predicate=event_is("email_clicked"))),
                set_prop("engaged", True),
            )
        )
        engine.emit_event("c1", "email_sent")
        engine.emit_event("c1", "email_opened")

        instance = only_instance(engine, "c1", "follow-up")
        assert instance.status == InstanceStatus.WAITING_ON_EVENT
        assert properties.get("c1", "engaged") is None

        engine.emit_event("c1", "email_clicked")
        assert properties.get("c1", "engaged") is True
        assert only_instance(engine, "c1", "follow-up").status == InstanceStatus.COMPLETED_BY_FINISH

    def test_until_event_ignores_other_contacts(self, engine):
        """Test that another contact's event does not release the wait."""
        engine.define_flow(
            flow(
                "follow-up",
                OnEvent(predicate=event_is("email_sent")),
                DelayStep(delay=UntilEvent(predicate=event_is("email_clicked"))),
            )
        )
        engine.emit_event("c1", "email_sent")
        engine.emit_event("c2", "email_clicked")
        assert only_instance(engine, "c1", "follow-up").status == InstanceStatus.WAITING_ON_EVENT


class TestGoals:
    """Tests for goal-based early completion."""

    @pytest.fixture
    def reminder(self, engine):
        engine.define_flow(
            flow(
                "cart-reminder",
                OnEvent(predicate=event_is("cart_abandoned")),
                wait(days=2),
                set_prop("reminded", True),
                goal=prop("purchased", "eq", True),
            )
        )
        return engine

    def test_goal_cancels_pending_delay(self, reminder, properties):
        """Test that meeting the goal completes the instance and cancels its wake."""
        reminder.emit_event("c1", "cart_abandoned")
        reminder.set_property("c1", "purchased", True)

        instance = only_instance(reminder, "c1", "cart-reminder")
        assert instance.status == InstanceStatus.COMPLETED_BY_GOAL
        assert instance.wake_at is None

        reminder.advance_clock(timedelta(days=3))
        assert properties.get("c1", "reminded") is None
        assert only_instance(reminder, "c1", "cart-reminder").status == InstanceStatus.COMPLETED_BY_GOAL

    def test_goal_not_met(self, reminder, properties):
        """Test that unrelated writes leave the instance waiting."""
        reminder.emit_event("c1", "cart_abandoned")
        reminder.set_property("c1", "purchased", False)
        reminder.advance_clock(timedelta(days=2))

        assert properties.get("c1", "reminded") is True
        assert only_instance(reminder, "c1", "cart-reminder").status == InstanceStatus.COMPLETED_BY_FINISH


class TestRejectedWrites:
    """Tests for property writes rejected by the schema."""

    def test_rejected_write_has_no_effects(self, engine, properties):
        """Test that a rejected write changes nothing and triggers nothing."""
        engine.define_flow(
            flow("counter", OnPropertyChange(key="newsletters_sent"), set_prop("counted", True))
        )
        properties.load("c1", {"newsletters_sent": 4})

        with pytest.raises(ValidationError):
            engine.set_property("c1", "newsletters_sent", "five")

        assert properties.get("c1", "newsletters_sent") == 4
        assert engine.instances_for("c1") == []
        assert engine.wait_idle(timeout=0) is True

    def test_rejected_write_from_action_fails_instance(self, engine, reporter):
        """Test that an action writing an invalid value fails its instance without retries."""
        engine.define_flow(flow("bad-writer", OnEvent(predicate=event_is("go")), set_prop("plan", "enterprise")))
        engine.emit_event("c1", "go")

        instance = only_instance(engine, "c1", "bad-writer")
        assert instance.status == InstanceStatus.FAILED
        assert "plan" in instance.failure_reason
        assert reporter.reported == [(instance.instance_id, instance.failure_reason)]


class TestInstanceQueries:
    """Tests for instance inspection."""

    def test_query_instance_status(self, engine):
        """Test the public status view."""
        engine.define_flow(flow("later", OnEvent(predicate=event_is("go")), wait(hours=1)))
        engine.emit_event("c1", "go")
        instance = only_instance(engine, "c1", "later")

        view = engine.query_instance_status(instance.instance_id).status_view()
        assert view["status"] == "waiting_on_delay"
        assert view["flow_id"] == "later"
        assert view["pointer"] == [0]
        assert view["wake_at"] == "2024-01-15T13:00:00+00:00"

    def test_unknown_instance(self, engine):
        """Test that unknown instance ids raise."""
        with pytest.raises(UnknownInstanceError):
            engine.query_instance_status("missing")

    def test_manual_clock_required(self, properties):
        """Test that advance_clock needs a ManualClock."""
        from flows_core.engine.runtime import FlowEngine

        engine = FlowEngine(properties)
        with pytest.raises(TypeError):
            engine.advance_clock(timedelta(seconds=1))
