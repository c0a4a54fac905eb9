"""
Tests for the flows intake API.

The app's engine dependency is overridden with an engine whose bus records
what would have been forwarded to the worker streams.
"""

import pytest
from fastapi.testclient import TestClient

from flows_core.contracts.types import MessageKind
from flows_core.engine.state import FlowInstance
from flows_intake.main import app, get_engine

WELCOME = {
    "flow_id": "welcome",
    "name": "Welcome",
    "trigger": {"kind": "on_event", "predicate": {"kind": "event", "event_type": "signed_up"}},
    "steps": [{"kind": "action", "handler": "log", "params": {"message": "hi"}}],
}


@pytest.fixture
def client(intake_engine):
    app.dependency_overrides[get_engine] = lambda: intake_engine
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        """Test health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "flows-intake"}


class TestFlowEndpoints:
    """Tests for defining, listing and undefining flows."""

    def test_define(self, client, intake_engine):
        """Test registering a flow."""
        response = client.post("/flows", json=WELCOME)

        assert response.status_code == 201
        assert response.json() == {"flow_id": "welcome", "cause_id": None}
        assert [d.flow_id for d in intake_engine.flows()] == ["welcome"]

    def test_define_now_forwards_trigger(self, client, recording_bus):
        """Test that a Now flow's fan-out is forwarded with its cause id."""
        response = client.post(
            "/flows",
            json={
                "flow_id": "blast",
                "trigger": {"kind": "now", "segment": "everyone"},
                "steps": [{"kind": "action", "handler": "log"}],
            },
        )

        cause_id = response.json()["cause_id"]
        assert cause_id is not None
        [envelope] = recording_bus.published
        assert envelope.kind == MessageKind.TRIGGER_FIRE
        assert envelope.envelope_id == cause_id
        assert envelope.body == {"flow_id": "blast"}

    def test_define_invalid(self, client, intake_engine):
        """Test that invalid definitions are rejected with the validation errors."""
        response = client.post("/flows", json={"flow_id": "bad", "trigger": {"kind": "soon"}, "steps": []})

        assert response.status_code == 422
        assert isinstance(response.json()["detail"], list)
        assert intake_engine.flows() == []

    def test_list_and_undefine(self, client):
        """Test listing active and inactive flows around an undefine."""
        client.post("/flows", json=WELCOME)

        listed = client.get("/flows").json()
        assert listed == [
            {"flow_id": "welcome", "name": "Welcome", "trigger": "on_event", "steps": 1, "goal": False, "active": True}
        ]

        assert client.delete("/flows/welcome").status_code == 204
        assert client.get("/flows").json() == []
        assert client.get("/flows", params={"all": "true"}).json()[0]["active"] is False

    def test_undefine_unknown(self, client):
        """Test undefining a flow that does not exist."""
        assert client.delete("/flows/ghost").status_code == 404


class TestContactEndpoints:
    """Tests for events and property writes."""

    def test_post_event(self, client, recording_bus):
        """Test that events are forwarded to the engine."""
        response = client.post("/contacts/c1/events", json={"event_type": "signed_up", "payload": {"source": "ads"}})

        assert response.status_code == 202
        body = response.json()
        assert body["contact_id"] == "c1"
        [envelope] = recording_bus.published
        assert envelope.kind == MessageKind.EVENT
        assert envelope.event.event_id == body["event_id"]
        assert envelope.event.payload == {"source": "ads"}

    def test_internal_event_type_rejected(self, client, recording_bus):
        """Test that callers cannot inject engine-internal events."""
        response = client.post("/contacts/c1/events", json={"event_type": "flows.completion_resolved"})
        assert response.status_code == 422
        assert recording_bus.published == []

    def test_empty_event_type_rejected(self, client):
        """Test request validation of the event body."""
        assert client.post("/contacts/c1/events", json={"event_type": ""}).status_code == 422

    def test_put_property(self, client, recording_bus, intake_engine):
        """Test that a valid write is forwarded, not applied locally."""
        response = client.put("/contacts/c1/properties/plan", json={"value": "pro"})

        assert response.status_code == 202
        assert response.json()["value"] == "pro"
        [envelope] = recording_bus.published
        assert envelope.kind == MessageKind.PROPERTY_CHANGE
        assert envelope.change.key == "plan"
        assert envelope.change.new_value == "pro"
        assert envelope.change.change_id == response.json()["change_id"]
        assert intake_engine.properties.get("c1", "plan") is None

    def test_put_invalid_property(self, client, recording_bus):
        """Test that a rejected write answers 422 and forwards nothing."""
        response = client.put("/contacts/c1/properties/newsletters_sent", json={"value": "ten"})

        assert response.status_code == 422
        assert response.json()["detail"] == {
            "key": "newsletters_sent",
            "reason": "expected an integer",
            "code": "validation_error",
        }
        assert recording_bus.published == []


class TestInstanceEndpoints:
    """Tests for instance inspection."""

    @pytest.fixture
    def instance(self, intake_engine):
        instance = FlowInstance.start("welcome", "c1", "cause-1")
        intake_engine.store.add_instance(instance)
        return instance

    def test_get_instance(self, client, instance):
        """Test the status view of one instance."""
        response = client.get(f"/instances/{instance.instance_id}")

        assert response.status_code == 200
        assert response.json()["status"] == "running"
        assert response.json()["contact_id"] == "c1"

    def test_get_unknown_instance(self, client):
        """Test a missing instance."""
        assert client.get("/instances/missing").status_code == 404

    def test_contact_instances(self, client, instance):
        """Test listing a contact's instances with a status filter."""
        running = client.get("/contacts/c1/instances", params={"status": "running"}).json()
        failed = client.get("/contacts/c1/instances", params={"status": "failed"}).json()

        assert [i["instance_id"] for i in running] == [instance.instance_id]
        assert failed == []

    def test_contact_instances_bad_status(self, client):
        """Test that unknown statuses are rejected."""
        assert client.get("/contacts/c1/instances", params={"status": "sleeping"}).status_code == 422
