"""
Flows Intake Service

FastAPI app in front of the flow engine.

Responsibilities:
- Validate contact property writes against the contact schema
- Accept contact events
- Define and undefine flows
- Report instance status
- Forward everything the engine must react to onto Redis Streams, where
  the flows worker picks it up
"""

import functools
import logging
from typing import Any

import pydantic
from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from flowbase.logging import setup_logging
from flowbase.redis import get_redis_client
from flowbase.settings import get_settings

from flows_core.bootstrap import build_flow_engine
from flows_core.contracts.envelope import Event, PropertyChange
from flows_core.contracts.types import INTERNAL_EVENT_TYPES
from flows_core.engine.runtime import FlowEngine
from flows_core.engine.state import InstanceStatus
from flows_core.errors import UnknownFlowError, UnknownInstanceError, ValidationError
from flows_core.persistence.repo import definition_summary
from flows_core.streams.bus import StreamEventBus
from flows_core.streams.groups import ensure_flow_streams
from flows_core.streams.producer import FlowStreamProducer

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Flows Intake",
    description="Accepts contact data and flow definitions and publishes them to Redis Streams",
    version="1.0.0",
)


@functools.lru_cache()
def get_engine() -> FlowEngine:
    """Engine whose bus forwards to the worker streams (cached)."""
    settings = get_settings()
    redis_client = get_redis_client()
    bus = StreamEventBus(FlowStreamProducer.from_settings(redis_client, settings))
    return build_flow_engine(settings, redis_client=redis_client, bus=bus)


class EventIn(BaseModel):
    event_type: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class PropertyIn(BaseModel):
    value: Any = None


@app.on_event("startup")
async def startup():
    """Ensure Redis streams exist on startup."""
    try:
        ensure_flow_streams(get_redis_client(), get_settings())
        logger.info("Flows intake service started")
    except Exception as e:
        logger.error(f"Failed to initialize streams: {e}")
        raise


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "flows-intake"}


@app.post("/flows", status_code=201)
def define_flow(definition: dict[str, Any], engine: FlowEngine = Depends(get_engine)):
    """
    Register (or replace) a flow.

    For a Now trigger the response carries the enrollment's cause_id.
    """
    try:
        cause_id = engine.define_flow(definition)
    except pydantic.ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    return {"flow_id": definition["flow_id"], "cause_id": cause_id}


@app.get("/flows")
def list_flows(
    all_: bool = Query(False, alias="all"),
    engine: FlowEngine = Depends(get_engine),
):
    return [
        definition_summary(d, engine.store.is_active_definition(d.flow_id))
        for d in engine.flows(active_only=not all_)
    ]


@app.delete("/flows/{flow_id}", status_code=204)
def undefine_flow(flow_id: str, engine: FlowEngine = Depends(get_engine)):
    try:
        engine.undefine_flow(flow_id)
    except UnknownFlowError:
        raise HTTPException(status_code=404, detail=f"Flow {flow_id} not found")


@app.post("/contacts/{contact_id}/events", status_code=202)
def post_event(contact_id: str, body: EventIn, engine: FlowEngine = Depends(get_engine)):
    """Accept a contact event and forward it to the engine."""
    if body.event_type in INTERNAL_EVENT_TYPES:
        raise HTTPException(status_code=422, detail=f"{body.event_type} is reserved for the engine")

    event = Event.create(contact_id, body.event_type, body.payload)
    engine.publish_event(event)

    logger.info(
        f"Accepted event {event.event_type}",
        extra={"contact_id": contact_id, "event_id": event.event_id},
    )
    return {"event_id": event.event_id, "contact_id": contact_id, "event_type": event.event_type}


@app.put("/contacts/{contact_id}/properties/{key}", status_code=202)
def put_property(contact_id: str, key: str, body: PropertyIn, engine: FlowEngine = Depends(get_engine)):
    """
    Write a contact property.

    The write is validated here and applied by the worker, which holds the
    contact data. Rejected writes answer 422 and reach nothing downstream.
    """
    try:
        value = engine.properties.schema.validate(key, body.value)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"key": key, "reason": e.reason, "code": e.code},
        )

    change = PropertyChange.create(contact_id, key, old_value=None, new_value=value)
    engine.publish_property_change(change)

    logger.info(
        f"Accepted write of {key}",
        extra={"contact_id": contact_id, "change_id": change.change_id},
    )
    return {"change_id": change.change_id, "contact_id": contact_id, "key": key, "value": value}


@app.get("/instances/{instance_id}")
def get_instance(instance_id: str, engine: FlowEngine = Depends(get_engine)):
    try:
        return engine.query_instance_status(instance_id).status_view()
    except UnknownInstanceError:
        raise HTTPException(status_code=404, detail=f"Instance {instance_id} not found")


@app.get("/contacts/{contact_id}/instances")
def list_contact_instances(
    contact_id: str,
    flow_id: str | None = None,
    status: InstanceStatus | None = None,
    engine: FlowEngine = Depends(get_engine),
):
    found = engine.store.list_instances(contact_id=contact_id, flow_id=flow_id, status=status)
    return [instance.status_view() for instance in found]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
