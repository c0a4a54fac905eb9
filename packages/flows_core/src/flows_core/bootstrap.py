"""
Service wiring.

Builds a FlowEngine from settings for the worker, the intake API and the
CLI: SQL store from DATABASE_URL, optional Redis wake queue and failure
stream, contact schema from CONTACT_SCHEMA_FILE.
"""

import json
import logging
from pathlib import Path

import redis

from flowbase.db import build_engine
from flowbase.settings import Settings, get_settings

from flows_core.actions.builtin import register_builtin_handlers
from flows_core.actions.registry import ActionHandlerRegistry
from flows_core.adapters.memory import InMemoryEventLog, InMemoryPropertyStore, PropertySegmentResolver
from flows_core.adapters.schema import PropertySchema, PropertySpec
from flows_core.engine.bus import EventBus
from flows_core.engine.clock import Clock, SystemClock
from flows_core.engine.reporting import CompositeFailureReporter, FailureReporter, LoggingFailureReporter
from flows_core.engine.runtime import FlowEngine
from flows_core.persistence.repo import SqlFlowStore
from flows_core.streams.producer import FlowStreamProducer, StreamFailureReporter
from flows_core.streams.wake_queue import RedisWakeQueue

logger = logging.getLogger(__name__)


def load_schema(path: str | None) -> PropertySchema:
    """Contact schema from a JSON file; permissive when no file is configured."""
    if not path:
        return PropertySchema.permissive()
    data = json.loads(Path(path).read_text())
    specs = data["properties"] if isinstance(data, dict) else data
    allow_unknown = bool(data.get("allow_unknown", False)) if isinstance(data, dict) else False
    return PropertySchema.of(*(PropertySpec.from_dict(s) for s in specs), allow_unknown=allow_unknown)


def build_flow_engine(
    settings: Settings | None = None,
    *,
    redis_client: redis.Redis | None = None,
    bus: EventBus | None = None,
    registry: ActionHandlerRegistry | None = None,
    clock: Clock | None = None,
) -> FlowEngine:
    settings = settings or get_settings()
    clock = clock or SystemClock()

    store = SqlFlowStore.from_engine(build_engine(settings.DATABASE_URL))
    properties = InMemoryPropertyStore(load_schema(settings.CONTACT_SCHEMA_FILE), now=clock.now)
    events = InMemoryEventLog(now=clock.now)

    reporters: list[FailureReporter] = [LoggingFailureReporter()]
    wake_queue = None
    if redis_client is not None:
        producer = FlowStreamProducer.from_settings(redis_client, settings)
        reporters.append(StreamFailureReporter(producer))
        if settings.WAKE_QUEUE_BACKEND == "redis":
            wake_queue = RedisWakeQueue(redis_client, settings.WAKE_QUEUE_KEY)

    engine = FlowEngine(
        properties,
        events,
        store=store,
        registry=registry or register_builtin_handlers(ActionHandlerRegistry()),
        segments=PropertySegmentResolver(properties),
        clock=clock,
        wake_queue=wake_queue,
        bus=bus,
        failure_reporter=CompositeFailureReporter(*reporters),
        settings=settings,
    )
    logger.info(
        "Flow engine built",
        extra={
            "database": settings.DATABASE_URL.split("@")[-1],
            "wake_queue": settings.WAKE_QUEUE_BACKEND if redis_client is not None else "memory",
        },
    )
    return engine
