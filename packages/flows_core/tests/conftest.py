"""
Pytest fixtures for flow engine tests.

Engines run on the synchronous in-process bus and a ManualClock, so every
test drives time explicitly and sees the engine settle before asserting.
"""

from datetime import datetime, timezone

import pytest

from flowbase.settings import Settings

from flows_core.adapters.memory import InMemoryPropertyStore, StaticSegmentResolver
from flows_core.adapters.schema import PropertySchema, PropertySpec
from flows_core.engine.clock import ManualClock
from flows_core.engine.reporting import LoggingFailureReporter
from flows_core.engine.retry import RetryPolicy
from flows_core.engine.runtime import FlowEngine


@pytest.fixture
def settings():
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        REFERENCE_TIMEZONE="UTC",
        ACTION_MAX_ATTEMPTS=3,
        ACTION_BACKOFF_BASE_SECONDS=30,
        ACTION_BACKOFF_MAX_SECONDS=3600,
    )


@pytest.fixture
def clock():
    """Manual clock starting Monday 2024-01-15 12:00 UTC."""
    return ManualClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def schema():
    """Contact schema used across engine tests."""
    return PropertySchema.of(
        PropertySpec("email"),
        PropertySpec("phone"),
        PropertySpec("newsletters_sent", type="integer"),
        PropertySpec("should_get_newsletters", type="boolean"),
        PropertySpec("purchased", type="boolean"),
        PropertySpec("plan", choices=("free", "pro")),
        PropertySpec("timezone", type="timezone"),
        allow_unknown=True,
    )


@pytest.fixture
def properties(schema, clock):
    return InMemoryPropertyStore(schema, now=clock.now)


@pytest.fixture
def segments():
    return StaticSegmentResolver()


@pytest.fixture
def reporter():
    return LoggingFailureReporter()


@pytest.fixture
def engine(properties, segments, clock, reporter, settings):
    """Fully in-memory, synchronous engine."""
    flow_engine = FlowEngine(
        properties,
        segments=segments,
        clock=clock,
        failure_reporter=reporter,
        retry_policy=RetryPolicy.from_settings(settings),
        settings=settings,
    )
    yield flow_engine
    flow_engine.close()
