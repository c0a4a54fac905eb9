"""
Pytest configuration for service tests.

The intake API and the worker run against in-memory engines; Redis is
replaced by mocks, so no services need to be running.
"""

import os

import pytest

# Set environment variables before the services read their settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from flowbase.settings import Settings  # noqa: E402

from flows_core.adapters.memory import InMemoryPropertyStore  # noqa: E402
from flows_core.adapters.schema import PropertySchema, PropertySpec  # noqa: E402
from flows_core.engine.bus import EventBus  # noqa: E402
from flows_core.engine.runtime import FlowEngine  # noqa: E402


class RecordingBus(EventBus):
    """Keeps published envelopes instead of delivering them, like the stream bus."""

    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, envelope) -> None:
        self.published.append(envelope)


@pytest.fixture
def settings():
    return Settings(_env_file=None, DATABASE_URL="sqlite://")


@pytest.fixture
def schema():
    return PropertySchema.of(
        PropertySpec("email"),
        PropertySpec("plan", choices=("free", "pro")),
        PropertySpec("newsletters_sent", type="integer"),
        allow_unknown=True,
    )


@pytest.fixture
def recording_bus():
    return RecordingBus()


@pytest.fixture
def intake_engine(schema, settings, recording_bus):
    """Engine as the intake process builds it: nothing is delivered locally."""
    engine = FlowEngine(InMemoryPropertyStore(schema), bus=recording_bus, settings=settings)
    yield engine
    engine.close()


@pytest.fixture
def worker_engine(schema, settings):
    """Engine as the worker runs it, on the synchronous bus."""
    engine = FlowEngine(InMemoryPropertyStore(schema), settings=settings)
    yield engine
    engine.close()
