"""
Pytest fixtures for channel handler tests.
"""

from datetime import datetime, timezone

import pytest

from flowbase.settings import Settings
from flows_core.actions.builtin import register_builtin_handlers
from flows_core.actions.registry import ActionContext, ActionHandlerRegistry
from flows_core.adapters.memory import InMemoryPropertyStore
from flows_core.engine.clock import ManualClock
from flows_core.engine.reporting import LoggingFailureReporter
from flows_core.engine.retry import RetryPolicy
from flows_core.engine.runtime import FlowEngine

from flows_messaging.handlers import register_messaging_handlers
from flows_messaging.providers.stub import StubMessageProvider


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        ACTION_MAX_ATTEMPTS=2,
        ACTION_BACKOFF_BASE_SECONDS=60,
        WEBHOOK_TIMEOUT_SECONDS=5.0,
    )


@pytest.fixture
def stub_provider():
    """Create a stub provider for testing."""
    return StubMessageProvider()


@pytest.fixture
def make_ctx():
    """Build an ActionContext for calling handlers directly."""

    def _make(properties=None, variables=None, attempt=1):
        return ActionContext(
            contact_id="c1",
            instance_id="instance-1",
            flow_id="welcome",
            cause_id="cause-1",
            now=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
            properties=properties or {},
            variables=variables or {},
            attempt=attempt,
        )

    return _make


@pytest.fixture
def clock():
    return ManualClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def reporter():
    return LoggingFailureReporter()


@pytest.fixture
def make_engine(settings, clock, reporter):
    """Engine with the channel handlers registered on a given provider."""
    built = []

    def _make(provider):
        registry = register_messaging_handlers(
            register_builtin_handlers(ActionHandlerRegistry()),
            provider=provider,
            settings=settings,
        )
        engine = FlowEngine(
            InMemoryPropertyStore(now=clock.now),
            registry=registry,
            clock=clock,
            retry_policy=RetryPolicy.from_settings(settings),
            failure_reporter=reporter,
            settings=settings,
        )
        built.append(engine)
        return engine

    yield _make
    for engine in built:
        engine.close()
