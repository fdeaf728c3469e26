"""
Shared pytest fixtures and configuration for all tests.
"""
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, AsyncMock

import pytest

# Hypothesis configuration for property-based testing
from hypothesis import settings, Verbosity, Phase

from session.events import SessionEvent, SessionEventPublisher
from session.memory_store import InMemorySessionStore
from session.repository import SessionRepository

# Configure Hypothesis profiles for different environments
# Default profile: balanced for local development
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # Disable deadline for async tests
    print_blob=True,  # Print failing examples for debugging
)

# CI profile: more thorough testing for continuous integration
settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    derandomize=True,  # Reproducible results in CI
)

# Debug profile: minimal examples for quick debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],  # Skip shrinking for speed
)

# Fast profile: quick smoke tests
settings.register_profile(
    "fast",
    max_examples=20,
    verbosity=Verbosity.normal,
    deadline=None,
)

# Load profile from environment variable HYPOTHESIS_PROFILE, default to "default"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


# Minute-aligned, so bucket boundaries fall on whole offsets from t=0
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; call it to read the time."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now

    def at(self, seconds: float) -> datetime:
        """Absolute time `seconds` after T0 (does not move the clock)."""
        return T0 + timedelta(seconds=seconds)


class EventRecorder:
    """Synchronous handler collecting every published event."""

    def __init__(self):
        self.events: list[SessionEvent] = []

    def __call__(self, event: SessionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list[SessionEvent]:
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock) -> InMemorySessionStore:
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def publisher(recorder) -> SessionEventPublisher:
    publisher = SessionEventPublisher()
    publisher.subscribe(recorder)
    return publisher


@pytest.fixture
def repository(memory_store, publisher, clock) -> SessionRepository:
    """Repository over the in-memory store with a 1 minute bucket and margin."""
    return SessionRepository(
        memory_store,
        publisher=publisher,
        safety_margin=timedelta(seconds=60),
        granularity=timedelta(seconds=60),
        clock=clock,
    )


@pytest.fixture
def mock_redis() -> MagicMock:
    """Create a mock Redis client for unit tests."""
    mock = MagicMock()
    mock.hgetall = AsyncMock(return_value={})
    mock.hget = AsyncMock(return_value=None)
    mock.smembers = AsyncMock(return_value=set())
    mock.zrangebyscore = AsyncMock(return_value=[])
    mock.ping = AsyncMock(return_value=True)
    mock.aclose = AsyncMock()
    mock.config_get = AsyncMock(return_value={"notify-keyspace-events": ""})
    mock.config_set = AsyncMock(return_value=True)
    mock.connection_pool.connection_kwargs = {"db": 0}
    return mock
