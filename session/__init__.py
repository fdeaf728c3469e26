"""
Distributed session repository.

Sessions live in an external store (Redis, or an in-process store for
development) so any number of application instances can share them. A
time-bucketed expiration index lets a background sweeper expire idle
sessions and publish lifecycle events without scanning the keyspace.
"""

from session.events import (
    SessionCreatedEvent,
    SessionDeletedEvent,
    SessionDestroyedEvent,
    SessionEvent,
    SessionEventPublisher,
    SessionExpiredEvent,
)
from session.expiration import ExpirationIndex
from session.factory import SessionComponents, create_session_components
from session.memory_store import InMemorySessionStore
from session.redis_store import RedisSessionStore
from session.repository import ReapOutcome, SessionRepository
from session.session import PRINCIPAL_NAME_ATTRIBUTE, SaveMode, Session
from session.store import SessionStore, Transaction
from session.sweeper import ExpirationSweeper, SweepResult

__all__ = [
    "PRINCIPAL_NAME_ATTRIBUTE",
    "ExpirationIndex",
    "ExpirationSweeper",
    "InMemorySessionStore",
    "ReapOutcome",
    "RedisSessionStore",
    "SaveMode",
    "Session",
    "SessionComponents",
    "SessionCreatedEvent",
    "SessionDeletedEvent",
    "SessionDestroyedEvent",
    "SessionEvent",
    "SessionEventPublisher",
    "SessionExpiredEvent",
    "SessionRepository",
    "SessionStore",
    "SweepResult",
    "Transaction",
    "create_session_components",
]
