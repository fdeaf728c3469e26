"""
Wiring of the session components from application settings.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config.settings import Settings
from session.events import SessionEventPublisher
from session.memory_store import InMemorySessionStore
from session.notifications import ExpiredMarkerListener, configure_keyspace_events
from session.redis_store import RedisSessionStore
from session.repository import SessionRepository
from session.session import SaveMode
from session.store import SessionStore
from session.sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)

DEVELOPMENT_REDIS_URL = "redis://localhost:6379/0"


@dataclass
class SessionComponents:
    """
    The wired session stack.

    Call start() once on the running event loop and stop() on shutdown.
    """
    store: SessionStore
    publisher: SessionEventPublisher
    repository: SessionRepository
    sweeper: ExpirationSweeper
    listener: Optional[ExpiredMarkerListener] = None

    async def start(self, run_sweeper: bool = True) -> None:
        """Connect the store and start the background tasks."""
        await self.store.connect()
        if run_sweeper:
            self.sweeper.start()
        if self.listener is not None:
            await configure_keyspace_events(self.listener.store)
            await self.listener.start()

    async def stop(self) -> None:
        """Stop background tasks, flush pending event handlers and disconnect."""
        if self.listener is not None:
            await self.listener.stop()
        await self.sweeper.stop()
        await self.publisher.drain()
        await self.store.disconnect()


def create_store(settings: Settings) -> SessionStore:
    if settings.session_store_type == "memory":
        logger.warning(
            "Using the in-memory session store; sessions are not shared between processes"
        )
        return InMemorySessionStore()
    return RedisSessionStore(
        settings.redis_url or DEVELOPMENT_REDIS_URL,
        socket_timeout=settings.redis_socket_timeout_seconds,
    )


def create_session_components(
    settings: Settings,
    store: Optional[SessionStore] = None,
    publisher: Optional[SessionEventPublisher] = None,
) -> SessionComponents:
    """
    Build store, publisher, repository and sweeper from settings.

    Args:
        settings: Application settings
        store: Store to use instead of the one the settings describe
        publisher: Publisher to use instead of a new one

    Returns:
        SessionComponents, not yet started.
    """
    store = store or create_store(settings)
    publisher = publisher or SessionEventPublisher()
    repository = SessionRepository(
        store,
        default_max_inactive_interval=settings.default_max_inactive_interval,
        namespace=settings.session_namespace,
        safety_margin=settings.expiration_safety_margin,
        granularity=settings.expiration_bucket,
        save_mode=SaveMode(settings.save_mode),
        publisher=publisher,
    )
    sweeper = ExpirationSweeper(repository, period=settings.sweep_interval_seconds)

    listener = None
    if settings.listen_for_expired_markers:
        if not isinstance(store, RedisSessionStore):
            raise ValueError("Expired-marker notifications require a RedisSessionStore")
        listener = ExpiredMarkerListener(store, repository)

    logger.info(
        "Session components created",
        extra={"extra_data": {
            "store": type(store).__name__,
            "namespace": settings.session_namespace,
            "default_max_inactive_interval_seconds": settings.default_max_inactive_interval_seconds,
            "expiration_bucket_seconds": settings.expiration_bucket_seconds,
            "listener": listener is not None,
        }}
    )
    return SessionComponents(store, publisher, repository, sweeper, listener)
