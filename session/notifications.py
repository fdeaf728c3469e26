"""
Redis keyspace listener for lapsed expiration markers.

Every saved session has a marker key whose native TTL ends one safety
margin after the session's logical expiration. When Redis evicts a marker
it publishes an "expired" keyevent; this listener turns that into a
repository.reap() call, so a session whose bucket was lost or missed by
the sweeper still gets exactly one SessionExpiredEvent while its record
(which lives one margin longer) can still be read.

Requires notify-keyspace-events to include "Ex"; see
configure_keyspace_events().
"""

import asyncio
import logging
from typing import Optional

from errors.exceptions import AppException
from session.redis_store import RedisSessionStore
from session.repository import SessionRepository

logger = logging.getLogger(__name__)


async def configure_keyspace_events(store: RedisSessionStore) -> bool:
    """
    Enable expired-key notifications on the server.

    Returns:
        True if the server accepted the setting, False if CONFIG is not
        permitted (the flags then have to be set by the operator).
    """
    try:
        await store.enable_keyspace_notifications()
        return True
    except AppException:
        raise
    except Exception as e:
        logger.warning(
            "Could not enable keyspace notifications; set notify-keyspace-events=Ex on the server",
            extra={"extra_data": {"error": str(e)}}
        )
        return False


class ExpiredMarkerListener:
    """
    Subscribes to the expired keyevent channel and reaps lapsed sessions.

    Attributes:
        channel: The keyevent channel for the store's database
        marker_prefix: Key prefix identifying expiration markers
    """

    def __init__(
        self,
        store: RedisSessionStore,
        repository: SessionRepository,
        poll_timeout: float = 1.0,
    ):
        self.store = store
        self.repository = repository
        self.poll_timeout = poll_timeout
        self.marker_prefix = repository.marker_key("")
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = asyncio.Event()

    @property
    def channel(self) -> str:
        return f"__keyevent@{self.store.database}__:expired"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def session_id_for(self, key: str) -> Optional[str]:
        """Session id encoded in a marker key, or None for any other key."""
        if not key.startswith(self.marker_prefix):
            return None
        return key[len(self.marker_prefix):] or None

    async def handle_message(self, message: Optional[dict]) -> bool:
        """
        Process one pub/sub message.

        Returns:
            True if the message named an expiration marker and was reaped.
        """
        if not message or message.get("type") != "message":
            return False
        key = message.get("data")
        if isinstance(key, bytes):
            key = key.decode()
        session_id = self.session_id_for(key or "")
        if session_id is None:
            return False
        try:
            outcome = await self.repository.reap(session_id)
        except AppException as e:
            logger.warning(
                "Failed to reap session after marker expiry",
                extra={"extra_data": {"session_id": session_id, "error": e.message}}
            )
            return False
        logger.debug(
            "Expiration marker lapsed",
            extra={"extra_data": {"session_id": session_id, "outcome": outcome.value}}
        )
        return True

    async def start(self) -> None:
        """Subscribe and start consuming notifications in the background."""
        if self.is_running:
            return
        self._stop_requested.clear()
        self._pubsub = self.store.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._run(), name="session-expired-marker-listener")
        logger.info(
            "Listening for expired session markers",
            extra={"extra_data": {"channel": self.channel}}
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_requested.set()
        try:
            await self._task
        finally:
            self._task = None
            if self._pubsub is not None:
                await self._pubsub.unsubscribe()
                await self._pubsub.aclose()
                self._pubsub = None

    async def _run(self) -> None:
        while not self._stop_requested.is_set():
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self.poll_timeout,
                )
            except Exception as e:
                logger.error(
                    "Keyspace notification stream failed",
                    extra={"extra_data": {"error": str(e)}}
                )
                await asyncio.sleep(self.poll_timeout)
                continue
            await self.handle_message(message)
