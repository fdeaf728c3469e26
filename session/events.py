"""
Session lifecycle events and their publisher.

Listeners subscribe to an event class; a listener registered for
SessionDestroyedEvent receives both explicit deletions and expirations.
Publishing is fire-and-forget: a failing listener is logged and never
affects the repository operation that raised the event, nor the other
listeners.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from session.session import Session, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionEvent:
    """
    Base class of all session events.

    Attributes:
        session_id: Id of the session the event is about
        session: Snapshot of the session where one was available
        occurred_at: When the repository raised the event
    """
    session_id: str
    session: Optional[Session] = None
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SessionCreatedEvent(SessionEvent):
    """A new session was saved for the first time."""


@dataclass(frozen=True)
class SessionDestroyedEvent(SessionEvent):
    """A session left the store, by deletion or by expiration."""


@dataclass(frozen=True)
class SessionDeletedEvent(SessionDestroyedEvent):
    """A session was removed by an explicit delete."""


@dataclass(frozen=True)
class SessionExpiredEvent(SessionDestroyedEvent):
    """A session was removed because it exceeded its inactivity interval."""


EventHandler = Callable[[SessionEvent], Union[None, Awaitable[Any]]]


class SessionEventPublisher:
    """
    Registry of session event handlers.

    Handlers may be plain callables or coroutine functions. Plain handlers
    run inline; coroutine handlers are scheduled as tasks on the running
    loop and are not awaited by publish().
    """

    def __init__(self):
        self._handlers: list[tuple[EventHandler, type]] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(
        self,
        handler: EventHandler,
        event_type: Optional[type] = None,
    ) -> EventHandler:
        """
        Register a handler for `event_type` and its subclasses.

        Args:
            handler: Plain callable or coroutine function taking the event
            event_type: Event class to receive; None receives every event

        Returns:
            The handler, so subscribe can wrap a function definition.
        """
        if event_type is None:
            event_type = SessionEvent
        if not (isinstance(event_type, type) and issubclass(event_type, SessionEvent)):
            raise TypeError("event_type must be a SessionEvent subclass")
        self._handlers.append((handler, event_type))
        return handler

    def unsubscribe(self, handler: EventHandler) -> None:
        self._handlers = [(h, t) for h, t in self._handlers if h != handler]

    def publish(self, event: SessionEvent) -> None:
        """Deliver `event` to every matching handler. Never raises."""
        for handler, event_type in list(self._handlers):
            if not isinstance(event, event_type):
                continue
            try:
                result = handler(event)
            except Exception:
                logger.exception(
                    "Session event handler failed",
                    extra={"extra_data": {
                        "event": type(event).__name__,
                        "session_id": event.session_id,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                    }}
                )
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._handler_done(event))

    def _handler_done(self, event: SessionEvent):
        def callback(task: asyncio.Task) -> None:
            self._tasks.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error(
                    "Async session event handler failed",
                    exc_info=exc,
                    extra={"extra_data": {
                        "event": type(event).__name__,
                        "session_id": event.session_id,
                    }}
                )
        return callback

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every scheduled async handler has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
