"""
Unit tests for session events and the event publisher.
"""

import asyncio
import logging

import pytest

from session.events import (
    SessionCreatedEvent,
    SessionDeletedEvent,
    SessionDestroyedEvent,
    SessionEvent,
    SessionEventPublisher,
    SessionExpiredEvent,
)


class TestEventTypes:
    def test_destroyed_covers_deleted_and_expired(self):
        assert issubclass(SessionDeletedEvent, SessionDestroyedEvent)
        assert issubclass(SessionExpiredEvent, SessionDestroyedEvent)
        assert not issubclass(SessionCreatedEvent, SessionDestroyedEvent)

    def test_events_are_immutable(self):
        event = SessionCreatedEvent("abc")
        with pytest.raises(AttributeError):
            event.session_id = "other"


class TestSessionEventPublisher:
    """Tests for subscription and delivery."""

    def test_handler_receives_matching_events(self):
        publisher = SessionEventPublisher()
        received = []
        publisher.subscribe(received.append, SessionDestroyedEvent)

        publisher.publish(SessionCreatedEvent("a"))
        publisher.publish(SessionDeletedEvent("b"))
        publisher.publish(SessionExpiredEvent("c"))

        assert [e.session_id for e in received] == ["b", "c"]

    def test_default_subscription_receives_everything(self):
        publisher = SessionEventPublisher()
        received = []
        publisher.subscribe(received.append)

        publisher.publish(SessionCreatedEvent("a"))
        publisher.publish(SessionExpiredEvent("b"))

        assert len(received) == 2

    def test_subscribe_rejects_non_event_types(self):
        with pytest.raises(TypeError):
            SessionEventPublisher().subscribe(print, dict)

    def test_unsubscribe(self):
        publisher = SessionEventPublisher()
        received = []
        publisher.subscribe(received.append)
        publisher.unsubscribe(received.append)

        publisher.publish(SessionEvent("a"))

        assert received == []

    def test_failing_handler_is_isolated(self, caplog):
        publisher = SessionEventPublisher()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        publisher.subscribe(broken)
        publisher.subscribe(received.append)

        with caplog.at_level(logging.ERROR, logger="session.events"):
            publisher.publish(SessionCreatedEvent("a"))

        assert len(received) == 1
        assert any("handler failed" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_async_handlers_are_scheduled(self):
        publisher = SessionEventPublisher()
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event.session_id)

        publisher.subscribe(handler)
        publisher.publish(SessionCreatedEvent("a"))

        assert publisher.pending == 1
        await publisher.drain()
        assert received == ["a"]
        assert publisher.pending == 0

    @pytest.mark.asyncio
    async def test_async_handler_failure_is_logged(self, caplog):
        publisher = SessionEventPublisher()

        async def handler(event):
            raise RuntimeError("boom")

        publisher.subscribe(handler)
        with caplog.at_level(logging.ERROR, logger="session.events"):
            publisher.publish(SessionExpiredEvent("a"))
            await publisher.drain()

        assert any("Async session event handler failed" in r.getMessage() for r in caplog.records)
