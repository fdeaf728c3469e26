"""
Unit tests for SessionRepository over the in-memory store.

Tests cover:
- Create / save / load round trips and delta writes
- Store layout and native TTLs
- Lazy expiration on read and its event
- Idempotent deletes
- Expiration index consistency after saves
- Session id rotation
- Principal name index
- Candidate re-validation used by the sweeper
"""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from errors.codes import ErrorCode
from errors.exceptions import AppException, StoreUnavailable, session_store_unavailable
from session.codec import to_millis
from session.events import (
    SessionCreatedEvent,
    SessionDeletedEvent,
    SessionDestroyedEvent,
    SessionExpiredEvent,
)
from session.repository import ReapOutcome, SessionRepository
from session.session import PRINCIPAL_NAME_ATTRIBUTE
from session.store import Transaction


async def _saved(repository, interval=None, **attributes):
    session = repository.create_session()
    if interval is not None:
        session.set_max_inactive_interval(interval)
    for name, value in attributes.items():
        session.set_attribute(name, value)
    await repository.save(session)
    return session


class TestCreateAndSave:
    """Tests for create_session and save."""

    def test_create_session_uses_defaults(self, repository, memory_store, clock):
        session = repository.create_session()

        assert session.is_new
        assert session.creation_time == clock.now
        assert session.max_inactive_interval == timedelta(seconds=1800)
        assert memory_store.keys() == set()

    @pytest.mark.asyncio
    async def test_round_trip(self, repository):
        session = await _saved(repository, cart=["sku-1"], user={"id": 7})

        loaded = await repository.get_session(session.id)

        assert loaded is not None
        assert loaded.id == session.id
        assert loaded.attributes == {"cart": ["sku-1"], "user": {"id": 7}}
        assert loaded.creation_time == session.creation_time
        assert not loaded.is_new

    @pytest.mark.asyncio
    async def test_first_save_publishes_created_once(self, repository, recorder):
        session = await _saved(repository, k="v")
        session.set_attribute("k", "w")
        await repository.save(session)

        created = recorder.of_type(SessionCreatedEvent)
        assert [e.session_id for e in created] == [session.id]

    @pytest.mark.asyncio
    async def test_save_without_changes_writes_nothing(self, repository, memory_store):
        session = await _saved(repository, k="v")
        memory_store.execute = AsyncMock(wraps=memory_store.execute)

        await repository.save(session)

        memory_store.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delta_save_keeps_untouched_attributes(self, repository):
        session = await _saved(repository, a=1, b=2)

        loaded = await repository.get_session(session.id)
        loaded.set_attribute("a", 10)
        loaded.remove_attribute("b")
        await repository.save(loaded)

        reloaded = await repository.get_session(session.id)
        assert reloaded.attributes == {"a": 10}

    @pytest.mark.asyncio
    async def test_store_layout(self, repository, memory_store, clock):
        session = await _saved(repository, k="v")
        bucket = to_millis(clock.at(1800))

        assert memory_store.keys() == {
            f"session:{session.id}",
            f"session:expires:{session.id}",
            f"expirations:{bucket}",
            "expirations",
        }
        record = await memory_store.load(f"session:{session.id}")
        assert record["sessionAttr:k"] == '"v"'
        assert record["maxInactiveInterval"] == "1800"

    @pytest.mark.asyncio
    async def test_native_ttls_exceed_interval(self, repository, memory_store):
        session = await _saved(repository, interval=60)

        assert memory_store.ttl(f"session:expires:{session.id}") == timedelta(seconds=120)
        assert memory_store.ttl(f"session:{session.id}") == timedelta(seconds=180)

    @pytest.mark.asyncio
    async def test_namespace_prefixes_every_key(self, memory_store, clock):
        repository = SessionRepository(memory_store, namespace="app", clock=clock)
        session = repository.create_session()
        await repository.save(session)

        assert all(key.startswith("app:") for key in memory_store.keys())
        assert f"app:session:{session.id}" in memory_store.keys()

    @pytest.mark.asyncio
    async def test_concurrent_saves_of_new_sessions(self, repository):
        sessions = [repository.create_session() for _ in range(25)]
        for i, session in enumerate(sessions):
            session.set_attribute("i", i)

        await asyncio.gather(*(repository.save(s) for s in sessions))

        for i, session in enumerate(sessions):
            loaded = await repository.get_session(session.id)
            assert loaded.get_attribute("i") == i

    @pytest.mark.asyncio
    async def test_unserializable_attribute_is_rejected(self, repository, memory_store):
        session = repository.create_session()
        session.set_attribute("bad", object())

        with pytest.raises(AppException) as exc_info:
            await repository.save(session)

        assert exc_info.value.error_code == ErrorCode.INVALID_SESSION_STATE
        assert memory_store.keys() == set()

    @pytest.mark.asyncio
    async def test_store_failure_fails_save(self, repository, memory_store, recorder):
        memory_store.execute = AsyncMock(side_effect=session_store_unavailable())
        session = repository.create_session()

        with pytest.raises(StoreUnavailable):
            await repository.save(session)

        assert session.is_new
        assert recorder.events == []


class TestGetSession:
    """Tests for loading, touching and lazy expiration."""

    @pytest.mark.asyncio
    async def test_unknown_id_returns_none(self, repository):
        assert await repository.get_session("nope") is None
        assert await repository.get_session("") is None

    @pytest.mark.asyncio
    async def test_get_touches_session(self, repository, clock):
        session = await _saved(repository)
        clock.advance(30)

        loaded = await repository.get_session(session.id)

        assert loaded.last_accessed_time == clock.now
        assert loaded.has_changes

    @pytest.mark.asyncio
    async def test_expired_session_is_gone_on_read(self, repository, memory_store, recorder, clock):
        session = await _saved(repository, interval=60)
        clock.advance(62)

        assert await repository.get_session(session.id) is None

        expired = recorder.of_type(SessionExpiredEvent)
        assert [e.session_id for e in expired] == [session.id]
        assert f"session:{session.id}" not in memory_store.keys()

    @pytest.mark.asyncio
    async def test_sub_second_interval_expires_after_reload(self, repository, memory_store, clock):
        session = await _saved(repository, interval=timedelta(milliseconds=500))

        record = await memory_store.load(f"session:{session.id}")
        assert record["maxInactiveInterval"] == "1"
        assert memory_store.ttl(f"session:{session.id}") is not None

        clock.advance(10)
        assert await repository.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_concurrent_reads_publish_one_expiration(self, repository, recorder, clock):
        session = await _saved(repository, interval=60)
        clock.advance(62)

        results = await asyncio.gather(*(repository.get_session(session.id) for _ in range(5)))

        assert results == [None] * 5
        assert len(recorder.of_type(SessionExpiredEvent)) == 1

    @pytest.mark.asyncio
    async def test_session_at_exact_interval_is_alive(self, repository, clock):
        session = await _saved(repository, interval=60)
        clock.advance(60)

        assert await repository.get_session(session.id) is not None

    @pytest.mark.asyncio
    async def test_corrupt_record_reads_as_absent(self, repository, memory_store):
        await memory_store.execute(Transaction().hset("session:broken", {"creationTime": "x"}))

        assert await repository.get_session("broken") is None

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, repository, memory_store):
        memory_store.load = AsyncMock(side_effect=session_store_unavailable())

        with pytest.raises(StoreUnavailable):
            await repository.get_session("any")

    @pytest.mark.asyncio
    async def test_non_expiring_session(self, repository, memory_store, clock):
        session = await _saved(repository, interval=0, k="v")

        assert memory_store.ttl(f"session:{session.id}") is None
        assert f"session:expires:{session.id}" not in memory_store.keys()
        assert "expirations" not in memory_store.keys()

        clock.advance(days=365)
        assert await repository.get_session(session.id) is not None


class TestDeleteSession:
    """Tests for delete_session."""

    @pytest.mark.asyncio
    async def test_delete_removes_everything(self, repository, memory_store, recorder, clock):
        session = await _saved(repository, **{PRINCIPAL_NAME_ATTRIBUTE: "alice"})

        await repository.delete_session(session.id)

        # Only the bucket registry remains, until the sweeper drains it
        assert memory_store.keys() == {"expirations"}
        assert await repository.index.bucket_members(to_millis(clock.at(1800))) == set()
        deleted = recorder.of_type(SessionDeletedEvent)
        assert [e.session_id for e in deleted] == [session.id]
        assert isinstance(deleted[0], SessionDestroyedEvent)

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, repository, recorder):
        session = await _saved(repository)

        await repository.delete_session(session.id)
        await repository.delete_session(session.id)
        await repository.delete_session("never-existed")

        assert len(recorder.of_type(SessionDeletedEvent)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deletes_publish_once(self, repository, recorder):
        session = await _saved(repository)

        await asyncio.gather(*(repository.delete_session(session.id) for _ in range(5)))

        assert len(recorder.of_type(SessionDeletedEvent)) == 1

    @pytest.mark.asyncio
    async def test_delete_purges_corrupt_record(self, repository, memory_store, recorder):
        await memory_store.execute(Transaction().hset("session:broken", {"creationTime": "x"}))

        await repository.delete_session("broken")

        assert "session:broken" not in memory_store.keys()
        assert [e.session_id for e in recorder.of_type(SessionDeletedEvent)] == ["broken"]


class TestExpirationIndexConsistency:
    """Tests that saves keep each session in exactly one bucket."""

    @pytest.mark.asyncio
    async def test_touch_and_save_moves_bucket(self, repository, clock):
        session = await _saved(repository)
        old_bucket = to_millis(clock.at(1800))

        clock.advance(300)
        loaded = await repository.get_session(session.id)
        await repository.save(loaded)
        new_bucket = to_millis(clock.at(2100))

        assert session.id not in await repository.index.bucket_members(old_bucket)
        assert await repository.index.bucket_members(new_bucket) == {session.id}

    @pytest.mark.asyncio
    async def test_interval_change_moves_bucket(self, repository, clock):
        session = await _saved(repository)

        session.set_max_inactive_interval(60)
        await repository.save(session)

        assert await repository.index.bucket_members(to_millis(clock.at(1800))) == set()
        assert await repository.index.bucket_members(to_millis(clock.at(60))) == {session.id}

    @pytest.mark.asyncio
    async def test_disabling_expiration_untracks(self, repository, memory_store, clock):
        session = await _saved(repository)

        session.set_max_inactive_interval(0)
        await repository.save(session)

        assert await repository.index.bucket_members(to_millis(clock.at(1800))) == set()
        assert memory_store.ttl(f"session:{session.id}") is None


class TestDefaultInterval:
    """Tests for set_default_max_inactive_interval."""

    @pytest.mark.asyncio
    async def test_applies_to_new_sessions_only(self, repository):
        before = repository.create_session()

        repository.set_default_max_inactive_interval(1)
        after = repository.create_session()

        assert before.max_inactive_interval == timedelta(seconds=1800)
        assert after.max_inactive_interval == timedelta(seconds=1)
        assert repository.default_max_inactive_interval == timedelta(seconds=1)


class TestSessionIdRotation:
    """Tests for saving a session after change_session_id()."""

    @pytest.mark.asyncio
    async def test_rotation_moves_record(self, repository, memory_store, recorder):
        session = await _saved(repository, k="v", **{PRINCIPAL_NAME_ATTRIBUTE: "alice"})
        old_id = session.id

        loaded = await repository.get_session(old_id)
        new_id = loaded.change_session_id()
        await repository.save(loaded)

        assert await repository.get_session(old_id) is None
        moved = await repository.get_session(new_id)
        assert moved.get_attribute("k") == "v"
        assert f"session:{old_id}" not in memory_store.keys()
        assert f"session:expires:{old_id}" not in memory_store.keys()
        assert set(await repository.find_by_principal_name("alice")) == {new_id}
        assert len(recorder.of_type(SessionCreatedEvent)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_rotation_is_last_writer_wins(self, repository, caplog):
        session = await _saved(repository, k="v")
        first = await repository.get_session(session.id)
        second = await repository.get_session(session.id)

        first.change_session_id()
        await repository.save(first)
        second.change_session_id()
        with caplog.at_level(logging.WARNING, logger="session.repository"):
            await repository.save(second)

        assert await repository.get_session(second.id) is not None
        assert any("previous id" in r.getMessage() for r in caplog.records)


class TestFindByPrincipalName:
    """Tests for the principal name index."""

    @pytest.mark.asyncio
    async def test_finds_sessions_of_principal(self, repository):
        a1 = await _saved(repository, **{PRINCIPAL_NAME_ATTRIBUTE: "alice"})
        a2 = await _saved(repository, **{PRINCIPAL_NAME_ATTRIBUTE: "alice"})
        await _saved(repository, **{PRINCIPAL_NAME_ATTRIBUTE: "bob"})

        found = await repository.find_by_principal_name("alice")

        assert set(found) == {a1.id, a2.id}
        assert await repository.find_by_principal_name("nobody") == {}

    @pytest.mark.asyncio
    async def test_principal_change_reindexes(self, repository):
        session = await _saved(repository, **{PRINCIPAL_NAME_ATTRIBUTE: "alice"})

        loaded = await repository.get_session(session.id)
        loaded.set_attribute(PRINCIPAL_NAME_ATTRIBUTE, "carol")
        await repository.save(loaded)

        assert await repository.find_by_principal_name("alice") == {}
        assert set(await repository.find_by_principal_name("carol")) == {session.id}

    @pytest.mark.asyncio
    async def test_lookup_does_not_touch(self, repository, clock):
        session = await _saved(repository, **{PRINCIPAL_NAME_ATTRIBUTE: "alice"})
        clock.advance(30)

        found = await repository.find_by_principal_name("alice")

        assert found[session.id].last_accessed_time == clock.at(0)

    @pytest.mark.asyncio
    async def test_expired_sessions_are_excluded(self, repository, clock):
        await _saved(repository, interval=60, **{PRINCIPAL_NAME_ATTRIBUTE: "alice"})
        clock.advance(120)

        assert await repository.find_by_principal_name("alice") == {}


class TestReap:
    """Tests for re-validating expiration candidates."""

    @pytest.mark.asyncio
    async def test_expired_candidate_is_removed(self, repository, recorder, clock):
        session = await _saved(repository, interval=60)

        outcome = await repository.reap(session.id, clock.at(65))

        assert outcome == ReapOutcome.EXPIRED
        assert [e.session_id for e in recorder.of_type(SessionExpiredEvent)] == [session.id]

    @pytest.mark.asyncio
    async def test_live_candidate_is_retracked(self, repository, clock):
        session = await _saved(repository, interval=60)
        bucket = to_millis(clock.at(60))
        await repository.index.store.pop_members(repository.index.registry_key,
                                                 repository.index.bucket_key(bucket))

        outcome = await repository.reap(session.id, clock.at(30))

        assert outcome == ReapOutcome.RETRACKED
        assert await repository.index.bucket_members(bucket) == {session.id}

    @pytest.mark.asyncio
    async def test_missing_candidate(self, repository):
        assert await repository.reap("gone") == ReapOutcome.ABSENT

    @pytest.mark.asyncio
    async def test_corrupt_candidate(self, repository, memory_store):
        await memory_store.execute(Transaction().hset("session:broken", {"creationTime": "x"}))
        assert await repository.reap("broken") == ReapOutcome.CORRUPT

    @pytest.mark.asyncio
    async def test_non_expiring_candidate(self, repository):
        session = await _saved(repository, interval=0)
        assert await repository.reap(session.id) == ReapOutcome.NOT_EXPIRING

    @pytest.mark.asyncio
    async def test_reap_after_lazy_expiry_publishes_nothing(self, repository, recorder, clock):
        session = await _saved(repository, interval=60)
        clock.advance(62)
        await repository.get_session(session.id)

        assert await repository.reap(session.id, clock.at(65)) == ReapOutcome.ABSENT
        assert len(recorder.of_type(SessionExpiredEvent)) == 1
