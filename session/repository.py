"""
Session repository backed by a distributed key/value store.

Store layout (``<ns>`` is the optional namespace followed by ":"):

    <ns>session:<id>                 hash, the session record
    <ns>session:expires:<id>         string, expiration marker
    <ns>expirations:<bucket_ms>      set, expiration index bucket
    <ns>expirations                  sorted set, registry of buckets
    <ns>index:principal:<name>       set, ids of a principal's sessions

The marker lives for ``interval + safety_margin`` and the record for
``interval + 2 * safety_margin``. Neither native TTL is what users observe:
sessions are expired by the sweeper (or by the check on read), which
publishes the expiration event while the record is still readable.

Every save is a single store transaction: record delta, index move, marker
refresh and principal index update commit together or not at all.
Deletes and expirations are guarded on the record's lastAccessedTime, so
when several processes race to remove the same session only one of them
succeeds and publishes the event.

Concurrent saves of the same session are last-writer-wins per attribute;
the repository does not provide read-modify-write atomicity across a
whole session.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union

from errors.exceptions import CorruptRecord, invalid_session_state
from session.codec import LAST_ACCESSED_TIME_KEY, decode_record, encode_delta, to_millis
from session.events import (
    SessionCreatedEvent,
    SessionDeletedEvent,
    SessionEventPublisher,
    SessionExpiredEvent,
)
from session.expiration import DEFAULT_GRANULARITY, DEFAULT_SAFETY_MARGIN, ExpirationIndex
from session.session import (
    DEFAULT_MAX_INACTIVE_INTERVAL,
    SaveMode,
    Session,
    as_interval,
    utcnow,
)
from session.store import SessionStore, Transaction

logger = logging.getLogger(__name__)

# Attempts for guarded removals before a delete falls back to an unguarded one
MAX_GUARD_ATTEMPTS = 3


class ReapOutcome(str, Enum):
    """Result of re-validating one expiration candidate."""
    ABSENT = "absent"
    EXPIRED = "expired"
    RETRACKED = "retracked"
    NOT_EXPIRING = "not_expiring"
    CONTENDED = "contended"
    CORRUPT = "corrupt"


class SessionRepository:
    """
    Create, load, save, delete and expire sessions.

    Example:
        repository = SessionRepository(store, publisher=publisher)
        session = repository.create_session()
        session.set_attribute("cart", ["sku-1"])
        await repository.save(session)
        loaded = await repository.get_session(session.id)
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        default_max_inactive_interval: Union[timedelta, int] = DEFAULT_MAX_INACTIVE_INTERVAL,
        namespace: str = "",
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        granularity: timedelta = DEFAULT_GRANULARITY,
        save_mode: SaveMode = SaveMode.ON_SET_ATTRIBUTE,
        publisher: Optional[SessionEventPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the repository.

        Args:
            store: Backend holding records and the expiration index
            default_max_inactive_interval: Interval given to new sessions
            namespace: Prefix for every key written
            safety_margin: Extra native TTL beyond logical expiration
            granularity: Expiration index bucket width
            save_mode: Which attributes are written back on save
            publisher: Receives lifecycle events; a private one is created if omitted
            clock: Source of the current time (aware UTC datetimes)
        """
        self.store = store
        self.namespace = namespace
        self.safety_margin = safety_margin
        self.save_mode = SaveMode(save_mode)
        self.publisher = publisher or SessionEventPublisher()
        self._clock = clock
        self._default_max_inactive_interval = as_interval(default_max_inactive_interval)
        self._prefix = f"{namespace}:" if namespace else ""
        self.index = ExpirationIndex(
            store,
            granularity=granularity,
            namespace=namespace,
            safety_margin=safety_margin,
            clock=clock,
        )

    # -- keys -------------------------------------------------------------

    def session_key(self, session_id: str) -> str:
        return f"{self._prefix}session:{session_id}"

    def marker_key(self, session_id: str) -> str:
        return f"{self._prefix}session:expires:{session_id}"

    def principal_key(self, principal_name: str) -> str:
        return f"{self._prefix}index:principal:{principal_name}"

    # -- configuration ----------------------------------------------------

    @property
    def default_max_inactive_interval(self) -> timedelta:
        return self._default_max_inactive_interval

    def set_default_max_inactive_interval(self, interval: Union[timedelta, int]) -> None:
        """Interval for sessions created from now on; existing sessions keep theirs."""
        self._default_max_inactive_interval = as_interval(interval)

    # -- operations -------------------------------------------------------

    def create_session(self) -> Session:
        """A new, unsaved session with a fresh id and the default interval."""
        return Session(
            max_inactive_interval=self._default_max_inactive_interval,
            save_mode=self.save_mode,
            clock=self._clock,
        )

    async def get_session(self, session_id: str) -> Optional[Session]:
        """
        Load a session and record the access.

        Returns:
            The session, or None if it does not exist, is corrupt, or has
            expired. An expired session is removed on the spot and a
            SessionExpiredEvent is published.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        session = await self._find(session_id)
        if session is not None:
            session.touch()
        return session

    async def save(self, session: Session) -> None:
        """
        Persist a session's pending changes in one transaction.

        Raises:
            StoreUnavailable: If the store cannot be reached; nothing was
                written in that case.
            AppException: If an attribute value cannot be serialized.
        """
        if not session.has_changes:
            return
        try:
            to_set, to_delete = encode_delta(session)
        except (TypeError, ValueError) as e:
            raise invalid_session_state(
                "Session attribute is not JSON serializable",
                details={"session_id": session.id, "error": str(e)}
            ) from e

        was_new = session.is_new
        rotated = session.is_rotated and not was_new

        tx = Transaction()
        if rotated:
            self._queue_removal(
                tx,
                session.original_id,
                session.original_expires_at,
                session.original_principal_name,
            )
        key = self.session_key(session.id)
        tx.hset(key, to_set)
        tx.hdel(key, to_delete)
        previous_expires_at = None if (was_new or rotated) else session.original_expires_at
        self.index.move(tx, session.id, previous_expires_at, session.expires_at)
        self._queue_expiry(tx, session)
        self._queue_principal(tx, session, reindex=was_new or rotated)

        results = await self.store.execute(tx)

        if rotated and results and results[0] == 0:
            # Another process rotated or removed the old id first; this write wins
            logger.warning(
                "Rotated session had no stored record under its previous id",
                extra={"extra_data": {
                    "previous_session_id": session.original_id,
                    "session_id": session.id,
                }}
            )
        logger.debug(
            "Session saved",
            extra={"extra_data": {"session_id": session.id, "new": was_new, "rotated": rotated}}
        )
        session.mark_saved()
        if was_new:
            self.publisher.publish(SessionCreatedEvent(session.id, session))

    async def delete_session(self, session_id: str) -> None:
        """
        Remove a session. Deleting an unknown id is a no-op.

        Publishes one SessionDeletedEvent when a stored session was removed.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        if not session_id:
            return
        for _ in range(MAX_GUARD_ATTEMPTS):
            try:
                session = await self._load(session_id)
            except CorruptRecord:
                await self._purge_corrupt(session_id)
                return
            if session is None:
                return
            if await self._remove(session, guarded=True):
                self._publish_deleted(session)
                return
        # The record kept changing underneath us; the delete wins
        session = await self._load(session_id)
        if session is not None and await self._remove(session, guarded=False):
            self._publish_deleted(session)

    async def find_by_principal_name(self, principal_name: str) -> dict[str, Session]:
        """
        All live sessions whose PRINCIPAL_NAME attribute equals `principal_name`.

        Loading does not count as an access.
        """
        ids = await self.store.members(self.principal_key(principal_name))
        sessions: dict[str, Session] = {}
        for session_id in sorted(ids):
            session = await self._find(session_id)
            if session is not None and session.principal_name == principal_name:
                sessions[session.id] = session
        return sessions

    async def reap(self, session_id: str, now: Optional[datetime] = None) -> ReapOutcome:
        """
        Re-validate an expiration candidate taken from the index.

        An expired session is removed and a SessionExpiredEvent published.
        A session that was refreshed after it was bucketed is put back in
        the bucket matching its current expiration time.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        if now is None:
            now = self._clock()
        try:
            session = await self._load(session_id)
        except CorruptRecord as e:
            logger.warning(
                "Skipping corrupt session record during expiration",
                extra={"extra_data": {"session_id": session_id, "details": e.details}}
            )
            return ReapOutcome.CORRUPT
        if session is None:
            return ReapOutcome.ABSENT
        if session.is_expired(now):
            if await self._expire(session):
                return ReapOutcome.EXPIRED
            return ReapOutcome.CONTENDED
        if session.expires_at is None:
            return ReapOutcome.NOT_EXPIRING

        tx = Transaction()
        self._require_unchanged(tx, session)
        self.index.track(tx, session.id, session.expires_at)
        if await self.store.execute(tx) is None:
            # A concurrent save moved it already
            return ReapOutcome.CONTENDED
        return ReapOutcome.RETRACKED

    # -- internals --------------------------------------------------------

    async def _load(self, session_id: str) -> Optional[Session]:
        """Read and decode a record, expired or not."""
        record = await self.store.load(self.session_key(session_id))
        if record is None:
            return None
        return decode_record(session_id, record, self.save_mode, self._clock)

    async def _find(self, session_id: str) -> Optional[Session]:
        """Load a live session, expiring it on the spot if it is overdue."""
        if not session_id:
            return None
        for _ in range(MAX_GUARD_ATTEMPTS):
            try:
                session = await self._load(session_id)
            except CorruptRecord as e:
                logger.warning(
                    "Treating corrupt session record as absent",
                    extra={"extra_data": {"session_id": session_id, "details": e.details}}
                )
                return None
            if session is None:
                return None
            if not session.is_expired(self._clock()):
                return session
            if await self._expire(session):
                return None
            # Lost a race: someone refreshed or removed it meanwhile, look again
        return None

    async def _expire(self, session: Session) -> bool:
        if not await self._remove(session, guarded=True):
            return False
        logger.info(
            "Session expired",
            extra={"extra_data": {
                "session_id": session.id,
                "last_accessed_time": session.last_accessed_time.isoformat(),
            }}
        )
        self.publisher.publish(SessionExpiredEvent(session.id, session))
        return True

    async def _remove(self, session: Session, guarded: bool) -> bool:
        """Delete a loaded session's keys; False if nothing was removed."""
        tx = Transaction()
        if guarded:
            self._require_unchanged(tx, session)
        self._queue_removal(
            tx,
            session.original_id,
            session.original_expires_at,
            session.original_principal_name,
        )
        results = await self.store.execute(tx)
        return bool(results) and results[0] > 0

    async def _purge_corrupt(self, session_id: str) -> None:
        tx = Transaction()
        tx.delete(self.session_key(session_id))
        tx.delete(self.marker_key(session_id))
        results = await self.store.execute(tx)
        if results and results[0] > 0:
            logger.warning(
                "Deleted corrupt session record",
                extra={"extra_data": {"session_id": session_id}}
            )
            self.publisher.publish(SessionDeletedEvent(session_id))

    def _publish_deleted(self, session: Session) -> None:
        logger.info("Session deleted", extra={"extra_data": {"session_id": session.id}})
        self.publisher.publish(SessionDeletedEvent(session.id, session))

    def _require_unchanged(self, tx: Transaction, session: Session) -> None:
        tx.require(
            self.session_key(session.original_id),
            LAST_ACCESSED_TIME_KEY,
            str(to_millis(session.original_last_accessed_time)),
        )

    def _queue_removal(
        self,
        tx: Transaction,
        session_id: str,
        expires_at: Optional[datetime],
        principal_name: Optional[str],
    ) -> None:
        # The record delete goes first: its reply tells whether anything existed
        tx.delete(self.session_key(session_id))
        tx.delete(self.marker_key(session_id))
        if expires_at is not None:
            self.index.untrack(tx, session_id, expires_at)
        if principal_name is not None:
            tx.srem(self.principal_key(principal_name), session_id)

    def _queue_expiry(self, tx: Transaction, session: Session) -> None:
        key = self.session_key(session.id)
        marker = self.marker_key(session.id)
        if session.expires:
            interval = session.max_inactive_interval
            tx.set(marker, "", interval + self.safety_margin)
            tx.expire(key, interval + 2 * self.safety_margin)
        else:
            tx.delete(marker)
            tx.persist(key)

    def _queue_principal(self, tx: Transaction, session: Session, reindex: bool) -> None:
        previous = None if reindex else session.original_principal_name
        current = session.principal_name
        if previous == current and not reindex:
            return
        if previous is not None:
            tx.srem(self.principal_key(previous), session.id)
        if current is not None:
            tx.sadd(self.principal_key(current), session.id)
