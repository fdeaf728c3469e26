"""
Time-bucketed expiration index.

Sessions are grouped by their expiration time rounded UP to a fixed
granularity. Each bucket is a set of session ids stored under
"<ns>expirations:<bucket_ms>", and every bucket key is registered in the
sorted set "<ns>expirations" with its bucket time as score, so the sweeper
can find all due buckets with a single range query instead of scanning
sessions.

Rounding up guarantees that a bucket is never due before the sessions in
it; coarser granularity means fewer index writes per access but a longer
delay between real expiration and cleanup. Bucket membership is only a
hint: the sweeper re-validates every candidate against its stored record.
"""

import logging
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Iterable, Optional

from session.codec import from_millis, to_millis
from session.session import utcnow
from session.store import SessionStore, Transaction

logger = logging.getLogger(__name__)

DEFAULT_GRANULARITY = timedelta(seconds=60)
DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)


class ExpirationIndex:
    """
    Tracks which sessions expire in which time bucket.

    Writes are queued onto a caller-supplied Transaction so that moving a
    session between buckets commits together with the session record.
    """

    def __init__(
        self,
        store: SessionStore,
        granularity: timedelta = DEFAULT_GRANULARITY,
        namespace: str = "",
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ):
        if granularity < timedelta(milliseconds=1):
            raise ValueError("granularity must be at least one millisecond")
        self.store = store
        self.granularity = granularity
        self.safety_margin = safety_margin
        self._granularity_ms = int(granularity / timedelta(milliseconds=1))
        self._prefix = f"{namespace}:" if namespace else ""
        self._clock = clock

    @property
    def registry_key(self) -> str:
        return f"{self._prefix}expirations"

    def bucket_key(self, bucket_ms: int) -> str:
        return f"{self._prefix}expirations:{bucket_ms}"

    def bucket_for(self, expire_at: datetime) -> int:
        """Epoch milliseconds of the bucket holding `expire_at` (rounded up)."""
        millis = to_millis(expire_at)
        return -(-millis // self._granularity_ms) * self._granularity_ms

    def track(self, tx: Transaction, session_id: str, expire_at: datetime) -> None:
        """Queue insertion of `session_id` into the bucket for `expire_at`."""
        bucket_ms = self.bucket_for(expire_at)
        key = self.bucket_key(bucket_ms)
        tx.sadd(key, session_id)
        tx.zadd(self.registry_key, key, bucket_ms)
        # Keep the bucket readable until the sweeper has had a chance at it
        remaining = from_millis(bucket_ms) - self._clock()
        tx.expire(key, max(remaining, timedelta(0)) + self.safety_margin)

    def untrack(self, tx: Transaction, session_id: str, previous_expire_at: datetime) -> None:
        """Queue removal of `session_id` from the bucket for `previous_expire_at`."""
        tx.srem(self.bucket_key(self.bucket_for(previous_expire_at)), session_id)

    def move(
        self,
        tx: Transaction,
        session_id: str,
        previous_expire_at: Optional[datetime],
        expire_at: Optional[datetime],
    ) -> None:
        """
        Queue the index update for a changed expiration time.

        Either argument may be None (never indexed / no longer expiring).
        The untrack and track land in the same transaction, so no reader
        ever sees the session in zero or two buckets.
        """
        if previous_expire_at is not None:
            same_bucket = (
                expire_at is not None
                and self.bucket_for(previous_expire_at) == self.bucket_for(expire_at)
            )
            if not same_bucket:
                self.untrack(tx, session_id, previous_expire_at)
        if expire_at is not None:
            self.track(tx, session_id, expire_at)

    async def bucket_members(self, bucket_ms: int) -> set[str]:
        return await self.store.members(self.bucket_key(bucket_ms))

    async def due_buckets(self, now: datetime) -> list[str]:
        return await self.store.due_keys(self.registry_key, to_millis(now))

    async def poll_due_buckets(self, now: datetime) -> AsyncIterator[str]:
        """
        Yield the ids of every bucket whose time is at or before `now`.

        Each bucket is removed from the store as it is reached. If the
        consumer closes the iterator early (aclose()), ids of the current
        bucket that were not yet handed out are put back.

        Raises:
            StoreUnavailable: If the registry cannot be read.
        """
        for key in await self.due_buckets(now):
            bucket_ms = int(key.rsplit(":", 1)[1])
            pending = sorted(await self.store.pop_members(self.registry_key, key))
            logger.debug(
                "Draining expiration bucket",
                extra={"extra_data": {"bucket": bucket_ms, "candidates": len(pending)}}
            )
            try:
                while pending:
                    yield pending.pop(0)
            finally:
                if pending:
                    await self._requeue(bucket_ms, pending)

    async def retry(self, session_ids: Iterable[str], now: datetime) -> None:
        """
        Put candidates that could not be processed back into the index.

        They go into the bucket at or just before `now`, which is already
        due, so the next poll hands them out again.
        """
        session_ids = list(session_ids)
        if not session_ids:
            return
        bucket_ms = to_millis(now) // self._granularity_ms * self._granularity_ms
        await self._requeue(bucket_ms, session_ids)
        logger.info(
            "Requeued expiration candidates for retry",
            extra={"extra_data": {"bucket": bucket_ms, "candidates": len(session_ids)}}
        )

    async def _requeue(self, bucket_ms: int, session_ids: Iterable[str]) -> None:
        tx = Transaction()
        key = self.bucket_key(bucket_ms)
        for session_id in session_ids:
            tx.sadd(key, session_id)
        tx.zadd(self.registry_key, key, bucket_ms)
        tx.expire(key, self.safety_margin)
        await self.store.execute(tx)
