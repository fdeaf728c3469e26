"""
In-process session store for development and tests.

Implements the same key/value semantics the repository relies on in Redis
(hashes, sets, sorted sets, strings, native TTLs) inside one process. A
single asyncio lock serialises transactions, and a transaction that fails
partway is rolled back. Expired keys are evicted lazily against an
injectable clock so tests can move time.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from session.session import utcnow
from session.store import SessionStore, StoreOperation, Transaction, ttl_seconds

_ABSENT = object()


class InMemorySessionStore(SessionStore):
    """
    Dictionary-backed SessionStore.

    Not shared between processes, so only suitable for a single-instance
    development setup or for tests.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._data: dict[str, Any] = {}
        self._expiry: dict[str, datetime] = {}

    # -- key bookkeeping -------------------------------------------------

    def _alive(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._data

    def _get(self, key: str, kind: type):
        if not self._alive(key):
            return None
        value = self._data[key]
        if not isinstance(value, kind):
            raise TypeError(f"Key {key!r} holds {type(value).__name__}, not {kind.__name__}")
        return value

    def _drop_if_empty(self, key: str) -> None:
        if key in self._data and not self._data[key]:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def ttl(self, key: str) -> Optional[timedelta]:
        """Remaining native TTL of a key, or None if it has none or does not exist."""
        if not self._alive(key) or key not in self._expiry:
            return None
        return self._expiry[key] - self._clock()

    def keys(self) -> set[str]:
        """Live keys, for inspection in tests and debugging."""
        return {key for key in list(self._data) if self._alive(key)}

    # -- SessionStore ----------------------------------------------------

    async def load(self, key: str) -> Optional[dict[str, str]]:
        async with self._lock:
            value = self._get(key, dict)
            return dict(value) if value else None

    async def members(self, key: str) -> set[str]:
        async with self._lock:
            return set(self._get(key, set) or ())

    async def execute(self, transaction: Transaction) -> Optional[list[Any]]:
        async with self._lock:
            guard = transaction.guard
            if guard is not None:
                record = self._get(guard.key, dict) or {}
                if record.get(guard.field) != guard.expected:
                    return None
            snapshot = self._snapshot({op.key for op in transaction.operations})
            try:
                return [self._apply(op) for op in transaction.operations]
            except Exception:
                self._restore(snapshot)
                raise

    def _snapshot(self, keys: set[str]) -> dict[str, tuple[Any, Optional[datetime]]]:
        snapshot = {}
        for key in keys:
            value = self._data.get(key, _ABSENT)
            if isinstance(value, (dict, set)):
                value = value.copy()
            snapshot[key] = (value, self._expiry.get(key))
        return snapshot

    def _restore(self, snapshot: dict[str, tuple[Any, Optional[datetime]]]) -> None:
        for key, (value, deadline) in snapshot.items():
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            if value is not _ABSENT:
                self._data[key] = value
            if deadline is not None:
                self._expiry[key] = deadline

    def _apply(self, op: StoreOperation) -> Any:
        key = op.key
        if op.command == "hset":
            record = self._get(key, dict)
            if record is None:
                record = self._data[key] = {}
            added = len(set(op.args[0]) - set(record))
            record.update(op.args[0])
            return added
        if op.command == "hdel":
            record = self._get(key, dict) or {}
            removed = sum(1 for f in op.args[0] if record.pop(f, None) is not None)
            self._drop_if_empty(key)
            return removed
        if op.command == "delete":
            existed = self._alive(key)
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            return int(existed)
        if op.command == "sadd":
            members = self._get(key, set)
            if members is None:
                members = self._data[key] = set()
            added = op.args[0] not in members
            members.add(op.args[0])
            return int(added)
        if op.command == "srem":
            members = self._get(key, set) or set()
            removed = op.args[0] in members
            members.discard(op.args[0])
            self._drop_if_empty(key)
            return int(removed)
        if op.command == "zadd":
            scores = self._get(key, dict)
            if scores is None:
                scores = self._data[key] = {}
            member, score = op.args
            added = member not in scores
            scores[member] = score
            return int(added)
        if op.command == "zrem":
            scores = self._get(key, dict) or {}
            removed = scores.pop(op.args[0], None) is not None
            self._drop_if_empty(key)
            return int(removed)
        if op.command == "set":
            value, ttl = op.args
            self._data[key] = value
            self._expiry.pop(key, None)
            if ttl is not None:
                self._expiry[key] = self._clock() + timedelta(seconds=ttl_seconds(ttl))
            return True
        if op.command == "expire":
            if not self._alive(key):
                return False
            self._expiry[key] = self._clock() + timedelta(seconds=ttl_seconds(op.args[0]))
            return True
        if op.command == "persist":
            if not self._alive(key) or key not in self._expiry:
                return False
            del self._expiry[key]
            return True
        raise ValueError(f"Unsupported store command: {op.command}")

    async def due_keys(self, registry_key: str, max_score: int) -> list[str]:
        async with self._lock:
            scores = self._get(registry_key, dict) or {}
            due = [(score, member) for member, score in scores.items() if score <= max_score]
            return [member for _, member in sorted(due)]

    async def pop_members(self, registry_key: str, key: str) -> set[str]:
        async with self._lock:
            members = set(self._get(key, set) or ())
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            scores = self._get(registry_key, dict) or {}
            scores.pop(key, None)
            self._drop_if_empty(registry_key)
            return members

    async def health_check(self) -> bool:
        return True
