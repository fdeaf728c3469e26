"""
Session store abstraction for external session storage.

This module defines the abstract interface every storage backend of the
session repository implements, and the Transaction builder through which
the repository expresses multi-key writes that must apply atomically
(record write + expiration index move + marker refresh).

Backends map a Transaction onto whatever atomic primitive they have:
the Redis backend uses MULTI/EXEC with WATCH for guarded transactions,
the in-memory backend holds an asyncio lock.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional


@dataclass(frozen=True)
class StoreOperation:
    """
    A single queued write.

    Attributes:
        command: One of hset, hdel, delete, sadd, srem, zadd, zrem, set,
            expire, persist
        key: The key the command applies to
        args: Command arguments (mapping, fields, member, score, ttl...)
    """
    command: str
    key: str
    args: tuple = ()


@dataclass(frozen=True)
class Guard:
    """
    Precondition for a transaction: hash `key` must hold `expected` in
    `field` (None means the field, or the whole key, must be absent).
    """
    key: str
    field: str
    expected: Optional[str]


@dataclass
class Transaction:
    """
    Ordered list of writes to apply all-or-nothing.

    Example:
        tx = Transaction()
        tx.hset("session:abc", {"lastAccessedTime": "1700000000000"})
        tx.srem("expirations:1700000040000", "abc")
        tx.sadd("expirations:1700000100000", "abc")
        results = await store.execute(tx)
    """
    operations: list[StoreOperation] = field(default_factory=list)
    guard: Optional[Guard] = None

    def _add(self, command: str, key: str, *args: Any) -> "Transaction":
        self.operations.append(StoreOperation(command, key, args))
        return self

    def require(self, key: str, field_name: str, expected: Optional[str]) -> "Transaction":
        """Only apply the transaction if the guard still holds at commit time."""
        self.guard = Guard(key, field_name, expected)
        return self

    def hset(self, key: str, mapping: dict[str, str]) -> "Transaction":
        if not mapping:
            return self
        return self._add("hset", key, dict(mapping))

    def hdel(self, key: str, fields: list[str]) -> "Transaction":
        if not fields:
            return self
        return self._add("hdel", key, tuple(fields))

    def delete(self, key: str) -> "Transaction":
        return self._add("delete", key)

    def sadd(self, key: str, member: str) -> "Transaction":
        return self._add("sadd", key, member)

    def srem(self, key: str, member: str) -> "Transaction":
        return self._add("srem", key, member)

    def zadd(self, key: str, member: str, score: int) -> "Transaction":
        return self._add("zadd", key, member, score)

    def zrem(self, key: str, member: str) -> "Transaction":
        return self._add("zrem", key, member)

    def set(self, key: str, value: str, ttl: Optional[timedelta] = None) -> "Transaction":
        return self._add("set", key, value, ttl)

    def expire(self, key: str, ttl: timedelta) -> "Transaction":
        return self._add("expire", key, ttl)

    def persist(self, key: str) -> "Transaction":
        return self._add("persist", key)

    def __len__(self) -> int:
        return len(self.operations)


def ttl_seconds(ttl: timedelta) -> int:
    """Whole seconds for a native TTL, never below one."""
    return max(1, int(ttl.total_seconds()))


class SessionStore(ABC):
    """
    Abstract base class for session storage backends.

    All methods are async to support non-blocking I/O operations with
    external storage systems. Connectivity failures and timeouts surface
    as StoreUnavailable.
    """

    async def connect(self) -> None:
        """Open connections; backends without connections need not override."""

    async def disconnect(self) -> None:
        """Release connections; backends without connections need not override."""

    @abstractmethod
    async def load(self, key: str) -> Optional[dict[str, str]]:
        """
        Read a whole hash.

        Args:
            key: The hash key.

        Returns:
            The hash fields, or None if the key does not exist or has expired.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        pass

    @abstractmethod
    async def members(self, key: str) -> set[str]:
        """
        Read a set.

        Returns:
            The set members; empty if the key does not exist.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        pass

    @abstractmethod
    async def execute(self, transaction: Transaction) -> Optional[list[Any]]:
        """
        Apply every operation of a transaction atomically.

        Args:
            transaction: The queued writes and optional guard.

        Returns:
            One reply per operation, or None when the guard no longer held
            (nothing was applied).

        Raises:
            StoreUnavailable: If the store cannot be reached; nothing is
                applied in that case.
        """
        pass

    @abstractmethod
    async def due_keys(self, registry_key: str, max_score: int) -> list[str]:
        """
        List members of a sorted set whose score is at most max_score,
        lowest score first.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        pass

    @abstractmethod
    async def pop_members(self, registry_key: str, key: str) -> set[str]:
        """
        Atomically read and delete the set at `key` and remove `key` from
        the sorted set `registry_key`.

        Returns:
            The members the set held.

        Raises:
            StoreUnavailable: If the store cannot be reached.
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check connectivity and health of the store.

        Returns:
            True if the store is healthy and accessible, False otherwise.

        Note:
            This method should not raise exceptions - connectivity issues
            should be caught and result in a False return value.
        """
        pass
