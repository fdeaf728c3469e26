"""
Redis-based session store implementation.

This module provides the Redis-backed implementation of the SessionStore
interface. Transactions run as MULTI/EXEC pipelines; guarded transactions
add WATCH on the guarded key so a concurrent writer aborts the commit
instead of interleaving with it.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Optional

from redis.exceptions import RedisError, WatchError

from errors.exceptions import session_store_unavailable
from session.store import SessionStore, StoreOperation, Transaction, ttl_seconds

logger = logging.getLogger(__name__)


@contextmanager
def _store_errors(operation: str, key: str):
    """
    Translate Redis failures into StoreUnavailable.

    Server-side errors such as READONLY during a failover or OOM are
    included along with connection failures and timeouts.
    """
    try:
        yield
    except (RedisError, asyncio.TimeoutError) as e:
        logger.warning(
            "Redis operation failed",
            extra={"extra_data": {"operation": operation, "key": key, "error": str(e)}}
        )
        raise session_store_unavailable(
            f"Redis {operation} failed",
            details={"key": key, "error": str(e)}
        ) from e


class RedisSessionStore(SessionStore):
    """
    Redis-backed session store implementation.

    Attributes:
        redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
        socket_timeout: Seconds to wait for any single Redis command
        client: Redis async client instance (initialized via connect())
    """

    def __init__(
        self,
        redis_url: str,
        socket_timeout: float = 5.0,
        client: Optional[Any] = None,
    ):
        """
        Initialize the Redis session store.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            socket_timeout: Timeout applied to connects and commands; a
                timeout surfaces as StoreUnavailable.
            client: Pre-built client, mainly for tests.
        """
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = client

    async def connect(self) -> None:
        """
        Establish connection to Redis.

        This method must be called before using any other methods unless
        a client was injected.
        """
        if self.client is not None:
            return
        import redis.asyncio as redis
        self.client = redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )

    async def disconnect(self) -> None:
        """
        Close the Redis connection.

        Should be called during application shutdown to cleanly
        release resources.
        """
        if self.client:
            await self.client.aclose()
            self.client = None

    def _require_client(self):
        if not self.client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self.client

    @property
    def database(self) -> int:
        """Database number of the connection pool, used for keyevent channel names."""
        client = self._require_client()
        return int(client.connection_pool.connection_kwargs.get("db", 0) or 0)

    def pubsub(self):
        """A new pub/sub handle on the shared connection pool."""
        return self._require_client().pubsub()

    async def load(self, key: str) -> Optional[dict[str, str]]:
        client = self._require_client()
        with _store_errors("hgetall", key):
            data = await client.hgetall(key)
        return data or None

    async def members(self, key: str) -> set[str]:
        client = self._require_client()
        with _store_errors("smembers", key):
            return set(await client.smembers(key))

    async def execute(self, transaction: Transaction) -> Optional[list[Any]]:
        client = self._require_client()
        if not transaction.operations:
            return []
        first_key = transaction.operations[0].key
        with _store_errors("transaction", first_key):
            async with client.pipeline(transaction=True) as pipe:
                guard = transaction.guard
                if guard is None:
                    self._queue(pipe, transaction.operations)
                    return await pipe.execute()
                try:
                    await pipe.watch(guard.key)
                    current = await pipe.hget(guard.key, guard.field)
                    if current != guard.expected:
                        await pipe.unwatch()
                        return None
                    pipe.multi()
                    self._queue(pipe, transaction.operations)
                    return await pipe.execute()
                except WatchError:
                    logger.debug(
                        "Guarded transaction aborted by concurrent write",
                        extra={"extra_data": {"key": guard.key}}
                    )
                    return None

    @staticmethod
    def _queue(pipe, operations: list[StoreOperation]) -> None:
        """Buffer operations on a pipeline in MULTI mode."""
        for op in operations:
            if op.command == "hset":
                pipe.hset(op.key, mapping=op.args[0])
            elif op.command == "hdel":
                pipe.hdel(op.key, *op.args[0])
            elif op.command == "delete":
                pipe.delete(op.key)
            elif op.command == "sadd":
                pipe.sadd(op.key, op.args[0])
            elif op.command == "srem":
                pipe.srem(op.key, op.args[0])
            elif op.command == "zadd":
                member, score = op.args
                pipe.zadd(op.key, {member: score})
            elif op.command == "zrem":
                pipe.zrem(op.key, op.args[0])
            elif op.command == "set":
                value, ttl = op.args
                if ttl is None:
                    pipe.set(op.key, value)
                else:
                    pipe.set(op.key, value, ex=ttl_seconds(ttl))
            elif op.command == "expire":
                pipe.expire(op.key, ttl_seconds(op.args[0]))
            elif op.command == "persist":
                pipe.persist(op.key)
            else:
                raise ValueError(f"Unsupported store command: {op.command}")

    async def due_keys(self, registry_key: str, max_score: int) -> list[str]:
        client = self._require_client()
        with _store_errors("zrangebyscore", registry_key):
            return list(await client.zrangebyscore(registry_key, "-inf", max_score))

    async def pop_members(self, registry_key: str, key: str) -> set[str]:
        client = self._require_client()
        with _store_errors("pop_members", key):
            async with client.pipeline(transaction=True) as pipe:
                pipe.smembers(key)
                pipe.delete(key)
                pipe.zrem(registry_key, key)
                members, _, _ = await pipe.execute()
        return set(members)

    async def enable_keyspace_notifications(self) -> None:
        """
        Make sure the server publishes expired-key events.

        Existing notify-keyspace-events flags are kept; only the missing
        ones are added. Managed Redis offerings often forbid CONFIG, in
        which case the setting must be applied out of band.
        """
        client = self._require_client()
        with _store_errors("config", "notify-keyspace-events"):
            current = await client.config_get("notify-keyspace-events")
            flags = current.get("notify-keyspace-events", "") or ""
            missing = ""
            if "E" not in flags:
                missing += "E"
            # "A" is an alias that already includes "x"
            if "x" not in flags and "A" not in flags:
                missing += "x"
            if missing:
                await client.config_set("notify-keyspace-events", flags + missing)

    async def health_check(self) -> bool:
        """
        Check connectivity and health of the Redis store.

        Returns:
            True if Redis is healthy and accessible, False otherwise.
        """
        if not self.client:
            return False

        try:
            result = await self.client.ping()
            return result is True
        except Exception:
            return False
