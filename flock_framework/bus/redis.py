"""
Redis pub/sub transport.

Patterns map onto PSUBSCRIBE globs. Redis ``*`` also matches dots, so
each delivery is re-checked against the single-token rule in
``MessageBus._dispatch``.
"""

import asyncio
import logging
from typing import Dict, Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from ..exceptions import BusConnectionError
from .base import MessageBus

logger = logging.getLogger("flock.message_bus.redis")

_GLOB_SPECIALS = "\\?[]"


def pattern_to_glob(pattern: str) -> str:
    """Translate a bus pattern into a Redis PSUBSCRIBE glob."""
    escaped = "".join(f"\\{ch}" if ch in _GLOB_SPECIALS else ch for ch in pattern)
    return escaped


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


class RedisBus(MessageBus):
    """Connection to a Redis server used as the flock's bus."""

    def __init__(self, url: str = "redis://localhost:6379/0", poll_timeout: float = 1.0):
        super().__init__(url)
        self.poll_timeout = poll_timeout
        self._client: Optional[redis_async.Redis] = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._running = False
        self._globs: Dict[str, str] = {}

    async def _open(self):
        if self._listener is not None and not self._listener.done():
            raise BusConnectionError(self.url, "previous connection is still shutting down")
        try:
            self._client = redis_async.from_url(self.url)
            await self._client.ping()
        except (RedisError, OSError) as e:
            self._client = None
            raise BusConnectionError(self.url, str(e), cause=e)
        self._pubsub = self._client.pubsub()
        self._running = True
        self._listener = asyncio.create_task(self._listen())

    async def _close(self):
        await self._teardown()

    async def _teardown(self):
        """Retire the listener, pubsub and client of the current connection.

        The handles are detached before the first await so a reconnect
        racing with this teardown never sees them.
        """
        self._running = False
        listener, pubsub, client = self._listener, self._pubsub, self._client
        self._listener = self._pubsub = self._client = None
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        if pubsub is not None:
            try:
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Ignoring error closing pubsub: {e}")
        if client is not None:
            try:
                await client.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Ignoring error closing client: {e}")

    async def _fail(self, exc: Exception) -> BusConnectionError:
        """Tear the connection down, then tell the disconnect callbacks."""
        error = BusConnectionError(self.url, str(exc), cause=exc)
        await self._teardown()
        await self._connection_lost(error)
        return error

    async def _send(self, topic: str, frame: bytes):
        client = self._client
        if client is None:
            raise BusConnectionError(self.url, "not connected")
        try:
            await client.publish(topic, frame)
        except (RedisError, OSError) as e:
            raise await self._fail(e)

    async def _watch(self, pattern: str):
        if self._pubsub is None:
            raise BusConnectionError(self.url, "not connected")
        glob = pattern_to_glob(pattern)
        self._globs[glob] = pattern
        await self._pubsub.psubscribe(glob)

    async def _unwatch(self, pattern: str):
        glob = pattern_to_glob(pattern)
        self._globs.pop(glob, None)
        if self._pubsub is not None:
            await self._pubsub.punsubscribe(glob)

    async def _listen(self):
        """Pump PMESSAGE frames from Redis into the subscriptions."""
        pubsub = self._pubsub
        while self._running and self._pubsub is pubsub:
            if not pubsub.subscribed:
                await asyncio.sleep(0.05)
                continue
            try:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
            except (RedisError, OSError) as e:
                await self._fail(e)
                return
            if not message or message.get("type") != "pmessage":
                continue
            pattern = self._globs.get(_text(message.get("pattern")))
            if pattern is None:
                continue
            self._dispatch(_text(message["channel"]), message["data"], only_pattern=pattern)
