"""
Message Bus Contract

Thin contract over an external publish/subscribe transport:
    - publish(topic, payload)            fire-and-forget
    - subscribe(pattern)                 lazy async stream, ``*`` = one token
    - request(topic, payload, timeout)   one reply on an implicit inbox

Transports implement five hooks (_open, _close, _send, _watch, _unwatch)
and feed inbound frames to ``_dispatch``; everything else, including
request/reply correlation, lives here.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..exceptions import BusClosedError, RequestTimeoutError

INBOX_PREFIX = "_INBOX"

_CLOSED = object()


# ══════════════════════════════════════════════════════════════════════════════
# TOPICS & FRAMES
# ══════════════════════════════════════════════════════════════════════════════

def topic_matches(pattern: str, topic: str) -> bool:
    """Match a dot-separated topic against a pattern.

    ``*`` matches exactly one token: ``agent.*.status`` matches
    ``agent.a1.status`` but not ``agent.a1.x.status``.
    """
    pattern_tokens = pattern.split(".")
    topic_tokens = topic.split(".")
    if len(pattern_tokens) != len(topic_tokens):
        return False
    return all(p == "*" or p == t for p, t in zip(pattern_tokens, topic_tokens))


def encode_frame(payload: Any, reply_to: Optional[str] = None) -> bytes:
    frame = {"data": payload}
    if reply_to:
        frame["reply"] = reply_to
    return json.dumps(frame, default=str).encode("utf-8")


def decode_frame(raw: bytes) -> Tuple[Any, Optional[str]]:
    """Return ``(payload, reply_to)``. Raises ``ValueError`` on garbage."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    frame = json.loads(raw)
    if not isinstance(frame, dict) or "data" not in frame:
        raise ValueError("frame is not a bus envelope")
    return frame["data"], frame.get("reply")


# ══════════════════════════════════════════════════════════════════════════════
# MESSAGES & SUBSCRIPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class BusMessage:
    """A delivered message; ``respond`` answers on the implicit reply inbox."""

    __slots__ = ("topic", "data", "reply_to", "_bus")

    def __init__(self, topic: str, data: Any, reply_to: Optional[str], bus: "MessageBus"):
        self.topic = topic
        self.data = data
        self.reply_to = reply_to
        self._bus = bus

    async def respond(self, payload: Any) -> bool:
        """Publish ``payload`` to the requester. False when nobody asked."""
        if not self.reply_to:
            return False
        await self._bus.publish(self.reply_to, payload)
        return True

    def __repr__(self) -> str:
        return f"<BusMessage topic={self.topic!r} reply_to={self.reply_to!r}>"


class Subscription:
    """Unbounded async stream of messages matching one pattern.

    Iteration can be stopped and resumed; messages keep queueing until
    ``unsubscribe`` is called, after which the stream ends once drained.
    """

    def __init__(self, bus: "MessageBus", pattern: str):
        self.bus = bus
        self.pattern = pattern
        self.delivered = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, message: BusMessage):
        if not self._closed:
            self.delivered += 1
            self._queue.put_nowait(message)

    async def next(self) -> BusMessage:
        """Wait for the next message. Raises ``StopAsyncIteration`` once closed."""
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> BusMessage:
        return await self.next()

    async def unsubscribe(self):
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        await self.bus._remove_subscription(self)

    def __repr__(self) -> str:
        return f"<Subscription pattern={self.pattern!r} closed={self._closed}>"


# ══════════════════════════════════════════════════════════════════════════════
# MESSAGE BUS
# ══════════════════════════════════════════════════════════════════════════════

DisconnectCallback = Callable[[Exception], Awaitable[None]]


class MessageBus(ABC):
    """Async publish/subscribe client bound to one transport endpoint."""

    def __init__(self, url: str):
        self.url = url
        self.logger = logging.getLogger("flock.message_bus")
        self._subscriptions: List[Subscription] = []
        self._watched: Counter = Counter()
        self._connected = False
        self._disconnect_callbacks: List[DisconnectCallback] = []
        self.stats = {
            "published": 0,
            "delivered": 0,
            "undecodable": 0,
            "requests": 0,
            "request_timeouts": 0,
        }

    # ── Transport hooks ──────────────────────────────────────────────────

    @abstractmethod
    async def _open(self):
        """Open the transport. Raise ``BusConnectionError`` when unreachable."""
        ...

    @abstractmethod
    async def _close(self):
        ...

    @abstractmethod
    async def _send(self, topic: str, frame: bytes):
        ...

    @abstractmethod
    async def _watch(self, pattern: str):
        """Ask the transport to start delivering topics matching ``pattern``."""
        ...

    @abstractmethod
    async def _unwatch(self, pattern: str):
        ...

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self):
        """Open the transport and re-arm every live subscription."""
        if self._connected:
            return
        await self._open()
        self._connected = True
        for pattern in list(self._watched):
            await self._watch(pattern)
        self.logger.info(f"Connected to bus at {self.url}")

    async def close(self):
        """Drain: end every subscription, then release the transport."""
        for sub in list(self._subscriptions):
            await sub.unsubscribe()
        if self._connected:
            self._connected = False
            await self._close()
            self.logger.info(f"Disconnected from bus at {self.url}")

    def on_disconnect(self, callback: DisconnectCallback):
        """Register a coroutine called when the transport drops unexpectedly."""
        self._disconnect_callbacks.append(callback)

    async def _connection_lost(self, exc: Exception):
        if not self._connected:
            return
        self._connected = False
        self.logger.warning(f"Lost bus connection to {self.url}: {exc}")
        for callback in list(self._disconnect_callbacks):
            try:
                await callback(exc)
            except Exception as e:
                self.logger.error(f"Disconnect callback failed: {e}")

    # ── Publish / subscribe ──────────────────────────────────────────────

    async def publish(self, topic: str, payload: Any, reply_to: Optional[str] = None):
        """Best-effort publish. No acknowledgment."""
        if not self._connected:
            raise BusClosedError(f"publish {topic}")
        await self._send(topic, encode_frame(payload, reply_to))
        self.stats["published"] += 1

    async def subscribe(self, pattern: str) -> Subscription:
        """Open a subscription; it stays open until ``unsubscribe``."""
        if not self._connected:
            raise BusClosedError(f"subscribe {pattern}")
        sub = Subscription(self, pattern)
        self._subscriptions.append(sub)
        self._watched[pattern] += 1
        if self._watched[pattern] == 1:
            await self._watch(pattern)
        return sub

    async def _remove_subscription(self, sub: Subscription):
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        self._watched[sub.pattern] -= 1
        if self._watched[sub.pattern] <= 0:
            del self._watched[sub.pattern]
            if self._connected:
                await self._unwatch(sub.pattern)

    def _dispatch(self, topic: str, frame: bytes, only_pattern: Optional[str] = None):
        """Deliver one inbound frame to every matching subscription.

        Transports that deliver once per matching pattern pass
        ``only_pattern`` so overlapping patterns do not duplicate messages.
        """
        try:
            payload, reply_to = decode_frame(frame)
        except (ValueError, UnicodeDecodeError) as e:
            self.stats["undecodable"] += 1
            self.logger.warning(f"Dropping undecodable frame on {topic}: {e}")
            return
        for sub in list(self._subscriptions):
            if only_pattern is not None and sub.pattern != only_pattern:
                continue
            if topic_matches(sub.pattern, topic):
                sub._deliver(BusMessage(topic, payload, reply_to, self))
                self.stats["delivered"] += 1

    # ── Request / reply ──────────────────────────────────────────────────

    async def request(self, topic: str, payload: Any, timeout: float) -> Any:
        """Publish and wait for exactly one reply.

        The reply inbox subscription is released whether the reply or the
        deadline comes first. Raises ``RequestTimeoutError`` on expiry.
        """
        self.stats["requests"] += 1
        inbox = f"{INBOX_PREFIX}.{uuid.uuid4().hex}"
        sub = await self.subscribe(inbox)
        try:
            await self.publish(topic, payload, reply_to=inbox)
            reply = await asyncio.wait_for(sub.next(), timeout=timeout)
            return reply.data
        except StopAsyncIteration:
            raise BusClosedError(f"request {topic}")
        except asyncio.TimeoutError:
            self.stats["request_timeouts"] += 1
            raise RequestTimeoutError(topic, timeout)
        finally:
            await sub.unsubscribe()

    def get_statistics(self) -> Dict[str, Any]:
        """Get message bus stats."""
        return {
            **self.stats,
            "url": self.url,
            "connected": self._connected,
            "subscriptions": len(self._subscriptions),
            "patterns": sorted(self._watched),
        }
