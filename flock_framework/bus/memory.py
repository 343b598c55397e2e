"""
In-process transport.

An ``InMemoryBroker`` plays the role of the external bus server: every
``InMemoryBus`` connected to the same broker name sees the same topics.
Frames are JSON-encoded on the way through so payloads behave exactly as
they would over the network.
"""

import asyncio
import logging
from typing import Dict, List

from ..exceptions import BusConnectionError
from .base import MessageBus

logger = logging.getLogger("flock.message_bus.memory")


class InMemoryBroker:
    """Routes frames between the connections attached to it."""

    def __init__(self, name: str = "default"):
        self.name = name
        self.available = True
        self._connections: List["InMemoryBus"] = []
        self.stats = {"routed": 0}

    def attach(self, conn: "InMemoryBus"):
        if not self.available:
            raise BusConnectionError(f"memory://{self.name}", "broker unavailable")
        if conn not in self._connections:
            self._connections.append(conn)

    def detach(self, conn: "InMemoryBus"):
        if conn in self._connections:
            self._connections.remove(conn)

    def route(self, topic: str, frame: bytes):
        self.stats["routed"] += 1
        for conn in list(self._connections):
            conn._dispatch(topic, frame)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def outage(self):
        """Drop every connection and refuse new ones until ``restore``."""
        self.available = False
        for conn in list(self._connections):
            self.detach(conn)
            await conn._connection_lost(BusConnectionError(f"memory://{self.name}", "broker went away"))

    def restore(self):
        self.available = True


_brokers: Dict[str, InMemoryBroker] = {}


def get_broker(name: str = "default") -> InMemoryBroker:
    """Return the process-wide broker registered under ``name``."""
    if name not in _brokers:
        _brokers[name] = InMemoryBroker(name)
    return _brokers[name]


def reset_brokers():
    _brokers.clear()


class InMemoryBus(MessageBus):
    """Connection to an ``InMemoryBroker``."""

    def __init__(self, url: str = "memory://default", broker: InMemoryBroker = None):
        super().__init__(url)
        self.broker = broker or get_broker(url.split("://", 1)[-1] or "default")

    async def _open(self):
        self.broker.attach(self)

    async def _close(self):
        self.broker.detach(self)

    async def _send(self, topic: str, frame: bytes):
        self.broker.route(topic, frame)
        # Let subscribers run; mirrors a network write suspending the caller
        await asyncio.sleep(0)

    async def _watch(self, pattern: str):
        # The broker fans out every frame; matching happens in _dispatch
        pass

    async def _unwatch(self, pattern: str):
        pass
