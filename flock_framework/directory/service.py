"""
Directory service: feeds the roster actor from bus traffic and answers
``directory.list`` / ``directory.get`` over request/reply.

The host degrades instead of exiting when the bus is unreachable: it logs,
reports itself degraded and keeps reconnecting in the background.
"""

import asyncio
import logging
from typing import Any, List, Optional

from ..bus.backoff import connect_with_retry, reconnect_forever
from ..bus.base import BusMessage, MessageBus, Subscription
from ..config import BusConfig, DirectoryConfig, bus_config, directory_config
from ..exceptions import BusConnectionError, BusError, MessageValidationError
from ..logs import log_action
from ..metrics import metrics_manager
from ..models import Announcement, Heartbeat
from .roster import DIRECTORY_GET_TOPIC, DIRECTORY_LIST_TOPIC, AgentDirectory

ANNOUNCE_TOPIC = "agent.announce"
HEARTBEAT_PATTERN = "agent.*.heartbeat"
STATUS_PATTERN = "agent.*.status"


class DirectoryService:
    """Hosts an ``AgentDirectory`` on the bus."""

    def __init__(
        self,
        bus: MessageBus,
        directory: Optional[AgentDirectory] = None,
        config: Optional[DirectoryConfig] = None,
        bus_settings: Optional[BusConfig] = None,
    ):
        self.bus = bus
        self.config = config or directory_config
        self.bus_settings = bus_settings or bus_config
        self.directory = directory or AgentDirectory(self.config)
        self.logger = logging.getLogger("flock.directory")
        self.degraded = False
        self._subscriptions: List[Subscription] = []
        self._loops: List[asyncio.Task] = []
        self._sweeper: Optional[asyncio.Task] = None
        self._reconnector: Optional[asyncio.Task] = None
        self._stopping = False
        bus.on_disconnect(self._on_disconnect)

    async def start(self):
        """Start the roster and the sweep, then attach to the bus.

        Never raises on an unreachable bus; ``degraded`` is set instead.
        """
        self.directory.start()
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="directory-sweep")
        try:
            await connect_with_retry(self.bus, self.bus_settings, component="directory")
        except BusConnectionError as e:
            self.logger.error(f"Directory starting degraded: {e}")
            self._enter_degraded()
            return
        await self._attach()

    async def stop(self):
        self._stopping = True
        for task in (self._sweeper, self._reconnector):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        for sub in self._subscriptions:
            await sub.unsubscribe()
        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
        await self.directory.stop()
        await self.bus.close()
        self.logger.info("Directory service stopped")

    # ── Bus attachment ───────────────────────────────────────────────────

    async def _attach(self):
        routes = [
            (ANNOUNCE_TOPIC, self._on_announce),
            (HEARTBEAT_PATTERN, self._on_heartbeat),
            (STATUS_PATTERN, self._on_heartbeat),
            (DIRECTORY_LIST_TOPIC, self._on_list),
            (DIRECTORY_GET_TOPIC, self._on_get),
        ]
        for topic, handler in routes:
            sub = await self.bus.subscribe(topic)
            self._subscriptions.append(sub)
            self._loops.append(asyncio.create_task(self._consume(sub, handler), name=f"directory:{topic}"))
        self.degraded = False
        log_action("directory_started", bus=self.bus.url,
                   staleness_threshold=self.config.staleness_threshold,
                   sweep_interval=self.config.sweep_interval)

    async def _on_connected(self):
        self.degraded = False
        if not self._subscriptions:
            await self._attach()
        self.logger.info("Directory reconnected to the bus")

    def _enter_degraded(self):
        self.degraded = True
        if self._reconnector is None or self._reconnector.done():
            self._reconnector = asyncio.create_task(
                reconnect_forever(self.bus, self.bus_settings, "directory", on_connected=self._on_connected),
                name="directory-reconnect",
            )

    async def _on_disconnect(self, exc: Exception):
        if self._stopping:
            return
        self.logger.error(f"Directory lost the bus: {exc}")
        self._enter_degraded()

    async def _consume(self, sub: Subscription, handler):
        async for message in sub:
            try:
                await handler(message)
            except BusError as e:
                self.logger.warning(f"Bus error while handling {message.topic}: {e}")
            except Exception as e:
                self.logger.error(f"Handler for {message.topic} failed: {e}", exc_info=True)

    # ── Sweep ────────────────────────────────────────────────────────────

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            flipped = await self.directory.sweep()
            if flipped:
                self.logger.info(f"Sweep marked offline: {', '.join(flipped)}")

    # ── Handlers ─────────────────────────────────────────────────────────

    async def _on_announce(self, message: BusMessage):
        try:
            announcement = Announcement.from_dict(message.data)
        except MessageValidationError as e:
            self.logger.warning(f"Dropping announce: {e}")
            metrics_manager.record_dropped_message("announce")
            return
        await self.directory.record_announce(announcement)

    async def _on_heartbeat(self, message: BusMessage):
        """Liveness from ``agent.<id>.heartbeat`` or ``agent.<id>.status``.

        Any status, ``stopping`` included, counts as liveness; only the
        sweep marks an agent offline.
        """
        data = message.data
        if message.topic.endswith(".heartbeat"):
            try:
                heartbeat = Heartbeat.from_dict(data)
            except MessageValidationError as e:
                self.logger.warning(f"Dropping heartbeat: {e}")
                metrics_manager.record_dropped_message("heartbeat")
                return
            agent_id, timestamp = heartbeat.agent_id, heartbeat.timestamp
        else:
            agent_id = data.get("agentId") if isinstance(data, dict) else None
            agent_id = agent_id or message.topic.split(".")[1]
            timestamp = data.get("timestamp") if isinstance(data, dict) else None
        await self.directory.record_heartbeat(agent_id, timestamp)

    async def _on_list(self, message: BusMessage):
        data: Any = message.data if isinstance(message.data, dict) else {}
        status = data.get("status") or "all"
        try:
            records = await self.directory.list(status)
        except MessageValidationError as e:
            await message.respond({"error": str(e)})
            return
        await message.respond([record.to_dict() for record in records])

    async def _on_get(self, message: BusMessage):
        data: Any = message.data if isinstance(message.data, dict) else {}
        agent_id = data.get("agentId")
        record = await self.directory.get(agent_id) if isinstance(agent_id, str) else None
        await message.respond(record.to_dict() if record else None)
