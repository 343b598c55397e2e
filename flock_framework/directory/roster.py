"""
Agent roster actor.

The roster dictionary is owned by a single asyncio task. Every read and
write is a command placed on its queue, so subscription loops never touch
shared state directly. Callers receive copies of the records.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import DirectoryConfig, directory_config
from ..exceptions import MessageValidationError
from ..metrics import metrics_manager
from ..models import AgentRecord, AgentStatus, Announcement

DIRECTORY_LIST_TOPIC = "directory.list"
DIRECTORY_GET_TOPIC = "directory.get"

STATUS_FILTERS = ("all", "online", "offline")

Clock = Callable[[], float]

_STOP = object()


class AgentDirectory:
    """Single-owner roster: announce/heartbeat upserts, list/get, sweep."""

    def __init__(self, config: Optional[DirectoryConfig] = None, clock: Clock = time.time):
        self.config = config or directory_config
        self.clock = clock
        self.logger = logging.getLogger("flock.directory")
        self._agents: Dict[str, AgentRecord] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    # ── Actor plumbing ───────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="directory-roster")

    async def stop(self):
        if not self.running:
            return
        self._queue.put_nowait((_STOP, None))
        await self._task
        self._task = None

    async def _run(self):
        while True:
            command, future = await self._queue.get()
            if command is _STOP:
                return
            try:
                future.set_result(command())
            except Exception as e:
                future.set_exception(e)

    async def _call(self, command: Callable[[], Any]) -> Any:
        self.start()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((command, future))
        return await future

    # ── Commands (run inside the actor) ──────────────────────────────────

    def _upsert(self, agent_id: str, name: Optional[str], capabilities: Optional[List[str]],
                heartbeat_at: Optional[str]) -> Tuple[AgentRecord, bool]:
        now = self.clock()
        record = self._agents.get(agent_id)
        created = record is None
        if created:
            record = AgentRecord(
                agent_id=agent_id,
                display_name=name or agent_id,
                registered_at=now,
            )
            self._agents[agent_id] = record
        if name:
            record.display_name = name
        if capabilities is not None:
            record.capabilities = set(capabilities)
        if heartbeat_at is not None:
            record.last_heartbeat = heartbeat_at
        revived = record.status == AgentStatus.OFFLINE
        record.status = AgentStatus.ONLINE
        record.last_seen_at = now

        if created:
            self.logger.info(f"Agent registered: {agent_id}")
        elif revived:
            self.logger.info(f"Agent {agent_id} is back online")
        self._publish_gauges()
        return replace(record, capabilities=set(record.capabilities)), created

    def _sweep(self) -> List[str]:
        now = self.clock()
        threshold = self.config.staleness_threshold
        flipped = []
        for agent_id, record in self._agents.items():
            if record.status == AgentStatus.ONLINE and now - record.last_seen_at > threshold:
                record.status = AgentStatus.OFFLINE
                flipped.append(agent_id)
                self.logger.info(f"Agent {agent_id} marked offline (silent for {now - record.last_seen_at:.0f}s)")
        if flipped:
            self._publish_gauges()
        return flipped

    def _list(self, status: str) -> List[AgentRecord]:
        records = self._agents.values()
        if status != "all":
            records = [r for r in records if r.status.value == status]
        return [replace(r, capabilities=set(r.capabilities)) for r in records]

    def _get(self, agent_id: str) -> Optional[AgentRecord]:
        record = self._agents.get(agent_id)
        return replace(record, capabilities=set(record.capabilities)) if record else None

    def _publish_gauges(self):
        online = sum(1 for r in self._agents.values() if r.status == AgentStatus.ONLINE)
        metrics_manager.set_roster(online, len(self._agents) - online)

    # ── Public API ───────────────────────────────────────────────────────

    async def record_announce(self, announcement: Announcement) -> AgentRecord:
        """Upsert from ``agent.announce``; re-announcing never duplicates."""
        record, _ = await self._call(lambda: self._upsert(
            announcement.agent_id, announcement.name, announcement.capabilities, None
        ))
        return record

    async def record_heartbeat(self, agent_id: str, timestamp: Optional[str] = None) -> AgentRecord:
        """Refresh ``lastSeen`` and flip the agent online.

        Unknown ids get a bare record so a restarted directory relearns the
        roster from heartbeats alone.
        """
        record, _ = await self._call(lambda: self._upsert(agent_id, None, None, timestamp))
        return record

    async def sweep(self) -> List[str]:
        """Mark every agent silent past the staleness threshold offline."""
        return await self._call(self._sweep)

    async def list(self, status: str = "all") -> List[AgentRecord]:
        if status not in STATUS_FILTERS:
            raise MessageValidationError("directory.list", f"status must be one of {', '.join(STATUS_FILTERS)}")
        return await self._call(lambda: self._list(status))

    async def get(self, agent_id: str) -> Optional[AgentRecord]:
        return await self._call(lambda: self._get(agent_id))

    async def counts(self) -> Dict[str, int]:
        def count():
            online = sum(1 for r in self._agents.values() if r.status == AgentStatus.ONLINE)
            return {"total": len(self._agents), "online": online, "offline": len(self._agents) - online}
        return await self._call(count)
