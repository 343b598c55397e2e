"""
Agent Runtime

One worker process in the flock. Lifecycle:

    starting -> connecting -> announced -> running -> stopping -> terminated

Each subscription (task topics, ``agent.<id>.events``, ``broadcast``,
``capability.request``, ``agent.<id>.message``, ``agent.broadcast``) is
consumed by its own asyncio task, so a slow handler on one topic never
blocks another. Heartbeats run on an independent timer.
"""

import asyncio
import json
import logging
import signal
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..broker import CAPABILITY_TOPIC
from ..bus.backoff import connect_with_retry
from ..bus.base import BusMessage, MessageBus, Subscription
from ..client import CoordinationClient
from ..config import AgentConfig, BusConfig, agent_config, bus_config
from ..exceptions import (
    BusConnectionError,
    BusError,
    MessageValidationError,
    ProcessingError,
    TaskTimeoutError,
    TaskValidationError,
)
from ..logs import log_action
from ..metrics import metrics_manager
from ..models import (
    AgentEvent,
    Announcement,
    BroadcastMessage,
    BroadcastType,
    CapabilityRequest,
    CapabilityResponse,
    EventType,
    Heartbeat,
    HeartbeatStatus,
    MessageEnvelope,
    MessageKind,
    ProcessingStats,
    Task,
    TaskResult,
    TaskStatus,
    format_uptime,
    utc_now_iso,
)
from .handlers import (
    CapabilityHandler,
    MessageHandler,
    TaskHandler,
    default_task_handler,
    echo_capability,
    echo_task,
    status_capability,
)

ANNOUNCE_TOPIC = "agent.announce"
RESULT_TOPIC = "task.result"
BROADCAST_TOPIC = "broadcast"
MESSAGE_BROADCAST_TOPIC = "agent.broadcast"


class RuntimeState(Enum):
    """Agent runtime lifecycle."""
    STARTING = "starting"
    CONNECTING = "connecting"
    ANNOUNCED = "announced"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class AgentRuntime:
    """Announces itself, executes tasks, answers capabilities, heartbeats.

    Handlers are plain coroutine functions registered per task type,
    capability name or message kind. Every runtime gets the built-in
    ``echo`` task and capability, a ``status`` capability and a default
    task handler unless ``install_builtins`` is False.
    """

    def __init__(
        self,
        bus: MessageBus,
        config: Optional[AgentConfig] = None,
        bus_settings: Optional[BusConfig] = None,
        drain_timeout: float = 5.0,
        install_builtins: bool = True,
    ):
        self.bus = bus
        self.config = config or agent_config
        self.bus_settings = bus_settings or bus_config
        self.agent_id = self.config.agent_id
        self.logger = logging.getLogger(f"flock.agent.{self.agent_id}")
        self.state = RuntimeState.STARTING
        self.stats = ProcessingStats()
        self.settings: Dict[str, Any] = {}
        self.heartbeat_interval = self.config.heartbeat_interval
        self.drain_timeout = drain_timeout
        self.fatal_error: Optional[Exception] = None
        self.client = CoordinationClient(bus, self.agent_id, self.bus_settings.request_timeout)

        self.task_handlers: Dict[str, TaskHandler] = {}
        self.default_task_handler: Optional[TaskHandler] = None
        self.capability_handlers: Dict[str, CapabilityHandler] = {}
        self.message_handlers: Dict[MessageKind, MessageHandler] = {}

        self._started_at: Optional[float] = None
        self._subscriptions: List[Subscription] = []
        self._loops: List[asyncio.Task] = []
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnector: Optional[asyncio.Task] = None
        self._stopper: Optional[asyncio.Task] = None
        self._terminated = asyncio.Event()

        if install_builtins:
            self.register_task_handler("echo", echo_task)
            self.default_task_handler = default_task_handler(self.agent_id)
            self.register_capability("echo", echo_capability)
            self.register_capability("status", status_capability(self))

        bus.on_disconnect(self._on_disconnect)

    # ── Registration ─────────────────────────────────────────────────────

    def register_task_handler(self, task_type: str, handler: TaskHandler):
        self.task_handlers[task_type] = handler

    def register_capability(self, name: str, handler: CapabilityHandler):
        self.capability_handlers[name] = handler

    def register_message_handler(self, kind: Union[MessageKind, str], handler: MessageHandler):
        self.message_handlers[MessageKind(kind)] = handler

    # ── Introspection ────────────────────────────────────────────────────

    @property
    def uptime_ms(self) -> float:
        if self._started_at is None:
            return 0.0
        return (time.monotonic() - self._started_at) * 1000

    @property
    def capabilities(self) -> List[str]:
        """Advertised capabilities: configured names plus answerable ones."""
        return sorted(set(self.config.capabilities) | set(self.capability_handlers))

    @property
    def task_topics(self) -> List[str]:
        if not self.config.task_types:
            return ["tasks.*"]
        return [f"tasks.{task_type}" for task_type in self.config.task_types]

    @property
    def is_running(self) -> bool:
        return self.state == RuntimeState.RUNNING

    def get_status(self) -> Dict[str, Any]:
        """Status snapshot answered to ``status_request`` events."""
        uptime = self.uptime_ms
        return {
            "agentId": self.agent_id,
            "name": self.config.display_name,
            "state": self.state.value,
            "uptime": format_uptime(uptime),
            "uptimeMs": int(uptime),
            "stats": {**self.stats.to_dict(), "uptime": int(uptime)},
            "capabilities": self.capabilities,
            "taskTopics": self.task_topics,
            "heartbeatInterval": self.heartbeat_interval,
            "settings": dict(self.settings),
            "timestamp": utc_now_iso(),
        }

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self):
        """Connect, subscribe, announce and start heartbeating.

        Raises:
            BusConnectionError: The bus stayed unreachable for every attempt.
        """
        if self.state != RuntimeState.STARTING:
            raise RuntimeError(f"Agent {self.agent_id} already started (state: {self.state.value})")

        self._started_at = time.monotonic()
        self.state = RuntimeState.CONNECTING
        self.logger.info(f"Agent {self.agent_id} connecting to {self.bus.url}")
        try:
            await connect_with_retry(self.bus, self.bus_settings, component=f"agent.{self.agent_id}")
        except BusConnectionError as e:
            self.fatal_error = e
            self.state = RuntimeState.TERMINATED
            self._terminated.set()
            self.logger.critical(f"Agent {self.agent_id} could not reach the bus: {e}")
            raise

        for topic, handler in self._routes():
            sub = await self.bus.subscribe(topic)
            self._subscriptions.append(sub)
            self._loops.append(asyncio.create_task(self._consume(sub, handler), name=f"{self.agent_id}:{topic}"))
            self.logger.debug(f"Subscribed to {topic}")

        await self.announce()
        self.state = RuntimeState.ANNOUNCED

        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name=f"{self.agent_id}:heartbeat")
        self.state = RuntimeState.RUNNING
        self.logger.info(f"Agent {self.agent_id} is running and ready to process tasks")
        log_action("agent_started", agent_id=self.agent_id, capabilities=self.capabilities,
                   task_topics=self.task_topics)

    async def run(self) -> int:
        """Start, then block until stopped. Returns a process exit code."""
        try:
            await self.start()
        except BusConnectionError:
            return 1
        self._install_signal_handlers()
        await self._terminated.wait()
        return 1 if self.fatal_error else 0

    def request_stop(self, reason: str = "requested"):
        """Schedule ``stop`` from inside a handler or signal callback."""
        if self._stopper is not None or self.state in (RuntimeState.STOPPING, RuntimeState.TERMINATED):
            return
        self._stopper = asyncio.create_task(self.stop(reason), name=f"{self.agent_id}:stop")

    async def wait_stopped(self):
        await self._terminated.wait()

    async def stop(self, reason: str = "requested"):
        """Final heartbeat, stop the timer, drain subscriptions, close the bus."""
        if self.state == RuntimeState.TERMINATED:
            return
        if self.state == RuntimeState.STOPPING:
            await self._terminated.wait()
            return

        self.state = RuntimeState.STOPPING
        self.logger.info(f"Agent {self.agent_id} shutting down ({reason})")

        # No alive heartbeat may follow the stopping one
        await self._cancel(self._heartbeat_task)
        self._heartbeat_task = None

        if self.bus.is_connected:
            try:
                await self.send_heartbeat(HeartbeatStatus.STOPPING)
            except BusError as e:
                self.logger.warning(f"Error sending shutdown heartbeat: {e}")

        for sub in self._subscriptions:
            await sub.unsubscribe()
        current = asyncio.current_task()
        loops = [t for t in self._loops if t is not current]
        if loops:
            _, pending = await asyncio.wait(loops, timeout=self.drain_timeout)
            for task in pending:
                self.logger.warning(f"Cancelling {task.get_name()} after drain timeout")
                await self._cancel(task)

        if self._reconnector is not current:
            await self._cancel(self._reconnector)

        await self.bus.close()
        self.state = RuntimeState.TERMINATED
        self._terminated.set()
        log_action("agent_stopped", agent_id=self.agent_id, reason=reason, **self.stats.to_dict())

    # ── Bus plumbing ─────────────────────────────────────────────────────

    def _routes(self):
        routes = [(topic, self._on_task) for topic in self.task_topics]
        routes += [
            (f"agent.{self.agent_id}.events", self._on_event),
            (BROADCAST_TOPIC, self._on_broadcast),
            (CAPABILITY_TOPIC, self._on_capability_request),
            (f"agent.{self.agent_id}.message", self._on_message),
            (MESSAGE_BROADCAST_TOPIC, self._on_message),
        ]
        return routes

    async def _consume(self, sub: Subscription, handler):
        async for message in sub:
            try:
                await handler(message)
            except BusError as e:
                self.logger.warning(f"Bus error while handling {message.topic}: {e}")
            except Exception as e:
                self.logger.error(f"Handler for {message.topic} failed: {e}", exc_info=True)

    async def announce(self) -> Announcement:
        announcement = Announcement(
            agent_id=self.agent_id,
            name=self.config.display_name,
            capabilities=self.capabilities,
        )
        await self.bus.publish(ANNOUNCE_TOPIC, announcement.to_dict())
        self.logger.info(f"Announced {self.agent_id} with capabilities {announcement.capabilities}")
        return announcement

    async def send_heartbeat(self, status: HeartbeatStatus = HeartbeatStatus.ALIVE) -> Heartbeat:
        heartbeat = Heartbeat(
            agent_id=self.agent_id,
            status=status,
            uptime_ms=int(self.uptime_ms),
            tasks_processed=self.stats.tasks_processed,
        )
        await self.bus.publish(heartbeat.topic, heartbeat.to_dict())
        metrics_manager.record_heartbeat(self.agent_id, status.value)
        return heartbeat

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.send_heartbeat(HeartbeatStatus.ALIVE)
            except BusError as e:
                self.logger.warning(f"Error sending heartbeat: {e}")

    async def _on_disconnect(self, exc: Exception):
        if self.state in (RuntimeState.STOPPING, RuntimeState.TERMINATED):
            return
        if self._reconnector is None or self._reconnector.done():
            self._reconnector = asyncio.create_task(self._reconnect(), name=f"{self.agent_id}:reconnect")

    async def _reconnect(self):
        try:
            await connect_with_retry(self.bus, self.bus_settings, component=f"agent.{self.agent_id}")
        except BusConnectionError as e:
            self.fatal_error = e
            self.logger.critical(f"Agent {self.agent_id} lost the bus for good: {e}")
            self.request_stop("bus unreachable")
            return
        await self.announce()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
            except (NotImplementedError, RuntimeError):
                self.logger.debug(f"Signal handlers unavailable for {sig.name}")

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]):
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ── Tasks ────────────────────────────────────────────────────────────

    async def _on_task(self, message: BusMessage):
        await self.process_task(message.data)

    async def process_task(self, raw: Any) -> Optional[TaskResult]:
        """Validate, execute and publish the result of one task.

        Returns the published result, or None when the task was dropped as
        invalid or no handler accepts its type.
        """
        try:
            task = Task.from_dict(raw)
        except TaskValidationError as e:
            self.logger.warning(f"Dropping invalid task: {e}")
            metrics_manager.record_dropped_message("task")
            return None

        handler = self.task_handlers.get(task.task_type, self.default_task_handler)
        if handler is None:
            self.logger.debug(f"No handler for task type {task.task_type}; ignoring {task.task_id}")
            return None

        self.logger.info(f"Processing task {task.task_id} ({task.task_type})")
        started = time.perf_counter()
        error: Optional[str] = None
        try:
            if task.timeout_ms:
                payload = await asyncio.wait_for(handler(task), timeout=task.timeout_ms / 1000)
            else:
                payload = await handler(task)
            status = TaskStatus.COMPLETED
        except asyncio.TimeoutError:
            failure = TaskTimeoutError(task.task_id, task.timeout_ms)
            payload, status, error = None, TaskStatus.FAILED, str(failure)
        except ProcessingError as e:
            payload, status, error = None, TaskStatus.FAILED, str(e)
        except Exception as e:
            failure = ProcessingError(task.task_id, f"{type(e).__name__}: {e}", cause=e)
            payload, status, error = None, TaskStatus.FAILED, str(failure)

        elapsed_ms = (time.perf_counter() - started) * 1000
        succeeded = status == TaskStatus.COMPLETED
        self.stats.record(elapsed_ms, succeeded)
        metrics_manager.record_task(self.agent_id, task.task_type, elapsed_ms / 1000, succeeded)

        result = TaskResult(
            agent_id=self.agent_id,
            task_id=task.task_id,
            status=status,
            result=payload,
            processing_time_ms=elapsed_ms,
            error=error,
        )
        await self.bus.publish(RESULT_TOPIC, result.to_dict())
        if succeeded:
            self.logger.info(f"Task {task.task_id} completed in {elapsed_ms:.1f}ms")
        else:
            self.logger.warning(f"Task {task.task_id} failed in {elapsed_ms:.1f}ms: {error}")
        return result

    # ── Events & broadcasts ──────────────────────────────────────────────

    async def _on_event(self, message: BusMessage):
        try:
            event = AgentEvent.from_dict(message.data)
        except MessageValidationError as e:
            self.logger.warning(f"Error processing agent event: {e}")
            metrics_manager.record_dropped_message("event")
            return

        self.logger.info(f"Received agent event: {event.raw_type}")
        if event.event_type == EventType.CONFIG_UPDATE:
            self.apply_config_update(event.data)
        elif event.event_type == EventType.STATUS_REQUEST:
            status = self.get_status()
            self.logger.info(f"Agent status: {json.dumps(status, default=str)}")
            await message.respond(status)
        elif event.event_type == EventType.RESTART:
            self.logger.info("Received restart command")
            self.request_stop("restart")
        else:
            self.logger.info(f"Unhandled event type: {event.raw_type}")

    def apply_config_update(self, data: Any):
        """Merge a ``config_update`` payload into the runtime settings.

        ``heartbeatInterval`` (milliseconds) takes effect on the next tick.
        """
        if not isinstance(data, dict):
            self.logger.warning(f"Ignoring config update with non-object data: {data!r}")
            return
        self.settings.update(data)
        interval = data.get("heartbeatInterval")
        if isinstance(interval, (int, float)) and not isinstance(interval, bool) and interval > 0:
            self.heartbeat_interval = interval / 1000
            self.logger.info(f"Heartbeat interval set to {self.heartbeat_interval}s")
        self.logger.info(f"Received configuration update: {sorted(data)}")

    async def _on_broadcast(self, message: BusMessage):
        try:
            broadcast = BroadcastMessage.from_dict(message.data)
        except MessageValidationError as e:
            self.logger.warning(f"Error processing broadcast: {e}")
            metrics_manager.record_dropped_message("broadcast")
            return

        if broadcast.broadcast_type == BroadcastType.SHUTDOWN:
            self.logger.info("Received shutdown broadcast")
            self.request_stop("shutdown broadcast")
        elif broadcast.broadcast_type == BroadcastType.ANNOUNCEMENT:
            self.logger.info(f"System announcement: {broadcast.message}")
        else:
            self.logger.info(f"Broadcast ({broadcast.broadcast_type.value}): {broadcast.message}")

    # ── Capabilities ─────────────────────────────────────────────────────

    async def _on_capability_request(self, message: BusMessage):
        try:
            request = CapabilityRequest.from_dict(message.data)
        except MessageValidationError as e:
            self.logger.warning(f"Error processing capability request: {e}")
            metrics_manager.record_dropped_message("capability")
            return

        handler = self.capability_handlers.get(request.capability)
        if handler is None:
            # Stay silent so an agent that has it can answer first
            return

        try:
            result = await asyncio.wait_for(handler(request), timeout=request.timeout_ms / 1000)
            response = CapabilityResponse(
                request_id=request.request_id,
                capability=request.capability,
                available=True,
                agent_id=self.agent_id,
                result=result,
            )
        except asyncio.TimeoutError:
            response = CapabilityResponse(
                request_id=request.request_id,
                capability=request.capability,
                available=True,
                agent_id=self.agent_id,
                error=f"Capability {request.capability} timed out after {request.timeout_ms}ms",
            )
        except Exception as e:
            response = CapabilityResponse(
                request_id=request.request_id,
                capability=request.capability,
                available=True,
                agent_id=self.agent_id,
                error=str(e),
            )

        if await message.respond(response.to_dict()):
            self.logger.info(f"Answered capability {request.capability} for {request.requester_id}")
        else:
            self.logger.debug(f"Capability request {request.request_id} carried no reply inbox")

    # ── Direct messages ──────────────────────────────────────────────────

    async def _on_message(self, message: BusMessage):
        try:
            envelope = MessageEnvelope.from_dict(message.data)
        except MessageValidationError as e:
            self.logger.warning(f"Error processing message: {e}")
            metrics_manager.record_dropped_message("envelope")
            return

        if envelope.sender == self.agent_id:
            return

        self.logger.info(f"Received message from {envelope.sender}: {envelope.message}")
        handler = self.message_handlers.get(envelope.kind)
        if handler is not None:
            try:
                await handler(envelope)
            except Exception as e:
                self.logger.error(f"Error in message handler: {e}")

        if envelope.recipient == self.agent_id and envelope.kind == MessageKind.QUERY:
            await self.client.send_response(
                envelope.sender, f"Received your message: {envelope.message}", envelope.metadata
            )
