"""
Flock Coordination Framework - Coordinator MCP Server

Exposes the flock to MCP clients over stdio. The server hosts the
directory service and the capability broker in-process, so roster
queries are answered locally while messages, tasks and capability
requests go out on the bus.
"""

import asyncio
import json as _json
import logging
import sys
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Union

import anyio
import mcp.types as types
from mcp.server.lowlevel import Server

from .bus import MessageBus, Subscription, create_bus
from .client import CoordinationClient
from .config import BusConfig, DirectoryConfig, bus_config, directory_config
from .directory import STATUS_FILTERS, DirectoryService
from .exceptions import FlockError
from .models import BROADCAST_RECIPIENT, MessageKind, TaskPriority
from .tasks import TaskProducer

logger = logging.getLogger("flock.server")


# ══════════════════════════════════════════════════════════════════════════════
# COORDINATOR HUB
# ══════════════════════════════════════════════════════════════════════════════

class CoordinatorHub:
    """Bus connection, directory, broker and producer shared by all tools."""

    def __init__(
        self,
        bus: Optional[MessageBus] = None,
        client_id: str = "mcp-server",
        bus_settings: Optional[BusConfig] = None,
        directory_settings: Optional[DirectoryConfig] = None,
        inbox_size: int = 100,
    ):
        self.bus_settings = bus_settings or bus_config
        self.directory_settings = directory_settings or directory_config
        self.bus = bus or create_bus(self.bus_settings.url)
        self.client_id = client_id
        self.directory_service = DirectoryService(
            self.bus, config=self.directory_settings, bus_settings=self.bus_settings
        )
        self.client = CoordinationClient(self.bus, client_id, self.bus_settings.request_timeout)
        self.producer = TaskProducer(self.bus)
        self.inbox_size = inbox_size
        self.watched: Dict[str, Subscription] = {}
        self.inboxes: Dict[str, Deque[Dict[str, Any]]] = {}
        self._recorders: Dict[str, asyncio.Task] = {}
        self.started = False

    @property
    def directory(self):
        return self.directory_service.directory

    async def start(self):
        if self.started:
            return
        await self.directory_service.start()
        self.started = True
        logger.info(f"Coordinator hub started on {self.bus.url}")

    async def stop(self):
        for agent_id in list(self.watched):
            await self.unwatch(agent_id)
        await self.directory_service.stop()
        self.started = False
        logger.info("Coordinator hub stopped")

    async def watch(self, agent_id: str) -> bool:
        """Start recording messages sent to ``agent_id``. False if already watched."""
        if agent_id in self.watched:
            return False
        sub = await self.bus.subscribe(f"agent.{agent_id}.message")
        self.watched[agent_id] = sub
        self.inboxes[agent_id] = deque(maxlen=self.inbox_size)
        self._recorders[agent_id] = asyncio.create_task(self._record(agent_id, sub), name=f"watch:{agent_id}")
        return True

    async def unwatch(self, agent_id: str) -> bool:
        sub = self.watched.pop(agent_id, None)
        if sub is None:
            return False
        await sub.unsubscribe()
        recorder = self._recorders.pop(agent_id, None)
        if recorder is not None:
            await recorder
        return True

    async def _record(self, agent_id: str, sub: Subscription):
        async for message in sub:
            logger.info(f"Message for {agent_id}: {_json.dumps(message.data, default=str)}")
            self.inboxes[agent_id].append(message.data)


hub: Optional[CoordinatorHub] = None


def get_hub() -> CoordinatorHub:
    global hub
    if hub is None:
        hub = CoordinatorHub()
    return hub


def _text(text: str) -> List[types.TextContent]:
    return [types.TextContent(type="text", text=text)]


def _json_text(payload: Any) -> List[types.TextContent]:
    return _text(_json.dumps(payload, indent=2, default=str))


# ══════════════════════════════════════════════════════════════════════════════
# SERVER INSTANCE
# ══════════════════════════════════════════════════════════════════════════════

coordinator_server = Server("flock-coordinator")


# ══════════════════════════════════════════════════════════════════════════════
# TOOL REQUEST HANDLER
# ══════════════════════════════════════════════════════════════════════════════

@coordinator_server.call_tool()
async def handle_tool_request(
    name: str, arguments: Dict[str, Any]
) -> Sequence[Union[types.TextContent, types.ImageContent, types.EmbeddedResource]]:
    """
    Route MCP tool requests to the coordinator hub.

    Raises:
        ValueError: If the tool name is unknown or required arguments are missing.
    """
    arguments = arguments or {}
    current = get_hub()

    if name == "list_agents":
        status = arguments.get("status", "all")
        if status not in STATUS_FILTERS:
            raise ValueError(f"Invalid status '{status}'")
        records = await current.directory.list(status)
        return _json_text([r.to_dict() for r in records])

    elif name == "get_agent_info":
        if "agentId" not in arguments:
            raise ValueError("Missing required argument 'agentId'")
        record = await current.directory.get(arguments["agentId"])
        if record is None:
            return _text(f"Agent {arguments['agentId']} not found")
        return _json_text(record.to_dict())

    elif name == "send_message":
        for key in ("to", "message"):
            if key not in arguments:
                raise ValueError(f"Missing required argument '{key}'")
        kind = MessageKind(arguments.get("type", "text"))
        try:
            await current.client.send_message(
                arguments["to"], arguments["message"], kind, arguments.get("metadata") or {}
            )
        except FlockError as e:
            return _json_text({"error": e.to_dict()})
        return _text(f"Message sent successfully to {arguments['to']}")

    elif name == "request_capability":
        if "capability" not in arguments:
            raise ValueError("Missing required argument 'capability'")
        raw_timeout = arguments.get("timeout", 30000)
        try:
            if isinstance(raw_timeout, bool):
                raise TypeError(raw_timeout)
            timeout_ms = float(raw_timeout)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid timeout '{raw_timeout}': expected milliseconds")
        if timeout_ms <= 0:
            raise ValueError(f"Invalid timeout '{raw_timeout}': must be positive")
        response = await current.client.request_capability(
            arguments["capability"], arguments.get("parameters") or {}, timeout_ms / 1000
        )
        if not response.available:
            return _text(response.error or f"No agent available with capability: {arguments['capability']}")
        return _json_text(response.to_dict())

    elif name == "subscribe_to_agent":
        if "agentId" not in arguments:
            raise ValueError("Missing required argument 'agentId'")
        agent_id = arguments["agentId"]
        try:
            watched = await current.watch(agent_id)
        except FlockError as e:
            return _json_text({"error": e.to_dict()})
        if not watched:
            return _text(f"Already subscribed to agent {agent_id}")
        return _text(f"Successfully subscribed to messages from agent {agent_id}")

    elif name == "unsubscribe_from_agent":
        if "agentId" not in arguments:
            raise ValueError("Missing required argument 'agentId'")
        agent_id = arguments["agentId"]
        if not await current.unwatch(agent_id):
            return _text(f"Not subscribed to agent {agent_id}")
        return _text(f"Successfully unsubscribed from agent {agent_id}")

    elif name == "publish_task":
        for key in ("type", "data"):
            if key not in arguments:
                raise ValueError(f"Missing required argument '{key}'")
        try:
            task = await current.producer.submit(
                arguments["type"],
                arguments["data"],
                priority=TaskPriority(arguments.get("priority", "normal")),
                timeout_ms=arguments.get("timeout"),
                task_id=arguments.get("id"),
            )
        except FlockError as e:
            return _json_text({"error": e.to_dict()})
        return _json_text(task.to_dict())

    else:
        raise ValueError(f"Unknown tool: {name}")


# ══════════════════════════════════════════════════════════════════════════════
# TOOL DEFINITIONS
# ══════════════════════════════════════════════════════════════════════════════

@coordinator_server.list_tools()
async def list_available_tools() -> List[types.Tool]:
    """Register and list all available MCP tools."""
    return [
        types.Tool(
            name="send_message",
            description="Send a message to a specific agent or broadcast to all agents",
            inputSchema={
                "type": "object",
                "required": ["to", "message"],
                "properties": {
                    "to": {"type": "string", "description": f'Target agent ID (use "{BROADCAST_RECIPIENT}" for broadcast)'},
                    "message": {"type": "string", "description": "Message content to send"},
                    "type": {
                        "type": "string",
                        "enum": [k.value for k in MessageKind],
                        "default": "text",
                        "description": "Type of message",
                    },
                    "metadata": {"type": "object", "additionalProperties": True},
                },
            },
        ),
        types.Tool(
            name="list_agents",
            description="List agents known to the directory",
            inputSchema={
                "type": "object",
                "properties": {
                    "status": {"type": "string", "enum": list(STATUS_FILTERS), "default": "all"},
                },
            },
        ),
        types.Tool(
            name="get_agent_info",
            description="Get the directory entry for one agent",
            inputSchema={
                "type": "object",
                "required": ["agentId"],
                "properties": {"agentId": {"type": "string"}},
            },
        ),
        types.Tool(
            name="request_capability",
            description="Request a capability from whichever agent answers first",
            inputSchema={
                "type": "object",
                "required": ["capability"],
                "properties": {
                    "capability": {"type": "string", "description": "The capability being requested"},
                    "parameters": {"type": "object", "additionalProperties": True},
                    "timeout": {"type": "number", "description": "Timeout in milliseconds", "default": 30000},
                },
            },
        ),
        types.Tool(
            name="subscribe_to_agent",
            description="Record messages sent to a specific agent",
            inputSchema={
                "type": "object",
                "required": ["agentId"],
                "properties": {"agentId": {"type": "string", "description": "ID of the agent to subscribe to"}},
            },
        ),
        types.Tool(
            name="unsubscribe_from_agent",
            description="Stop recording messages sent to a specific agent",
            inputSchema={
                "type": "object",
                "required": ["agentId"],
                "properties": {"agentId": {"type": "string", "description": "ID of the agent to unsubscribe from"}},
            },
        ),
        types.Tool(
            name="publish_task",
            description="Publish a task to every agent subscribed to its type",
            inputSchema={
                "type": "object",
                "required": ["type", "data"],
                "properties": {
                    "type": {"type": "string", "description": "Task type, published on tasks.<type>"},
                    "data": {"description": "Task payload"},
                    "priority": {"type": "string", "enum": [p.value for p in TaskPriority], "default": "normal"},
                    "timeout": {"type": "integer", "description": "Per-task timeout in milliseconds"},
                    "id": {"type": "string", "description": "Explicit task id (generated when omitted)"},
                },
            },
        ),
    ]


# ══════════════════════════════════════════════════════════════════════════════
# SERVER STARTUP
# ══════════════════════════════════════════════════════════════════════════════

def start_stdio_server(bus_url: Optional[str] = None) -> int:
    """Run the coordinator over stdio until the client disconnects."""
    from mcp.server.stdio import stdio_server

    async def start_stdio_connection():
        global hub
        # stdout is reserved for the MCP protocol
        sys.stderr.write("Starting Flock Coordinator MCP Server (stdio)\n")
        sys.stderr.flush()

        hub = CoordinatorHub(bus=create_bus(bus_url) if bus_url else None)
        await hub.start()
        try:
            async with stdio_server() as streams:
                await coordinator_server.run(
                    streams[0], streams[1], coordinator_server.create_initialization_options()
                )
        finally:
            await hub.stop()

    try:
        anyio.run(start_stdio_connection)
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except Exception as e:
        logger.error(f"Server error: {e}")
        return 1
    return 0
