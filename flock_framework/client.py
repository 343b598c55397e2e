"""
Coordination client used by agents and external callers.

Wraps the directory request/reply topics, the capability broker and
direct messaging. Lookups degrade softly: a directory that does not
answer yields an empty list or ``None``, never an exception.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .broker import CapabilityBroker
from .bus.base import MessageBus
from .directory.roster import DIRECTORY_GET_TOPIC, DIRECTORY_LIST_TOPIC, STATUS_FILTERS
from .exceptions import BusError, MessageValidationError
from .models import (
    BROADCAST_RECIPIENT,
    AgentRecord,
    CapabilityResponse,
    MessageEnvelope,
    MessageKind,
)


class CoordinationClient:
    """Talks to the directory, the broker and other agents over the bus."""

    def __init__(self, bus: MessageBus, client_id: str, request_timeout: float = 5.0):
        self.bus = bus
        self.client_id = client_id
        self.request_timeout = request_timeout
        self.broker = CapabilityBroker(bus, requester_id=client_id)
        self.logger = logging.getLogger(f"flock.client.{client_id}")

    # ── Directory ────────────────────────────────────────────────────────

    async def list_agents(self, status: str = "all") -> List[AgentRecord]:
        """List agents known to the directory, excluding this client."""
        if status not in STATUS_FILTERS:
            raise MessageValidationError("directory.list", f"status must be one of {', '.join(STATUS_FILTERS)}")
        try:
            reply = await self.bus.request(
                DIRECTORY_LIST_TOPIC,
                {"status": status, "requestFrom": self.client_id},
                self.request_timeout,
            )
        except BusError as e:
            self.logger.warning(f"Failed to list agents: {e}")
            return []

        if not isinstance(reply, list):
            self.logger.warning(f"Unexpected directory.list reply: {reply!r}")
            return []

        agents = []
        for raw in reply:
            try:
                record = AgentRecord.from_dict(raw)
            except MessageValidationError as e:
                self.logger.debug(f"Skipping malformed roster entry: {e}")
                continue
            if record.agent_id != self.client_id:
                agents.append(record)
        return agents

    async def get_agent_info(self, agent_id: str) -> Optional[AgentRecord]:
        try:
            reply = await self.bus.request(
                DIRECTORY_GET_TOPIC,
                {"agentId": agent_id, "requestFrom": self.client_id},
                self.request_timeout,
            )
        except BusError as e:
            self.logger.warning(f"Failed to get agent info for {agent_id}: {e}")
            return None
        if reply is None:
            return None
        try:
            return AgentRecord.from_dict(reply)
        except MessageValidationError as e:
            self.logger.warning(f"Malformed directory.get reply: {e}")
            return None

    # ── Capabilities ─────────────────────────────────────────────────────

    async def request_capability(
        self,
        capability: str,
        parameters: Optional[Dict[str, Any]] = None,
        timeout: float = 30.0,
    ) -> CapabilityResponse:
        return await self.broker.request(capability, parameters, timeout)

    # ── Direct messaging ─────────────────────────────────────────────────

    async def send_message(
        self,
        to: str,
        message: str,
        kind: MessageKind = MessageKind.TEXT,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MessageEnvelope:
        """Send to one agent, or to every agent when ``to`` is ``"all"``."""
        envelope = MessageEnvelope(
            sender=self.client_id,
            recipient=to,
            message=message,
            kind=kind,
            metadata={**(metadata or {}), "fromAgent": self.client_id},
        )
        await self.bus.publish(envelope.topic, envelope.to_dict())
        self.logger.info(f"Message sent to {to}: {message}")
        return envelope

    async def send_response(
        self, to: str, message: str, original_metadata: Optional[Dict[str, Any]] = None
    ) -> MessageEnvelope:
        metadata = {
            **(original_metadata or {}),
            "responseFrom": self.client_id,
            "responseTime": datetime.now(timezone.utc).isoformat(),
        }
        return await self.send_message(to, message, MessageKind.RESPONSE, metadata)

    async def broadcast_message(self, message: str, metadata: Optional[Dict[str, Any]] = None) -> MessageEnvelope:
        return await self.send_message(BROADCAST_RECIPIENT, message, MessageKind.TEXT, metadata)
