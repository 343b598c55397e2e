"""
Wire data model for the coordination layer.

Every message crossing the bus is a JSON object with camelCase keys and
ISO-8601 UTC timestamps. Each dataclass here owns its ``to_dict`` /
``from_dict`` pair; ``from_dict`` validates inbound payloads and raises a
``ValidationError`` subclass on malformed input.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .exceptions import MessageValidationError, TaskValidationError


# ══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ══════════════════════════════════════════════════════════════════════════════

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def iso_from_epoch(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def new_task_id(prefix: str = "task") -> str:
    """Generate a unique id of the form ``<prefix>-<epoch ms>-<random>``."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def format_uptime(uptime_ms: float) -> str:
    """Format uptime in human readable form (``2d 3h 4m``, ``5m 6s``)."""
    seconds = int(uptime_ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        return f"{days}d {hours % 24}h {minutes % 60}m"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


def _require_dict(raw: Any, kind: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise MessageValidationError(kind, f"expected a JSON object, got {type(raw).__name__}")
    return raw


def _number(raw: Dict[str, Any], key: str, kind: str, default, cast=int, positive: bool = False):
    """Read a numeric wire field; junk raises ``MessageValidationError``."""
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise MessageValidationError(kind, f"{key} must be a number, got {value!r}")
    try:
        number = cast(value)
    except (TypeError, ValueError, OverflowError):
        raise MessageValidationError(kind, f"{key} must be a number, got {value!r}")
    if positive and number <= 0:
        raise MessageValidationError(kind, f"{key} must be positive, got {value!r}")
    return number


# ══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ══════════════════════════════════════════════════════════════════════════════

class AgentStatus(Enum):
    """Roster status of an agent."""
    ONLINE = "online"
    OFFLINE = "offline"


class HeartbeatStatus(Enum):
    """Liveness status reported by an agent."""
    ALIVE = "alive"
    STOPPING = "stopping"
    RESTARTING = "restarting"


class TaskStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class MessageKind(Enum):
    """Kinds of direct agent messages."""
    TEXT = "text"
    COMMAND = "command"
    QUERY = "query"
    RESPONSE = "response"


class EventType(Enum):
    """Agent-specific control events."""
    CONFIG_UPDATE = "config_update"
    STATUS_REQUEST = "status_request"
    RESTART = "restart"
    CUSTOM = "custom"


class BroadcastType(Enum):
    """Fleet-wide broadcast message types."""
    SHUTDOWN = "shutdown"
    ANNOUNCEMENT = "announcement"
    CONFIG = "config"
    CUSTOM = "custom"


# ══════════════════════════════════════════════════════════════════════════════
# AGENT RECORD
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class AgentRecord:
    """Directory entry for one agent. Never deleted, only status-flipped."""
    agent_id: str
    display_name: str
    capabilities: Set[str] = field(default_factory=set)
    status: AgentStatus = AgentStatus.ONLINE
    last_seen_at: float = 0.0
    registered_at: float = 0.0
    last_heartbeat: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.agent_id,
            "name": self.display_name,
            "status": self.status.value,
            "capabilities": sorted(self.capabilities),
            "lastSeen": iso_from_epoch(self.last_seen_at),
            "registeredAt": iso_from_epoch(self.registered_at),
            "lastHeartbeat": self.last_heartbeat,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AgentRecord":
        raw = _require_dict(raw, "agent")
        if _is_empty(raw.get("id")):
            raise MessageValidationError("agent", "missing id")
        try:
            status = AgentStatus(raw.get("status", "online"))
        except ValueError:
            raise MessageValidationError("agent", f"unknown status {raw.get('status')!r}")
        return cls(
            agent_id=raw["id"],
            display_name=raw.get("name") or raw["id"],
            capabilities=set(raw.get("capabilities") or []),
            status=status,
            last_seen_at=_epoch_from_iso(raw.get("lastSeen")),
            registered_at=_epoch_from_iso(raw.get("registeredAt")),
            last_heartbeat=raw.get("lastHeartbeat"),
        )


def _epoch_from_iso(value: Optional[str]) -> float:
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(value).timestamp()
    except (TypeError, ValueError):
        return 0.0


@dataclass
class Announcement:
    """Payload of ``agent.announce``."""
    agent_id: str
    name: str
    capabilities: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.agent_id,
            "name": self.name,
            "capabilities": list(self.capabilities),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "Announcement":
        raw = _require_dict(raw, "announce")
        agent_id = raw.get("id")
        if not isinstance(agent_id, str) or not agent_id:
            raise MessageValidationError("announce", "missing id")
        capabilities = raw.get("capabilities") or []
        if not isinstance(capabilities, list):
            raise MessageValidationError("announce", "capabilities must be a list")
        return cls(
            agent_id=agent_id,
            name=raw.get("name") or f"agent-{agent_id}",
            capabilities=[str(c) for c in capabilities],
            timestamp=raw.get("timestamp") or utc_now_iso(),
        )


# ══════════════════════════════════════════════════════════════════════════════
# TASKS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Task:
    """A unit of work published to ``tasks.<type>``. Immutable once published."""
    task_id: str
    task_type: str
    data: Any
    priority: TaskPriority = TaskPriority.NORMAL
    created_at: str = field(default_factory=utc_now_iso)
    timeout_ms: Optional[int] = None

    @property
    def topic(self) -> str:
        return f"tasks.{self.task_type}"

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "id": self.task_id,
            "type": self.task_type,
            "data": self.data,
            "priority": self.priority.value,
            "timestamp": self.created_at,
        }
        if self.timeout_ms is not None:
            payload["timeout"] = self.timeout_ms
        return payload

    @classmethod
    def from_dict(cls, raw: Any) -> "Task":
        """Validate an inbound task message.

        A task must carry a non-empty string ``id`` and ``type`` and a
        non-empty ``data`` payload.
        """
        if not isinstance(raw, dict):
            raise TaskValidationError("task", f"expected a JSON object, got {type(raw).__name__}")
        for key in ("id", "type"):
            value = raw.get(key)
            if not isinstance(value, str) or not value.strip():
                raise TaskValidationError(key, "must be a non-empty string")
        if _is_empty(raw.get("data")):
            raise TaskValidationError("data", "must be present and non-empty")

        try:
            priority = TaskPriority(raw.get("priority") or "normal")
        except ValueError:
            raise TaskValidationError("priority", "must be one of low, normal, high")

        timeout = raw.get("timeout")
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
                raise TaskValidationError("timeout", "must be a positive number of milliseconds")
            timeout = int(timeout)

        return cls(
            task_id=raw["id"],
            task_type=raw["type"],
            data=raw["data"],
            priority=priority,
            created_at=raw.get("timestamp") or utc_now_iso(),
            timeout_ms=timeout,
        )


@dataclass(frozen=True)
class TaskResult:
    """Outcome of one agent processing one task."""
    agent_id: str
    task_id: str
    status: TaskStatus
    result: Any
    processing_time_ms: float
    completed_at: str = field(default_factory=utc_now_iso)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "agentId": self.agent_id,
            "taskId": self.task_id,
            "status": self.status.value,
            "result": self.result,
            "processingTime": round(self.processing_time_ms, 3),
            "timestamp": self.completed_at,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, raw: Any) -> "TaskResult":
        raw = _require_dict(raw, "task result")
        for key in ("agentId", "taskId"):
            if _is_empty(raw.get(key)):
                raise MessageValidationError("task result", f"missing {key}")
        try:
            status = TaskStatus(raw.get("status"))
        except ValueError:
            raise MessageValidationError("task result", f"unknown status {raw.get('status')!r}")
        return cls(
            agent_id=raw["agentId"],
            task_id=raw["taskId"],
            status=status,
            result=raw.get("result"),
            processing_time_ms=_number(raw, "processingTime", "task result", 0.0, cast=float),
            completed_at=raw.get("timestamp") or utc_now_iso(),
            error=raw.get("error"),
        )


# ══════════════════════════════════════════════════════════════════════════════
# HEARTBEATS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Heartbeat:
    """Periodic liveness signal. Last value wins."""
    agent_id: str
    status: HeartbeatStatus
    uptime_ms: int
    tasks_processed: int
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def topic(self) -> str:
        return f"agent.{self.agent_id}.heartbeat"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "uptime": self.uptime_ms,
            "tasksProcessed": self.tasks_processed,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "Heartbeat":
        raw = _require_dict(raw, "heartbeat")
        if _is_empty(raw.get("agentId")):
            raise MessageValidationError("heartbeat", "missing agentId")
        try:
            status = HeartbeatStatus(raw.get("status", "alive"))
        except ValueError:
            raise MessageValidationError("heartbeat", f"unknown status {raw.get('status')!r}")
        return cls(
            agent_id=raw["agentId"],
            status=status,
            uptime_ms=_number(raw, "uptime", "heartbeat", 0),
            tasks_processed=_number(raw, "tasksProcessed", "heartbeat", 0),
            timestamp=raw.get("timestamp") or utc_now_iso(),
        )


# ══════════════════════════════════════════════════════════════════════════════
# EVENTS & BROADCASTS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AgentEvent:
    """Control event addressed to one agent on ``agent.<id>.events``."""
    event_type: EventType
    data: Any = None
    timestamp: str = field(default_factory=utc_now_iso)
    source: Optional[str] = None
    raw_type: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.raw_type or self.event_type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "AgentEvent":
        raw = _require_dict(raw, "event")
        raw_type = raw.get("type")
        if not isinstance(raw_type, str) or not raw_type:
            raise MessageValidationError("event", "missing type")
        try:
            event_type = EventType(raw_type)
        except ValueError:
            event_type = EventType.CUSTOM
        return cls(
            event_type=event_type,
            data=raw.get("data"),
            timestamp=raw.get("timestamp") or utc_now_iso(),
            source=raw.get("source"),
            raw_type=raw_type,
        )


@dataclass(frozen=True)
class BroadcastMessage:
    """Fleet-wide message on ``broadcast``."""
    broadcast_type: BroadcastType
    message: str = ""
    timestamp: str = field(default_factory=utc_now_iso)
    source: Optional[str] = None
    priority: TaskPriority = TaskPriority.NORMAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.broadcast_type.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "source": self.source,
            "priority": self.priority.value,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "BroadcastMessage":
        raw = _require_dict(raw, "broadcast")
        raw_type = raw.get("type")
        if not isinstance(raw_type, str) or not raw_type:
            raise MessageValidationError("broadcast", "missing type")
        try:
            broadcast_type = BroadcastType(raw_type)
        except ValueError:
            broadcast_type = BroadcastType.CUSTOM
        try:
            priority = TaskPriority(raw.get("priority") or "normal")
        except ValueError:
            priority = TaskPriority.NORMAL
        return cls(
            broadcast_type=broadcast_type,
            message=str(raw.get("message") or ""),
            timestamp=raw.get("timestamp") or utc_now_iso(),
            source=raw.get("source"),
            priority=priority,
        )


# ══════════════════════════════════════════════════════════════════════════════
# CAPABILITIES
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CapabilityRequest:
    """Ad-hoc request routed to whichever agent answers first."""
    capability: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    requester_id: str = "broker"
    timeout_ms: int = 30000
    request_id: str = field(default_factory=lambda: new_task_id("req"))
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "capability": self.capability,
            "parameters": self.parameters,
            "from": self.requester_id,
            "timeout": self.timeout_ms,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "CapabilityRequest":
        raw = _require_dict(raw, "capability request")
        capability = raw.get("capability")
        if not isinstance(capability, str) or not capability:
            raise MessageValidationError("capability request", "missing capability")
        parameters = raw.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise MessageValidationError("capability request", "parameters must be an object")
        return cls(
            capability=capability,
            parameters=parameters,
            requester_id=raw.get("from") or "unknown",
            timeout_ms=_number(raw, "timeout", "capability request", 30000, positive=True),
            request_id=raw.get("requestId") or new_task_id("req"),
            timestamp=raw.get("timestamp") or utc_now_iso(),
        )


@dataclass(frozen=True)
class CapabilityResponse:
    """Reply to a capability request. ``available`` is False on timeout."""
    request_id: str
    capability: str
    available: bool
    agent_id: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    @classmethod
    def unavailable(cls, request: CapabilityRequest) -> "CapabilityResponse":
        return cls(
            request_id=request.request_id,
            capability=request.capability,
            available=False,
            error=f"No agent available with capability: {request.capability}",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "capability": self.capability,
            "available": self.available,
            "agentId": self.agent_id,
            "result": self.result,
            "error": self.error,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "CapabilityResponse":
        raw = _require_dict(raw, "capability response")
        return cls(
            request_id=raw.get("requestId") or "",
            capability=raw.get("capability") or "",
            available=bool(raw.get("available", True)),
            agent_id=raw.get("agentId"),
            result=raw.get("result"),
            error=raw.get("error"),
            timestamp=raw.get("timestamp") or utc_now_iso(),
        )


# ══════════════════════════════════════════════════════════════════════════════
# DIRECT MESSAGING
# ══════════════════════════════════════════════════════════════════════════════

BROADCAST_RECIPIENT = "all"


@dataclass(frozen=True)
class MessageEnvelope:
    """Point-to-point or broadcast wrapper for direct agent messaging."""
    sender: str
    recipient: str
    message: str
    kind: MessageKind = MessageKind.TEXT
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def topic(self) -> str:
        if self.recipient == BROADCAST_RECIPIENT:
            return "agent.broadcast"
        return f"agent.{self.recipient}.message"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.sender,
            "to": self.recipient,
            "message": self.message,
            "type": self.kind.value,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "MessageEnvelope":
        raw = _require_dict(raw, "envelope")
        for key in ("from", "to"):
            if _is_empty(raw.get(key)):
                raise MessageValidationError("envelope", f"missing {key}")
        try:
            kind = MessageKind(raw.get("type") or "text")
        except ValueError:
            raise MessageValidationError("envelope", f"unknown type {raw.get('type')!r}")
        metadata = raw.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise MessageValidationError("envelope", "metadata must be an object")
        return cls(
            sender=raw["from"],
            recipient=raw["to"],
            message=str(raw.get("message") or ""),
            kind=kind,
            metadata=metadata,
            timestamp=raw.get("timestamp") or utc_now_iso(),
        )


# ══════════════════════════════════════════════════════════════════════════════
# RUNTIME STATS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class ProcessingStats:
    """Local task counters of one agent runtime."""
    tasks_processed: int = 0
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    average_processing_time: float = 0.0

    def record(self, processing_time_ms: float, success: bool):
        self.tasks_processed += 1
        if success:
            self.tasks_succeeded += 1
        else:
            self.tasks_failed += 1
        # Rolling mean over every processed task
        n = self.tasks_processed
        self.average_processing_time += (processing_time_ms - self.average_processing_time) / n

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasksProcessed": self.tasks_processed,
            "tasksSucceeded": self.tasks_succeeded,
            "tasksFailed": self.tasks_failed,
            "averageProcessingTime": round(self.average_processing_time, 3),
        }
