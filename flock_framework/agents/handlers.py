"""
Built-in handlers installed on every agent runtime.

Task handlers take a ``Task`` and return the result payload. Capability
handlers take a ``CapabilityRequest`` and return the result payload.
Message handlers take a ``MessageEnvelope`` and return nothing.
Raising from a handler marks the task (or capability reply) as failed.
"""

from typing import Any, Awaitable, Callable, Dict, TYPE_CHECKING

from ..models import CapabilityRequest, MessageEnvelope, Task

if TYPE_CHECKING:
    from .runtime import AgentRuntime

TaskHandler = Callable[[Task], Awaitable[Any]]
CapabilityHandler = Callable[[CapabilityRequest], Awaitable[Any]]
MessageHandler = Callable[[MessageEnvelope], Awaitable[None]]


async def echo_task(task: Task) -> Any:
    """Return the task payload unchanged."""
    return task.data


def default_task_handler(agent_id: str) -> TaskHandler:
    """Fallback for task types without a dedicated handler."""

    async def handle(task: Task) -> str:
        return f"Task {task.task_id} processed by {agent_id}"

    return handle


async def echo_capability(request: CapabilityRequest) -> Dict[str, Any]:
    return dict(request.parameters)


def status_capability(runtime: "AgentRuntime") -> CapabilityHandler:
    """Answer ``status`` capability requests with the runtime snapshot."""

    async def handle(request: CapabilityRequest) -> Dict[str, Any]:
        return runtime.get_status()

    return handle
