"""
Agent runtime and built-in handlers.
"""

from .handlers import (
    CapabilityHandler,
    MessageHandler,
    TaskHandler,
    default_task_handler,
    echo_capability,
    echo_task,
    status_capability,
)
from .runtime import AgentRuntime, RuntimeState

__all__ = [
    "AgentRuntime",
    "RuntimeState",
    "TaskHandler",
    "CapabilityHandler",
    "MessageHandler",
    "echo_task",
    "echo_capability",
    "default_task_handler",
    "status_capability",
]
