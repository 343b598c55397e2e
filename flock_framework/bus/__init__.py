"""
Message bus adapters.

``create_bus`` picks the transport from the URL scheme:
``memory://<name>`` for the in-process broker, ``redis://`` / ``rediss://``
for a Redis server.
"""

from ..exceptions import ConfigurationError
from .backoff import backoff_delay, connect_with_retry, reconnect_forever
from .base import BusMessage, MessageBus, Subscription, topic_matches
from .memory import InMemoryBroker, InMemoryBus, get_broker, reset_brokers
from .redis import RedisBus


def create_bus(url: str) -> MessageBus:
    scheme = url.split("://", 1)[0].lower() if "://" in url else ""
    if scheme == "memory":
        return InMemoryBus(url)
    if scheme in ("redis", "rediss"):
        return RedisBus(url)
    raise ConfigurationError(
        f"Unsupported bus URL '{url}'",
        context={"url": url},
        recovery_hint="Use memory://<name> or redis://host:port/db",
    )


__all__ = [
    "BusMessage",
    "MessageBus",
    "Subscription",
    "topic_matches",
    "InMemoryBroker",
    "InMemoryBus",
    "RedisBus",
    "get_broker",
    "reset_brokers",
    "backoff_delay",
    "connect_with_retry",
    "reconnect_forever",
    "create_bus",
]
