"""
Reconnect policy: exponential backoff with a bounded number of attempts.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..config import BusConfig, bus_config
from ..exceptions import BusConnectionError
from ..metrics import metrics_manager
from .base import MessageBus

logger = logging.getLogger("flock.message_bus.backoff")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay before retry ``attempt`` (0-based): ``min(base * 2**attempt, cap)``."""
    if attempt < 0:
        attempt = 0
    return min(base * (2 ** attempt), cap)


async def connect_with_retry(
    bus: MessageBus,
    config: Optional[BusConfig] = None,
    component: str = "agent",
    sleep: Sleep = asyncio.sleep,
) -> int:
    """Connect ``bus``, retrying with backoff.

    Returns the number of failed attempts before success. Raises
    ``BusConnectionError`` once ``max_reconnect_attempts`` is exhausted.
    """
    config = config or bus_config
    last_error: Optional[Exception] = None

    for attempt in range(config.max_reconnect_attempts):
        try:
            await bus.connect()
            if attempt:
                logger.info(f"[{component}] Connected to {bus.url} after {attempt} failed attempt(s)")
            return attempt
        except BusConnectionError as e:
            last_error = e
            metrics_manager.record_reconnect_attempt(component)
            delay = backoff_delay(attempt, config.reconnect_base_delay, config.reconnect_max_delay)
            logger.warning(
                f"[{component}] Connection attempt {attempt + 1}/{config.max_reconnect_attempts} "
                f"failed: {e}; retrying in {delay:.1f}s"
            )
            if attempt + 1 < config.max_reconnect_attempts:
                await sleep(delay)

    raise BusConnectionError(
        bus.url,
        reason=f"gave up after {config.max_reconnect_attempts} attempts",
        attempts=config.max_reconnect_attempts,
        retryable=False,
        cause=last_error,
    )


async def reconnect_forever(
    bus: MessageBus,
    config: Optional[BusConfig] = None,
    component: str = "directory",
    sleep: Sleep = asyncio.sleep,
    on_connected: Optional[Callable[[], Awaitable[None]]] = None,
):
    """Keep retrying in rounds of bounded attempts until the bus is back.

    Used by long-lived hosts that degrade instead of exiting.
    """
    config = config or bus_config
    rounds = 0
    while not bus.is_connected:
        try:
            await connect_with_retry(bus, config, component, sleep)
        except BusConnectionError as e:
            rounds += 1
            logger.error(f"[{component}] Still degraded after {rounds} reconnect round(s): {e}")
            await sleep(config.reconnect_max_delay)
            continue
        if on_connected is not None:
            await on_connected()
