"""
Shared fixtures: in-memory brokers, short timing, agent factories.
"""

import asyncio
import logging

import pytest

from flock_framework.agents import AgentRuntime, RuntimeState
from flock_framework.bus import InMemoryBus, get_broker, reset_brokers
from flock_framework.config import AgentConfig, BusConfig, DirectoryConfig

BUS_URL = "memory://test"


# ══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ══════════════════════════════════════════════════════════════════════════════

def agent_settings(agent_id: str, **overrides) -> AgentConfig:
    values = {
        "agent_id": agent_id,
        "name": "",
        "capabilities": ["text-processing", "task-execution"],
        "task_types": [],
        "heartbeat_interval": 30.0,
    }
    values.update(overrides)
    return AgentConfig(**values)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll ``predicate`` (sync or async) until it is truthy or fail."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        value = predicate()
        if asyncio.iscoroutine(value):
            value = await value
        if value:
            return value
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def drain(sub, wait: float = 0.1):
    """Collect every message that arrives on ``sub`` within ``wait`` seconds."""
    messages = []
    loop = asyncio.get_running_loop()
    deadline = loop.time() + wait
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            return messages
        try:
            messages.append(await asyncio.wait_for(sub.next(), timeout=remaining))
        except asyncio.TimeoutError:
            return messages


# ══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ══════════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def fresh_brokers():
    """Every test gets its own in-memory brokers."""
    reset_brokers()
    yield
    reset_brokers()


@pytest.fixture(autouse=True)
def restore_flock_logger():
    """CLI tests install handlers on the ``flock`` logger; undo them."""
    root = logging.getLogger("flock")
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def broker():
    return get_broker("test")


@pytest.fixture
def bus_settings():
    return BusConfig(
        url=BUS_URL,
        max_reconnect_attempts=3,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        request_timeout=0.3,
    )


@pytest.fixture
def directory_settings():
    return DirectoryConfig(sweep_interval=0.05, heartbeat_interval=0.05, staleness_factor=3)


@pytest.fixture
async def make_bus():
    """Factory for connected in-memory buses; closed at teardown."""
    created = []

    async def factory(connect: bool = True) -> InMemoryBus:
        bus = InMemoryBus(BUS_URL)
        if connect:
            await bus.connect()
        created.append(bus)
        return bus

    yield factory
    for bus in created:
        await bus.close()


@pytest.fixture
async def spawn_agent(make_bus, bus_settings):
    """Factory for started agent runtimes; stopped at teardown."""
    runtimes = []

    async def factory(agent_id: str, start: bool = True, install_builtins: bool = True, **overrides) -> AgentRuntime:
        bus = await make_bus(connect=False)
        runtime = AgentRuntime(
            bus,
            config=agent_settings(agent_id, **overrides),
            bus_settings=bus_settings,
            drain_timeout=0.5,
            install_builtins=install_builtins,
        )
        runtimes.append(runtime)
        if start:
            await runtime.start()
        return runtime

    yield factory
    for runtime in runtimes:
        if runtime.state not in (RuntimeState.TERMINATED, RuntimeState.STARTING):
            await runtime.stop("test teardown")
