"""
Reconnect policy tests.
"""

import pytest

from flock_framework.bus import backoff_delay, connect_with_retry, reconnect_forever
from flock_framework.exceptions import BusConnectionError
from flock_framework.metrics import REGISTRY


def _reconnects(component: str) -> float:
    return REGISTRY.get_sample_value(
        "flock_bus_reconnect_attempts_total", {"component": component}
    ) or 0.0


class RecordingSleep:
    """Stands in for ``asyncio.sleep``; optionally restores the broker after N sleeps."""

    def __init__(self, broker=None, restore_after=None):
        self.delays = []
        self.broker = broker
        self.restore_after = restore_after

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.broker is not None and len(self.delays) == self.restore_after:
            self.broker.restore()


class TestBackoffDelay:

    @pytest.mark.parametrize("attempt,expected", [
        (0, 1.0),
        (1, 2.0),
        (2, 4.0),
        (4, 16.0),
        (5, 30.0),
        (12, 30.0),
        (-3, 1.0),
    ])
    def test_exponential_with_cap(self, attempt, expected):
        assert backoff_delay(attempt) == expected

    def test_custom_base_and_cap(self):
        assert backoff_delay(3, base=0.5, cap=2.0) == 2.0
        assert backoff_delay(1, base=0.5, cap=2.0) == 1.0


class TestConnectWithRetry:

    @pytest.mark.asyncio
    async def test_first_try(self, make_bus, bus_settings):
        bus = await make_bus(connect=False)
        sleep = RecordingSleep()
        assert await connect_with_retry(bus, bus_settings, sleep=sleep) == 0
        assert bus.is_connected
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self, make_bus, broker, bus_settings):
        bus = await make_bus(connect=False)
        broker.available = False
        sleep = RecordingSleep(broker, restore_after=2)
        before = _reconnects("retry-test")

        failures = await connect_with_retry(bus, bus_settings, component="retry-test", sleep=sleep)

        assert failures == 2
        assert bus.is_connected
        assert sleep.delays == [0.01, 0.02]
        assert _reconnects("retry-test") - before == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, make_bus, broker, bus_settings):
        bus = await make_bus(connect=False)
        broker.available = False
        sleep = RecordingSleep()

        with pytest.raises(BusConnectionError) as exc:
            await connect_with_retry(bus, bus_settings, sleep=sleep)

        # No sleep after the final attempt
        assert len(sleep.delays) == bus_settings.max_reconnect_attempts - 1
        assert exc.value.retryable is False
        assert exc.value.context["attempts"] == bus_settings.max_reconnect_attempts
        assert isinstance(exc.value.cause, BusConnectionError)
        assert not bus.is_connected


class TestReconnectForever:

    @pytest.mark.asyncio
    async def test_keeps_going_until_back(self, make_bus, broker, bus_settings):
        bus = await make_bus(connect=False)
        broker.available = False
        # Three attempts per round: restore during the second round
        sleep = RecordingSleep(broker, restore_after=5)
        connected = []

        async def on_connected():
            connected.append(bus.is_connected)

        await reconnect_forever(bus, bus_settings, sleep=sleep, on_connected=on_connected)

        assert bus.is_connected
        assert connected == [True]
        assert bus_settings.reconnect_max_delay in sleep.delays

    @pytest.mark.asyncio
    async def test_noop_when_connected(self, make_bus, bus_settings):
        bus = await make_bus()
        sleep = RecordingSleep()
        await reconnect_forever(bus, bus_settings, sleep=sleep)
        assert sleep.delays == []
