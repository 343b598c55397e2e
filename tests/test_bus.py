"""
Message bus tests: topic matching, pub/sub delivery, request/reply and
the transports behind ``create_bus``.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from flock_framework.bus import (
    InMemoryBus,
    RedisBus,
    create_bus,
    get_broker,
    topic_matches,
)
from flock_framework.bus.base import INBOX_PREFIX, decode_frame, encode_frame
from flock_framework.bus.redis import pattern_to_glob
from flock_framework.exceptions import (
    BusClosedError,
    BusConnectionError,
    ConfigurationError,
    RequestTimeoutError,
)

from conftest import BUS_URL, drain, wait_until


# ══════════════════════════════════════════════════════════════════════════════
# TOPICS & FRAMES
# ══════════════════════════════════════════════════════════════════════════════

class TestTopicMatching:

    @pytest.mark.parametrize("pattern,topic,expected", [
        ("tasks.echo", "tasks.echo", True),
        ("tasks.*", "tasks.echo", True),
        ("tasks.*", "tasks", False),
        ("tasks.*", "tasks.echo.extra", False),
        ("agent.*.status", "agent.a1.status", True),
        ("agent.*.status", "agent.a1.x.status", False),
        ("agent.*.heartbeat", "agent.a1.status", False),
        ("*", "broadcast", True),
        ("broadcast", "agent.broadcast", False),
    ])
    def test_single_token_wildcard(self, pattern, topic, expected):
        assert topic_matches(pattern, topic) is expected

    def test_frame_roundtrip_keeps_reply_inbox(self):
        payload, reply_to = decode_frame(encode_frame({"x": 1}, reply_to="_INBOX.abc"))
        assert payload == {"x": 1}
        assert reply_to == "_INBOX.abc"

    def test_decode_rejects_bare_json(self):
        with pytest.raises(ValueError):
            decode_frame(b'{"x": 1}')


# ══════════════════════════════════════════════════════════════════════════════
# PUBLISH / SUBSCRIBE
# ══════════════════════════════════════════════════════════════════════════════

class TestPublishSubscribe:

    @pytest.mark.asyncio
    async def test_delivery_across_connections(self, make_bus):
        publisher = await make_bus()
        subscriber = await make_bus()
        sub = await subscriber.subscribe("tasks.*")

        await publisher.publish("tasks.echo", {"id": "t1"})
        message = await asyncio.wait_for(sub.next(), timeout=1.0)

        assert message.topic == "tasks.echo"
        assert message.data == {"id": "t1"}
        assert message.reply_to is None

    @pytest.mark.asyncio
    async def test_publisher_sees_its_own_topics(self, make_bus):
        bus = await make_bus()
        sub = await bus.subscribe("broadcast")
        await bus.publish("broadcast", {"type": "announcement"})
        assert (await asyncio.wait_for(sub.next(), timeout=1.0)).data["type"] == "announcement"

    @pytest.mark.asyncio
    async def test_brokers_are_isolated_by_name(self, make_bus):
        bus = await make_bus()
        other = InMemoryBus("memory://elsewhere")
        await other.connect()
        sub = await bus.subscribe("tasks.*")
        try:
            await other.publish("tasks.echo", {"id": "t1"})
            assert await drain(sub, 0.05) == []
        finally:
            await other.close()

    @pytest.mark.asyncio
    async def test_stream_can_pause_and_resume(self, make_bus):
        bus = await make_bus()
        sub = await bus.subscribe("seq")
        for i in range(3):
            await bus.publish("seq", i)

        first = await sub.next()
        rest = []
        async for message in sub:
            rest.append(message.data)
            if len(rest) == 2:
                break
        assert first.data == 0
        assert rest == [1, 2]

        await bus.publish("seq", 3)
        assert (await sub.next()).data == 3

    @pytest.mark.asyncio
    async def test_unsubscribe_ends_stream_after_drain(self, make_bus):
        bus = await make_bus()
        sub = await bus.subscribe("seq")
        await bus.publish("seq", 1)
        await sub.unsubscribe()
        await bus.publish("seq", 2)

        received = [m.data async for m in sub]
        assert received == [1]
        assert sub.closed
        assert "seq" not in bus.get_statistics()["patterns"]

    @pytest.mark.asyncio
    async def test_shared_pattern_stays_watched_until_last_unsubscribe(self, make_bus):
        bus = await make_bus()
        first = await bus.subscribe("tasks.*")
        second = await bus.subscribe("tasks.*")
        await first.unsubscribe()
        assert bus.get_statistics()["patterns"] == ["tasks.*"]
        await second.unsubscribe()
        assert bus.get_statistics()["patterns"] == []

    @pytest.mark.asyncio
    async def test_close_ends_every_subscription(self, make_bus):
        bus = await make_bus()
        sub = await bus.subscribe("tasks.*")
        await bus.close()
        with pytest.raises(StopAsyncIteration):
            await sub.next()
        assert not bus.is_connected

    @pytest.mark.asyncio
    async def test_operations_on_closed_bus(self, make_bus):
        bus = await make_bus(connect=False)
        with pytest.raises(BusClosedError):
            await bus.publish("tasks.echo", {})
        with pytest.raises(BusClosedError):
            await bus.subscribe("tasks.*")

    @pytest.mark.asyncio
    async def test_undecodable_frames_are_dropped(self, make_bus, broker):
        bus = await make_bus()
        sub = await bus.subscribe("tasks.*")
        broker.route("tasks.echo", b"not json")
        broker.route("tasks.echo", b'{"no": "envelope"}')
        assert await drain(sub, 0.05) == []
        assert bus.stats["undecodable"] == 2


# ══════════════════════════════════════════════════════════════════════════════
# REQUEST / REPLY
# ══════════════════════════════════════════════════════════════════════════════

async def _responder(bus, pattern):
    sub = await bus.subscribe(pattern)
    async for message in sub:
        await message.respond({"echo": message.data})


class TestRequestReply:

    @pytest.mark.asyncio
    async def test_reply_arrives_and_inbox_is_released(self, make_bus):
        service = await make_bus()
        client = await make_bus()
        responder = asyncio.create_task(_responder(service, "svc.echo"))
        await asyncio.sleep(0)
        try:
            reply = await client.request("svc.echo", {"x": 1}, timeout=1.0)
        finally:
            responder.cancel()
        assert reply == {"echo": {"x": 1}}
        assert not any(p.startswith(INBOX_PREFIX) for p in client.get_statistics()["patterns"])

    @pytest.mark.asyncio
    async def test_timeout_when_nobody_answers(self, make_bus):
        client = await make_bus()
        with pytest.raises(RequestTimeoutError) as exc:
            await client.request("svc.none", {}, timeout=0.05)
        assert exc.value.context["topic"] == "svc.none"
        assert client.stats["request_timeouts"] == 1
        assert client.get_statistics()["patterns"] == []

    @pytest.mark.asyncio
    async def test_close_during_request(self, make_bus):
        client = await make_bus()
        pending = asyncio.create_task(client.request("svc.none", {}, timeout=2.0))
        await asyncio.sleep(0.01)
        await client.close()
        with pytest.raises(BusClosedError):
            await pending

    @pytest.mark.asyncio
    async def test_respond_without_inbox_is_noop(self, make_bus):
        bus = await make_bus()
        sub = await bus.subscribe("plain")
        await bus.publish("plain", 1)
        message = await sub.next()
        assert await message.respond("ignored") is False


# ══════════════════════════════════════════════════════════════════════════════
# CONNECTION LOSS
# ══════════════════════════════════════════════════════════════════════════════

class TestConnectionLoss:

    @pytest.mark.asyncio
    async def test_outage_notifies_and_reconnect_rearms(self, make_bus, broker):
        bus = await make_bus()
        peer = await make_bus()
        sub = await bus.subscribe("tasks.*")
        lost = AsyncMock()
        bus.on_disconnect(lost)

        await broker.outage()
        assert not bus.is_connected
        lost.assert_awaited_once()
        with pytest.raises(BusConnectionError):
            await bus.connect()

        broker.restore()
        await bus.connect()
        await peer.connect()
        await peer.publish("tasks.echo", {"id": "after"})
        message = await asyncio.wait_for(sub.next(), timeout=1.0)
        assert message.data == {"id": "after"}

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_others(self, make_bus, broker):
        bus = await make_bus()
        bus.on_disconnect(AsyncMock(side_effect=RuntimeError("boom")))
        second = AsyncMock()
        bus.on_disconnect(second)
        await broker.outage()
        second.assert_awaited_once()


# ══════════════════════════════════════════════════════════════════════════════
# TRANSPORT SELECTION
# ══════════════════════════════════════════════════════════════════════════════

class TestCreateBus:

    def test_memory_scheme(self):
        bus = create_bus(BUS_URL)
        assert isinstance(bus, InMemoryBus)
        assert bus.broker is get_broker("test")

    @pytest.mark.parametrize("url", ["redis://localhost:6379/0", "rediss://cache:6380/1"])
    def test_redis_scheme(self, url):
        assert isinstance(create_bus(url), RedisBus)

    @pytest.mark.parametrize("url", ["nats://localhost:4222", "localhost:6379", ""])
    def test_unsupported_scheme(self, url):
        with pytest.raises(ConfigurationError):
            create_bus(url)


# ══════════════════════════════════════════════════════════════════════════════
# REDIS TRANSPORT
# ══════════════════════════════════════════════════════════════════════════════

class FakePubSub:
    """Replays canned PMESSAGE frames, then stops the listener."""

    def __init__(self, bus, messages):
        self.bus = bus
        self.subscribed = True
        self.messages = list(messages)
        self.psubscribe = AsyncMock()
        self.punsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def get_message(self, ignore_subscribe_messages=False, timeout=None):
        if self.messages:
            return self.messages.pop(0)
        self.bus._running = False
        return None


class IdlePubSub:
    """A connected pubsub that never has anything to deliver."""

    def __init__(self):
        self.subscribed = True
        self.psubscribe = AsyncMock()
        self.punsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def get_message(self, ignore_subscribe_messages=False, timeout=None):
        await asyncio.sleep(0.01)
        return None


def _redis_client(publish_error=None):
    client = MagicMock()
    client.ping = AsyncMock()
    client.publish = AsyncMock(side_effect=publish_error)
    client.aclose = AsyncMock()
    client.pubsub.return_value = IdlePubSub()
    return client


def _pmessage(glob, channel, payload):
    return {
        "type": "pmessage",
        "pattern": glob.encode(),
        "channel": channel.encode(),
        "data": encode_frame(payload),
    }


class TestRedisBus:

    def test_pattern_to_glob_escapes_specials(self):
        assert pattern_to_glob("agent.*.status") == "agent.*.status"
        assert pattern_to_glob("odd[1]?") == "odd\\[1\\]\\?"

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        with patch("flock_framework.bus.redis.redis_async.from_url", return_value=client):
            bus = RedisBus("redis://nowhere:6379/0")
            with pytest.raises(BusConnectionError) as exc:
                await bus.connect()
        assert "refused" in str(exc.value)
        assert not bus.is_connected

    @pytest.mark.asyncio
    async def test_overlapping_patterns_deliver_once_each(self):
        bus = RedisBus("redis://localhost:6379/0")
        bus._pubsub = FakePubSub(bus, [])
        bus._connected = True
        by_status = await bus.subscribe("agent.*.status")
        by_agent = await bus.subscribe("agent.a1.*")
        bus._pubsub.psubscribe.assert_any_await("agent.*.status")

        bus._pubsub.messages = [
            _pmessage("agent.*.status", "agent.a1.status", {"n": 1}),
            _pmessage("agent.a1.*", "agent.a1.status", {"n": 1}),
            # Redis globs let * span dots; the bus must not
            _pmessage("agent.*.status", "agent.a1.x.status", {"n": 2}),
            {"type": "psubscribe", "pattern": None, "channel": b"x", "data": 1},
        ]
        bus._running = True
        await bus._listen()

        assert [m.data for m in await drain(by_status, 0.02)] == [{"n": 1}]
        assert [m.data for m in await drain(by_agent, 0.02)] == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_listener_error_reports_connection_loss(self):
        bus = RedisBus("redis://localhost:6379/0")
        pubsub = FakePubSub(bus, [])
        pubsub.get_message = AsyncMock(side_effect=RedisConnectionError("reset"))
        bus._pubsub = pubsub
        bus._connected = True
        lost = AsyncMock()
        bus.on_disconnect(lost)

        bus._running = True
        await bus._listen()

        lost.assert_awaited_once()
        assert not bus.is_connected
        pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_publish_retires_the_old_connection(self):
        first = _redis_client(RedisConnectionError("broken pipe"))
        second = _redis_client()
        lost = AsyncMock()
        with patch("flock_framework.bus.redis.redis_async.from_url", side_effect=[first, second]):
            bus = RedisBus("redis://localhost:6379/0", poll_timeout=0.01)
            bus.on_disconnect(lost)
            await bus.connect()
            await bus.subscribe("tasks.*")
            old_listener = bus._listener

            with pytest.raises(BusConnectionError):
                await bus.publish("tasks.echo", {"id": "t1"})

            assert old_listener.done()
            first.aclose.assert_awaited_once()
            first.pubsub.return_value.aclose.assert_awaited_once()
            lost.assert_awaited_once()
            assert not bus.is_connected

            await bus.connect()

        try:
            assert bus._listener is not old_listener
            assert not bus._listener.done()
            second.pubsub.return_value.psubscribe.assert_awaited_with("tasks.*")
            await bus.publish("tasks.echo", {"id": "t2"})
            second.publish.assert_awaited_once()
        finally:
            await bus.close()
        second.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reconnect_during_listener_failure_keeps_new_connection(self):
        first = _redis_client()
        first.pubsub.return_value.get_message = AsyncMock(side_effect=RedisConnectionError("reset"))
        second = _redis_client()
        with patch("flock_framework.bus.redis.redis_async.from_url", side_effect=[first, second]):
            bus = RedisBus("redis://localhost:6379/0", poll_timeout=0.01)

            async def reconnect(exc):
                await bus.connect()

            bus.on_disconnect(reconnect)
            await bus.connect()
            old_listener = bus._listener
            await wait_until(old_listener.done)

        try:
            assert bus.is_connected
            assert bus._client is second
            assert bus._pubsub is second.pubsub.return_value
            assert not bus._listener.done()
            first.aclose.assert_awaited_once()
            second.aclose.assert_not_awaited()
        finally:
            await bus.close()

    @pytest.mark.asyncio
    async def test_open_refuses_while_old_listener_runs(self):
        bus = RedisBus("redis://localhost:6379/0")
        bus._listener = asyncio.create_task(asyncio.sleep(10))
        try:
            with patch("flock_framework.bus.redis.redis_async.from_url") as from_url:
                with pytest.raises(BusConnectionError, match="still shutting down"):
                    await bus._open()
            from_url.assert_not_called()
        finally:
            bus._listener.cancel()
