"""
Coordination client tests. Directory lookups degrade softly when nobody
answers.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from flock_framework import client as client_module
from flock_framework import directory
from flock_framework.client import CoordinationClient
from flock_framework.exceptions import MessageValidationError
from flock_framework.models import MessageKind


async def _serve(bus, topic, reply):
    sub = await bus.subscribe(topic)
    async for message in sub:
        await message.respond(reply)


@pytest.fixture
async def directory_stub(make_bus):
    """Answers directory.list / directory.get with canned replies."""
    bus = await make_bus()
    tasks = []

    def serve(topic, reply):
        tasks.append(asyncio.create_task(_serve(bus, topic, reply)))

    yield serve
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class TestDirectoryLookups:

    def test_status_filters_come_from_the_directory(self):
        assert client_module.STATUS_FILTERS is directory.STATUS_FILTERS
        assert client_module.DIRECTORY_LIST_TOPIC == "directory.list"

    @pytest.mark.asyncio
    async def test_list_without_directory_is_empty(self, make_bus):
        client = CoordinationClient(await make_bus(), "cli", request_timeout=0.05)
        assert await client.list_agents() == []

    @pytest.mark.asyncio
    async def test_get_without_directory_is_none(self, make_bus):
        client = CoordinationClient(await make_bus(), "cli", request_timeout=0.05)
        assert await client.get_agent_info("a1") is None

    @pytest.mark.asyncio
    async def test_list_skips_self_and_malformed(self, make_bus, directory_stub):
        directory_stub("directory.list", [
            {"id": "cli", "name": "me", "status": "online"},
            {"id": "a1", "name": "A", "status": "online", "capabilities": ["echo"]},
            {"name": "no id"},
        ])
        await asyncio.sleep(0)
        client = CoordinationClient(await make_bus(), "cli", request_timeout=0.5)

        agents = await client.list_agents()

        assert [a.agent_id for a in agents] == ["a1"]
        assert agents[0].capabilities == {"echo"}

    @pytest.mark.asyncio
    async def test_list_error_reply_is_empty(self, make_bus, directory_stub):
        directory_stub("directory.list", {"error": "bad status"})
        await asyncio.sleep(0)
        client = CoordinationClient(await make_bus(), "cli", request_timeout=0.5)
        assert await client.list_agents("online") == []

    @pytest.mark.asyncio
    async def test_invalid_status_raises(self, make_bus):
        client = CoordinationClient(await make_bus(), "cli")
        with pytest.raises(MessageValidationError):
            await client.list_agents("busy")

    @pytest.mark.asyncio
    async def test_get_null_reply(self, make_bus, directory_stub):
        directory_stub("directory.get", None)
        await asyncio.sleep(0)
        client = CoordinationClient(await make_bus(), "cli", request_timeout=0.5)
        assert await client.get_agent_info("nobody") is None


class TestMessaging:

    @pytest.mark.asyncio
    async def test_send_message_envelope(self, make_bus):
        bus = await make_bus()
        inbox = await bus.subscribe("agent.a1.message")
        client = CoordinationClient(bus, "cli")

        envelope = await client.send_message("a1", "do it", MessageKind.COMMAND, {"ref": 1})

        delivered = (await asyncio.wait_for(inbox.next(), timeout=1.0)).data
        assert envelope.topic == "agent.a1.message"
        assert delivered["type"] == "command"
        assert delivered["metadata"] == {"ref": 1, "fromAgent": "cli"}

    @pytest.mark.asyncio
    async def test_send_response_metadata(self, make_bus):
        bus = await make_bus()
        client = CoordinationClient(bus, "a1")

        envelope = await client.send_response("cli", "done", {"ref": 1})

        assert envelope.kind == MessageKind.RESPONSE
        assert envelope.metadata["ref"] == 1
        assert envelope.metadata["responseFrom"] == "a1"
        assert "responseTime" in envelope.metadata

    @pytest.mark.asyncio
    async def test_broadcast_message(self, make_bus):
        bus = await make_bus()
        everyone = await bus.subscribe("agent.broadcast")

        await CoordinationClient(bus, "cli").broadcast_message("hello")

        assert (await asyncio.wait_for(everyone.next(), timeout=1.0)).data["to"] == "all"

    @pytest.mark.asyncio
    async def test_request_capability_delegates_to_broker(self, make_bus):
        client = CoordinationClient(await make_bus(), "cli")
        client.broker.request = AsyncMock(return_value="response")

        assert await client.request_capability("echo", {"x": 1}, timeout=2.0) == "response"
        client.broker.request.assert_awaited_once_with("echo", {"x": 1}, 2.0)
