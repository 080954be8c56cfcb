"""
Tests for the redis event broker.
"""

from unittest.mock import AsyncMock, Mock

import orjson
import pytest
from conftest import drain, open_connection

from realtime.broker import EventBroker
from realtime.gateway import Gateway


def pmessage(channel: bytes, data: dict) -> dict:
    return {
        "type": "pmessage",
        "pattern": b"events:*",
        "channel": channel,
        "data": orjson.dumps(data),
    }


class FakePubSub:
    def __init__(self, messages: list[dict]) -> None:
        self.messages = messages
        self.psubscribe = AsyncMock()
        self.punsubscribe = AsyncMock()
        self.aclose = AsyncMock()

    async def listen(self):
        for message in self.messages:
            yield message


class TestEventBroker:
    def setup_method(self):
        self.redis = Mock()
        self.redis.publish = AsyncMock()
        self.deliver_local = Mock(return_value=True)
        self.broker = EventBroker(self.redis, self.deliver_local)

    @pytest.mark.asyncio
    async def test_publish_uses_user_channel(self):
        await self.broker.publish(42, {"type": "typing", "userId": 1})

        self.redis.publish.assert_awaited_once_with(
            "events:42", orjson.dumps({"type": "typing", "userId": 1})
        )

    @pytest.mark.asyncio
    async def test_listener_delivers_locally(self):
        pubsub = FakePubSub([
            {"type": "psubscribe", "channel": b"events:*", "data": 1},
            pmessage(b"events:42", {"type": "typing"}),
            pmessage(b"other:42", {"type": "typing"}),
            pmessage(b"events:abc", {"type": "typing"}),
        ])
        self.redis.pubsub = Mock(return_value=pubsub)

        await self.broker.init()
        await self.broker.start()

        pubsub.psubscribe.assert_awaited_once_with("events:*")
        self.deliver_local.assert_called_once_with(42, {"type": "typing"})

    @pytest.mark.asyncio
    async def test_bad_payload_does_not_stop_listener(self):
        broken = pmessage(b"events:1", {})
        broken["data"] = b"{"
        pubsub = FakePubSub([broken, pmessage(b"events:2", {"type": "x"})])
        self.redis.pubsub = Mock(return_value=pubsub)

        await self.broker.init()
        await self.broker.start()

        self.deliver_local.assert_called_once_with(2, {"type": "x"})

    @pytest.mark.asyncio
    async def test_start_requires_init(self):
        with pytest.raises(RuntimeError):
            await self.broker.start()

    @pytest.mark.asyncio
    async def test_cleanup(self):
        pubsub = FakePubSub([])
        self.redis.pubsub = Mock(return_value=pubsub)
        await self.broker.init()

        await self.broker.cleanup()

        pubsub.punsubscribe.assert_awaited_once_with("events:*")
        pubsub.aclose.assert_awaited_once()


class TestGatewayWithBroker:
    @pytest.mark.asyncio
    async def test_events_are_published_not_written(self, store, config):
        gateway = Gateway(store, config)
        redis = Mock()
        redis.publish = AsyncMock()
        gateway.broker = EventBroker(redis, gateway.deliver_local)
        sender = open_connection()
        peer = open_connection()
        await gateway.authenticate(sender, 42)
        await gateway.authenticate(peer, 99)
        drain(sender)
        drain(peer)
        redis.publish.reset_mock()

        await gateway.handle_raw(sender, orjson.dumps({
            "type": "message", "conversationId": 7, "message": "hi"
        }))

        assert drain(peer) == []
        channel, data = redis.publish.await_args.args
        assert channel == "events:99"
        assert orjson.loads(data)["type"] == "new_message"

        gateway.broker.handle_message(
            pmessage(b"events:99", orjson.loads(data))
        )
        assert [e["type"] for e in drain(peer)] == ["new_message"]

    @pytest.mark.asyncio
    async def test_errors_stay_local(self, store, config):
        gateway = Gateway(store, config)
        redis = Mock()
        redis.publish = AsyncMock()
        gateway.broker = EventBroker(redis, gateway.deliver_local)
        connection = open_connection()

        await gateway.handle_raw(connection, b"nonsense")

        assert drain(connection) == [
            {"type": "error", "message": "MALFORMED_ENVELOPE"}
        ]
        redis.publish.assert_not_awaited()
