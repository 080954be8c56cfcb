import asyncio
import logging
import typing as t

import orjson
from redis.asyncio import Redis

logger = logging.getLogger("chatgateway.broker")

LocalDeliver: t.TypeAlias = t.Callable[[int, dict], bool]

CHANNEL_PREFIX = "events"


class EventBroker:
    """Relays events between workers through redis pub/sub.

    Each event is published on ``events:<user_id>``; every worker listens
    on ``events:*`` and hands the event to its own registry.
    """

    def __init__(
        self,
        redis: Redis,
        deliver_local: LocalDeliver
    ) -> None:
        self.redis = redis
        self.deliver_local = deliver_local

    async def publish(self, user_id: int, event: dict) -> None:
        await self.redis.publish(
            f"{CHANNEL_PREFIX}:{user_id}", orjson.dumps(event)
        )

    async def init(self) -> None:
        self.pubsub = self.redis.pubsub()
        await self.pubsub.psubscribe(f"{CHANNEL_PREFIX}:*")

    def handle_message(self, message: dict) -> bool:
        if message.get("type") != "pmessage":
            return False

        channel = message["channel"]
        if isinstance(channel, bytes):
            channel = channel.decode()
        prefix, _, user_id = channel.partition(":")
        if prefix != CHANNEL_PREFIX or not user_id.isdecimal():
            return False

        event: dict = orjson.loads(message["data"])
        return self.deliver_local(int(user_id), event)

    async def start(self) -> None:
        if not hasattr(self, 'pubsub'):
            raise RuntimeError("EventBroker not initialized")

        try:
            async for message in self.pubsub.listen():
                if __debug__:
                    logger.debug("Broker got message from pub/sub")

                if not message or not isinstance(message, dict):
                    await asyncio.sleep(0.1)
                    continue

                try:
                    self.handle_message(message)
                except Exception as e:
                    logger.exception(e)

                await asyncio.sleep(0)
        except asyncio.CancelledError:
            pass

    async def cleanup(self) -> None:
        if not hasattr(self, 'pubsub'):
            return
        await self.pubsub.punsubscribe(f"{CHANNEL_PREFIX}:*")
        await self.pubsub.aclose()
