from __future__ import annotations

import asyncio
from contextlib import suppress
import json
import logging
from typing import Any

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from contentsync.core.config import get_settings
from contentsync.core.errors import TransportConfigError
from contentsync.realtime.transport import ChannelStatus, MessageHandler, StatusCallback


logger = logging.getLogger(__name__)

TransportException = (RedisError, OSError)


class RedisChannel:
    def __init__(self, redis: Redis, topic: str, channel_name: str, private: bool) -> None:
        self.topic = topic
        self.private = private
        self.channel_name = channel_name
        self._redis = redis
        self._handler: MessageHandler | None = None
        self._callback: StatusCallback | None = None
        self._pubsub: PubSub | None = None
        self._reader: asyncio.Task | None = None
        self._closing = False

    def on_message(self, handler: MessageHandler) -> None:
        self._handler = handler

    async def subscribe(self, callback: StatusCallback) -> None:
        self._callback = callback
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await self._pubsub.subscribe(self.channel_name)
        except TransportException as exc:
            logger.warning("realtime_redis_subscribe_failed topic=%s", self.topic, exc_info=exc)
            callback(ChannelStatus.CHANNEL_ERROR, exc)
            return
        self._reader = asyncio.create_task(self._read_loop(self._pubsub))
        callback(ChannelStatus.SUBSCRIBED, None)

    async def _read_loop(self, pubsub: PubSub) -> None:
        # Deliver messages sequentially so subscribers see transport order.
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = message.get("data")
                try:
                    payload: Any = json.loads(data)
                except (TypeError, ValueError):
                    # Hand undecodable frames through so the multiplexer reports them per message.
                    payload = data
                if self._handler is not None:
                    await self._handler(payload)
        except asyncio.CancelledError:
            raise
        except TransportException as exc:
            if self._closing:
                return
            logger.warning("realtime_redis_channel_error topic=%s", self.topic, exc_info=exc)
            if self._callback is not None:
                self._callback(ChannelStatus.CHANNEL_ERROR, exc)

    async def unsubscribe(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._reader is not None:
            self._reader.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.channel_name)
            except TransportException as exc:
                logger.warning("realtime_redis_unsubscribe_failed topic=%s", self.topic, exc_info=exc)
            await self._pubsub.aclose()
        if self._callback is not None:
            self._callback(ChannelStatus.CLOSED, None)


class RedisTransport:
    """Realtime transport over Redis pub/sub.

    Only private channels are supported; tenant authorization is enforced by
    the producers that publish into ``{prefix}:private:{topic}``.
    """

    def __init__(self, redis_url: str | None = None, *, prefix: str | None = None, redis: Redis | None = None) -> None:
        settings = get_settings()
        self._redis_url = redis_url or settings.redis_url
        self._prefix = prefix or settings.realtime_redis_prefix
        self._redis = redis

    def channel_name(self, topic: str) -> str:
        return f"{self._prefix}:private:{topic}"

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = Redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
        await self._redis.ping()

    def channel(self, topic: str, *, private: bool = True) -> RedisChannel:
        if not private:
            raise TransportConfigError("Public realtime channels are not supported")
        if self._redis is None:
            raise TransportConfigError("RedisTransport.connect() must be awaited before opening channels")
        return RedisChannel(self._redis, topic, self.channel_name(topic), private)

    async def remove_channel(self, channel: RedisChannel) -> None:
        await channel.unsubscribe()

    async def publish(self, topic: str, event: dict[str, Any]) -> int:
        # Producer side: database trigger relays and content-edit routes publish row changes here.
        if self._redis is None:
            raise TransportConfigError("RedisTransport.connect() must be awaited before publishing")
        data = json.dumps(event, separators=(",", ":"), default=str)
        return int(await self._redis.publish(self.channel_name(topic), data))

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
