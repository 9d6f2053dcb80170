from __future__ import annotations

import asyncio
from collections import defaultdict
import logging
from typing import Any

from contentsync.core.errors import RealtimeChannelError
from contentsync.realtime.transport import ChannelStatus, MessageHandler, StatusCallback


logger = logging.getLogger(__name__)


class InMemoryChannel:
    def __init__(self, transport: InMemoryTransport, topic: str, private: bool) -> None:
        self.topic = topic
        self.private = private
        # idle -> joined | errored -> closed
        self.state = "idle"
        self._transport = transport
        self._handler: MessageHandler | None = None
        self._callback: StatusCallback | None = None

    def on_message(self, handler: MessageHandler) -> None:
        self._handler = handler

    async def subscribe(self, callback: StatusCallback) -> None:
        # Report handshake results on the next loop turn to mimic a network round-trip.
        self._callback = callback
        loop = asyncio.get_running_loop()
        if self._transport._consume_failure(self.topic):
            self.state = "errored"
            loop.call_soon(
                callback,
                ChannelStatus.CHANNEL_ERROR,
                RealtimeChannelError(self.topic, f"Simulated handshake failure for {self.topic}"),
            )
            return
        self.state = "joined"
        self._transport._attach(self)
        loop.call_soon(callback, ChannelStatus.SUBSCRIBED, None)

    async def unsubscribe(self) -> None:
        if self.state == "closed":
            return
        self.state = "closed"
        self._transport._detach(self)
        if self._callback is not None:
            asyncio.get_running_loop().call_soon(self._callback, ChannelStatus.CLOSED, None)

    async def deliver(self, payload: Any) -> bool:
        if self.state != "joined" or self._handler is None:
            return False
        await self._handler(payload)
        return True

    def report(self, status: ChannelStatus, error: Exception | None = None) -> None:
        if self._callback is not None:
            self._callback(status, error)


class InMemoryTransport:
    """In-process broker for local development and tests.

    Published events are delivered to joined channels in publish order. Fault
    injection helpers simulate handshake failures, runtime errors, and
    server-side closes.
    """

    def __init__(self) -> None:
        self.connected = False
        self.created_channels: list[InMemoryChannel] = []
        self._joined: dict[str, list[InMemoryChannel]] = defaultdict(list)
        self._pending_failures: dict[str, int] = defaultdict(int)

    async def connect(self) -> None:
        self.connected = True

    def channel(self, topic: str, *, private: bool = True) -> InMemoryChannel:
        channel = InMemoryChannel(self, topic, private)
        self.created_channels.append(channel)
        return channel

    async def remove_channel(self, channel: InMemoryChannel) -> None:
        await channel.unsubscribe()

    async def publish(self, topic: str, event: dict[str, Any]) -> int:
        delivered = 0
        for channel in list(self._joined.get(topic, [])):
            if await channel.deliver(event):
                delivered += 1
        return delivered

    async def close(self) -> None:
        for channels in list(self._joined.values()):
            for channel in list(channels):
                await channel.unsubscribe()
        self.connected = False

    def active_channels(self, topic: str | None = None) -> list[InMemoryChannel]:
        if topic is not None:
            return list(self._joined.get(topic, []))
        return [channel for channels in self._joined.values() for channel in channels]

    def fail_next_handshakes(self, topic: str, count: int = 1) -> None:
        self._pending_failures[topic] += max(0, count)

    def emit_error(self, topic: str, error: Exception | None = None) -> None:
        # Simulate a mid-session transport error on every joined channel for the topic.
        for channel in list(self._joined.get(topic, [])):
            channel.state = "errored"
            self._detach(channel)
            channel.report(ChannelStatus.CHANNEL_ERROR, error or RealtimeChannelError(topic))

    def close_topic(self, topic: str) -> None:
        # Simulate a clean server-side close.
        for channel in list(self._joined.get(topic, [])):
            channel.state = "closed"
            self._detach(channel)
            channel.report(ChannelStatus.CLOSED, None)

    def _consume_failure(self, topic: str) -> bool:
        if self._pending_failures.get(topic, 0) > 0:
            self._pending_failures[topic] -= 1
            return True
        return False

    def _attach(self, channel: InMemoryChannel) -> None:
        self._joined[channel.topic].append(channel)

    def _detach(self, channel: InMemoryChannel) -> None:
        channels = self._joined.get(channel.topic)
        if channels and channel in channels:
            channels.remove(channel)
        if channels is not None and not channels:
            self._joined.pop(channel.topic, None)
