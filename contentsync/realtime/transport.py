from __future__ import annotations

from enum import Enum
from typing import Any, Awaitable, Callable, Protocol


class ChannelStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"


StatusCallback = Callable[[ChannelStatus, "Exception | None"], None]
MessageHandler = Callable[[Any], Awaitable[None]]


class RealtimeChannel(Protocol):
    """One physical subscription on the realtime transport.

    Status changes are reported through the callback passed to ``subscribe``;
    the channel never raises for errors that happen after the handshake starts.
    """

    topic: str
    private: bool

    def on_message(self, handler: MessageHandler) -> None:
        ...

    async def subscribe(self, callback: StatusCallback) -> None:
        ...

    async def unsubscribe(self) -> None:
        ...


class RealtimeTransport(Protocol):
    async def connect(self) -> None:
        ...

    def channel(self, topic: str, *, private: bool = True) -> RealtimeChannel:
        ...

    async def remove_channel(self, channel: RealtimeChannel) -> None:
        ...

    async def publish(self, topic: str, event: dict[str, Any]) -> int:
        ...

    async def close(self) -> None:
        ...
