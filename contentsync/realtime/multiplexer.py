from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import functools
import inspect
import logging
from typing import Any, Awaitable, Callable

from contentsync.core.config import Settings, get_settings
from contentsync.core.errors import MessageProcessingError, RealtimeChannelError, ReconnectExhaustedError
from contentsync.domain.events import ChangeMessage, normalize_change_event
from contentsync.realtime.dedup import EventDeduplicator
from contentsync.realtime.topics import DEFAULT_ENTITIES, build_topic
from contentsync.realtime.transport import ChannelStatus, RealtimeChannel, RealtimeTransport
from contentsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

MessageCallback = Callable[[ChangeMessage], Any]
ErrorCallback = Callable[[Exception], Any]
TopicCallback = Callable[[str], Any]
Unsubscribe = Callable[[], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class _Subscriber:
    on_message: MessageCallback
    on_error: ErrorCallback | None = None
    on_subscribed: TopicCallback | None = None
    on_unsubscribed: TopicCallback | None = None
    deduplicator: EventDeduplicator | None = None
    active: bool = True


@dataclass(eq=False)
class Subscription:
    # One physical channel shared by every logical subscriber of a topic.
    topic: str
    channel: RealtimeChannel
    subscription_count: int
    last_activity: datetime
    subscribers: list[_Subscriber] = field(default_factory=list)
    connected: bool = False


class ChannelMultiplexer:
    """Share one private transport channel per topic across logical subscribers.

    Topics are ``tenant:{tenant_id}:{entity}[:{suffix}]``. The first subscriber
    opens the channel, later ones join it, and the last unsubscribe releases
    it. Channel errors and timeouts trigger reconnects with exponential
    backoff (``base_delay_ms * 2**n``) until ``max_reconnect_attempts`` is
    reached, after which subscribers receive ``ReconnectExhaustedError`` and
    the topic is dropped.
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        *,
        entities: Iterable[str] = DEFAULT_ENTITIES,
        base_delay_ms: int = 1000,
        max_reconnect_attempts: int = 5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._entities = frozenset(entities)
        self._base_delay_ms = base_delay_ms
        self._max_reconnect_attempts = max_reconnect_attempts
        self._sleep = sleep
        self._channels: dict[str, Subscription] = {}
        self._reconnect_attempts: dict[str, int] = {}
        self._reconnect_tasks: dict[str, asyncio.Task] = {}
        self._callback_tasks: set[asyncio.Task] = set()
        self._connected = False

    @classmethod
    def from_settings(cls, transport: RealtimeTransport, settings: Settings | None = None) -> ChannelMultiplexer:
        settings = settings or get_settings()
        return cls(
            transport,
            base_delay_ms=settings.realtime_reconnect_base_delay_ms,
            max_reconnect_attempts=settings.realtime_max_reconnect_attempts,
        )

    @property
    def transport(self) -> RealtimeTransport:
        return self._transport

    @property
    def topics(self) -> list[str]:
        return sorted(self._channels)

    def subscription(self, topic: str) -> Subscription | None:
        return self._channels.get(topic)

    def reconnect_attempts(self, topic: str) -> int:
        return self._reconnect_attempts.get(topic, 0)

    def topic_for(self, tenant_id: str, entity: str, suffix: str | None = None) -> str:
        return build_topic(tenant_id, entity, suffix, entities=self._entities)

    def snapshot(self) -> list[dict[str, Any]]:
        # Ops view of live topics.
        return [
            {
                "topic": entry.topic,
                "subscription_count": entry.subscription_count,
                "connected": entry.connected,
                "reconnect_attempts": self._reconnect_attempts.get(entry.topic, 0),
                "last_activity": entry.last_activity.isoformat(),
            }
            for entry in sorted(self._channels.values(), key=lambda item: item.topic)
        ]

    async def connect(self) -> None:
        if self._connected:
            return
        await self._transport.connect()
        self._connected = True

    async def subscribe(
        self,
        tenant_id: str,
        entity: str,
        suffix: str | None = None,
        *,
        on_message: MessageCallback,
        on_error: ErrorCallback | None = None,
        on_subscribed: TopicCallback | None = None,
        on_unsubscribed: TopicCallback | None = None,
        deduplicate: bool = False,
    ) -> Unsubscribe:
        topic = self.topic_for(tenant_id, entity, suffix)
        subscriber = _Subscriber(
            on_message=on_message,
            on_error=on_error,
            on_subscribed=on_subscribed,
            on_unsubscribed=on_unsubscribed,
            deduplicator=EventDeduplicator() if deduplicate else None,
        )
        existing = self._channels.get(topic)
        if existing is not None:
            existing.subscribers.append(subscriber)
            existing.subscription_count += 1
            existing.last_activity = _utc_now()
            logger.debug(
                "realtime_subscription_joined topic=%s subscriptions=%d",
                topic,
                existing.subscription_count,
            )
            if existing.connected:
                self._fire(subscriber.on_subscribed, topic)
            return self._unsubscriber(topic, subscriber)

        # Register before awaiting so concurrent subscribers for the topic share this channel.
        entry = Subscription(
            topic=topic,
            channel=self._open_channel(topic),
            subscription_count=1,
            last_activity=_utc_now(),
            subscribers=[subscriber],
        )
        self._channels[topic] = entry
        self._reconnect_attempts.pop(topic, None)
        increment_counter("realtime_channels_opened_total")
        self._update_gauges()
        logger.info("realtime_channel_opened topic=%s", topic)
        await self._start_handshake(entry)
        return self._unsubscriber(topic, subscriber)

    async def cleanup(self) -> None:
        # Drop every channel and pending reconnect; no callbacks fire afterwards.
        entries = list(self._channels.values())
        tasks = list(self._reconnect_tasks.values())
        self._channels.clear()
        self._reconnect_attempts.clear()
        self._reconnect_tasks.clear()
        current = asyncio.current_task()
        pending = [task for task in tasks if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for entry in entries:
            for subscriber in entry.subscribers:
                subscriber.active = False
            await self._release(entry.channel)
        self._update_gauges()
        if entries:
            logger.info("realtime_cleanup channels=%d", len(entries))

    async def close(self) -> None:
        await self.cleanup()
        if self._connected:
            await self._transport.close()
            self._connected = False

    def _open_channel(self, topic: str) -> RealtimeChannel:
        channel = self._transport.channel(topic, private=True)
        channel.on_message(self._message_handler(topic, channel))
        return channel

    async def _start_handshake(self, entry: Subscription) -> None:
        channel = entry.channel
        callback = functools.partial(self._on_status, entry.topic, channel)
        try:
            await channel.subscribe(callback)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - transports raise their own error types; treat as a channel error
            self._on_status(entry.topic, channel, ChannelStatus.CHANNEL_ERROR, exc)

    def _on_status(
        self,
        topic: str,
        channel: RealtimeChannel,
        status: ChannelStatus,
        error: Exception | None = None,
    ) -> None:
        entry = self._channels.get(topic)
        if entry is None or entry.channel is not channel:
            # Status for a released or replaced channel.
            return
        status = ChannelStatus(status)
        if status is ChannelStatus.SUBSCRIBED:
            entry.connected = True
            entry.last_activity = _utc_now()
            self._reconnect_attempts.pop(topic, None)
            logger.info("realtime_subscribed topic=%s subscriptions=%d", topic, entry.subscription_count)
            for subscriber in list(entry.subscribers):
                self._fire(subscriber.on_subscribed, topic)
            return
        if status is ChannelStatus.CLOSED:
            # Clean server-side close: drop the topic without reconnecting.
            entry.connected = False
            self._channels.pop(topic, None)
            self._reconnect_attempts.pop(topic, None)
            self._update_gauges()
            logger.info("realtime_channel_closed_by_server topic=%s", topic)
            for subscriber in list(entry.subscribers):
                subscriber.active = False
                self._fire(subscriber.on_unsubscribed, topic)
            return

        entry.connected = False
        channel_error = RealtimeChannelError(topic, f"Realtime channel {status.value} for {topic}: {error or 'no detail'}")
        channel_error.__cause__ = error
        increment_counter("realtime_channel_errors_total")
        logger.warning("realtime_channel_error topic=%s status=%s error=%s", topic, status.value, error)
        self._notify_error(entry.subscribers, channel_error)
        self._schedule_reconnect(entry)

    def _schedule_reconnect(self, entry: Subscription) -> None:
        topic = entry.topic
        attempts = self._reconnect_attempts.get(topic, 0)
        if attempts >= self._max_reconnect_attempts:
            self._channels.pop(topic, None)
            self._reconnect_attempts.pop(topic, None)
            self._update_gauges()
            increment_counter("realtime_reconnect_exhausted_total")
            logger.error("realtime_reconnect_exhausted topic=%s attempts=%d", topic, attempts)
            for subscriber in entry.subscribers:
                subscriber.active = False
            self._notify_error(entry.subscribers, ReconnectExhaustedError(topic, attempts))
            self._spawn(self._release(entry.channel))
            return
        delay_ms = self._base_delay_ms * (2**attempts)
        self._reconnect_attempts[topic] = attempts + 1
        increment_counter("realtime_reconnect_attempts_total")
        logger.warning(
            "realtime_reconnect_scheduled topic=%s attempt=%d delay_ms=%d",
            topic,
            attempts + 1,
            delay_ms,
        )
        task = asyncio.get_running_loop().create_task(self._reconnect(topic, entry.channel, delay_ms / 1000.0))
        self._reconnect_tasks[topic] = task
        task.add_done_callback(functools.partial(self._reconnect_done, topic))

    async def _reconnect(self, topic: str, stale_channel: RealtimeChannel, delay_s: float) -> None:
        await self._sleep(delay_s)
        entry = self._channels.get(topic)
        if entry is None or entry.channel is not stale_channel:
            return
        # Swap in the new channel first so the stale channel's CLOSED status is ignored.
        entry.channel = self._open_channel(topic)
        entry.connected = False
        await self._release(stale_channel)
        if self._channels.get(topic) is not entry:
            await self._release(entry.channel)
            return
        logger.info("realtime_reconnecting topic=%s attempt=%d", topic, self._reconnect_attempts.get(topic, 0))
        await self._start_handshake(entry)

    def _reconnect_done(self, topic: str, task: asyncio.Task) -> None:
        if self._reconnect_tasks.get(topic) is task:
            self._reconnect_tasks.pop(topic, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("realtime_reconnect_failed topic=%s", topic, exc_info=exc)

    def _message_handler(self, topic: str, channel: RealtimeChannel) -> Callable[[Any], Awaitable[None]]:
        async def handle(raw: Any) -> None:
            entry = self._channels.get(topic)
            if entry is None or entry.channel is not channel:
                return
            entry.last_activity = _utc_now()
            try:
                message = normalize_change_event(raw)
            except MessageProcessingError as exc:
                increment_counter("realtime_messages_invalid_total")
                logger.warning("realtime_message_invalid topic=%s error=%s", topic, exc)
                self._notify_error(entry.subscribers, exc)
                return
            increment_counter("realtime_messages_total")
            for subscriber in list(entry.subscribers):
                if not subscriber.active:
                    continue
                if subscriber.deduplicator is not None and not subscriber.deduplicator.should_process_message(message):
                    continue
                try:
                    result = subscriber.on_message(message)
                    if inspect.isawaitable(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001 - isolate one subscriber's failure from the channel
                    increment_counter("realtime_handler_errors_total")
                    logger.warning("realtime_handler_failed topic=%s", topic, exc_info=exc)
                    self._fire(subscriber.on_error, exc)

        return handle

    def _notify_error(self, subscribers: Iterable[_Subscriber], error: Exception) -> None:
        for subscriber in list(subscribers):
            self._fire(subscriber.on_error, error)

    def _fire(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        # Callbacks may be sync or async; async ones run as tracked tasks.
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception as exc:  # noqa: BLE001 - subscriber callbacks must not break the channel
            logger.warning("realtime_callback_failed callback=%r", callback, exc_info=exc)
            return
        if inspect.isawaitable(result):
            self._spawn(result)

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_done)

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("realtime_callback_failed", exc_info=exc)

    async def _release(self, channel: RealtimeChannel) -> None:
        try:
            await self._transport.remove_channel(channel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - teardown continues past transport errors
            logger.warning("realtime_channel_release_failed topic=%s", channel.topic, exc_info=exc)

    def _unsubscriber(self, topic: str, subscriber: _Subscriber) -> Unsubscribe:
        async def unsubscribe() -> None:
            if not subscriber.active:
                return
            subscriber.active = False
            entry = self._channels.get(topic)
            if entry is None or subscriber not in entry.subscribers:
                return
            entry.subscribers.remove(subscriber)
            entry.subscription_count -= 1
            entry.last_activity = _utc_now()
            if entry.subscription_count <= 0:
                self._channels.pop(topic, None)
                self._reconnect_attempts.pop(topic, None)
                task = self._reconnect_tasks.pop(topic, None)
                if task is not None and task is not asyncio.current_task():
                    task.cancel()
                self._update_gauges()
                await self._release(entry.channel)
                logger.info("realtime_channel_released topic=%s", topic)
            self._fire(subscriber.on_unsubscribed, topic)

        return unsubscribe

    def _update_gauges(self) -> None:
        set_gauge("realtime_active_channels", len(self._channels))
