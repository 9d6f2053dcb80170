from __future__ import annotations

import asyncio

import pytest

from contentsync.core.errors import (
    InvalidSubscriptionError,
    MessageProcessingError,
    RealtimeChannelError,
    ReconnectExhaustedError,
)
from contentsync.domain.events import ChangeEventType, ChangeMessage
from contentsync.realtime.memory import InMemoryTransport
from contentsync.realtime.multiplexer import ChannelMultiplexer
from contentsync.services.telemetry import counters_snapshot, gauges_snapshot


TOPIC = "tenant:t1:posts"


async def _settle(turns: int = 5) -> None:
    # Let call_soon status callbacks and spawned tasks run.
    for _ in range(turns):
        await asyncio.sleep(0)


def _insert_event(record_id: str = "p1", updated_at: str = "2026-01-01T00:00:00Z") -> dict:
    return {
        "type": "postgres_changes",
        "eventType": "INSERT",
        "schema": "public",
        "table": "posts",
        "new": {"id": record_id, "updated_at": updated_at},
        "old": None,
        "commit_timestamp": updated_at,
    }


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def _multiplexer(sleep=None) -> tuple[ChannelMultiplexer, InMemoryTransport]:
    transport = InMemoryTransport()
    mux = ChannelMultiplexer(transport, sleep=sleep or _RecordingSleep())
    await mux.connect()
    return mux, transport


@pytest.mark.asyncio
async def test_subscribers_share_one_channel_until_last_unsubscribe() -> None:
    mux, transport = await _multiplexer()
    received_a: list[ChangeMessage] = []
    received_b: list[ChangeMessage] = []

    unsubscribe_a = await mux.subscribe("t1", "posts", on_message=received_a.append)
    unsubscribe_b = await mux.subscribe("t1", "posts", on_message=received_b.append)
    await _settle()

    assert len(transport.created_channels) == 1
    assert mux.subscription(TOPIC).subscription_count == 2
    assert gauges_snapshot()["realtime_active_channels"] == 1

    delivered = await transport.publish(TOPIC, _insert_event())
    assert delivered == 1
    assert [message.event for message in received_a] == [ChangeEventType.INSERT]
    assert [message.event for message in received_b] == [ChangeEventType.INSERT]

    await unsubscribe_a()
    await unsubscribe_a()
    assert mux.subscription(TOPIC).subscription_count == 1
    assert len(transport.active_channels(TOPIC)) == 1

    await unsubscribe_b()
    await _settle()
    assert mux.subscription(TOPIC) is None
    assert transport.active_channels(TOPIC) == []
    assert gauges_snapshot()["realtime_active_channels"] == 0


@pytest.mark.asyncio
async def test_concurrent_first_subscribers_open_a_single_channel() -> None:
    mux, transport = await _multiplexer()
    unsubscribes = await asyncio.gather(
        *(mux.subscribe("t1", "posts", on_message=lambda message: None) for _ in range(5))
    )
    await _settle()

    assert len(transport.created_channels) == 1
    assert mux.subscription(TOPIC).subscription_count == 5
    for unsubscribe in unsubscribes:
        await unsubscribe()
    assert mux.topics == []


@pytest.mark.asyncio
async def test_topic_names_are_deterministic() -> None:
    mux, _ = await _multiplexer()
    assert mux.topic_for("t1", "posts") == TOPIC
    assert mux.topic_for("t1", "posts", "org-9") == "tenant:t1:posts:org-9"
    assert mux.topic_for("t1", "posts", None) == mux.topic_for("t1", "posts")


@pytest.mark.asyncio
async def test_subscribe_rejects_missing_tenant_and_unknown_entity() -> None:
    mux, transport = await _multiplexer()
    with pytest.raises(InvalidSubscriptionError):
        await mux.subscribe("", "posts", on_message=lambda message: None)
    with pytest.raises(InvalidSubscriptionError):
        await mux.subscribe("t1", "not_an_entity", on_message=lambda message: None)
    assert transport.created_channels == []


@pytest.mark.asyncio
async def test_late_joiner_is_notified_immediately_when_channel_is_live() -> None:
    mux, _ = await _multiplexer()
    first_topics: list[str] = []
    await mux.subscribe("t1", "posts", on_message=lambda message: None, on_subscribed=first_topics.append)
    await _settle()
    assert first_topics == [TOPIC]

    late_topics: list[str] = []
    await mux.subscribe("t1", "posts", on_message=lambda message: None, on_subscribed=late_topics.append)
    assert late_topics == [TOPIC]
    assert first_topics == [TOPIC]


@pytest.mark.asyncio
async def test_reconnect_backoff_is_bounded_and_exhaustion_is_reported() -> None:
    sleep = _RecordingSleep()
    mux, transport = await _multiplexer(sleep)
    transport.fail_next_handshakes(TOPIC, count=6)
    errors: list[Exception] = []
    exhausted = asyncio.Event()

    def on_error(error: Exception) -> None:
        errors.append(error)
        if isinstance(error, ReconnectExhaustedError):
            exhausted.set()

    await mux.subscribe("t1", "posts", on_message=lambda message: None, on_error=on_error)
    await asyncio.wait_for(exhausted.wait(), timeout=2)
    await _settle()

    assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert len(transport.created_channels) == 6
    channel_errors = [error for error in errors if not isinstance(error, ReconnectExhaustedError)]
    assert len(channel_errors) == 6
    assert all(isinstance(error, RealtimeChannelError) for error in channel_errors)
    assert isinstance(errors[-1], ReconnectExhaustedError)
    assert errors[-1].attempts == 5
    assert mux.subscription(TOPIC) is None
    assert transport.active_channels(TOPIC) == []
    counters = counters_snapshot()
    assert counters["realtime_reconnect_attempts_total"] == 5
    assert counters["realtime_reconnect_exhausted_total"] == 1


@pytest.mark.asyncio
async def test_successful_reconnect_resets_attempts_and_resumes_delivery() -> None:
    sleep = _RecordingSleep()
    mux, transport = await _multiplexer(sleep)
    transport.fail_next_handshakes(TOPIC, count=2)
    subscribed = asyncio.Event()
    received: list[ChangeMessage] = []

    await mux.subscribe(
        "t1",
        "posts",
        on_message=received.append,
        on_subscribed=lambda topic: subscribed.set(),
    )
    await asyncio.wait_for(subscribed.wait(), timeout=2)

    assert sleep.delays == [1.0, 2.0]
    assert mux.reconnect_attempts(TOPIC) == 0
    assert mux.subscription(TOPIC).connected is True
    assert len(transport.active_channels(TOPIC)) == 1

    await transport.publish(TOPIC, _insert_event())
    assert len(received) == 1


@pytest.mark.asyncio
async def test_runtime_channel_error_triggers_reconnect() -> None:
    sleep = _RecordingSleep()
    mux, transport = await _multiplexer(sleep)
    errors: list[Exception] = []
    subscribed_count = {"value": 0}

    def on_subscribed(topic: str) -> None:
        subscribed_count["value"] += 1

    await mux.subscribe("t1", "posts", on_message=lambda message: None, on_error=errors.append, on_subscribed=on_subscribed)
    await _settle()
    assert subscribed_count["value"] == 1

    transport.emit_error(TOPIC)
    await _settle(10)

    assert sleep.delays == [1.0]
    assert len(errors) == 1
    assert subscribed_count["value"] == 2
    assert len(transport.created_channels) == 2
    assert len(transport.active_channels(TOPIC)) == 1
    assert mux.reconnect_attempts(TOPIC) == 0


@pytest.mark.asyncio
async def test_server_close_drops_topic_without_reconnecting() -> None:
    sleep = _RecordingSleep()
    mux, transport = await _multiplexer(sleep)
    closed: list[str] = []
    await mux.subscribe("t1", "posts", on_message=lambda message: None, on_unsubscribed=closed.append)
    await _settle()

    transport.close_topic(TOPIC)
    await _settle()

    assert closed == [TOPIC]
    assert mux.subscription(TOPIC) is None
    assert sleep.delays == []
    assert len(transport.created_channels) == 1


@pytest.mark.asyncio
async def test_unknown_event_type_is_delivered_as_update() -> None:
    mux, transport = await _multiplexer()
    received: list[ChangeMessage] = []
    await mux.subscribe("t1", "posts", on_message=received.append)
    await _settle()

    event = _insert_event()
    event["eventType"] = "TRUNCATE"
    await transport.publish(TOPIC, event)

    assert [message.event for message in received] == [ChangeEventType.UPDATE]


@pytest.mark.asyncio
async def test_invalid_payload_is_reported_not_delivered() -> None:
    mux, transport = await _multiplexer()
    received: list[ChangeMessage] = []
    errors: list[Exception] = []
    await mux.subscribe("t1", "posts", on_message=received.append, on_error=errors.append)
    await _settle()

    await transport.publish(TOPIC, "not-json-object")  # type: ignore[arg-type]

    assert received == []
    assert len(errors) == 1
    assert isinstance(errors[0], MessageProcessingError)
    assert counters_snapshot()["realtime_messages_invalid_total"] == 1


@pytest.mark.asyncio
async def test_failing_handler_does_not_affect_other_subscribers() -> None:
    mux, transport = await _multiplexer()
    errors: list[Exception] = []
    received: list[ChangeMessage] = []

    def broken(message: ChangeMessage) -> None:
        raise RuntimeError("handler exploded")

    async def healthy(message: ChangeMessage) -> None:
        received.append(message)

    await mux.subscribe("t1", "posts", on_message=broken, on_error=errors.append)
    await mux.subscribe("t1", "posts", on_message=healthy)
    await _settle()

    await transport.publish(TOPIC, _insert_event())

    assert len(received) == 1
    assert len(errors) == 1
    assert str(errors[0]) == "handler exploded"
    assert counters_snapshot()["realtime_handler_errors_total"] == 1


@pytest.mark.asyncio
async def test_deduplicating_subscriber_skips_redelivered_rows() -> None:
    mux, transport = await _multiplexer()
    deduped: list[ChangeMessage] = []
    raw: list[ChangeMessage] = []
    await mux.subscribe("t1", "posts", on_message=deduped.append, deduplicate=True)
    await mux.subscribe("t1", "posts", on_message=raw.append)
    await _settle()

    await transport.publish(TOPIC, _insert_event("p1", "2026-01-01T00:00:00Z"))
    await transport.publish(TOPIC, _insert_event("p1", "2026-01-01T00:00:00Z"))

    assert len(deduped) == 1
    assert len(raw) == 2


@pytest.mark.asyncio
async def test_cleanup_releases_channels_and_cancels_pending_reconnects() -> None:
    async def never_wake(delay: float) -> None:
        await asyncio.Event().wait()

    mux, transport = await _multiplexer(never_wake)
    received: list[ChangeMessage] = []
    await mux.subscribe("t1", "posts", on_message=received.append)
    transport.fail_next_handshakes("tenant:t1:news")
    await mux.subscribe("t1", "news", on_message=received.append)
    await _settle()
    assert mux.topics == ["tenant:t1:news", TOPIC]

    await mux.cleanup()
    await _settle()

    assert mux.topics == []
    assert transport.active_channels() == []
    assert await transport.publish(TOPIC, _insert_event()) == 0
    assert received == []
    assert len(transport.created_channels) == 2
    assert gauges_snapshot()["realtime_active_channels"] == 0


@pytest.mark.asyncio
async def test_snapshot_reports_live_topics() -> None:
    mux, _ = await _multiplexer()
    await mux.subscribe("t1", "posts", on_message=lambda message: None)
    await mux.subscribe("t1", "posts", on_message=lambda message: None)
    await _settle()

    snapshot = mux.snapshot()
    assert len(snapshot) == 1
    assert snapshot[0]["topic"] == TOPIC
    assert snapshot[0]["subscription_count"] == 2
    assert snapshot[0]["connected"] is True
    assert snapshot[0]["reconnect_attempts"] == 0
