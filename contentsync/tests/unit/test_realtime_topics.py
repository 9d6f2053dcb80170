from __future__ import annotations

import pytest

from contentsync.core.errors import InvalidSubscriptionError, TransportConfigError
from contentsync.core.config import get_settings
from contentsync.realtime.factory import get_realtime_transport
from contentsync.realtime.memory import InMemoryTransport
from contentsync.realtime.redis_transport import RedisTransport
from contentsync.realtime.topics import DEFAULT_ENTITIES, build_topic, parse_topic


def test_build_topic_formats_tenant_entity_and_suffix() -> None:
    assert build_topic("t1", "posts") == "tenant:t1:posts"
    assert build_topic("t1", "posts", "org-1") == "tenant:t1:posts:org-1"
    assert build_topic(" t1 ", "posts") == "tenant:t1:posts"


def test_build_topic_rejects_invalid_input() -> None:
    with pytest.raises(InvalidSubscriptionError):
        build_topic("", "posts")
    with pytest.raises(InvalidSubscriptionError):
        build_topic("t1", "")
    with pytest.raises(InvalidSubscriptionError):
        build_topic("t1", "widgets")


def test_custom_entity_set_extends_defaults() -> None:
    entities = DEFAULT_ENTITIES | {"widgets"}
    assert build_topic("t1", "widgets", entities=entities) == "tenant:t1:widgets"


def test_parse_topic_inverts_build_topic() -> None:
    assert parse_topic("tenant:t1:posts") == ("t1", "posts", None)
    assert parse_topic("tenant:t1:posts:org:1") == ("t1", "posts", "org:1")
    with pytest.raises(InvalidSubscriptionError):
        parse_topic("org:t1")


def test_redis_transport_only_opens_private_channels() -> None:
    transport = RedisTransport("redis://localhost:6379/0", prefix="cs-test")
    assert transport.channel_name("tenant:t1:posts") == "cs-test:private:tenant:t1:posts"
    with pytest.raises(TransportConfigError):
        transport.channel("tenant:t1:posts", private=False)
    with pytest.raises(TransportConfigError):
        transport.channel("tenant:t1:posts")


def test_transport_factory_follows_settings(monkeypatch) -> None:
    assert isinstance(get_realtime_transport(), InMemoryTransport)
    monkeypatch.setenv("REALTIME_TRANSPORT", "redis")
    get_settings.cache_clear()
    assert isinstance(get_realtime_transport(), RedisTransport)
    monkeypatch.setenv("REALTIME_TRANSPORT", "carrier-pigeon")
    get_settings.cache_clear()
    with pytest.raises(TransportConfigError):
        get_realtime_transport()
