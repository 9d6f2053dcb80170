from __future__ import annotations

from contentsync.core.config import Settings, get_settings
from contentsync.core.errors import TransportConfigError
from contentsync.realtime.memory import InMemoryTransport
from contentsync.realtime.redis_transport import RedisTransport
from contentsync.realtime.transport import RealtimeTransport


def get_realtime_transport(settings: Settings | None = None) -> RealtimeTransport:
    # Select the realtime transport based on configuration.
    settings = settings or get_settings()
    name = settings.realtime_transport.lower()
    if name == "redis":
        return RedisTransport(settings.redis_url, prefix=settings.realtime_redis_prefix)
    if name == "memory":
        return InMemoryTransport()
    raise TransportConfigError(f"Unsupported realtime transport: {settings.realtime_transport}")
