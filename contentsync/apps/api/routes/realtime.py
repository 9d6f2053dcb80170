from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from contentsync.apps.api.deps import get_multiplexer, require_admin
from contentsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from contentsync.core.config import get_settings
from contentsync.core.errors import ReconnectExhaustedError
from contentsync.domain.events import ChangeMessage
from contentsync.realtime.multiplexer import ChannelMultiplexer
from contentsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)
router = APIRouter(tags=["realtime"], responses=DEFAULT_ERROR_RESPONSES, dependencies=[Depends(require_admin)])

_STREAM_QUEUE_SIZE = 1000
_POLL_INTERVAL_S = 0.5


def _sse_message(event: str, payload: dict[str, Any]) -> str:
    # One compact JSON line per SSE frame.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
    return f"event: {event}\ndata: {data}\n\n"


def _offer(queue: asyncio.Queue, item: tuple[str, dict[str, Any]]) -> None:
    # Slow clients lose events rather than stalling the shared channel.
    try:
        queue.put_nowait(item)
    except asyncio.QueueFull:
        increment_counter("realtime_sse_dropped_total")


@router.get("/realtime/{tenant_id}/{entity}/stream")
async def stream_changes(
    tenant_id: str,
    entity: str,
    request: Request,
    suffix: str | None = Query(default=None, max_length=128),
    dedupe: bool = Query(default=False),
    multiplexer: ChannelMultiplexer = Depends(get_multiplexer),
) -> StreamingResponse:
    queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue(maxsize=_STREAM_QUEUE_SIZE)

    def on_message(message: ChangeMessage) -> None:
        _offer(queue, ("change", message.to_dict()))

    def on_error(error: Exception) -> None:
        code = "REALTIME_RECONNECT_EXHAUSTED" if isinstance(error, ReconnectExhaustedError) else "REALTIME_ERROR"
        _offer(queue, ("error", {"code": code, "message": str(error)}))

    await multiplexer.connect()
    unsubscribe = await multiplexer.subscribe(
        tenant_id,
        entity,
        suffix,
        on_message=on_message,
        on_error=on_error,
        on_subscribed=lambda topic: _offer(queue, ("subscribed", {"topic": topic})),
        on_unsubscribed=lambda topic: _offer(queue, ("closed", {"topic": topic})),
        deduplicate=dedupe,
    )
    heartbeat_s = max(1, get_settings().realtime_sse_heartbeat_s)

    async def event_stream() -> AsyncGenerator[str, None]:
        idle_s = 0.0
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event, payload = await asyncio.wait_for(queue.get(), timeout=_POLL_INTERVAL_S)
                except asyncio.TimeoutError:
                    idle_s += _POLL_INTERVAL_S
                    if idle_s >= heartbeat_s:
                        idle_s = 0.0
                        yield ": keepalive\n\n"
                    continue
                idle_s = 0.0
                yield _sse_message(event, payload)
                if event == "closed" or payload.get("code") == "REALTIME_RECONNECT_EXHAUSTED":
                    break
        finally:
            await unsubscribe()

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(event_stream(), headers=headers, media_type="text/event-stream")
