from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any, TypedDict

from contentsync.core.errors import MessageProcessingError


logger = logging.getLogger(__name__)


class ChangeEventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class InboundChangePayload(TypedDict, total=False):
    # Wire shape published by database triggers and content-edit routes.
    type: str
    eventType: str
    event: str
    table: str
    schema: str
    new: dict[str, Any] | None
    old: dict[str, Any] | None
    commit_timestamp: str
    timestamp: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class ChangeMessage:
    # Canonical message delivered to subscribers regardless of transport framing.
    type: str
    event: ChangeEventType
    table: str | None
    schema: str | None
    new: dict[str, Any] | None
    old: dict[str, Any] | None
    timestamp: str

    @property
    def record(self) -> dict[str, Any] | None:
        # DELETE events only carry the old row image.
        if self.event is ChangeEventType.DELETE:
            return self.old
        return self.new

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["event"] = self.event.value
        return data


def coerce_event_type(raw: Any) -> ChangeEventType:
    # Unknown kinds become UPDATE so subscribers always receive a deliverable message.
    if isinstance(raw, ChangeEventType):
        return raw
    if isinstance(raw, str):
        try:
            return ChangeEventType(raw.strip().upper())
        except ValueError:
            pass
    logger.debug("realtime_event_coerced raw=%r coerced=UPDATE", raw)
    return ChangeEventType.UPDATE


def normalize_change_event(raw: Any) -> ChangeMessage:
    if not isinstance(raw, Mapping):
        raise MessageProcessingError(f"Realtime payload must be an object, got {type(raw).__name__}")
    payload: Mapping[str, Any] = raw
    # Broadcast frames nest the row change under "payload".
    nested = payload.get("payload")
    if isinstance(nested, Mapping) and not any(key in payload for key in ("new", "old", "table")):
        body: Mapping[str, Any] = nested
    else:
        body = payload
    event = coerce_event_type(body.get("eventType") or body.get("event") or payload.get("event"))
    new = body.get("new")
    old = body.get("old")
    if new is not None and not isinstance(new, Mapping):
        raise MessageProcessingError("Realtime payload field 'new' must be an object")
    if old is not None and not isinstance(old, Mapping):
        raise MessageProcessingError("Realtime payload field 'old' must be an object")
    timestamp = (
        body.get("commit_timestamp")
        or body.get("timestamp")
        or payload.get("timestamp")
        or datetime.now(timezone.utc).isoformat()
    )
    return ChangeMessage(
        type=str(payload.get("type") or "postgres_changes"),
        event=event,
        table=body.get("table"),
        schema=body.get("schema"),
        new=dict(new) if new is not None else None,
        old=dict(old) if old is not None else None,
        timestamp=str(timestamp),
    )
