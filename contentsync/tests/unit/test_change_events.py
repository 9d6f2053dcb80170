from __future__ import annotations

import pytest

from contentsync.core.errors import MessageProcessingError
from contentsync.domain.events import ChangeEventType, coerce_event_type, normalize_change_event
from contentsync.realtime.dedup import EventDeduplicator


def test_coerce_event_type_defaults_unknown_kinds_to_update() -> None:
    assert coerce_event_type("insert") is ChangeEventType.INSERT
    assert coerce_event_type("DELETE") is ChangeEventType.DELETE
    assert coerce_event_type("TRUNCATE") is ChangeEventType.UPDATE
    assert coerce_event_type(None) is ChangeEventType.UPDATE
    assert coerce_event_type(42) is ChangeEventType.UPDATE


def test_normalize_flat_payload() -> None:
    message = normalize_change_event(
        {
            "eventType": "UPDATE",
            "schema": "public",
            "table": "posts",
            "new": {"id": "p1", "title": "New"},
            "old": {"id": "p1", "title": "Old"},
            "commit_timestamp": "2026-01-01T00:00:00Z",
        }
    )
    assert message.event is ChangeEventType.UPDATE
    assert message.table == "posts"
    assert message.record == {"id": "p1", "title": "New"}
    assert message.timestamp == "2026-01-01T00:00:00Z"
    assert message.to_dict()["event"] == "UPDATE"


def test_normalize_broadcast_payload_reads_nested_change() -> None:
    message = normalize_change_event(
        {
            "type": "broadcast",
            "event": "DELETE",
            "payload": {"table": "faqs", "old": {"id": "f1"}},
        }
    )
    assert message.type == "broadcast"
    assert message.event is ChangeEventType.DELETE
    assert message.table == "faqs"
    assert message.record == {"id": "f1"}
    assert message.timestamp


@pytest.mark.parametrize("payload", ["raw", ["list"], {"new": "not-an-object"}, {"old": 3}])
def test_normalize_rejects_malformed_payloads(payload) -> None:
    with pytest.raises(MessageProcessingError):
        normalize_change_event(payload)


def test_deduplicator_orders_by_updated_at() -> None:
    now = {"t": 0.0}
    dedup = EventDeduplicator(duplicate_window_s=0.05, time_source=lambda: now["t"])

    assert dedup.should_process("r1", "2026-01-01T00:00:00Z") is True
    now["t"] = 1.0
    assert dedup.should_process("r1", "2026-01-01T00:00:00Z") is False
    assert dedup.should_process("r1", "2025-12-31T00:00:00Z") is False
    assert dedup.should_process("r1", "2026-01-01T00:00:01Z") is True
    assert dedup.should_process("r2", "2026-01-01T00:00:00Z") is True


def test_deduplicator_drops_bursts_inside_window_and_expires_entries() -> None:
    now = {"t": 0.0}
    dedup = EventDeduplicator(max_age_s=10.0, duplicate_window_s=0.5, time_source=lambda: now["t"])

    assert dedup.should_process("r1", "a") is True
    now["t"] = 0.1
    assert dedup.should_process("r1", "b") is False
    now["t"] = 20.0
    assert dedup.should_process("r1", "a") is True


def test_deduplicator_passes_rows_without_ordering_fields() -> None:
    dedup = EventDeduplicator()
    message = normalize_change_event({"eventType": "INSERT", "new": {"title": "no id"}})
    assert dedup.should_process_message(message) is True
    assert dedup.should_process_message(message) is True
