from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable

from contentsync.domain.events import ChangeMessage


@dataclass
class _SeenRecord:
    updated_at: str
    processed_at: float


class EventDeduplicator:
    """Drop stale or re-delivered row events for one subscriber.

    An event is skipped when its ``updated_at`` is not newer than the last one
    processed for the same id, or when it arrives within ``duplicate_window_s``
    of the previous delivery for that id. Entries expire after ``max_age_s``.
    """

    def __init__(
        self,
        *,
        max_age_s: float = 60.0,
        duplicate_window_s: float = 0.05,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._records: dict[str, _SeenRecord] = {}
        self._max_age_s = max_age_s
        self._duplicate_window_s = duplicate_window_s
        self._time = time_source or time.monotonic

    def should_process(self, record_id: str, updated_at: str) -> bool:
        now = self._time()
        self._expire(now)
        existing = self._records.get(record_id)
        if existing is not None:
            if updated_at <= existing.updated_at:
                return False
            if now - existing.processed_at < self._duplicate_window_s:
                return False
        self._records[record_id] = _SeenRecord(updated_at=updated_at, processed_at=now)
        return True

    def should_process_message(self, message: ChangeMessage) -> bool:
        # Rows without id/updated_at cannot be ordered, so they always pass.
        record = message.record or {}
        record_id = record.get("id")
        updated_at = record.get("updated_at")
        if record_id is None or updated_at is None:
            return True
        return self.should_process(str(record_id), str(updated_at))

    def clear(self) -> None:
        self._records.clear()

    def _expire(self, now: float) -> None:
        stale = [key for key, record in self._records.items() if now - record.processed_at > self._max_age_s]
        for key in stale:
            del self._records[key]
