from __future__ import annotations


class ContentSyncError(Exception):
    """Base error for contentsync."""


class InvalidSubscriptionError(ContentSyncError):
    """Subscription request is missing a tenant or names an unknown entity."""


class RealtimeChannelError(ContentSyncError):
    """Transport reported an error for a physical channel."""

    def __init__(self, topic: str, message: str | None = None) -> None:
        self.topic = topic
        super().__init__(message or f"Realtime channel error for {topic}")


class ReconnectExhaustedError(RealtimeChannelError):
    """Reconnect attempts for a topic ran out; a fresh subscribe is required."""

    def __init__(self, topic: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(topic, f"Realtime reconnect attempts exhausted for {topic} after {attempts} attempts")


class MessageProcessingError(ContentSyncError):
    """Inbound realtime payload could not be normalized or delivered."""


class TransportConfigError(ContentSyncError):
    """Missing or invalid realtime transport configuration."""


class JobRunStateError(ContentSyncError):
    """Job run is unknown or already in a terminal state."""


class ThresholdConfigError(ContentSyncError):
    """Diff rebuild threshold setting is missing or out of range."""


class UnknownTargetTableError(ContentSyncError):
    """Content diff target is not a supported read table."""


class DatabaseError(ContentSyncError):
    """Database layer failure."""


class JobCancelledError(ContentSyncError):
    """Cooperative cancel was requested for a running job."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job run {job_id} was cancelled")


class DiffPlanError(ContentSyncError):
    """Planned diff change is missing the row data its operation needs."""
