from __future__ import annotations

from collections.abc import Iterable

from contentsync.core.errors import InvalidSubscriptionError


# Entities that publish change events per tenant; extend by passing a custom set to the multiplexer.
DEFAULT_ENTITIES: frozenset[str] = frozenset(
    {
        "organizations",
        "services",
        "posts",
        "news",
        "faqs",
        "case_studies",
        "products",
        "cms",
        "qa_entries",
        "interview_sessions",
        "ai_citations",
        "monthly_reports",
        "report_jobs",
        "job_runs",
    }
)

TOPIC_PREFIX = "tenant"


def build_topic(
    tenant_id: str,
    entity: str,
    suffix: str | None = None,
    *,
    entities: Iterable[str] = DEFAULT_ENTITIES,
) -> str:
    # Topic names are the sharding key for physical channel reuse, so they must be deterministic.
    tenant = (tenant_id or "").strip()
    if not tenant:
        raise InvalidSubscriptionError("tenant_id is required")
    name = (entity or "").strip()
    if not name:
        raise InvalidSubscriptionError("entity is required")
    if name not in set(entities):
        raise InvalidSubscriptionError(f"Unsupported realtime entity: {name}")
    topic = f"{TOPIC_PREFIX}:{tenant}:{name}"
    if suffix:
        topic = f"{topic}:{suffix}"
    return topic


def parse_topic(topic: str) -> tuple[str, str, str | None]:
    # Inverse of build_topic for logs and ops views; suffixes may contain colons.
    parts = topic.split(":", 3)
    if len(parts) < 3 or parts[0] != TOPIC_PREFIX:
        raise InvalidSubscriptionError(f"Malformed realtime topic: {topic}")
    suffix = parts[3] if len(parts) == 4 else None
    return parts[1], parts[2], suffix
