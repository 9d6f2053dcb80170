from __future__ import annotations

from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


ERROR_DETAILS_MESSAGE_MAX = 5000
ERROR_DETAILS_CAUSE_MAX = 1000


class _MetaModel(BaseModel):
    # Unknown keys are dropped so callers cannot persist arbitrary payloads.
    model_config = ConfigDict(extra="ignore")


class RetryPolicy(_MetaModel):
    max_retries: int = 0
    backoff: Literal["exponential", "fixed"] = "exponential"
    base_ms: int = 1000
    max_ms: int | None = None


class JobStats(_MetaModel):
    items_processed: int | None = None
    rows_affected: int | None = None
    tokens_used: int | None = None
    shards: int | None = None


class ContentDiffSummary(_MetaModel):
    kind: Literal["content_diff"] = "content_diff"
    target_table: str | None = None
    organization_id: str | None = None
    source_count: int | None = None
    persisted_count: int | None = None
    insert_count: int | None = None
    update_count: int | None = None
    delete_count: int | None = None
    diff_rate: float | None = None
    threshold_percent: float | None = None
    mv_refreshed: bool | None = None


class CitationAggregationSummary(_MetaModel):
    kind: Literal["citation_aggregation"] = "citation_aggregation"
    organization_id: str | None = None
    period_start: str | None = None
    period_end: str | None = None
    citations_count: int | None = None
    sources_count: int | None = None
    total_weight: float | None = None
    aggregates_written: int | None = None


class OtherSummary(_MetaModel):
    # Escape hatch for ad-hoc jobs; the payload is opaque JSON.
    kind: Literal["other"] = "other"
    data: dict[str, Any] = Field(default_factory=dict)


JobSummary = Annotated[
    Union[ContentDiffSummary, CitationAggregationSummary, OtherSummary],
    Field(discriminator="kind"),
]


class EnvInfo(_MetaModel):
    region: str | None = None
    version: str | None = None
    git_commit_hash: str | None = None


class ErrorDetails(_MetaModel):
    message_full: str | None = None
    cause: str | None = None
    context: dict[str, Any] | None = None

    @field_validator("message_full", mode="before")
    @classmethod
    def _clip_message(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value[:ERROR_DETAILS_MESSAGE_MAX]
        return value

    @field_validator("cause", mode="before")
    @classmethod
    def _clip_cause(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value[:ERROR_DETAILS_CAUSE_MAX]
        return value


class JobMeta(_MetaModel):
    scope: Literal["webhook", "internal", "edge", "batch", "cron"] | None = None
    runner: Literal[
        "supabase_scheduler",
        "external_cron",
        "edge_function",
        "arq_worker",
        "api_inline",
        "cli",
    ] | None = None
    retry_policy: RetryPolicy | None = None
    stats: JobStats | None = None
    input_summary: JobSummary | None = None
    output_summary: JobSummary | None = None
    env: EnvInfo | None = None
    error_details: ErrorDetails | None = None
    shard: str | None = None
    trigger_id: str | None = None
    cancel_requested: bool | None = None
    total_count: int | None = None
    diff_count: int | None = None
    is_full_rebuild: bool | None = None
    target_period_start: str | None = None
    target_period_end: str | None = None
    target_org_id: str | None = None


def sanitize_meta(raw: Mapping[str, Any] | JobMeta | None) -> dict[str, Any]:
    # Validate against the known shapes and return the JSON-ready subset.
    if raw is None:
        return {}
    meta = raw if isinstance(raw, JobMeta) else JobMeta.model_validate(dict(raw))
    return meta.model_dump(mode="json", exclude_none=True)


def merge_meta(
    existing: Mapping[str, Any] | None,
    patch: Mapping[str, Any] | JobMeta | None,
) -> dict[str, Any]:
    # Top-level keys in the patch replace stored ones; nested objects are not deep-merged.
    merged = dict(existing or {})
    merged.update(sanitize_meta(patch))
    return sanitize_meta(merged)
