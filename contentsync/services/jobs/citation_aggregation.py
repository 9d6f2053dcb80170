from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, time as dt_time, timezone
import logging
import time
from typing import Any

from pydantic import BaseModel, model_validator
from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentsync.domain.models import AiCitation, AiCitationPeriodAggregate
from contentsync.persistence.db import SessionLocal
from contentsync.services.jobs.common import record_failure
from contentsync.services.job_ledger import begin_run, complete_success


logger = logging.getLogger(__name__)

JOB_NAME = "citation_aggregation"
CITATION_AGGREGATION_ERROR = "CITATION_AGGREGATION_ERROR"


class CitationAggregationInput(BaseModel):
    organization_id: str
    # Half-open period: period_start <= cited_at < period_end.
    period_start: date
    period_end: date
    request_id: str | None = None

    @model_validator(mode="after")
    def _check_period(self) -> CitationAggregationInput:
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self

    @property
    def idempotency_key(self) -> str:
        return self.request_id or f"{self.organization_id}:{self.period_start.isoformat()}:{self.period_end.isoformat()}"


@dataclass(frozen=True)
class SourceAggregate:
    source_key: str
    title: str | None
    url: str | None
    citations_count: int
    total_weight: float
    total_quoted_tokens: int
    total_quoted_chars: int
    max_score: float | None
    avg_score: float | None
    last_cited_at: datetime | None


@dataclass
class CitationAggregationResult:
    success: bool
    organization_id: str
    period_start: str
    period_end: str
    citations_count: int = 0
    sources_count: int = 0
    total_weight: float = 0.0
    duration_ms: int = 0
    job_id: str | None = None
    is_duplicate: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _day_start(value: date) -> datetime:
    return datetime.combine(value, dt_time.min, tzinfo=timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def aggregate_citations(
    session: AsyncSession,
    organization_id: str,
    period_start: date,
    period_end: date,
) -> list[SourceAggregate]:
    # Group raw citations per source over the half-open period.
    result = await session.execute(
        select(
            AiCitation.source_key,
            func.max(AiCitation.title),
            func.max(AiCitation.url),
            func.count(AiCitation.id),
            func.coalesce(func.sum(AiCitation.weight), 0.0),
            func.coalesce(func.sum(AiCitation.quoted_tokens), 0),
            func.coalesce(func.sum(AiCitation.quoted_chars), 0),
            func.max(AiCitation.score),
            func.avg(AiCitation.score),
            func.max(AiCitation.cited_at),
        )
        .where(
            AiCitation.organization_id == organization_id,
            AiCitation.cited_at >= _day_start(period_start),
            AiCitation.cited_at < _day_start(period_end),
        )
        .group_by(AiCitation.source_key)
        .order_by(AiCitation.source_key)
    )
    aggregates: list[SourceAggregate] = []
    for row in result.all():
        (source_key, title, url, count, weight, tokens, chars, max_score, avg_score, last_cited_at) = row
        aggregates.append(
            SourceAggregate(
                source_key=source_key,
                title=title,
                url=url,
                citations_count=int(count),
                total_weight=float(weight),
                total_quoted_tokens=int(tokens),
                total_quoted_chars=int(chars),
                max_score=float(max_score) if max_score is not None else None,
                avg_score=float(avg_score) if avg_score is not None else None,
                last_cited_at=_as_utc(last_cited_at),
            )
        )
    return aggregates


async def _replace_period_rows(
    session: AsyncSession,
    job_input: CitationAggregationInput,
    aggregates: list[SourceAggregate],
    job_id: str,
) -> None:
    # Same transaction for purge and insert so readers see the old or the new period, never neither.
    await session.execute(
        delete(AiCitationPeriodAggregate).where(
            AiCitationPeriodAggregate.organization_id == job_input.organization_id,
            AiCitationPeriodAggregate.period_start == job_input.period_start,
            AiCitationPeriodAggregate.period_end == job_input.period_end,
        )
    )
    if aggregates:
        now = datetime.now(timezone.utc)
        await session.execute(
            insert(AiCitationPeriodAggregate),
            [
                {
                    "organization_id": job_input.organization_id,
                    "period_start": job_input.period_start,
                    "period_end": job_input.period_end,
                    "source_key": item.source_key,
                    "title": item.title,
                    "url": item.url,
                    "citations_count": item.citations_count,
                    "total_weight": item.total_weight,
                    "total_quoted_tokens": item.total_quoted_tokens,
                    "total_quoted_chars": item.total_quoted_chars,
                    "max_score": item.max_score,
                    "avg_score": item.avg_score,
                    "last_cited_at": item.last_cited_at,
                    "aggregated_at": now,
                    "job_run_id": job_id,
                }
                for item in aggregates
            ],
        )


async def run_citation_aggregation_job(
    job_input: CitationAggregationInput,
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    runner: str = "api_inline",
) -> CitationAggregationResult:
    started = time.monotonic()
    period = {
        "organization_id": job_input.organization_id,
        "period_start": job_input.period_start.isoformat(),
        "period_end": job_input.period_end.isoformat(),
    }
    async with session_factory() as session:
        admission = await begin_run(
            session,
            job_name=JOB_NAME,
            idempotency_key=job_input.idempotency_key,
            request_id=job_input.request_id,
            meta={
                "scope": "batch",
                "runner": runner,
                "target_org_id": job_input.organization_id,
                "target_period_start": period["period_start"],
                "target_period_end": period["period_end"],
                "input_summary": {"kind": "citation_aggregation", **period},
            },
        )
    if not admission.success or admission.record is None:
        return CitationAggregationResult(
            success=False,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=admission.error or "Failed to start job",
            **period,
        )
    job_id = admission.record.id
    if admission.is_duplicate:
        return CitationAggregationResult(
            success=True,
            duration_ms=int((time.monotonic() - started) * 1000),
            job_id=job_id,
            is_duplicate=True,
            error="Duplicate job detected",
            **period,
        )

    try:
        async with session_factory() as session:
            aggregates = await aggregate_citations(
                session,
                job_input.organization_id,
                job_input.period_start,
                job_input.period_end,
            )
            await _replace_period_rows(session, job_input, aggregates, job_id)
            await session.commit()
        citations_count = sum(item.citations_count for item in aggregates)
        total_weight = sum(item.total_weight for item in aggregates)
        async with session_factory() as session:
            await complete_success(
                session,
                job_id,
                meta={
                    "total_count": citations_count,
                    "stats": {"items_processed": citations_count, "rows_affected": len(aggregates)},
                    "output_summary": {
                        "kind": "citation_aggregation",
                        **period,
                        "citations_count": citations_count,
                        "sources_count": len(aggregates),
                        "total_weight": total_weight,
                        "aggregates_written": len(aggregates),
                    },
                },
            )
    except Exception as exc:  # noqa: BLE001 - every job failure is recorded once on the ledger
        logger.exception("citation_aggregation_failed job_id=%s org=%s", job_id, job_input.organization_id)
        await record_failure(session_factory, job_id, CITATION_AGGREGATION_ERROR, exc)
        return CitationAggregationResult(
            success=False,
            duration_ms=int((time.monotonic() - started) * 1000),
            job_id=job_id,
            error=str(exc) or exc.__class__.__name__,
            **period,
        )

    logger.info(
        "citation_aggregation_completed job_id=%s org=%s sources=%d citations=%d",
        job_id,
        job_input.organization_id,
        len(aggregates),
        citations_count,
    )
    return CitationAggregationResult(
        success=True,
        citations_count=citations_count,
        sources_count=len(aggregates),
        total_weight=total_weight,
        duration_ms=int((time.monotonic() - started) * 1000),
        job_id=job_id,
        **period,
    )
