from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Mapping
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from contentsync.core.config import get_settings
from contentsync.core.errors import JobRunStateError
from contentsync.domain.job_meta import JobMeta, merge_meta, sanitize_meta
from contentsync.domain.models import JobRun
from contentsync.services.telemetry import increment_counter, record_job_outcome


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_RUNNING)
TERMINAL_STATUSES = (STATUS_SUCCESS, STATUS_FAILED)

CONCURRENCY_WINDOW = timedelta(hours=24)

MetaInput = Mapping[str, Any] | JobMeta | None


@dataclass(frozen=True)
class BeginRunResult:
    success: bool
    is_duplicate: bool = False
    record: JobRun | None = None
    error: str | None = None


@dataclass(frozen=True)
class ConcurrencyCheck:
    allowed: bool
    running_count: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; stored values are always UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _env_meta() -> dict[str, Any]:
    settings = get_settings()
    return {
        "env": {
            "region": settings.region_id,
            "version": settings.app_version,
            "git_commit_hash": settings.git_commit_hash,
        }
    }


def truncate_error_message(message: str, limit: int | None = None) -> str:
    limit = limit if limit is not None else get_settings().job_error_message_max_chars
    if len(message) <= limit:
        return message
    return message[:limit]


def _normalize_key(idempotency_key: str | None) -> str | None:
    if idempotency_key is None:
        return None
    cleaned = idempotency_key.strip()
    return cleaned or None


async def _insert_running(
    session: AsyncSession,
    *,
    job_name: str,
    idempotency_key: str | None,
    request_id: str | None,
    meta: dict[str, Any],
) -> JobRun | None:
    # Returns None when the (job_name, idempotency_key) constraint rejects the row.
    now = _utc_now()
    run = JobRun(
        id=uuid4().hex,
        job_name=job_name,
        idempotency_key=idempotency_key,
        request_id=request_id,
        status=STATUS_RUNNING,
        meta=meta,
        retry_count=0,
        started_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(run)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        if idempotency_key is None:
            raise
        return None
    return run


async def _find_by_key(session: AsyncSession, job_name: str, idempotency_key: str) -> JobRun | None:
    result = await session.execute(
        select(JobRun)
        .where(JobRun.job_name == job_name, JobRun.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _readmit_failed(session: AsyncSession, existing: JobRun, meta: dict[str, Any]) -> BeginRunResult:
    # Scheduler retries reuse the key; flip the failed row back to running exactly once.
    now = _utc_now()
    carried = {key: value for key, value in (existing.meta or {}).items() if key not in ("error_details", "cancel_requested")}
    result = await session.execute(
        update(JobRun)
        .where(JobRun.id == existing.id, JobRun.status == STATUS_FAILED)
        .values(
            status=STATUS_RUNNING,
            retry_count=JobRun.retry_count + 1,
            error_code=None,
            error_message=None,
            started_at=now,
            completed_at=None,
            duration_ms=None,
            meta=merge_meta(carried, meta),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    await session.refresh(existing)
    if result.rowcount != 1:
        # Another admission re-admitted the row first.
        return BeginRunResult(success=True, is_duplicate=True, record=existing)
    increment_counter(f"job_runs_retried_total.{existing.job_name}")
    logger.info(
        "job_run_readmitted job=%s id=%s retry_count=%d",
        existing.job_name,
        existing.id,
        existing.retry_count,
    )
    return BeginRunResult(success=True, record=existing)


async def begin_run(
    session: AsyncSession,
    *,
    job_name: str,
    idempotency_key: str | None = None,
    meta: MetaInput = None,
    request_id: str | None = None,
) -> BeginRunResult:
    """Admit a job run through the ledger.

    The unique ``(job_name, idempotency_key)`` constraint is the only mutual
    exclusion: concurrent callers with the same key race on the insert and the
    loser reads the winner's row as a duplicate. Rows older than the retention
    window are deleted and the insert is retried once. Failures never raise;
    they come back as ``success=False`` with ``error`` set.
    """
    settings = get_settings()
    key = _normalize_key(idempotency_key)
    try:
        clean_meta = merge_meta(_env_meta(), meta)
    except ValidationError as exc:
        logger.warning("job_meta_invalid job=%s errors=%d", job_name, exc.error_count())
        return BeginRunResult(success=False, error=f"Invalid job meta: {exc.error_count()} validation errors")

    retention = timedelta(hours=settings.job_idempotency_retention_hours)
    try:
        for _ in range(2):
            record = await _insert_running(
                session,
                job_name=job_name,
                idempotency_key=key,
                request_id=request_id,
                meta=clean_meta,
            )
            if record is not None:
                increment_counter(f"job_runs_started_total.{job_name}")
                logger.info("job_run_started job=%s id=%s key=%s", job_name, record.id, key)
                return BeginRunResult(success=True, record=record)

            if key is None:
                logger.warning("job_begin_rejected job=%s key=None", job_name)
                return BeginRunResult(success=False, error="Job run insert was rejected without an idempotency key")
            existing = await _find_by_key(session, job_name, key)
            if existing is None:
                # The conflicting row disappeared (pruned); retry the insert.
                await session.commit()
                continue
            created_at = _as_utc(existing.created_at) or _utc_now()
            if created_at < _utc_now() - retention:
                await session.execute(delete(JobRun).where(JobRun.id == existing.id))
                await session.commit()
                logger.info("job_idempotency_expired job=%s id=%s key=%s", job_name, existing.id, key)
                continue
            if existing.status == STATUS_FAILED and settings.job_retry_failed_runs:
                return await _readmit_failed(session, existing, clean_meta)
            await session.commit()
            increment_counter(f"job_runs_duplicate_total.{job_name}")
            logger.info(
                "job_run_duplicate job=%s id=%s key=%s status=%s",
                job_name,
                existing.id,
                key,
                existing.status,
            )
            return BeginRunResult(success=True, is_duplicate=True, record=existing)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("job_begin_failed job=%s key=%s", job_name, key)
        return BeginRunResult(success=False, error=f"Failed to begin job run: {exc.__class__.__name__}")
    logger.warning("job_begin_retry_exhausted job=%s key=%s", job_name, key)
    return BeginRunResult(success=False, error="Idempotency key conflict could not be resolved")


async def _load_active(session: AsyncSession, job_id: str) -> JobRun:
    run = await session.get(JobRun, job_id, populate_existing=True)
    if run is None:
        raise JobRunStateError(f"Job run {job_id} not found")
    if run.status not in ACTIVE_STATUSES:
        raise JobRunStateError(f"Job run {job_id} is already {run.status}")
    return run


async def _finish(
    session: AsyncSession,
    run: JobRun,
    *,
    status: str,
    meta: dict[str, Any],
    error_code: str | None = None,
    error_message: str | None = None,
) -> JobRun:
    # Conditional transition: only one completion can move an active run to a terminal state.
    now = _utc_now()
    started_at = _as_utc(run.started_at) or _as_utc(run.created_at) or now
    duration_ms = max(0, int((now - started_at).total_seconds() * 1000))
    result = await session.execute(
        update(JobRun)
        .where(JobRun.id == run.id, JobRun.status.in_(ACTIVE_STATUSES))
        .values(
            status=status,
            completed_at=now,
            duration_ms=duration_ms,
            meta=meta,
            error_code=error_code,
            error_message=error_message,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise JobRunStateError(f"Job run {run.id} was completed concurrently")
    await session.commit()
    await session.refresh(run)
    record_job_outcome(job_name=run.job_name, status=status, duration_ms=duration_ms)
    return run


async def complete_success(session: AsyncSession, job_id: str, meta: MetaInput = None) -> JobRun:
    run = await _load_active(session, job_id)
    finished = await _finish(session, run, status=STATUS_SUCCESS, meta=merge_meta(run.meta, meta))
    logger.info(
        "job_run_succeeded job=%s id=%s duration_ms=%s",
        finished.job_name,
        finished.id,
        finished.duration_ms,
    )
    return finished


async def complete_failure(
    session: AsyncSession,
    job_id: str,
    error_code: str,
    error_message: str,
    meta: MetaInput = None,
    *,
    cause: str | None = None,
    context: dict[str, Any] | None = None,
) -> JobRun:
    run = await _load_active(session, job_id)
    merged = merge_meta(run.meta, meta)
    merged = merge_meta(
        merged,
        {"error_details": {"message_full": error_message, "cause": cause, "context": context}},
    )
    finished = await _finish(
        session,
        run,
        status=STATUS_FAILED,
        meta=merged,
        error_code=error_code,
        error_message=truncate_error_message(error_message),
    )
    logger.warning(
        "job_run_failed job=%s id=%s code=%s duration_ms=%s",
        finished.job_name,
        finished.id,
        error_code,
        finished.duration_ms,
    )
    return finished


async def request_cancel(session: AsyncSession, job_id: str) -> bool:
    # Cooperative: running jobs poll is_cancel_requested between phases.
    run = await session.get(JobRun, job_id, populate_existing=True)
    if run is None or run.status not in ACTIVE_STATUSES:
        await session.commit()
        return False
    result = await session.execute(
        update(JobRun)
        .where(JobRun.id == job_id, JobRun.status.in_(ACTIVE_STATUSES))
        .values(meta=merge_meta(run.meta, {"cancel_requested": True}), updated_at=_utc_now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    accepted = result.rowcount == 1
    if accepted:
        logger.info("job_cancel_requested job=%s id=%s", run.job_name, job_id)
    return accepted


async def is_cancel_requested(session: AsyncSession, job_id: str) -> bool:
    result = await session.execute(select(JobRun.meta).where(JobRun.id == job_id))
    meta = result.scalar_one_or_none() or {}
    await session.commit()
    return bool(meta.get("cancel_requested"))


async def check_concurrent_running(
    session: AsyncSession,
    job_name: str,
    max_concurrent: int | None = None,
) -> ConcurrencyCheck:
    # Fail open: a broken count must not block job admission.
    limit = max_concurrent if max_concurrent is not None else get_settings().job_max_concurrent_runs
    cutoff = _utc_now() - CONCURRENCY_WINDOW
    try:
        result = await session.execute(
            select(func.count())
            .select_from(JobRun)
            .where(
                JobRun.job_name == job_name,
                JobRun.status == STATUS_RUNNING,
                JobRun.started_at >= cutoff,
            )
        )
        running = int(result.scalar_one())
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.warning("job_concurrency_check_failed job=%s", job_name, exc_info=True)
        return ConcurrencyCheck(allowed=True, running_count=0)
    return ConcurrencyCheck(allowed=running < limit, running_count=running)


async def get_run(session: AsyncSession, job_id: str) -> JobRun | None:
    return await session.get(JobRun, job_id, populate_existing=True)


async def list_runs(
    session: AsyncSession,
    *,
    job_name: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[JobRun]:
    query = select(JobRun)
    if job_name:
        query = query.where(JobRun.job_name == job_name)
    if status:
        query = query.where(JobRun.status == status)
    result = await session.execute(query.order_by(JobRun.created_at.desc()).limit(max(1, min(limit, 500))))
    return list(result.scalars().all())


async def list_stale_running(session: AsyncSession, *, older_than: timedelta) -> list[JobRun]:
    # Runbook query: runs have no timeout, so crashed workers leave rows in running.
    cutoff = _utc_now() - older_than
    result = await session.execute(
        select(JobRun)
        .where(JobRun.status == STATUS_RUNNING, JobRun.started_at < cutoff)
        .order_by(JobRun.started_at.asc())
    )
    return list(result.scalars().all())


async def prune_job_runs(session: AsyncSession, *, older_than: timedelta) -> int:
    cutoff = _utc_now() - older_than
    result = await session.execute(
        delete(JobRun).where(JobRun.status.in_(TERMINAL_STATUSES), JobRun.created_at < cutoff)
    )
    await session.commit()
    pruned = int(result.rowcount or 0)
    logger.info("job_runs_pruned count=%d", pruned)
    return pruned
