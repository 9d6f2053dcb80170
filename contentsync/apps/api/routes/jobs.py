from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentsync.apps.api.deps import get_db, get_session_factory, require_admin
from contentsync.apps.api.errors import job_not_found
from contentsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from contentsync.apps.api.response import SuccessEnvelope, success_response
from contentsync.domain.models import JobRun
from contentsync.services.job_ledger import check_concurrent_running, get_run, list_runs, request_cancel
from contentsync.services.jobs.citation_aggregation import JOB_NAME as CITATION_JOB_NAME
from contentsync.services.jobs.citation_aggregation import CitationAggregationInput
from contentsync.services.jobs.content_diff import JOB_NAME_PREFIX, ContentDiffJobInput
from contentsync.services.jobs.queue import JobDispatch, dispatch_citation_aggregation, dispatch_content_diff


logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/jobs",
    tags=["jobs"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class JobRunResponse(BaseModel):
    id: str
    job_name: str
    status: str
    idempotency_key: str | None = None
    request_id: str | None = None
    meta: dict[str, Any] | None = None
    error_code: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    created_at: datetime | None = None


class JobDispatchResponse(BaseModel):
    mode: Literal["inline", "queue"]
    queue_job_id: str | None = None
    result: dict[str, Any] | None = None


class CancelResponse(BaseModel):
    job_id: str
    cancel_requested: bool


def _run_payload(run: JobRun) -> JobRunResponse:
    return JobRunResponse(
        id=run.id,
        job_name=run.job_name,
        status=run.status,
        idempotency_key=run.idempotency_key,
        request_id=run.request_id,
        meta=run.meta,
        error_code=run.error_code,
        error_message=run.error_message,
        retry_count=run.retry_count,
        started_at=run.started_at,
        completed_at=run.completed_at,
        duration_ms=run.duration_ms,
        created_at=run.created_at,
    )


async def _enforce_concurrency(db: AsyncSession, job_name: str) -> None:
    check = await check_concurrent_running(db, job_name)
    if not check.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "JOB_CONCURRENCY_LIMIT",
                "message": f"Too many running {job_name} runs",
                "running_count": check.running_count,
            },
        )


def _dispatch_response(request: Request, dispatch: JobDispatch) -> JSONResponse:
    # Queued jobs are accepted, inline jobs already ran.
    payload = JobDispatchResponse(mode=dispatch.mode, queue_job_id=dispatch.queue_job_id, result=dispatch.result)
    status_code = status.HTTP_202_ACCEPTED if dispatch.mode == "queue" else status.HTTP_200_OK
    return JSONResponse(content=success_response(request=request, data=payload), status_code=status_code)


@router.post("/content-diff", response_model=SuccessEnvelope[JobDispatchResponse])
async def create_content_diff_job(
    payload: ContentDiffJobInput,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> JSONResponse:
    if payload.request_id is None and idempotency_key:
        payload = payload.model_copy(update={"request_id": idempotency_key})
    await _enforce_concurrency(db, f"{JOB_NAME_PREFIX}{payload.target_table}")
    dispatch = await dispatch_content_diff(payload, session_factory=session_factory)
    return _dispatch_response(request, dispatch)


@router.post("/citation-aggregation", response_model=SuccessEnvelope[JobDispatchResponse])
async def create_citation_aggregation_job(
    payload: CitationAggregationInput,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> JSONResponse:
    if payload.request_id is None and idempotency_key:
        payload = payload.model_copy(update={"request_id": idempotency_key})
    await _enforce_concurrency(db, CITATION_JOB_NAME)
    dispatch = await dispatch_citation_aggregation(payload, session_factory=session_factory)
    return _dispatch_response(request, dispatch)


@router.get("", response_model=SuccessEnvelope[list[JobRunResponse]])
async def list_job_runs(
    request: Request,
    job_name: str | None = Query(default=None),
    status_filter: Literal["pending", "running", "success", "failed"] | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> dict:
    runs = await list_runs(db, job_name=job_name, status=status_filter, limit=limit)
    return success_response(request=request, data=[_run_payload(run).model_dump(mode="json") for run in runs])


@router.get("/{job_id}", response_model=SuccessEnvelope[JobRunResponse])
async def get_job_run(job_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    run = await get_run(db, job_id)
    if run is None:
        raise job_not_found(job_id)
    return success_response(request=request, data=_run_payload(run))


@router.post("/{job_id}/cancel", response_model=SuccessEnvelope[CancelResponse])
async def cancel_job_run(job_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    accepted = await request_cancel(db, job_id)
    if not accepted:
        run = await get_run(db, job_id)
        if run is None:
            raise job_not_found(job_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "JOB_STATE_CONFLICT", "message": f"Job run {job_id} is already {run.status}"},
        )
    return success_response(request=request, data=CancelResponse(job_id=job_id, cancel_requested=True))
