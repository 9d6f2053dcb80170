from __future__ import annotations

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from contentsync.apps.api.deps import get_db, get_multiplexer, require_admin
from contentsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from contentsync.apps.api.response import SuccessEnvelope, success_response
from contentsync.persistence.db import pool_stats
from contentsync.realtime.multiplexer import ChannelMultiplexer
from contentsync.services.job_ledger import list_stale_running
from contentsync.services.jobs import queue as job_queue
from contentsync.services.telemetry import counters_snapshot, gauges_snapshot, job_duration_stats


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES, dependencies=[Depends(require_admin)])


class OpsMetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    jobs: dict[str, dict[str, Any]]
    realtime_topics: list[dict[str, Any]]
    stale_running: list[dict[str, Any]]
    queue_depth: int | None
    worker_heartbeat_at: str | None
    db_pool: dict[str, int | None]


@router.get("/metrics", response_model=SuccessEnvelope[OpsMetricsResponse])
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=3600, ge=60, le=86400),
    stale_after_minutes: int = Query(default=60, ge=1),
    db: AsyncSession = Depends(get_db),
    multiplexer: ChannelMultiplexer = Depends(get_multiplexer),
) -> dict:
    # Counters are per process; run one API instance per metrics scrape target.
    stale = await list_stale_running(db, older_than=timedelta(minutes=stale_after_minutes))
    heartbeat = await job_queue.get_worker_heartbeat()
    payload = OpsMetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        jobs=job_duration_stats(window_s),
        realtime_topics=multiplexer.snapshot(),
        stale_running=[
            {"id": run.id, "job_name": run.job_name, "started_at": run.started_at.isoformat() if run.started_at else None}
            for run in stale
        ],
        queue_depth=await job_queue.get_queue_depth(),
        worker_heartbeat_at=heartbeat.isoformat() if heartbeat else None,
        db_pool=pool_stats(),
    )
    return success_response(request=request, data=payload)
