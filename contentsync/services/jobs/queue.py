from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Literal

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentsync.core.config import get_settings
from contentsync.persistence.db import SessionLocal
from contentsync.services.jobs.citation_aggregation import CitationAggregationInput, run_citation_aggregation_job
from contentsync.services.jobs.content_diff import ContentDiffJobInput, run_content_diff_job


logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat key stable for ops endpoint lookups.
WORKER_HEARTBEAT_KEY = "contentsync:worker:heartbeat"

CONTENT_DIFF_TASK = "run_content_diff"
CITATION_AGGREGATION_TASK = "run_citation_aggregation"


@dataclass(frozen=True)
class JobDispatch:
    mode: Literal["inline", "queue"]
    queue_job_id: str | None
    # Inline mode carries the job result; queued jobs report through the ledger.
    result: dict[str, Any] | None = None


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_inline_mode() -> bool:
    return get_settings().jobs_execution_mode.lower() == "inline"


async def get_redis_pool() -> ArqRedis:
    # Cache the Redis pool per event loop to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.jobs_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to ops endpoints.
    if is_inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.llen(_queue_key(get_settings().jobs_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if is_inline_mode():
        return
    redis = await get_redis_pool()
    await redis.set(WORKER_HEARTBEAT_KEY, (timestamp or _utc_now()).isoformat())


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if is_inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def _enqueue(task_name: str, payload: dict[str, Any], *, job_id: str | None) -> str | None:
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        task_name,
        payload,
        _job_id=job_id,
        _queue_name=settings.jobs_queue_name,
    )
    # arq returns None when the job id is already queued; the ledger dedupes either way.
    queued_id = job.job_id if job else job_id
    logger.info("job_enqueued task=%s queue_job_id=%s", task_name, queued_id)
    return queued_id


async def dispatch_content_diff(
    job_input: ContentDiffJobInput,
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
) -> JobDispatch:
    if is_inline_mode():
        result = await run_content_diff_job(job_input, session_factory=session_factory, runner="api_inline")
        return JobDispatch(mode="inline", queue_job_id=None, result=result.to_dict())
    job_id = f"content_diff:{job_input.target_table}:{job_input.request_id}" if job_input.request_id else None
    queued_id = await _enqueue(CONTENT_DIFF_TASK, job_input.model_dump(mode="json"), job_id=job_id)
    return JobDispatch(mode="queue", queue_job_id=queued_id)


async def dispatch_citation_aggregation(
    job_input: CitationAggregationInput,
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
) -> JobDispatch:
    if is_inline_mode():
        result = await run_citation_aggregation_job(job_input, session_factory=session_factory, runner="api_inline")
        return JobDispatch(mode="inline", queue_job_id=None, result=result.to_dict())
    job_id = f"citation_aggregation:{job_input.idempotency_key}"
    queued_id = await _enqueue(CITATION_AGGREGATION_TASK, job_input.model_dump(mode="json"), job_id=job_id)
    return JobDispatch(mode="queue", queue_job_id=queued_id)
