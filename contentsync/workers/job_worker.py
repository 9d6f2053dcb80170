from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq.connections import RedisSettings

from contentsync.core.config import get_settings
from contentsync.core.logging import configure_logging
from contentsync.services.jobs.citation_aggregation import CitationAggregationInput, run_citation_aggregation_job
from contentsync.services.jobs.content_diff import ContentDiffJobInput, run_content_diff_job
from contentsync.services.jobs.queue import set_worker_heartbeat


logger = logging.getLogger(__name__)


async def run_content_diff(ctx, payload: dict[str, Any]) -> dict[str, Any]:
    # Ledger admission dedupes redelivered payloads, so arq retries are harmless.
    job_input = ContentDiffJobInput.model_validate(payload)
    result = await run_content_diff_job(job_input, runner="arq_worker")
    return result.to_dict()


async def run_citation_aggregation(ctx, payload: dict[str, Any]) -> dict[str, Any]:
    job_input = CitationAggregationInput.model_validate(payload)
    result = await run_citation_aggregation_job(job_input, runner="arq_worker")
    return result.to_dict()


async def _heartbeat_loop() -> None:
    settings = get_settings()
    interval_s = max(1, int(settings.jobs_worker_heartbeat_interval_s))
    while True:
        try:
            await set_worker_heartbeat()
        except Exception:  # noqa: BLE001 - keep heartbeat alive while surfacing failures in worker logs.
            logger.exception("job worker heartbeat failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    logger.info("job_worker_started queue=%s", get_settings().jobs_queue_name)


async def _shutdown(ctx) -> None:
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.jobs_queue_name
    max_tries = max(1, int(settings.jobs_max_tries))
    functions = [run_content_diff, run_citation_aggregation]
    on_startup = _startup
    on_shutdown = _shutdown
