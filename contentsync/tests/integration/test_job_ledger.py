from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from contentsync.core.config import get_settings
from contentsync.core.errors import JobRunStateError
from contentsync.domain.models import JobRun
from contentsync.services import job_ledger
from contentsync.services.job_ledger import (
    begin_run,
    check_concurrent_running,
    complete_failure,
    complete_success,
    get_run,
    is_cancel_requested,
    list_runs,
    list_stale_running,
    prune_job_runs,
    request_cancel,
)
from contentsync.services.telemetry import counters_snapshot
from contentsync.tests.utils.seed import seed_job_run, utc_now


JOB = "content_diff_posts"


async def _count_runs(session_factory, job_name: str = JOB) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(JobRun).where(JobRun.job_name == job_name))
        return int(result.scalar_one())


@pytest.mark.asyncio
async def test_begin_run_inserts_running_row_with_env_meta(session_factory) -> None:
    async with session_factory() as session:
        result = await begin_run(
            session,
            job_name=JOB,
            idempotency_key="req-1",
            request_id="req-1",
            meta={"scope": "batch", "runner": "cli", "unknown_key": "dropped"},
        )

    assert result.success is True
    assert result.is_duplicate is False
    record = result.record
    assert record.status == "running"
    assert record.retry_count == 0
    assert record.meta["scope"] == "batch"
    assert record.meta["runner"] == "cli"
    assert "unknown_key" not in record.meta
    assert record.meta["env"]["version"] == get_settings().app_version
    assert counters_snapshot()[f"job_runs_started_total.{JOB}"] == 1


@pytest.mark.asyncio
async def test_concurrent_admission_with_same_key_yields_one_run(session_factory) -> None:
    async def admit():
        async with session_factory() as session:
            return await begin_run(session, job_name=JOB, idempotency_key="same-key")

    first, second = await asyncio.gather(admit(), admit())

    assert first.success and second.success
    assert sorted([first.is_duplicate, second.is_duplicate]) == [False, True]
    assert first.record.id == second.record.id
    assert await _count_runs(session_factory) == 1


@pytest.mark.asyncio
async def test_duplicate_of_successful_run_is_not_re_executed(session_factory) -> None:
    await seed_job_run(session_factory, job_name=JOB, idempotency_key="done", status="success")

    async with session_factory() as session:
        result = await begin_run(session, job_name=JOB, idempotency_key="done")

    assert result.success is True
    assert result.is_duplicate is True
    assert result.record.status == "success"
    assert counters_snapshot()[f"job_runs_duplicate_total.{JOB}"] == 1


@pytest.mark.asyncio
async def test_runs_without_key_are_never_duplicates(session_factory) -> None:
    async with session_factory() as session:
        first = await begin_run(session, job_name=JOB)
        second = await begin_run(session, job_name=JOB, idempotency_key="   ")

    assert first.success and second.success
    assert not first.is_duplicate and not second.is_duplicate
    assert first.record.id != second.record.id


@pytest.mark.asyncio
async def test_rejected_keyless_insert_returns_failure(session_factory, monkeypatch) -> None:
    async def rejected(session, **kwargs):
        return None

    monkeypatch.setattr(job_ledger, "_insert_running", rejected)

    async with session_factory() as session:
        result = await begin_run(session, job_name=JOB)

    assert result.success is False
    assert result.record is None
    assert "idempotency key" in result.error


@pytest.mark.asyncio
async def test_failed_run_is_duplicate_by_default(session_factory) -> None:
    async with session_factory() as session:
        first = await begin_run(session, job_name=JOB, idempotency_key="run-2024-01-01")
        await complete_failure(session, first.record.id, "CONTENT_DIFF_ERROR", "boom")
        second = await begin_run(session, job_name=JOB, idempotency_key="run-2024-01-01")

    assert second.success is True
    assert second.is_duplicate is True
    assert second.record.id == first.record.id
    assert second.record.status == "failed"
    assert second.record.retry_count == 0
    assert await _count_runs(session_factory) == 1


@pytest.mark.asyncio
async def test_failed_run_is_readmitted_with_same_key_when_retries_enabled(session_factory, monkeypatch) -> None:
    monkeypatch.setenv("JOB_RETRY_FAILED_RUNS", "true")
    get_settings.cache_clear()
    run_id = await seed_job_run(session_factory, job_name=JOB, idempotency_key="retry-me", status="failed")

    async with session_factory() as session:
        result = await begin_run(session, job_name=JOB, idempotency_key="retry-me")

    assert result.success is True
    assert result.is_duplicate is False
    assert result.record.id == run_id
    assert result.record.status == "running"
    assert result.record.retry_count == 1
    assert await _count_runs(session_factory) == 1


@pytest.mark.asyncio
async def test_failed_run_stays_duplicate_when_retries_disabled(session_factory, monkeypatch) -> None:
    monkeypatch.setenv("JOB_RETRY_FAILED_RUNS", "false")
    get_settings.cache_clear()
    await seed_job_run(session_factory, job_name=JOB, idempotency_key="no-retry", status="failed")

    async with session_factory() as session:
        result = await begin_run(session, job_name=JOB, idempotency_key="no-retry")

    assert result.is_duplicate is True
    assert result.record.status == "failed"


@pytest.mark.asyncio
async def test_key_past_retention_window_starts_a_new_run(session_factory) -> None:
    old_id = await seed_job_run(
        session_factory,
        job_name=JOB,
        idempotency_key="weekly",
        status="success",
        created_at=utc_now() - timedelta(days=10),
    )

    async with session_factory() as session:
        result = await begin_run(session, job_name=JOB, idempotency_key="weekly")
        assert await get_run(session, old_id) is None

    assert result.success is True
    assert result.is_duplicate is False
    assert result.record.id != old_id
    assert await _count_runs(session_factory) == 1


@pytest.mark.asyncio
async def test_invalid_meta_is_reported_without_raising(session_factory) -> None:
    async with session_factory() as session:
        result = await begin_run(session, job_name=JOB, meta={"runner": "mainframe"})

    assert result.success is False
    assert result.record is None
    assert "Invalid job meta" in result.error
    assert await _count_runs(session_factory) == 0


@pytest.mark.asyncio
async def test_terminal_runs_reject_further_transitions(session_factory) -> None:
    async with session_factory() as session:
        admitted = await begin_run(session, job_name=JOB, idempotency_key="once")
        finished = await complete_success(session, admitted.record.id, meta={"diff_count": 2})

        assert finished.status == "success"
        assert finished.completed_at is not None
        assert finished.duration_ms is not None and finished.duration_ms >= 0
        assert finished.meta["diff_count"] == 2

        with pytest.raises(JobRunStateError):
            await complete_success(session, admitted.record.id)
        with pytest.raises(JobRunStateError):
            await complete_failure(session, admitted.record.id, "CONTENT_DIFF_ERROR", "late failure")
        with pytest.raises(JobRunStateError):
            await complete_success(session, "missing-run")

    assert counters_snapshot()[f"job_runs_total.{JOB}.success"] == 1


@pytest.mark.asyncio
async def test_complete_failure_truncates_column_and_keeps_full_message(session_factory, monkeypatch) -> None:
    monkeypatch.setenv("JOB_ERROR_MESSAGE_MAX_CHARS", "10")
    get_settings.cache_clear()
    message = "database exploded while applying changes"

    async with session_factory() as session:
        admitted = await begin_run(session, job_name=JOB)
        failed = await complete_failure(
            session,
            admitted.record.id,
            "CONTENT_DIFF_ERROR",
            message,
            cause="OperationalError('locked')",
            context={"target_table": "posts"},
        )

    assert failed.status == "failed"
    assert failed.error_code == "CONTENT_DIFF_ERROR"
    assert failed.error_message == message[:10]
    assert failed.meta["error_details"]["message_full"] == message
    assert failed.meta["error_details"]["cause"] == "OperationalError('locked')"
    assert failed.meta["error_details"]["context"] == {"target_table": "posts"}


@pytest.mark.asyncio
async def test_cancel_is_flagged_on_active_runs_only(session_factory) -> None:
    async with session_factory() as session:
        admitted = await begin_run(session, job_name=JOB)
        run_id = admitted.record.id
        assert await is_cancel_requested(session, run_id) is False

        assert await request_cancel(session, run_id) is True
        assert await is_cancel_requested(session, run_id) is True

        await complete_failure(session, run_id, "JOB_CANCELLED", "cancelled")
        assert await request_cancel(session, run_id) is False
        assert await request_cancel(session, "missing-run") is False


@pytest.mark.asyncio
async def test_concurrency_check_counts_running_rows(session_factory) -> None:
    for index in range(2):
        await seed_job_run(session_factory, job_name=JOB, idempotency_key=f"running-{index}", status="running")
    await seed_job_run(session_factory, job_name=JOB, idempotency_key="finished", status="success")
    await seed_job_run(
        session_factory,
        job_name=JOB,
        idempotency_key="ancient",
        status="running",
        started_at=utc_now() - timedelta(days=2),
    )

    async with session_factory() as session:
        blocked = await check_concurrent_running(session, JOB, max_concurrent=2)
        allowed = await check_concurrent_running(session, JOB, max_concurrent=3)

    assert blocked.allowed is False
    assert blocked.running_count == 2
    assert allowed.allowed is True


@pytest.mark.asyncio
async def test_stale_listing_and_pruning(session_factory) -> None:
    stale_id = await seed_job_run(
        session_factory,
        job_name=JOB,
        idempotency_key="stuck",
        status="running",
        started_at=utc_now() - timedelta(hours=3),
    )
    await seed_job_run(session_factory, job_name=JOB, idempotency_key="fresh", status="running")
    old = utc_now() - timedelta(days=30)
    await seed_job_run(session_factory, job_name=JOB, idempotency_key="old-ok", status="success", created_at=old)
    await seed_job_run(session_factory, job_name=JOB, idempotency_key="old-bad", status="failed", created_at=old)

    async with session_factory() as session:
        stale = await list_stale_running(session, older_than=timedelta(hours=1))
        assert [run.id for run in stale] == [stale_id]

        pruned = await prune_job_runs(session, older_than=timedelta(days=7))
        assert pruned == 2

        remaining = await list_runs(session, job_name=JOB)
        assert {run.idempotency_key for run in remaining} == {"stuck", "fresh"}
        running = await list_runs(session, status="running", limit=1)
        assert len(running) == 1
