from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentsync.domain.models import AiCitation, JobRun, PUBLIC_CONTENT_MODELS
from contentsync.services.admin_settings import DIFF_REBUILD_THRESHOLD_KEY, GLOBAL_SCOPE, set_admin_setting
from contentsync.services.jobs.content_diff import compute_content_hash


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_rows(count: int, *, organization_id: str = "org-1", prefix: str = "row") -> list[dict[str, Any]]:
    # Deterministic source snapshot: ids row-000.., one title/body per row.
    return [
        {
            "id": f"{prefix}-{index:03d}",
            "organization_id": organization_id,
            "title": f"Title {index}",
            "body": f"Body {index}",
            "properties": {"rank": index},
        }
        for index in range(count)
    ]


async def seed_public_rows(
    session_factory: async_sessionmaker[AsyncSession],
    target: str,
    rows: list[dict[str, Any]],
) -> None:
    model = PUBLIC_CONTENT_MODELS[target]
    async with session_factory() as session:
        for row in rows:
            session.add(
                model(
                    id=row["id"],
                    organization_id=row.get("organization_id"),
                    content_hash=compute_content_hash(row),
                    title=row.get("title"),
                    body=row.get("body"),
                    properties=row.get("properties"),
                )
            )
        await session.commit()


async def set_threshold(
    session_factory: async_sessionmaker[AsyncSession],
    value: Any,
    *,
    scope: str = GLOBAL_SCOPE,
) -> None:
    async with session_factory() as session:
        await set_admin_setting(session, DIFF_REBUILD_THRESHOLD_KEY, value, scope=scope, updated_by="tests")


async def seed_job_run(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    job_name: str,
    idempotency_key: str | None,
    status: str,
    created_at: datetime | None = None,
    started_at: datetime | None = None,
) -> str:
    run_id = uuid4().hex
    created = created_at or utc_now()
    async with session_factory() as session:
        session.add(
            JobRun(
                id=run_id,
                job_name=job_name,
                idempotency_key=idempotency_key,
                status=status,
                meta={},
                retry_count=0,
                started_at=started_at or created,
                created_at=created,
                updated_at=created,
            )
        )
        await session.commit()
    return run_id


async def seed_citation(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    organization_id: str,
    source_key: str,
    cited_at: datetime,
    weight: float = 1.0,
    quoted_tokens: int = 0,
    score: float | None = None,
) -> None:
    async with session_factory() as session:
        session.add(
            AiCitation(
                id=uuid4().hex,
                organization_id=organization_id,
                response_id=f"resp-{uuid4().hex[:8]}",
                source_key=source_key,
                title=f"Source {source_key}",
                url=f"https://example.test/{source_key}",
                weight=weight,
                quoted_tokens=quoted_tokens,
                quoted_chars=quoted_tokens * 4,
                score=score,
                cited_at=cited_at,
            )
        )
        await session.commit()
