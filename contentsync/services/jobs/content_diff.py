from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
import hashlib
import json
import logging
import re
import time
from typing import Any, Literal, Mapping, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import delete, insert, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contentsync.core.config import get_settings
from contentsync.core.errors import DatabaseError, DiffPlanError, JobCancelledError, UnknownTargetTableError
from contentsync.domain.models import PUBLIC_CONTENT_MODELS, PublicContentMixin
from contentsync.persistence.db import SessionLocal
from contentsync.services.admin_settings import get_diff_rebuild_threshold_percent
from contentsync.services.jobs.common import record_failure
from contentsync.services.job_ledger import begin_run, complete_success, is_cancel_requested


logger = logging.getLogger(__name__)

JOB_NAME_PREFIX = "content_diff_"
CONTENT_DIFF_ERROR = "CONTENT_DIFF_ERROR"
JOB_CANCELLED = "JOB_CANCELLED"

# Only these fields define a row's content; everything else rides along in payload.
BUSINESS_FIELDS = ("title", "body", "content", "description", "properties")
_TEXT_FIELDS = ("title", "body", "content", "description")
_RESERVED_FIELDS = frozenset({"id", "organization_id", "content_hash", *BUSINESS_FIELDS})
_VIEW_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

ContentDiffTarget = Literal[
    "organizations",
    "services",
    "posts",
    "news",
    "faqs",
    "case_studies",
    "products",
    "organization_keywords",
    "ai_content_units",
]


class DiffOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class DiffChange:
    operation: DiffOperation
    id: str
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class SourceRow:
    id: str
    data: Mapping[str, Any]
    content_hash: str


@dataclass
class DiffPlan:
    source_rows: list[SourceRow]
    persisted_count: int
    changes: list[DiffChange] = field(default_factory=list)

    @property
    def source_count(self) -> int:
        return len(self.source_rows)

    @property
    def diff_count(self) -> int:
        return len(self.changes)

    @property
    def total_count(self) -> int:
        return max(self.source_count, self.persisted_count)

    @property
    def diff_rate(self) -> float:
        if self.total_count == 0:
            return 0.0
        return self.diff_count / self.total_count

    def count(self, operation: DiffOperation) -> int:
        return sum(1 for change in self.changes if change.operation is operation)


class ContentDiffJobInput(BaseModel):
    target_table: ContentDiffTarget
    source_data: list[dict[str, Any]] = Field(default_factory=list)
    organization_id: str | None = None
    request_id: str | None = None


@dataclass
class ContentDiffJobResult:
    success: bool
    target_table: str
    total_count: int = 0
    diff_count: int = 0
    insert_count: int = 0
    update_count: int = 0
    delete_count: int = 0
    diff_rate: float = 0.0
    is_full_rebuild: bool = False
    threshold_percent: float = 0.0
    mv_refreshed: bool = False
    duration_ms: int = 0
    job_id: str | None = None
    is_duplicate: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_content_hash(row: Mapping[str, Any]) -> str:
    # SHA-256 of canonical JSON over the business fields present; key order never matters.
    relevant = {name: row[name] for name in BUSINESS_FIELDS if name in row}
    canonical = json.dumps(relevant, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def should_full_rebuild(diff_count: int, total_count: int, threshold_percent: float) -> bool:
    # Strictly greater than the threshold; compared without dividing to avoid float drift.
    if total_count <= 0:
        return False
    return diff_count * 100 > threshold_percent * total_count


def _source_rows(source_data: Sequence[Mapping[str, Any]]) -> list[SourceRow]:
    rows: dict[str, SourceRow] = {}
    for index, row in enumerate(source_data):
        raw_id = row.get("id")
        if raw_id is None or raw_id == "":
            raise ValueError(f"source_data[{index}] has no id")
        row_id = str(raw_id)
        if row_id in rows:
            logger.warning("content_diff_duplicate_source_id id=%s", row_id)
        rows[row_id] = SourceRow(id=row_id, data=row, content_hash=compute_content_hash(row))
    return list(rows.values())


def build_diff_plan(source_data: Sequence[Mapping[str, Any]], persisted_hashes: Mapping[str, str]) -> DiffPlan:
    source_rows = _source_rows(source_data)
    plan = DiffPlan(source_rows=source_rows, persisted_count=len(persisted_hashes))
    for row in source_rows:
        current = persisted_hashes.get(row.id)
        if current is None:
            plan.changes.append(DiffChange(DiffOperation.INSERT, row.id, {**row.data, "content_hash": row.content_hash}))
        elif current != row.content_hash:
            plan.changes.append(DiffChange(DiffOperation.UPDATE, row.id, {**row.data, "content_hash": row.content_hash}))
    # Deletions are computed after all inserts and updates.
    source_ids = {row.id for row in source_rows}
    for persisted_id in persisted_hashes:
        if persisted_id not in source_ids:
            plan.changes.append(DiffChange(DiffOperation.DELETE, persisted_id))
    return plan


def materialized_views_for(target_table: str, setting: str | None = None) -> list[str]:
    # CONTENT_DIFF_MATERIALIZED_VIEWS="organizations:mv_public_orgs,posts:mv_public_feed"
    raw = setting if setting is not None else get_settings().content_diff_materialized_views
    views: list[str] = []
    for item in (raw or "").split(","):
        item = item.strip()
        if not item or ":" not in item:
            continue
        target, view = (part.strip() for part in item.split(":", 1))
        if target != target_table:
            continue
        if not _VIEW_NAME.match(view):
            raise ValueError(f"Invalid materialized view name: {view!r}")
        views.append(view)
    return views


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _row_values(data: Mapping[str, Any], *, content_hash: str, organization_id: str | None, partial: bool) -> dict[str, Any]:
    values: dict[str, Any] = {"content_hash": content_hash}
    org = data.get("organization_id", organization_id)
    if org is not None or not partial:
        values["organization_id"] = str(org) if org is not None else None
    for name in BUSINESS_FIELDS:
        if partial and name not in data:
            continue
        value = data.get(name)
        if name in _TEXT_FIELDS and value is not None and not isinstance(value, str):
            value = json.dumps(value, ensure_ascii=False, default=str)
        elif name == "properties" and value is not None:
            value = _json_safe(value)
        values[name] = value
    extra = {key: value for key, value in data.items() if key not in _RESERVED_FIELDS}
    values["payload"] = _json_safe(extra) if extra else None
    return values


async def _load_persisted_hashes(
    session: AsyncSession,
    model: type[PublicContentMixin],
    organization_id: str | None,
) -> dict[str, str]:
    query = select(model.id, model.content_hash)
    if organization_id:
        query = query.where(model.organization_id == organization_id)
    result = await session.execute(query)
    return {str(row_id): content_hash for row_id, content_hash in result.all()}


def _change_data(change: DiffChange) -> dict[str, Any]:
    if change.data is None or "content_hash" not in change.data:
        raise DiffPlanError(f"{change.operation.value} for {change.id} has no row data")
    return change.data


async def _apply_incremental(
    session: AsyncSession,
    model: type[PublicContentMixin],
    changes: Sequence[DiffChange],
    organization_id: str | None,
) -> None:
    for change in changes:
        try:
            if change.operation is DiffOperation.INSERT:
                data = _change_data(change)
                values = _row_values(data, content_hash=data["content_hash"], organization_id=organization_id, partial=False)
                await session.execute(insert(model).values(id=change.id, **values))
            elif change.operation is DiffOperation.UPDATE:
                data = _change_data(change)
                values = _row_values(data, content_hash=data["content_hash"], organization_id=organization_id, partial=True)
                await session.execute(update(model).where(model.id == change.id).values(**values))
            else:
                await session.execute(delete(model).where(model.id == change.id))
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Failed to apply {change.operation.value} for {change.id}: {exc}") from exc


async def _apply_full_rebuild(
    session: AsyncSession,
    model: type[PublicContentMixin],
    source_rows: Sequence[SourceRow],
    organization_id: str | None,
) -> None:
    # Replace the scoped snapshot inside the caller's transaction so readers never see a partial table.
    purge = delete(model)
    if organization_id:
        purge = purge.where(model.organization_id == organization_id)
    rows = [
        {"id": row.id, **_row_values(row.data, content_hash=row.content_hash, organization_id=organization_id, partial=False)}
        for row in source_rows
    ]
    try:
        await session.execute(purge)
        if rows:
            await session.execute(insert(model), rows)
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Full rebuild of {model.__tablename__} failed: {exc}") from exc


async def refresh_materialized_views(session: AsyncSession, target_table: str) -> bool:
    views = materialized_views_for(target_table)
    if not views:
        return False
    if session.get_bind().dialect.name != "postgresql":
        logger.info("content_diff_mv_refresh_skipped target=%s dialect=%s", target_table, session.get_bind().dialect.name)
        return False
    for view in views:
        await session.execute(text(f"REFRESH MATERIALIZED VIEW {view}"))
    await session.commit()
    logger.info("content_diff_mv_refreshed target=%s views=%s", target_table, ",".join(views))
    return True


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def run_content_diff_job(
    job_input: ContentDiffJobInput,
    *,
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    runner: str = "api_inline",
) -> ContentDiffJobResult:
    """Propagate a source snapshot into ``public_{target}`` through the job ledger.

    Rows are compared by content hash. When the share of changed rows is
    strictly above the configured threshold the scoped read table is rebuilt
    from the snapshot, otherwise the changes are applied one by one. Both paths
    run in a single transaction. Failures are recorded on the ledger with
    ``CONTENT_DIFF_ERROR`` and never retried here.
    """
    started = time.monotonic()
    target = job_input.target_table
    model = PUBLIC_CONTENT_MODELS.get(target)
    if model is None:
        raise UnknownTargetTableError(f"Unsupported content diff target: {target}")
    org_id = job_input.organization_id

    async with session_factory() as session:
        admission = await begin_run(
            session,
            job_name=f"{JOB_NAME_PREFIX}{target}",
            idempotency_key=job_input.request_id,
            request_id=job_input.request_id,
            meta={
                "scope": "batch",
                "runner": runner,
                "target_org_id": org_id,
                "input_summary": {
                    "kind": "content_diff",
                    "target_table": target,
                    "organization_id": org_id,
                    "source_count": len(job_input.source_data),
                },
            },
        )
    if not admission.success or admission.record is None:
        return ContentDiffJobResult(
            success=False,
            target_table=target,
            duration_ms=_elapsed_ms(started),
            error=admission.error or "Failed to start job",
        )
    job_id = admission.record.id
    if admission.is_duplicate:
        return ContentDiffJobResult(
            success=True,
            target_table=target,
            duration_ms=_elapsed_ms(started),
            job_id=job_id,
            is_duplicate=True,
            error="Duplicate job detected",
        )

    try:
        async with session_factory() as session:
            threshold = await get_diff_rebuild_threshold_percent(session, org_id)
            persisted = await _load_persisted_hashes(session, model, org_id)
            await session.commit()
        plan = build_diff_plan(job_input.source_data, persisted)
        full_rebuild = should_full_rebuild(plan.diff_count, plan.total_count, threshold)
        mv_refreshed = False
        logger.info(
            "content_diff_planned job_id=%s target=%s total=%d diff=%d threshold=%s full_rebuild=%s",
            job_id,
            target,
            plan.total_count,
            plan.diff_count,
            threshold,
            full_rebuild,
        )
        if plan.diff_count > 0:
            async with session_factory() as session:
                if await is_cancel_requested(session, job_id):
                    raise JobCancelledError(job_id)
                if full_rebuild:
                    await _apply_full_rebuild(session, model, plan.source_rows, org_id)
                else:
                    await _apply_incremental(session, model, plan.changes, org_id)
                await session.commit()
                if full_rebuild:
                    mv_refreshed = await refresh_materialized_views(session, target)

        result = ContentDiffJobResult(
            success=True,
            target_table=target,
            total_count=plan.total_count,
            diff_count=plan.diff_count,
            insert_count=plan.count(DiffOperation.INSERT),
            update_count=plan.count(DiffOperation.UPDATE),
            delete_count=plan.count(DiffOperation.DELETE),
            diff_rate=plan.diff_rate,
            is_full_rebuild=full_rebuild,
            threshold_percent=threshold,
            mv_refreshed=mv_refreshed,
            job_id=job_id,
        )
        async with session_factory() as session:
            await complete_success(
                session,
                job_id,
                meta={
                    "total_count": result.total_count,
                    "diff_count": result.diff_count,
                    "is_full_rebuild": full_rebuild,
                    "stats": {
                        "items_processed": plan.source_count,
                        "rows_affected": plan.source_count if full_rebuild else plan.diff_count,
                    },
                    "output_summary": {
                        "kind": "content_diff",
                        "target_table": target,
                        "organization_id": org_id,
                        "source_count": plan.source_count,
                        "persisted_count": plan.persisted_count,
                        "insert_count": result.insert_count,
                        "update_count": result.update_count,
                        "delete_count": result.delete_count,
                        "diff_rate": result.diff_rate,
                        "threshold_percent": threshold,
                        "mv_refreshed": mv_refreshed,
                    },
                },
            )
    except Exception as exc:  # noqa: BLE001 - every job failure is recorded once on the ledger
        cancelled = isinstance(exc, JobCancelledError)
        error_code = JOB_CANCELLED if cancelled else CONTENT_DIFF_ERROR
        message = str(exc) or exc.__class__.__name__
        if cancelled:
            logger.info("content_diff_cancelled job_id=%s target=%s", job_id, target)
        else:
            logger.exception("content_diff_failed job_id=%s target=%s", job_id, target)
        await record_failure(session_factory, job_id, error_code, exc)
        return ContentDiffJobResult(
            success=False,
            target_table=target,
            duration_ms=_elapsed_ms(started),
            job_id=job_id,
            error=message,
        )

    result.duration_ms = _elapsed_ms(started)
    return result
