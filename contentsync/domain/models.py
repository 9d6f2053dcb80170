from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


# Use JSONB on Postgres while keeping models portable to SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class JobRun(Base):
    __tablename__ = "job_runs"
    __table_args__ = (
        # Idempotent admission is enforced here, not in process memory.
        UniqueConstraint("job_name", "idempotency_key", name="uq_job_runs_name_idem_key"),
        Index("ix_job_runs_name_status", "job_name", "status"),
        Index("ix_job_runs_status_started", "status", "started_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_name: Mapped[str] = mapped_column(String)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # pending|running|success|failed
    status: Mapped[str] = mapped_column(String)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    # Truncated copy; the full message lives in meta.error_details.message_full.
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class AdminSetting(Base):
    __tablename__ = "admin_settings"
    __table_args__ = (UniqueConstraint("scope", "key", name="uq_admin_settings_scope_key"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    # "global" or a tenant id; tenant rows override global rows.
    scope: Mapped[str] = mapped_column(String)
    key: Mapped[str] = mapped_column(String)
    value: Mapped[Any] = mapped_column(JSONType)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class PublicContentMixin:
    # Shared shape for denormalized public_* read tables fed by content diff jobs.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    content_hash: Mapped[str] = mapped_column(String)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    properties: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    # Non-business source columns ride along without affecting the content hash.
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)

    @declared_attr.directive
    def __table_args__(cls) -> tuple:
        return (Index(f"ix_{cls.__tablename__}_organization_id", "organization_id"),)


class PublicOrganization(PublicContentMixin, Base):
    __tablename__ = "public_organizations"


class PublicService(PublicContentMixin, Base):
    __tablename__ = "public_services"


class PublicPost(PublicContentMixin, Base):
    __tablename__ = "public_posts"


class PublicNews(PublicContentMixin, Base):
    __tablename__ = "public_news"


class PublicFaq(PublicContentMixin, Base):
    __tablename__ = "public_faqs"


class PublicCaseStudy(PublicContentMixin, Base):
    __tablename__ = "public_case_studies"


class PublicProduct(PublicContentMixin, Base):
    __tablename__ = "public_products"


class PublicOrganizationKeyword(PublicContentMixin, Base):
    __tablename__ = "public_organization_keywords"


class PublicAiContentUnit(PublicContentMixin, Base):
    __tablename__ = "public_ai_content_units"


# Content diff targets mapped to their read-table models.
PUBLIC_CONTENT_MODELS: dict[str, type[PublicContentMixin]] = {
    "organizations": PublicOrganization,
    "services": PublicService,
    "posts": PublicPost,
    "news": PublicNews,
    "faqs": PublicFaq,
    "case_studies": PublicCaseStudy,
    "products": PublicProduct,
    "organization_keywords": PublicOrganizationKeyword,
    "ai_content_units": PublicAiContentUnit,
}


class AiCitation(Base):
    __tablename__ = "ai_citations"
    __table_args__ = (Index("ix_ai_citations_org_cited_at", "organization_id", "cited_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String)
    response_id: Mapped[str] = mapped_column(String)
    # content_unit_id, canonical url, or uri of the cited source.
    source_key: Mapped[str] = mapped_column(String)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    weight: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    quoted_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quoted_chars: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    cited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class AiCitationPeriodAggregate(Base):
    __tablename__ = "ai_citation_period_aggregates"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "period_start",
            "period_end",
            "source_key",
            name="uq_ai_citation_period_aggregates_scope",
        ),
        Index("ix_ai_citation_period_aggregates_org_period", "organization_id", "period_start", "period_end"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String)
    period_start: Mapped[date] = mapped_column(Date)
    period_end: Mapped[date] = mapped_column(Date)
    source_key: Mapped[str] = mapped_column(String)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    citations_count: Mapped[int] = mapped_column(Integer)
    total_weight: Mapped[float] = mapped_column(Float)
    total_quoted_tokens: Mapped[int] = mapped_column(Integer)
    total_quoted_chars: Mapped[int] = mapped_column(Integer)
    max_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_cited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    aggregated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    # Ledger run that produced this row, for audit joins.
    job_run_id: Mapped[str | None] = mapped_column(String, nullable=True)
