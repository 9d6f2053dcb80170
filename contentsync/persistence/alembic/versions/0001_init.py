"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

PUBLIC_CONTENT_TABLES = (
    "public_organizations",
    "public_services",
    "public_posts",
    "public_news",
    "public_faqs",
    "public_case_studies",
    "public_products",
    "public_organization_keywords",
    "public_ai_content_units",
)


def upgrade() -> None:
    op.create_table(
        "job_runs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_name", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("meta", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'success', 'failed')",
            name="ck_job_runs_status",
        ),
        # Idempotent admission relies on this constraint; NULL keys never collide.
        sa.UniqueConstraint("job_name", "idempotency_key", name="uq_job_runs_name_idem_key"),
    )
    op.create_index("ix_job_runs_name_status", "job_runs", ["job_name", "status"])
    op.create_index("ix_job_runs_status_started", "job_runs", ["status", "started_at"])

    op.create_table(
        "admin_settings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", postgresql.JSONB(), nullable=False),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("scope", "key", name="uq_admin_settings_scope_key"),
    )

    for table_name in PUBLIC_CONTENT_TABLES:
        op.create_table(
            table_name,
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("organization_id", sa.String(), nullable=True),
            sa.Column("content_hash", sa.String(), nullable=False),
            sa.Column("title", sa.Text(), nullable=True),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("content", sa.Text(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("properties", postgresql.JSONB(), nullable=True),
            sa.Column("payload", postgresql.JSONB(), nullable=True),
            sa.Column("synced_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )
        op.create_index(f"ix_{table_name}_organization_id", table_name, ["organization_id"])

    op.create_table(
        "ai_citations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("response_id", sa.String(), nullable=False),
        sa.Column("source_key", sa.String(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("weight", sa.Float(), nullable=False, server_default="1"),
        sa.Column("quoted_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quoted_chars", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("cited_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_ai_citations_org_cited_at", "ai_citations", ["organization_id", "cited_at"])

    op.create_table(
        "ai_citation_period_aggregates",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("source_key", sa.String(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("citations_count", sa.Integer(), nullable=False),
        sa.Column("total_weight", sa.Float(), nullable=False),
        sa.Column("total_quoted_tokens", sa.Integer(), nullable=False),
        sa.Column("total_quoted_chars", sa.Integer(), nullable=False),
        sa.Column("max_score", sa.Float(), nullable=True),
        sa.Column("avg_score", sa.Float(), nullable=True),
        sa.Column("last_cited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("aggregated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("job_run_id", sa.String(), nullable=True),
        sa.UniqueConstraint(
            "organization_id",
            "period_start",
            "period_end",
            "source_key",
            name="uq_ai_citation_period_aggregates_scope",
        ),
    )
    op.create_index(
        "ix_ai_citation_period_aggregates_org_period",
        "ai_citation_period_aggregates",
        ["organization_id", "period_start", "period_end"],
    )


def downgrade() -> None:
    op.drop_index("ix_ai_citation_period_aggregates_org_period", table_name="ai_citation_period_aggregates")
    op.drop_table("ai_citation_period_aggregates")
    op.drop_index("ix_ai_citations_org_cited_at", table_name="ai_citations")
    op.drop_table("ai_citations")
    for table_name in reversed(PUBLIC_CONTENT_TABLES):
        op.drop_index(f"ix_{table_name}_organization_id", table_name=table_name)
        op.drop_table(table_name)
    op.drop_table("admin_settings")
    op.drop_index("ix_job_runs_status_started", table_name="job_runs")
    op.drop_index("ix_job_runs_name_status", table_name="job_runs")
    op.drop_table("job_runs")
