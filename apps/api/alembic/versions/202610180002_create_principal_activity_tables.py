"""create principal activity summary tables

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0")


def upgrade() -> None:
    op.create_table(
        "principal_activity_summary",
        sa.Column("principal_id", sa.Uuid(), nullable=False),
        sa.Column("principal_name", sa.Text(), nullable=False),
        sa.Column("principal_status", sa.String(length=32), nullable=True),
        sa.Column("organization_type", sa.String(length=32), nullable=True),
        sa.Column("industry", sa.Text(), nullable=True),
        sa.Column("organization_size", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("lead_score", sa.Integer(), nullable=True),
        _counter("contact_count"),
        _counter("active_contacts"),
        sa.Column("primary_contact_name", sa.Text(), nullable=True),
        sa.Column("primary_contact_email", sa.Text(), nullable=True),
        sa.Column("last_contact_update", sa.DateTime(timezone=True), nullable=True),
        _counter("total_interactions"),
        _counter("interactions_last_30_days"),
        _counter("interactions_last_90_days"),
        sa.Column("last_interaction_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_interaction_type", sa.String(length=32), nullable=True),
        sa.Column("next_follow_up_date", sa.Date(), nullable=True),
        sa.Column("avg_interaction_rating", sa.Float(), nullable=False, server_default="0"),
        _counter("positive_interactions"),
        _counter("follow_ups_required"),
        _counter("total_opportunities"),
        _counter("active_opportunities"),
        _counter("won_opportunities"),
        _counter("opportunities_last_30_days"),
        sa.Column("latest_opportunity_stage", sa.String(length=64), nullable=True),
        sa.Column("latest_opportunity_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("avg_probability_percent", sa.Float(), nullable=False, server_default="0"),
        _counter("product_count"),
        _counter("active_product_count"),
        sa.Column("product_categories", sa.JSON(), nullable=False),
        sa.Column("primary_product_category", sa.String(length=64), nullable=True),
        sa.Column("distributor_id", sa.Uuid(), nullable=True),
        sa.Column("distributor_name", sa.Text(), nullable=True),
        sa.Column("last_activity_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activity_status", sa.String(length=16), nullable=False, server_default="NO_ACTIVITY"),
        sa.Column("engagement_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("principal_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("principal_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("summary_generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("engagement_score >= 0 AND engagement_score <= 100", name="ck_principal_activity_engagement_range"),
        sa.PrimaryKeyConstraint("principal_id"),
    )
    op.create_index(
        "ix_principal_activity_summary_status_engagement",
        "principal_activity_summary",
        ["activity_status", sa.text("engagement_score DESC"), sa.text("last_activity_date DESC")],
        unique=False,
    )
    op.create_index(
        "ix_principal_activity_summary_distributor_id",
        "principal_activity_summary",
        ["distributor_id"],
        unique=False,
    )
    op.create_index(
        "ix_principal_activity_summary_primary_category",
        "principal_activity_summary",
        ["primary_product_category"],
        unique=False,
    )

    op.create_table(
        "principal_activity_summary_category",
        sa.Column("principal_id", sa.Uuid(), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.ForeignKeyConstraint(["principal_id"], ["principal_activity_summary.principal_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("principal_id", "category"),
    )
    op.create_index(
        "ix_principal_activity_category_category",
        "principal_activity_summary_category",
        ["category", "principal_id"],
        unique=False,
    )

    op.create_table(
        "principal_activity_refresh_run",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("trigger", sa.String(length=32), nullable=False),
        sa.Column("scope", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _counter("requested_count"),
        _counter("refreshed_count"),
        _counter("removed_count"),
        _counter("superseded_count"),
        _counter("failed_count"),
        sa.Column("requested_by", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("error_json", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_principal_activity_refresh_run_started_at",
        "principal_activity_refresh_run",
        ["started_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_principal_activity_refresh_run_started_at", table_name="principal_activity_refresh_run")
    op.drop_table("principal_activity_refresh_run")
    op.drop_index("ix_principal_activity_category_category", table_name="principal_activity_summary_category")
    op.drop_table("principal_activity_summary_category")
    op.drop_index("ix_principal_activity_summary_primary_category", table_name="principal_activity_summary")
    op.drop_index("ix_principal_activity_summary_distributor_id", table_name="principal_activity_summary")
    op.drop_index("ix_principal_activity_summary_status_engagement", table_name="principal_activity_summary")
    op.drop_table("principal_activity_summary")
