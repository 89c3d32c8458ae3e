from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import JSON, Boolean, CheckConstraint, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ActivityStatus(str, enum.Enum):
    NO_ACTIVITY = "NO_ACTIVITY"
    STALE = "STALE"
    MODERATE = "MODERATE"
    ACTIVE = "ACTIVE"


class PrincipalActivitySummary(Base):
    __tablename__ = "principal_activity_summary"

    principal_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    principal_name: Mapped[str] = mapped_column(Text, nullable=False)
    principal_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    organization_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    industry: Mapped[str | None] = mapped_column(Text, nullable=True)
    organization_size: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    lead_score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    contact_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_contacts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    primary_contact_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    primary_contact_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_contact_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    total_interactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    interactions_last_30_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    interactions_last_90_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_interaction_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_interaction_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    next_follow_up_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    avg_interaction_rating: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    positive_interactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    follow_ups_required: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    total_opportunities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_opportunities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    won_opportunities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opportunities_last_30_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    latest_opportunity_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    latest_opportunity_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    avg_probability_percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    product_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_product_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    primary_product_category: Mapped[str | None] = mapped_column(String(64), nullable=True)

    distributor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    distributor_name: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_activity_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    activity_status: Mapped[str] = mapped_column(String(16), nullable=False, default=ActivityStatus.NO_ACTIVITY.value)
    engagement_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    principal_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    principal_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    summary_generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("engagement_score >= 0 AND engagement_score <= 100", name="ck_principal_activity_engagement_range"),
    )


Index(
    "ix_principal_activity_summary_status_engagement",
    PrincipalActivitySummary.activity_status,
    PrincipalActivitySummary.engagement_score.desc(),
    PrincipalActivitySummary.last_activity_date.desc(),
)
Index("ix_principal_activity_summary_distributor_id", PrincipalActivitySummary.distributor_id)
Index("ix_principal_activity_summary_primary_category", PrincipalActivitySummary.primary_product_category)


class PrincipalActivityCategory(Base):
    __tablename__ = "principal_activity_summary_category"

    principal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("principal_activity_summary.principal_id", ondelete="CASCADE"),
        primary_key=True,
    )
    category: Mapped[str] = mapped_column(String(64), primary_key=True)

    __table_args__ = (Index("ix_principal_activity_category_category", "category", "principal_id"),)


class PrincipalActivityRefreshRun(Base):
    __tablename__ = "principal_activity_refresh_run"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    requested_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refreshed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    removed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    superseded_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requested_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_json: Mapped[list[dict[str, str]]] = mapped_column(JSON, nullable=False, default=list)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_principal_activity_refresh_run_started_at", "started_at"),)
