from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import ColumnElement, and_, case, exists, func, or_, select
from sqlalchemy.orm import Session

from app.metrics import observe_query
from app.principal_activity.models import ActivityStatus, PrincipalActivityCategory, PrincipalActivitySummary
from app.principal_activity.repository import summary_is_current
from app.principal_activity.schemas import (
    AnalyticsSummary,
    PaginationMeta,
    PaginationParams,
    PrincipalActivityFilters,
    PrincipalActivityPage,
    PrincipalActivitySort,
    PrincipalActivitySummaryRead,
)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_conditions(filters: PrincipalActivityFilters, *, now: datetime | None = None) -> list[ColumnElement[bool]]:
    summary = PrincipalActivitySummary
    conditions: list[ColumnElement[bool]] = [summary_is_current()]

    if filters.search:
        pattern = f"%{_escape_like(filters.search.lower())}%"
        conditions.append(
            or_(
                func.lower(summary.principal_name).like(pattern, escape="\\"),
                func.lower(summary.primary_contact_name).like(pattern, escape="\\"),
            )
        )
    if filters.activity_status:
        conditions.append(summary.activity_status.in_(filters.activity_status))
    if filters.engagement_score_range is not None:
        if filters.engagement_score_range.min is not None:
            conditions.append(summary.engagement_score >= filters.engagement_score_range.min)
        if filters.engagement_score_range.max is not None:
            conditions.append(summary.engagement_score <= filters.engagement_score_range.max)
    if filters.lead_score_range is not None:
        if filters.lead_score_range.min is not None:
            conditions.append(summary.lead_score >= filters.lead_score_range.min)
        if filters.lead_score_range.max is not None:
            conditions.append(summary.lead_score <= filters.lead_score_range.max)
    if filters.has_opportunities is not None:
        conditions.append(summary.total_opportunities > 0 if filters.has_opportunities else summary.total_opportunities == 0)
    if filters.has_active_opportunities is not None:
        conditions.append(
            summary.active_opportunities > 0 if filters.has_active_opportunities else summary.active_opportunities == 0
        )
    if filters.has_products is not None:
        conditions.append(summary.product_count > 0 if filters.has_products else summary.product_count == 0)
    if filters.product_categories:
        conditions.append(
            exists().where(
                PrincipalActivityCategory.principal_id == summary.principal_id,
                PrincipalActivityCategory.category.in_(filters.product_categories),
            )
        )
    if filters.distributor_id is not None:
        conditions.append(summary.distributor_id == filters.distributor_id)
    if filters.principal_ids:
        conditions.append(summary.principal_id.in_(filters.principal_ids))
    if filters.last_activity_days is not None:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=filters.last_activity_days)
        conditions.append(summary.last_activity_date >= cutoff)
    return conditions


def _pagination_meta(pagination: PaginationParams, total: int) -> PaginationMeta:
    total_pages = math.ceil(total / pagination.limit) if total else 0
    return PaginationMeta(
        page=pagination.page,
        limit=pagination.limit,
        total=total,
        total_pages=total_pages,
        has_next=pagination.page < total_pages,
        has_previous=total > 0 and pagination.page > 1,
    )


@dataclass(slots=True)
class PrincipalActivityQueryService:
    def query(
        self,
        session: Session,
        filters: PrincipalActivityFilters | None = None,
        sort: PrincipalActivitySort | None = None,
        pagination: PaginationParams | None = None,
    ) -> PrincipalActivityPage:
        filters = filters or PrincipalActivityFilters()
        sort = sort or PrincipalActivitySort()
        pagination = pagination or PaginationParams()

        started = time.perf_counter()
        conditions = build_conditions(filters)
        analytics = self._analytics(session, conditions)

        sort_column = getattr(PrincipalActivitySummary, sort.field)
        order = sort_column.asc() if sort.direction == "asc" else sort_column.desc()
        rows = session.scalars(
            select(PrincipalActivitySummary)
            .where(and_(*conditions))
            .order_by(order.nulls_last(), PrincipalActivitySummary.principal_id.asc())
            .offset((pagination.page - 1) * pagination.limit)
            .limit(pagination.limit)
        ).all()
        observe_query(time.perf_counter() - started)

        return PrincipalActivityPage(
            data=[PrincipalActivitySummaryRead.model_validate(row) for row in rows],
            pagination=_pagination_meta(pagination, analytics.total_count),
            analytics_summary=analytics,
            filters=filters,
            sort=sort,
        )

    def _analytics(self, session: Session, conditions: list[ColumnElement[bool]]) -> AnalyticsSummary:
        summary = PrincipalActivitySummary
        total, active, avg_engagement, interactions, opportunities = session.execute(
            select(
                func.count(summary.principal_id),
                func.coalesce(func.sum(case((summary.activity_status == ActivityStatus.ACTIVE.value, 1), else_=0)), 0),
                func.avg(summary.engagement_score),
                func.coalesce(func.sum(summary.total_interactions), 0),
                func.coalesce(func.sum(summary.total_opportunities), 0),
            ).where(and_(*conditions))
        ).one()

        if not total:
            return AnalyticsSummary()

        status_counts = session.execute(
            select(summary.activity_status, func.count(summary.principal_id))
            .where(and_(*conditions))
            .group_by(summary.activity_status)
        ).all()
        top_status = sorted(status_counts, key=lambda item: (-item[1], item[0]))[0][0]

        return AnalyticsSummary(
            total_count=int(total),
            active_count=int(active or 0),
            avg_engagement_score=float(avg_engagement or 0.0),
            total_interactions=int(interactions or 0),
            total_opportunities=int(opportunities or 0),
            top_activity_status=top_status,
        )


principal_activity_query_service = PrincipalActivityQueryService()
