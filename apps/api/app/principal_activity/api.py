from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import TypeVar

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.principal_activity.dispatcher import notify_upstream_mutation
from app.principal_activity.insights import principal_activity_insights_service
from app.principal_activity.query import principal_activity_query_service
from app.principal_activity.schemas import (
    DistributorRelationship,
    EngagementBreakdown,
    MutationNotificationAccepted,
    MutationNotificationCreate,
    PaginationParams,
    PrincipalActivityFilters,
    PrincipalActivityPage,
    PrincipalActivitySort,
    PrincipalActivityStats,
    PrincipalActivitySummaryRead,
    ProductPerformance,
    RefreshReport,
    RefreshRequest,
    RefreshRunRead,
    TimelineEntry,
)
from app.principal_activity.service import principal_activity_refresh_service


router = APIRouter(prefix="/api/principal-activity", tags=["principal-activity"])

T = TypeVar("T")


def _parse_str_list(raw: str | None) -> list[str] | None:
    if raw is None:
        return None
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or None


def _validated(build: Callable[[], T]) -> T:
    try:
        return build()
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=jsonable_encoder(exc.errors(include_url=False, include_context=False)),
        )


def _range(minimum: float | None, maximum: float | None) -> dict[str, float | None] | None:
    if minimum is None and maximum is None:
        return None
    return {"min": minimum, "max": maximum}


@router.get("/principals", response_model=PrincipalActivityPage)
def list_principal_activity(
    search: str | None = Query(default=None),
    activity_status: str | None = Query(default=None, description="Comma separated activity statuses"),
    min_engagement_score: float | None = Query(default=None),
    max_engagement_score: float | None = Query(default=None),
    has_opportunities: bool | None = Query(default=None),
    min_lead_score: float | None = Query(default=None),
    max_lead_score: float | None = Query(default=None),
    has_products: bool | None = Query(default=None),
    has_active_opportunities: bool | None = Query(default=None),
    product_categories: str | None = Query(default=None, description="Comma separated product categories"),
    distributor_id: uuid.UUID | None = Query(default=None),
    last_activity_days: int | None = Query(default=None),
    sort_by: str = Query(default="engagement_score"),
    sort_order: str = Query(default="desc"),
    page: int = Query(default=1),
    limit: int = Query(default=20),
    db: Session = Depends(get_db),
) -> PrincipalActivityPage:
    filters = _validated(
        lambda: PrincipalActivityFilters.model_validate(
            {
                "search": search,
                "activity_status": _parse_str_list(activity_status.upper() if activity_status else None),
                "engagement_score_range": _range(min_engagement_score, max_engagement_score),
                "has_opportunities": has_opportunities,
                "lead_score_range": _range(min_lead_score, max_lead_score),
                "has_products": has_products,
                "has_active_opportunities": has_active_opportunities,
                "product_categories": _parse_str_list(product_categories),
                "distributor_id": distributor_id,
                "last_activity_days": last_activity_days,
            }
        )
    )
    sort = _validated(lambda: PrincipalActivitySort(field=sort_by, direction=sort_order.lower()))
    pagination = _validated(lambda: PaginationParams(page=page, limit=limit))
    return principal_activity_query_service.query(db, filters, sort, pagination)


@router.get("/principals/{principal_id}", response_model=PrincipalActivitySummaryRead)
def get_principal_activity(principal_id: uuid.UUID, db: Session = Depends(get_db)) -> PrincipalActivitySummaryRead:
    return principal_activity_refresh_service.get_summary(db, principal_id)


@router.get("/principals/{principal_id}/products", response_model=list[ProductPerformance])
def get_principal_product_performance(principal_id: uuid.UUID, db: Session = Depends(get_db)) -> list[ProductPerformance]:
    return principal_activity_insights_service.product_performance(db, principal_id)


@router.get("/stats", response_model=PrincipalActivityStats)
def get_principal_activity_stats(
    top: int | None = Query(default=None, ge=1, le=50),
    db: Session = Depends(get_db),
) -> PrincipalActivityStats:
    return principal_activity_refresh_service.get_stats(db, top)


@router.get("/engagement-breakdown", response_model=EngagementBreakdown)
def get_engagement_breakdown(db: Session = Depends(get_db)) -> EngagementBreakdown:
    return principal_activity_insights_service.engagement_breakdown(db)


@router.get("/follow-ups", response_model=list[PrincipalActivitySummaryRead])
def list_follow_ups(
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> list[PrincipalActivitySummaryRead]:
    return principal_activity_insights_service.principals_requiring_follow_up(db, limit)


@router.get("/distributor-relationships", response_model=list[DistributorRelationship])
def list_distributor_relationships(db: Session = Depends(get_db)) -> list[DistributorRelationship]:
    return principal_activity_insights_service.distributor_relationships(db)


@router.get("/timeline", response_model=list[TimelineEntry])
def get_timeline(
    principal_id: list[uuid.UUID] | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[TimelineEntry]:
    return principal_activity_insights_service.principal_timeline(db, principal_id, limit=limit)


@router.post("/refresh", response_model=RefreshReport)
def refresh_principal_activity(
    payload: RefreshRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> RefreshReport:
    principal_ids = [payload.principal_id] if payload is not None and payload.principal_id is not None else None
    return principal_activity_refresh_service.refresh(db, principal_ids, trigger="manual", requested_by=user.sub)


@router.get("/refresh-runs", response_model=list[RefreshRunRead])
def list_refresh_runs(
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
) -> list[RefreshRunRead]:
    return principal_activity_refresh_service.list_runs(db, limit)


@router.post("/notifications", response_model=MutationNotificationAccepted, status_code=status.HTTP_202_ACCEPTED)
def receive_mutation_notification(
    payload: MutationNotificationCreate,
    user: AuthUser = Depends(get_current_user),
) -> MutationNotificationAccepted:
    envelope = notify_upstream_mutation(
        payload.source_entity,
        payload.operation,
        occurred_at=payload.occurred_at,
        principal_ids=payload.principal_ids,
        actor_user_id=user.sub,
    )
    return MutationNotificationAccepted(
        event_id=envelope["event_id"],
        event_type=envelope["event_type"],
        source_entity=payload.source_entity,
        operation=payload.operation,
    )
