from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from app.principal_activity.models import ActivityStatus, as_utc

if TYPE_CHECKING:
    from app.principal_activity.aggregation import RawAggregate


LEAD_SCORE_WEIGHT = 0.40
INTERACTION_WEIGHT = 0.30
OPPORTUNITY_WEIGHT = 0.20
PRODUCT_WEIGHT = 0.10

INTERACTION_POINTS_PER_ITEM = 5
INTERACTION_POINTS_CAP = 30
OPPORTUNITY_POINTS_PER_ITEM = 10
OPPORTUNITY_POINTS_CAP = 20
PRODUCT_POINTS_PER_ITEM = 2
PRODUCT_POINTS_CAP = 10

STALE_AFTER = timedelta(days=30)
MODERATE_AFTER = timedelta(days=7)

HIGH_ENGAGEMENT_THRESHOLD = 80.0
MEDIUM_ENGAGEMENT_THRESHOLD = 40.0


@dataclass(frozen=True, slots=True)
class EngagementResult:
    engagement_score: float
    activity_status: ActivityStatus


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def compute_engagement_score(
    *,
    lead_score: int | None,
    interactions_last_30_days: int,
    active_opportunities: int,
    active_product_count: int,
) -> float:
    """Weighted 0..100 composite; every component is capped before weighting."""
    lead_component = _clamp(float(lead_score or 0), 0.0, 100.0) * LEAD_SCORE_WEIGHT
    interaction_component = (
        min(INTERACTION_POINTS_CAP, max(0, interactions_last_30_days) * INTERACTION_POINTS_PER_ITEM) * INTERACTION_WEIGHT
    )
    opportunity_component = (
        min(OPPORTUNITY_POINTS_CAP, max(0, active_opportunities) * OPPORTUNITY_POINTS_PER_ITEM) * OPPORTUNITY_WEIGHT
    )
    product_component = min(PRODUCT_POINTS_CAP, max(0, active_product_count) * PRODUCT_POINTS_PER_ITEM) * PRODUCT_WEIGHT

    total = lead_component + interaction_component + opportunity_component + product_component
    return round(_clamp(total, 0.0, 100.0), 2)


def classify_activity(last_interaction_date: datetime | None, now: datetime) -> ActivityStatus:
    if last_interaction_date is None:
        return ActivityStatus.NO_ACTIVITY

    age = as_utc(now) - as_utc(last_interaction_date)
    if age > STALE_AFTER:
        return ActivityStatus.STALE
    if age > MODERATE_AFTER:
        return ActivityStatus.MODERATE
    return ActivityStatus.ACTIVE


def score_aggregate(aggregate: RawAggregate, *, now: datetime) -> EngagementResult:
    principal = aggregate.principal
    lead_score = principal.lead_score if principal is not None else None
    score = compute_engagement_score(
        lead_score=lead_score,
        interactions_last_30_days=aggregate.interactions.last_30_days,
        active_opportunities=aggregate.opportunities.active,
        active_product_count=aggregate.products.active_product_count,
    )
    status = classify_activity(aggregate.interactions.last_interaction_date, now)
    return EngagementResult(engagement_score=score, activity_status=status)


def engagement_band(engagement_score: float, activity_status: str) -> str:
    if activity_status == ActivityStatus.NO_ACTIVITY.value:
        return "inactive"
    if engagement_score >= HIGH_ENGAGEMENT_THRESHOLD:
        return "high"
    if engagement_score >= MEDIUM_ENGAGEMENT_THRESHOLD:
        return "medium"
    return "low"
