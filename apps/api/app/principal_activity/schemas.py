from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.config import get_settings
from app.principal_activity.models import PrincipalActivitySummary


ActivityStatusValue = Literal["NO_ACTIVITY", "STALE", "MODERATE", "ACTIVE"]
SortDirection = Literal["asc", "desc"]
RefreshScope = Literal["all", "principals"]
RefreshStatus = Literal["Succeeded", "Partial", "Failed"]
SourceEntity = Literal["organizations", "contacts", "opportunities", "interactions", "product_principals"]
MutationOperation = Literal["INSERT", "UPDATE", "DELETE", "TRUNCATE"]

UNSORTABLE_COLUMNS = frozenset({"product_categories"})

SORTABLE_FIELDS = frozenset(
    column.key for column in PrincipalActivitySummary.__table__.columns if column.key not in UNSORTABLE_COLUMNS
)


class _Range(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min: float | None = None
    max: float | None = None

    @model_validator(mode="after")
    def check_bounds(self) -> _Range:
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("min must be less than or equal to max")
        return self


class EngagementScoreRange(_Range):
    min: float | None = Field(default=None, ge=0, le=100)
    max: float | None = Field(default=None, ge=0, le=100)


class LeadScoreRange(_Range):
    min: float | None = Field(default=None, ge=0, le=100)
    max: float | None = Field(default=None, ge=0, le=100)


class PrincipalActivityFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search: str | None = Field(default=None, max_length=200)
    activity_status: list[ActivityStatusValue] | None = None
    engagement_score_range: EngagementScoreRange | None = None
    has_opportunities: bool | None = None
    lead_score_range: LeadScoreRange | None = None
    has_products: bool | None = None
    has_active_opportunities: bool | None = None
    product_categories: list[str] | None = None
    distributor_id: UUID | None = None
    principal_ids: list[UUID] | None = None
    last_activity_days: int | None = Field(default=None, ge=1, le=3650)

    @field_validator("search")
    @classmethod
    def normalize_search(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @field_validator("product_categories")
    @classmethod
    def normalize_categories(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return sorted({item.strip() for item in value if item.strip()}) or None


class PrincipalActivitySort(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str = "engagement_score"
    direction: SortDirection = "desc"

    @field_validator("field")
    @classmethod
    def check_field(cls, value: str) -> str:
        if value not in SORTABLE_FIELDS:
            allowed = ", ".join(sorted(SORTABLE_FIELDS))
            raise ValueError(f"unsupported sort field '{value}'; expected one of: {allowed}")
        return value


class PaginationParams(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1)

    @field_validator("limit")
    @classmethod
    def check_limit(cls, value: int) -> int:
        maximum = get_settings().principal_activity_max_page_size
        if value > maximum:
            raise ValueError(f"limit must be less than or equal to {maximum}")
        return value


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_previous: bool


class AnalyticsSummary(BaseModel):
    total_count: int = 0
    active_count: int = 0
    avg_engagement_score: float = 0.0
    total_interactions: int = 0
    total_opportunities: int = 0
    top_activity_status: ActivityStatusValue | None = None


class PrincipalActivitySummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    principal_id: UUID
    principal_name: str
    principal_status: str | None
    organization_type: str | None
    industry: str | None
    organization_size: str | None
    is_active: bool
    lead_score: int | None
    contact_count: int
    active_contacts: int
    primary_contact_name: str | None
    primary_contact_email: str | None
    last_contact_update: datetime | None
    total_interactions: int
    interactions_last_30_days: int
    interactions_last_90_days: int
    last_interaction_date: datetime | None
    last_interaction_type: str | None
    next_follow_up_date: date | None
    avg_interaction_rating: float
    positive_interactions: int
    follow_ups_required: int
    total_opportunities: int
    active_opportunities: int
    won_opportunities: int
    opportunities_last_30_days: int
    latest_opportunity_stage: str | None
    latest_opportunity_date: datetime | None
    avg_probability_percent: float
    product_count: int
    active_product_count: int
    product_categories: list[str]
    primary_product_category: str | None
    distributor_id: UUID | None
    distributor_name: str | None
    last_activity_date: datetime | None
    activity_status: ActivityStatusValue
    engagement_score: float
    principal_created_at: datetime | None
    principal_updated_at: datetime | None
    summary_generated_at: datetime


class PrincipalActivityPage(BaseModel):
    data: list[PrincipalActivitySummaryRead]
    pagination: PaginationMeta
    analytics_summary: AnalyticsSummary
    filters: PrincipalActivityFilters
    sort: PrincipalActivitySort


class TopPerformer(BaseModel):
    principal_id: UUID
    principal_name: str
    engagement_score: float
    total_opportunities: int
    won_opportunities: int
    activity_status: ActivityStatusValue


class PrincipalActivityStats(BaseModel):
    total_principals: int
    active_principals: int
    principals_with_products: int
    principals_with_opportunities: int
    average_products_per_principal: float
    average_engagement_score: float
    top_performers: list[TopPerformer]


class RefreshRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    principal_id: UUID | None = None


class RefreshFailure(BaseModel):
    principal_id: UUID | None = None
    stage: Literal["select", "aggregate", "store", "prune"]
    error: str


class RefreshReport(BaseModel):
    run_id: UUID
    trigger: str
    scope: RefreshScope
    status: RefreshStatus
    requested: int
    refreshed: int
    removed: int
    superseded: int
    failed: int
    failures: list[RefreshFailure] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime
    duration_ms: float


class RefreshRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    trigger: str
    scope: str
    status: str
    requested_count: int
    refreshed_count: int
    removed_count: int
    superseded_count: int
    failed_count: int
    requested_by: str | None
    correlation_id: str | None
    error_json: list[dict[str, str]]
    started_at: datetime
    finished_at: datetime | None


class MutationNotificationCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_entity: SourceEntity
    operation: MutationOperation
    occurred_at: datetime | None = None
    principal_ids: list[UUID] | None = None

    @field_validator("operation", mode="before")
    @classmethod
    def uppercase_operation(cls, value: object) -> object:
        if isinstance(value, str):
            return value.upper()
        return value


class MutationNotificationAccepted(BaseModel):
    event_id: str
    event_type: str
    source_entity: SourceEntity
    operation: MutationOperation


class EngagementBreakdown(BaseModel):
    high: int = 0
    medium: int = 0
    low: int = 0
    inactive: int = 0
    total: int = 0


class DistributorRelationship(BaseModel):
    principal_id: UUID
    principal_name: str
    principal_status: str | None
    lead_score: int | None
    city: str | None
    state_province: str | None
    country: str | None
    distributor_id: UUID | None
    distributor_name: str | None
    distributor_lead_score: int | None
    relationship_type: Literal["HAS_DISTRIBUTOR", "DIRECT"]


class ProductPerformance(BaseModel):
    principal_id: UUID
    product_id: UUID
    product_name: str
    sku: str | None
    category: str | None
    product_is_active: bool
    is_primary_principal: bool
    exclusive_rights: bool
    contract_start_date: date | None
    contract_end_date: date | None
    contract_status: Literal["EXPIRED", "EXPIRING_SOON", "PENDING", "ACTIVE"]
    opportunity_count: int
    active_opportunities: int
    won_opportunities: int
    interaction_count: int
    recent_interaction_count: int
    last_interaction_date: datetime | None
    performance_score: float


class TimelineEntry(BaseModel):
    principal_id: UUID
    principal_name: str
    activity_type: Literal["CONTACT_UPDATE", "INTERACTION", "OPPORTUNITY_CREATED", "PRODUCT_ASSOCIATION"]
    activity_id: UUID
    activity_date: datetime
    title: str
    details: str | None = None
