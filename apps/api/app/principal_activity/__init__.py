from app.principal_activity.api import router
from app.principal_activity.models import (
    ActivityStatus,
    PrincipalActivityCategory,
    PrincipalActivityRefreshRun,
    PrincipalActivitySummary,
)
from app.principal_activity.query import PrincipalActivityQueryService, principal_activity_query_service
from app.principal_activity.schemas import (
    PaginationParams,
    PrincipalActivityFilters,
    PrincipalActivityPage,
    PrincipalActivitySort,
    PrincipalActivityStats,
    PrincipalActivitySummaryRead,
    RefreshReport,
)
from app.principal_activity.service import PrincipalActivityRefreshService, principal_activity_refresh_service

__all__ = [
    "router",
    "ActivityStatus",
    "PrincipalActivityCategory",
    "PrincipalActivityRefreshRun",
    "PrincipalActivitySummary",
    "PaginationParams",
    "PrincipalActivityFilters",
    "PrincipalActivityPage",
    "PrincipalActivitySort",
    "PrincipalActivityStats",
    "PrincipalActivitySummaryRead",
    "RefreshReport",
    "PrincipalActivityQueryService",
    "principal_activity_query_service",
    "PrincipalActivityRefreshService",
    "principal_activity_refresh_service",
]
