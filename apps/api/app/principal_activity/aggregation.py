from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from app.crm.models import CRMContact, CRMInteraction, CRMOpportunity, CRMOrganization, CRMProduct, CRMProductPrincipal
from app.principal_activity.models import as_utc


ACTIVE_CONTACT_WINDOW = timedelta(days=90)
RECENT_WINDOW = timedelta(days=30)
QUARTER_WINDOW = timedelta(days=90)
CLOSED_WON_STAGE = "Closed - Won"
POSITIVE_OUTCOME = "POSITIVE"


@dataclass(slots=True)
class PrincipalSnapshot:
    id: uuid.UUID
    name: str
    status: str | None
    organization_type: str | None
    industry: str | None
    size: str | None
    lead_score: int | None
    distributor_id: uuid.UUID | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(slots=True)
class ContactStats:
    contact_count: int = 0
    active_contacts: int = 0
    primary_contact_name: str | None = None
    primary_contact_email: str | None = None
    last_contact_update: datetime | None = None


@dataclass(slots=True)
class InteractionStats:
    total: int = 0
    last_30_days: int = 0
    last_90_days: int = 0
    last_interaction_date: datetime | None = None
    last_interaction_type: str | None = None
    next_follow_up_date: date | None = None
    avg_rating: float = 0.0
    positive: int = 0
    follow_ups_required: int = 0


@dataclass(slots=True)
class OpportunityStats:
    total: int = 0
    active: int = 0
    won: int = 0
    last_30_days: int = 0
    latest_stage: str | None = None
    latest_date: datetime | None = None
    avg_probability: float = 0.0


@dataclass(slots=True)
class ProductStats:
    product_count: int = 0
    active_product_count: int = 0
    categories: list[str] = field(default_factory=list)
    primary_category: str | None = None


@dataclass(slots=True)
class RawAggregate:
    principal_id: uuid.UUID
    as_of: datetime
    principal: PrincipalSnapshot | None = None
    distributor_name: str | None = None
    contacts: ContactStats = field(default_factory=ContactStats)
    interactions: InteractionStats = field(default_factory=InteractionStats)
    opportunities: OpportunityStats = field(default_factory=OpportunityStats)
    products: ProductStats = field(default_factory=ProductStats)

    @property
    def qualifies(self) -> bool:
        return self.principal is not None

    @property
    def last_activity_date(self) -> datetime | None:
        candidates = [
            self.contacts.last_contact_update,
            self.interactions.last_interaction_date,
            self.opportunities.latest_date,
            self.principal.updated_at if self.principal is not None else None,
        ]
        present = [value for value in candidates if value is not None]
        if not present:
            return None
        return min(max(present), self.as_of)


def _qualifying_principal_clause():  # type: ignore[no-untyped-def]
    return and_(CRMOrganization.is_principal.is_(True), CRMOrganization.deleted_at.is_(None))


def list_principal_ids(session: Session) -> list[uuid.UUID]:
    return list(session.scalars(select(CRMOrganization.id).where(_qualifying_principal_clause()).order_by(CRMOrganization.id)))


def _principal_context(session: Session, principal_id: uuid.UUID) -> tuple[PrincipalSnapshot | None, str | None]:
    organization = session.scalar(
        select(CRMOrganization).where(CRMOrganization.id == principal_id, _qualifying_principal_clause())
    )
    if organization is None:
        return None, None

    snapshot = PrincipalSnapshot(
        id=organization.id,
        name=organization.name,
        status=organization.status,
        organization_type=organization.type,
        industry=organization.industry,
        size=organization.size,
        lead_score=organization.lead_score,
        distributor_id=organization.distributor_id,
        created_at=as_utc(organization.created_at),
        updated_at=as_utc(organization.updated_at),
    )

    distributor_name = None
    if organization.distributor_id is not None:
        distributor_name = session.scalar(
            select(CRMOrganization.name).where(
                CRMOrganization.id == organization.distributor_id,
                CRMOrganization.deleted_at.is_(None),
            )
        )
    return snapshot, distributor_name


def _contact_stats(session: Session, principal_id: uuid.UUID, as_of: datetime) -> ContactStats:
    scope = and_(CRMContact.organization_id == principal_id, CRMContact.deleted_at.is_(None))
    contact_count, active_contacts, last_update = session.execute(
        select(
            func.count(CRMContact.id),
            func.coalesce(func.sum(case((CRMContact.updated_at >= as_of - ACTIVE_CONTACT_WINDOW, 1), else_=0)), 0),
            func.max(CRMContact.updated_at),
        ).where(scope)
    ).one()

    stats = ContactStats(
        contact_count=int(contact_count or 0),
        active_contacts=int(active_contacts or 0),
        last_contact_update=as_utc(last_update),
    )
    primary = session.execute(
        select(CRMContact.first_name, CRMContact.last_name, CRMContact.email)
        .where(scope)
        .order_by(CRMContact.updated_at.desc(), CRMContact.id.asc())
        .limit(1)
    ).first()
    if primary is not None:
        stats.primary_contact_name = f"{primary.first_name} {primary.last_name}".strip()
        stats.primary_contact_email = primary.email
    return stats


def _interaction_scope(principal_id: uuid.UUID):  # type: ignore[no-untyped-def]
    principal_opportunities = select(CRMOpportunity.id).where(
        CRMOpportunity.principal_id == principal_id,
        CRMOpportunity.deleted_at.is_(None),
    )
    principal_contacts = select(CRMContact.id).where(
        CRMContact.organization_id == principal_id,
        CRMContact.deleted_at.is_(None),
    )
    return and_(
        CRMInteraction.deleted_at.is_(None),
        or_(
            CRMInteraction.opportunity_id.in_(principal_opportunities),
            and_(CRMInteraction.opportunity_id.is_(None), CRMInteraction.contact_id.in_(principal_contacts)),
        ),
    )


def _interaction_stats(session: Session, principal_id: uuid.UUID, as_of: datetime) -> InteractionStats:
    scope = _interaction_scope(principal_id)
    today = as_of.date()
    pending_follow_up = and_(CRMInteraction.follow_up_required.is_(True), CRMInteraction.follow_up_date > today)

    total, last_30, last_90, last_date, avg_rating, positive, follow_ups = session.execute(
        select(
            func.count(CRMInteraction.id),
            func.coalesce(func.sum(case((CRMInteraction.interaction_date >= as_of - RECENT_WINDOW, 1), else_=0)), 0),
            func.coalesce(func.sum(case((CRMInteraction.interaction_date >= as_of - QUARTER_WINDOW, 1), else_=0)), 0),
            func.max(CRMInteraction.interaction_date),
            func.avg(CRMInteraction.rating),
            func.coalesce(func.sum(case((CRMInteraction.outcome == POSITIVE_OUTCOME, 1), else_=0)), 0),
            func.coalesce(func.sum(case((pending_follow_up, 1), else_=0)), 0),
        ).where(scope)
    ).one()

    stats = InteractionStats(
        total=int(total or 0),
        last_30_days=int(last_30 or 0),
        last_90_days=int(last_90 or 0),
        last_interaction_date=as_utc(last_date),
        avg_rating=round(float(avg_rating), 2) if avg_rating is not None else 0.0,
        positive=int(positive or 0),
        follow_ups_required=int(follow_ups or 0),
    )
    if stats.total == 0:
        return stats

    stats.last_interaction_type = session.scalar(
        select(CRMInteraction.type)
        .where(scope)
        .order_by(CRMInteraction.interaction_date.desc(), CRMInteraction.id.asc())
        .limit(1)
    )
    stats.next_follow_up_date = session.scalar(
        select(func.min(CRMInteraction.follow_up_date)).where(scope, pending_follow_up)
    )
    return stats


def _opportunity_stats(session: Session, principal_id: uuid.UUID, as_of: datetime) -> OpportunityStats:
    scope = and_(CRMOpportunity.principal_id == principal_id, CRMOpportunity.deleted_at.is_(None))
    is_active = and_(CRMOpportunity.is_won.is_(False), CRMOpportunity.stage != CLOSED_WON_STAGE)

    total, active, won, last_30, latest_date, avg_probability = session.execute(
        select(
            func.count(CRMOpportunity.id),
            func.coalesce(func.sum(case((is_active, 1), else_=0)), 0),
            func.coalesce(func.sum(case((CRMOpportunity.is_won.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((CRMOpportunity.created_at >= as_of - RECENT_WINDOW, 1), else_=0)), 0),
            func.max(CRMOpportunity.created_at),
            func.avg(CRMOpportunity.probability_percent),
        ).where(scope)
    ).one()

    stats = OpportunityStats(
        total=int(total or 0),
        active=int(active or 0),
        won=int(won or 0),
        last_30_days=int(last_30 or 0),
        latest_date=as_utc(latest_date),
        avg_probability=round(float(avg_probability), 2) if avg_probability is not None else 0.0,
    )
    if stats.total:
        stats.latest_stage = session.scalar(
            select(CRMOpportunity.stage)
            .where(scope)
            .order_by(CRMOpportunity.updated_at.desc(), CRMOpportunity.id.asc())
            .limit(1)
        )
    return stats


def _product_stats(session: Session, principal_id: uuid.UUID) -> ProductStats:
    rows = session.execute(
        select(CRMProduct.id, CRMProduct.category, CRMProduct.is_active)
        .join(CRMProductPrincipal, CRMProductPrincipal.product_id == CRMProduct.id)
        .where(
            CRMProductPrincipal.principal_id == principal_id,
            CRMProductPrincipal.is_active.is_(True),
            CRMProduct.deleted_at.is_(None),
        )
        .distinct()
    ).all()

    product_ids = {row.id for row in rows}
    active_ids = {row.id for row in rows if row.is_active}
    category_counts = Counter(row.category for row in rows if row.category)

    primary_category = None
    if category_counts:
        primary_category = sorted(category_counts.items(), key=lambda item: (-item[1], item[0]))[0][0]

    return ProductStats(
        product_count=len(product_ids),
        active_product_count=len(active_ids),
        categories=sorted(category_counts),
        primary_category=primary_category,
    )


def aggregate_principal(session: Session, principal_id: uuid.UUID, *, as_of: datetime) -> RawAggregate:
    """Read every upstream relation of one principal and combine them by key.

    Each relation is summarized by its own query so that joining contacts,
    interactions and products never multiplies counts. A principal that is
    missing, deleted or not flagged yields an empty aggregate with
    ``principal`` set to ``None``.
    """
    as_of = as_utc(as_of) or datetime.now(timezone.utc)
    aggregate = RawAggregate(principal_id=principal_id, as_of=as_of)

    principal, distributor_name = _principal_context(session, principal_id)
    if principal is None:
        return aggregate

    aggregate.principal = principal
    aggregate.distributor_name = distributor_name
    aggregate.contacts = _contact_stats(session, principal_id, as_of)
    aggregate.interactions = _interaction_stats(session, principal_id, as_of)
    aggregate.opportunities = _opportunity_stats(session, principal_id, as_of)
    aggregate.products = _product_stats(session, principal_id)
    return aggregate
