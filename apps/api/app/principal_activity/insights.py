from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from fastapi import HTTPException, status
from sqlalchemy import and_, case, or_, select
from sqlalchemy.orm import Session, aliased

from app.crm.models import CRMContact, CRMInteraction, CRMOpportunity, CRMOrganization, CRMProduct, CRMProductPrincipal
from app.principal_activity.aggregation import CLOSED_WON_STAGE
from app.principal_activity.models import PrincipalActivitySummary, as_utc
from app.principal_activity.repository import summary_is_current
from app.principal_activity.schemas import (
    DistributorRelationship,
    EngagementBreakdown,
    PrincipalActivitySummaryRead,
    ProductPerformance,
    TimelineEntry,
)
from app.principal_activity.scoring import engagement_band


CONTRACT_EXPIRING_WINDOW = timedelta(days=30)
RECENT_INTERACTION_WINDOW = timedelta(days=30)
FOLLOW_UP_ENGAGEMENT_THRESHOLD = 75.0


def contract_status(start: date | None, end: date | None, today: date) -> str:
    if end is not None and end < today:
        return "EXPIRED"
    if end is not None and end < today + CONTRACT_EXPIRING_WINDOW:
        return "EXPIRING_SOON"
    if start is not None and start > today:
        return "PENDING"
    return "ACTIVE"


def product_performance_score(
    *,
    opportunity_count: int,
    won_opportunities: int,
    recent_interactions: int,
    exclusive_rights: bool,
) -> float:
    win_component = (won_opportunities / opportunity_count * 100) * 0.5 if opportunity_count else 0.0
    recency_component = (30 if recent_interactions > 0 else 0) * 0.3
    exclusivity_component = (20 if exclusive_rights else 10) * 0.2
    return round(max(0.0, min(100.0, win_component + recency_component + exclusivity_component)), 2)


def _qualifying_principal():  # type: ignore[no-untyped-def]
    return and_(CRMOrganization.is_principal.is_(True), CRMOrganization.deleted_at.is_(None))


@dataclass(slots=True)
class _ProductActivity:
    opportunity_count: int = 0
    active_opportunities: int = 0
    won_opportunities: int = 0
    interaction_count: int = 0
    recent_interaction_count: int = 0
    last_interaction_date: datetime | None = None


@dataclass(slots=True)
class PrincipalActivityInsightsService:
    def engagement_breakdown(self, session: Session) -> EngagementBreakdown:
        rows = session.execute(
            select(PrincipalActivitySummary.engagement_score, PrincipalActivitySummary.activity_status).where(
                summary_is_current()
            )
        ).all()
        breakdown = EngagementBreakdown(total=len(rows))
        for score, activity_status in rows:
            band = engagement_band(score, activity_status)
            setattr(breakdown, band, getattr(breakdown, band) + 1)
        return breakdown

    def principals_requiring_follow_up(self, session: Session, limit: int = 20) -> list[PrincipalActivitySummaryRead]:
        summary = PrincipalActivitySummary
        rows = session.scalars(
            select(summary)
            .where(
                summary_is_current(),
                or_(summary.follow_ups_required > 0, summary.engagement_score >= FOLLOW_UP_ENGAGEMENT_THRESHOLD),
            )
            .order_by(
                summary.next_follow_up_date.asc().nulls_last(),
                summary.engagement_score.desc(),
                summary.principal_id.asc(),
            )
            .limit(limit)
        ).all()
        return [PrincipalActivitySummaryRead.model_validate(row) for row in rows]

    def distributor_relationships(self, session: Session) -> list[DistributorRelationship]:
        distributor = aliased(CRMOrganization)
        rows = session.execute(
            select(CRMOrganization, distributor)
            .outerjoin(
                distributor,
                and_(distributor.id == CRMOrganization.distributor_id, distributor.deleted_at.is_(None)),
            )
            .where(_qualifying_principal())
            .order_by(CRMOrganization.name.asc(), CRMOrganization.id.asc())
        ).all()
        return [
            DistributorRelationship(
                principal_id=principal.id,
                principal_name=principal.name,
                principal_status=principal.status,
                lead_score=principal.lead_score,
                city=principal.city,
                state_province=principal.state_province,
                country=principal.country,
                distributor_id=linked.id if linked is not None else None,
                distributor_name=linked.name if linked is not None else None,
                distributor_lead_score=linked.lead_score if linked is not None else None,
                relationship_type="HAS_DISTRIBUTOR" if linked is not None else "DIRECT",
            )
            for principal, linked in rows
        ]

    def product_performance(
        self,
        session: Session,
        principal_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> list[ProductPerformance]:
        now = as_utc(now) or datetime.now(timezone.utc)
        principal = session.scalar(
            select(CRMOrganization).where(CRMOrganization.id == principal_id, _qualifying_principal())
        )
        if principal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="principal not found")

        associations = session.execute(
            select(CRMProductPrincipal, CRMProduct)
            .join(CRMProduct, CRMProduct.id == CRMProductPrincipal.product_id)
            .where(
                CRMProductPrincipal.principal_id == principal_id,
                CRMProductPrincipal.is_active.is_(True),
                CRMProduct.deleted_at.is_(None),
            )
            .order_by(CRMProduct.name.asc(), CRMProduct.id.asc())
        ).all()
        activity = self._product_activity(session, principal_id, now)

        results: list[ProductPerformance] = []
        for association, product in associations:
            stats = activity.get(product.id, _ProductActivity())
            results.append(
                ProductPerformance(
                    principal_id=principal_id,
                    product_id=product.id,
                    product_name=product.name,
                    sku=product.sku,
                    category=product.category,
                    product_is_active=product.is_active,
                    is_primary_principal=association.is_primary_principal,
                    exclusive_rights=association.exclusive_rights,
                    contract_start_date=association.contract_start_date,
                    contract_end_date=association.contract_end_date,
                    contract_status=contract_status(
                        association.contract_start_date,
                        association.contract_end_date,
                        now.date(),
                    ),
                    opportunity_count=stats.opportunity_count,
                    active_opportunities=stats.active_opportunities,
                    won_opportunities=stats.won_opportunities,
                    interaction_count=stats.interaction_count,
                    recent_interaction_count=stats.recent_interaction_count,
                    last_interaction_date=stats.last_interaction_date,
                    performance_score=product_performance_score(
                        opportunity_count=stats.opportunity_count,
                        won_opportunities=stats.won_opportunities,
                        recent_interactions=stats.recent_interaction_count,
                        exclusive_rights=association.exclusive_rights,
                    ),
                )
            )
        return results

    def _product_activity(self, session: Session, principal_id: uuid.UUID, now: datetime) -> dict[uuid.UUID, _ProductActivity]:
        activity: dict[uuid.UUID, _ProductActivity] = defaultdict(_ProductActivity)
        opportunities = session.scalars(
            select(CRMOpportunity).where(
                CRMOpportunity.principal_id == principal_id,
                CRMOpportunity.product_id.is_not(None),
                CRMOpportunity.deleted_at.is_(None),
            )
        ).all()
        product_by_opportunity: dict[uuid.UUID, uuid.UUID] = {}
        for opportunity in opportunities:
            stats = activity[opportunity.product_id]
            stats.opportunity_count += 1
            if opportunity.is_won:
                stats.won_opportunities += 1
            elif opportunity.stage != CLOSED_WON_STAGE:
                stats.active_opportunities += 1
            product_by_opportunity[opportunity.id] = opportunity.product_id

        if not product_by_opportunity:
            return activity

        interactions = session.execute(
            select(CRMInteraction.opportunity_id, CRMInteraction.interaction_date).where(
                CRMInteraction.opportunity_id.in_(list(product_by_opportunity)),
                CRMInteraction.deleted_at.is_(None),
            )
        ).all()
        recent_cutoff = now - RECENT_INTERACTION_WINDOW
        for opportunity_id, interaction_date in interactions:
            stats = activity[product_by_opportunity[opportunity_id]]
            occurred = as_utc(interaction_date)
            stats.interaction_count += 1
            if occurred is not None and occurred > recent_cutoff:
                stats.recent_interaction_count += 1
            if occurred is not None and (stats.last_interaction_date is None or occurred > stats.last_interaction_date):
                stats.last_interaction_date = occurred
        return activity

    def principal_timeline(
        self,
        session: Session,
        principal_ids: list[uuid.UUID] | None = None,
        *,
        limit: int = 50,
    ) -> list[TimelineEntry]:
        principal_scope = select(CRMOrganization.id).where(_qualifying_principal())
        if principal_ids:
            principal_scope = principal_scope.where(CRMOrganization.id.in_(principal_ids))
        names = dict(session.execute(select(CRMOrganization.id, CRMOrganization.name).where(CRMOrganization.id.in_(principal_scope))).all())
        if not names:
            return []

        entries: list[TimelineEntry] = []
        for contact in session.scalars(
            select(CRMContact).where(CRMContact.organization_id.in_(list(names)), CRMContact.deleted_at.is_(None))
        ):
            entries.append(
                TimelineEntry(
                    principal_id=contact.organization_id,
                    principal_name=names[contact.organization_id],
                    activity_type="CONTACT_UPDATE",
                    activity_id=contact.id,
                    activity_date=as_utc(contact.updated_at),
                    title=f"Contact: {contact.first_name} {contact.last_name}",
                    details=contact.notes or "Contact information updated",
                )
            )

        # Owned through the opportunity, or through the contact when no opportunity is linked.
        opportunity = aliased(CRMOpportunity)
        contact = aliased(CRMContact)
        owner = case(
            (CRMInteraction.opportunity_id.is_(None), contact.organization_id),
            else_=opportunity.principal_id,
        )
        interaction_rows = session.execute(
            select(CRMInteraction, owner)
            .outerjoin(opportunity, and_(opportunity.id == CRMInteraction.opportunity_id, opportunity.deleted_at.is_(None)))
            .outerjoin(contact, and_(contact.id == CRMInteraction.contact_id, contact.deleted_at.is_(None)))
            .where(CRMInteraction.deleted_at.is_(None), owner.in_(list(names)))
        ).all()
        for interaction, owner_id in interaction_rows:
            entries.append(
                TimelineEntry(
                    principal_id=owner_id,
                    principal_name=names[owner_id],
                    activity_type="INTERACTION",
                    activity_id=interaction.id,
                    activity_date=as_utc(interaction.interaction_date),
                    title=interaction.subject or f"Interaction: {interaction.type}",
                    details=interaction.notes or f"Interaction: {interaction.type}",
                )
            )

        for opportunity in session.scalars(
            select(CRMOpportunity).where(CRMOpportunity.principal_id.in_(list(names)), CRMOpportunity.deleted_at.is_(None))
        ):
            details = f"Stage: {opportunity.stage}"
            if opportunity.probability_percent is not None:
                details += f" (Probability: {opportunity.probability_percent}%)"
            entries.append(
                TimelineEntry(
                    principal_id=opportunity.principal_id,
                    principal_name=names[opportunity.principal_id],
                    activity_type="OPPORTUNITY_CREATED",
                    activity_id=opportunity.id,
                    activity_date=as_utc(opportunity.created_at),
                    title=f"New Opportunity: {opportunity.name}",
                    details=details,
                )
            )

        association_rows = session.execute(
            select(CRMProductPrincipal, CRMProduct)
            .join(CRMProduct, CRMProduct.id == CRMProductPrincipal.product_id)
            .where(
                CRMProductPrincipal.principal_id.in_(list(names)),
                CRMProductPrincipal.is_active.is_(True),
                CRMProduct.deleted_at.is_(None),
            )
        ).all()
        for association, product in association_rows:
            details = f"Category: {product.category or 'Unknown'}"
            if association.is_primary_principal:
                details += " (Primary Principal)"
            entries.append(
                TimelineEntry(
                    principal_id=association.principal_id,
                    principal_name=names[association.principal_id],
                    activity_type="PRODUCT_ASSOCIATION",
                    activity_id=association.id,
                    activity_date=as_utc(association.created_at),
                    title=f"Product Added: {product.name}",
                    details=details,
                )
            )

        entries.sort(key=lambda entry: (entry.activity_date, str(entry.activity_id)), reverse=True)
        return entries[:limit]


principal_activity_insights_service = PrincipalActivityInsightsService()
