from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from sqlalchemy import ColumnElement, delete, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.crm.models import CRMOrganization
from app.principal_activity.aggregation import RawAggregate
from app.principal_activity.models import PrincipalActivityCategory, PrincipalActivitySummary, as_utc
from app.principal_activity.scoring import EngagementResult


def summary_is_current() -> ColumnElement[bool]:
    """Rows whose organization is still a live principal; demoted ones stay hidden until pruned."""
    return exists().where(
        CRMOrganization.id == PrincipalActivitySummary.principal_id,
        CRMOrganization.is_principal.is_(True),
        CRMOrganization.deleted_at.is_(None),
    )


class SummaryClock:
    """Hands out strictly increasing UTC instants, even when the wall clock stalls or steps back."""

    def __init__(self, now_fn: Callable[[], datetime] | None = None) -> None:
        self._lock = threading.Lock()
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self._last: datetime | None = None

    def now(self) -> datetime:
        with self._lock:
            current = as_utc(self._now_fn())
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


_SUMMARY_COLUMNS = tuple(
    column.key for column in PrincipalActivitySummary.__table__.columns if column.key != "principal_id"
)


class PrincipalActivitySummaryRepository:
    def build_row(
        self,
        aggregate: RawAggregate,
        result: EngagementResult,
        generated_at: datetime,
    ) -> PrincipalActivitySummary:
        principal = aggregate.principal
        if principal is None:
            raise ValueError(f"principal {aggregate.principal_id} does not qualify for a summary row")

        contacts = aggregate.contacts
        interactions = aggregate.interactions
        opportunities = aggregate.opportunities
        products = aggregate.products
        return PrincipalActivitySummary(
            principal_id=principal.id,
            principal_name=principal.name,
            principal_status=principal.status,
            organization_type=principal.organization_type,
            industry=principal.industry,
            organization_size=principal.size,
            is_active=True,
            lead_score=principal.lead_score,
            contact_count=contacts.contact_count,
            active_contacts=contacts.active_contacts,
            primary_contact_name=contacts.primary_contact_name,
            primary_contact_email=contacts.primary_contact_email,
            last_contact_update=contacts.last_contact_update,
            total_interactions=interactions.total,
            interactions_last_30_days=interactions.last_30_days,
            interactions_last_90_days=interactions.last_90_days,
            last_interaction_date=interactions.last_interaction_date,
            last_interaction_type=interactions.last_interaction_type,
            next_follow_up_date=interactions.next_follow_up_date,
            avg_interaction_rating=interactions.avg_rating,
            positive_interactions=interactions.positive,
            follow_ups_required=interactions.follow_ups_required,
            total_opportunities=opportunities.total,
            active_opportunities=opportunities.active,
            won_opportunities=opportunities.won,
            opportunities_last_30_days=opportunities.last_30_days,
            latest_opportunity_stage=opportunities.latest_stage,
            latest_opportunity_date=opportunities.latest_date,
            avg_probability_percent=opportunities.avg_probability,
            product_count=products.product_count,
            active_product_count=products.active_product_count,
            product_categories=list(products.categories),
            primary_product_category=products.primary_category,
            distributor_id=principal.distributor_id,
            distributor_name=aggregate.distributor_name,
            last_activity_date=aggregate.last_activity_date,
            activity_status=result.activity_status.value,
            engagement_score=result.engagement_score,
            principal_created_at=principal.created_at,
            principal_updated_at=principal.updated_at,
            summary_generated_at=generated_at,
        )

    def get(self, session: Session, principal_id: uuid.UUID) -> PrincipalActivitySummary | None:
        return session.scalar(
            select(PrincipalActivitySummary).where(
                PrincipalActivitySummary.principal_id == principal_id,
                summary_is_current(),
            )
        )

    def replace_row(self, session: Session, row: PrincipalActivitySummary) -> bool:
        """Swap in a freshly built row and its category index in one transaction.

        Returns False without writing when the stored row was generated at the
        same instant or later, so an older recompute never overwrites a newer one.
        """
        try:
            existing = session.scalar(
                select(PrincipalActivitySummary)
                .where(PrincipalActivitySummary.principal_id == row.principal_id)
                .with_for_update()
            )
            if existing is not None and as_utc(existing.summary_generated_at) >= as_utc(row.summary_generated_at):
                session.rollback()
                return False

            if existing is None:
                session.add(row)
            else:
                for key in _SUMMARY_COLUMNS:
                    setattr(existing, key, getattr(row, key))

            session.execute(
                delete(PrincipalActivityCategory).where(PrincipalActivityCategory.principal_id == row.principal_id)
            )
            session.add_all(
                PrincipalActivityCategory(principal_id=row.principal_id, category=category)
                for category in row.product_categories
            )
            session.commit()
        except IntegrityError:
            session.rollback()
            return False
        return True

    def remove(self, session: Session, principal_id: uuid.UUID) -> bool:
        removed = self._delete_where(session, [principal_id])
        session.commit()
        return removed > 0

    def prune(self, session: Session, keep_ids: Iterable[uuid.UUID]) -> list[uuid.UUID]:
        keep = set(keep_ids)
        stored_ids = session.scalars(select(PrincipalActivitySummary.principal_id)).all()
        stale_ids = sorted(principal_id for principal_id in stored_ids if principal_id not in keep)
        if stale_ids:
            self._delete_where(session, stale_ids)
        session.commit()
        return stale_ids

    def _delete_where(self, session: Session, principal_ids: list[uuid.UUID]) -> int:
        session.execute(delete(PrincipalActivityCategory).where(PrincipalActivityCategory.principal_id.in_(principal_ids)))
        result = session.execute(
            delete(PrincipalActivitySummary).where(PrincipalActivitySummary.principal_id.in_(principal_ids))
        )
        return result.rowcount or 0
