from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crm.models import CRMContact, CRMInteraction, CRMOpportunity, CRMOrganization, CRMProduct, CRMProductPrincipal
from app.principal_activity.aggregation import aggregate_principal, list_principal_ids
from app.principal_activity.insights import PrincipalActivityInsightsService


NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _organization(session: Session, name: str, **kwargs) -> CRMOrganization:
    values = {"is_principal": True, "lead_score": 50, "created_at": NOW - timedelta(days=200), "updated_at": NOW - timedelta(days=60)}
    values.update(kwargs)
    organization = CRMOrganization(name=name, **values)
    session.add(organization)
    session.commit()
    return organization


def _contact(session: Session, organization: CRMOrganization, first: str, last: str, updated_days_ago: int, **kwargs) -> CRMContact:
    contact = CRMContact(
        organization_id=organization.id,
        first_name=first,
        last_name=last,
        email=f"{first.lower()}@example.com",
        created_at=NOW - timedelta(days=300),
        updated_at=NOW - timedelta(days=updated_days_ago),
        **kwargs,
    )
    session.add(contact)
    session.commit()
    return contact


def _opportunity(session: Session, principal: CRMOrganization, name: str, **kwargs) -> CRMOpportunity:
    values = {"stage": "Qualified", "created_at": NOW - timedelta(days=45), "updated_at": NOW - timedelta(days=10)}
    values.update(kwargs)
    opportunity = CRMOpportunity(name=name, principal_id=principal.id, **values)
    session.add(opportunity)
    session.commit()
    return opportunity


def _interaction(session: Session, *, days_ago: float, **kwargs) -> CRMInteraction:
    interaction = CRMInteraction(type=kwargs.pop("type", "CALL"), interaction_date=NOW - timedelta(days=days_ago), **kwargs)
    session.add(interaction)
    session.commit()
    return interaction


def _product(session: Session, principal: CRMOrganization, name: str, category: str | None, **kwargs) -> CRMProduct:
    association_values = {key: kwargs.pop(key) for key in ("is_active_association",) if key in kwargs}
    product = CRMProduct(name=name, category=category, **kwargs)
    session.add(product)
    session.flush()
    session.add(
        CRMProductPrincipal(
            product_id=product.id,
            principal_id=principal.id,
            is_active=association_values.get("is_active_association", True),
        )
    )
    session.commit()
    return product


def test_principal_without_related_rows_yields_zero_counters(db_session: Session) -> None:
    principal = _organization(db_session, "Quiet Foods", lead_score=70)

    aggregate = aggregate_principal(db_session, principal.id, as_of=NOW)

    assert aggregate.qualifies
    assert aggregate.principal is not None and aggregate.principal.lead_score == 70
    assert aggregate.contacts.contact_count == 0
    assert aggregate.interactions.total == 0
    assert aggregate.interactions.last_interaction_date is None
    assert aggregate.opportunities.total == 0
    assert aggregate.products.product_count == 0
    assert aggregate.products.categories == []
    assert aggregate.last_activity_date == NOW - timedelta(days=60)


def test_unknown_or_non_qualifying_principal_yields_empty_aggregate(db_session: Session) -> None:
    customer = _organization(db_session, "Customer Co", is_principal=False)
    removed = _organization(db_session, "Gone Brands", deleted_at=NOW - timedelta(days=1))

    for principal_id in (customer.id, removed.id, uuid.uuid4()):
        aggregate = aggregate_principal(db_session, principal_id, as_of=NOW)
        assert not aggregate.qualifies
        assert aggregate.contacts.contact_count == 0

    assert list_principal_ids(db_session) == []


def test_contact_stats_skip_deleted_and_pick_latest_primary(db_session: Session) -> None:
    principal = _organization(db_session, "Contact Foods")
    _contact(db_session, principal, "Ada", "Lovelace", updated_days_ago=120)
    _contact(db_session, principal, "Grace", "Hopper", updated_days_ago=5)
    _contact(db_session, principal, "Alan", "Turing", updated_days_ago=1, deleted_at=NOW)

    stats = aggregate_principal(db_session, principal.id, as_of=NOW).contacts

    assert stats.contact_count == 2
    assert stats.active_contacts == 1
    assert stats.primary_contact_name == "Grace Hopper"
    assert stats.primary_contact_email == "grace@example.com"
    assert stats.last_contact_update == NOW - timedelta(days=5)


def test_interactions_reach_principal_through_opportunities_and_contacts(db_session: Session) -> None:
    principal = _organization(db_session, "Reach Foods")
    other = _organization(db_session, "Other Foods")
    opportunity = _opportunity(db_session, principal, "Spring promo")
    deleted_opportunity = _opportunity(db_session, principal, "Dropped", deleted_at=NOW - timedelta(days=3))
    other_opportunity = _opportunity(db_session, other, "Other promo")
    contact = _contact(db_session, principal, "Mia", "Chen", updated_days_ago=20)

    _interaction(db_session, days_ago=2, opportunity_id=opportunity.id, type="MEETING", rating=4, outcome="POSITIVE")
    _interaction(db_session, days_ago=20, opportunity_id=opportunity.id, rating=2)
    _interaction(
        db_session,
        days_ago=60,
        contact_id=contact.id,
        follow_up_required=True,
        follow_up_date=NOW.date() + timedelta(days=9),
    )
    _interaction(
        db_session,
        days_ago=1,
        opportunity_id=opportunity.id,
        follow_up_required=True,
        follow_up_date=NOW.date() + timedelta(days=3),
        deleted_at=NOW,
    )
    _interaction(db_session, days_ago=1, opportunity_id=deleted_opportunity.id)
    _interaction(db_session, days_ago=1, opportunity_id=other_opportunity.id)
    _interaction(
        db_session,
        days_ago=100,
        opportunity_id=opportunity.id,
        follow_up_required=True,
        follow_up_date=NOW.date() - timedelta(days=1),
    )

    stats = aggregate_principal(db_session, principal.id, as_of=NOW).interactions

    assert stats.total == 4
    assert stats.last_30_days == 2
    assert stats.last_90_days == 3
    assert stats.last_interaction_date == NOW - timedelta(days=2)
    assert stats.last_interaction_type == "MEETING"
    assert stats.avg_rating == pytest.approx(3.0)
    assert stats.positive == 1
    assert stats.follow_ups_required == 1
    assert stats.next_follow_up_date == NOW.date() + timedelta(days=9)


def test_opportunity_stats_split_active_and_won(db_session: Session) -> None:
    principal = _organization(db_session, "Pipeline Foods")
    _opportunity(db_session, principal, "Open", probability_percent=Decimal("40.00"), created_at=NOW - timedelta(days=3))
    _opportunity(
        db_session,
        principal,
        "Won",
        stage="Closed - Won",
        is_won=True,
        probability_percent=Decimal("100.00"),
        updated_at=NOW - timedelta(days=1),
    )
    _opportunity(db_session, principal, "Lost", stage="Closed - Lost")
    _opportunity(db_session, principal, "Deleted", deleted_at=NOW)

    stats = aggregate_principal(db_session, principal.id, as_of=NOW).opportunities

    assert stats.total == 3
    assert stats.active == 2
    assert stats.won == 1
    assert stats.last_30_days == 1
    assert stats.latest_stage == "Closed - Won"
    assert stats.latest_date == NOW - timedelta(days=3)
    assert stats.avg_probability == pytest.approx(70.0)


def test_product_stats_use_active_associations_and_most_common_category(db_session: Session) -> None:
    principal = _organization(db_session, "Product Foods")
    _product(db_session, principal, "Oat Milk", "Dairy Alternatives")
    _product(db_session, principal, "Almond Milk", "Dairy Alternatives", is_active=False)
    _product(db_session, principal, "Granola", "Breakfast")
    _product(db_session, principal, "Old Cereal", "Breakfast", deleted_at=NOW)
    _product(db_session, principal, "Retired Bar", "Snacks", is_active_association=False)
    _product(db_session, principal, "Mystery", None)

    stats = aggregate_principal(db_session, principal.id, as_of=NOW).products

    assert stats.product_count == 4
    assert stats.active_product_count == 3
    assert stats.categories == ["Breakfast", "Dairy Alternatives"]
    assert stats.primary_category == "Dairy Alternatives"


def test_primary_category_ties_break_by_name(db_session: Session) -> None:
    principal = _organization(db_session, "Tie Foods")
    _product(db_session, principal, "Chips", "Snacks")
    _product(db_session, principal, "Bagels", "Bakery")

    stats = aggregate_principal(db_session, principal.id, as_of=NOW).products

    assert stats.primary_category == "Bakery"


def test_distributor_name_requires_live_distributor(db_session: Session) -> None:
    live = _organization(db_session, "Live Distribution", is_principal=False, is_distributor=True)
    gone = _organization(db_session, "Gone Distribution", is_principal=False, is_distributor=True, deleted_at=NOW)
    served = _organization(db_session, "Served Foods", distributor_id=live.id)
    orphaned = _organization(db_session, "Orphaned Foods", distributor_id=gone.id)

    assert aggregate_principal(db_session, served.id, as_of=NOW).distributor_name == "Live Distribution"
    orphaned_aggregate = aggregate_principal(db_session, orphaned.id, as_of=NOW)
    assert orphaned_aggregate.distributor_name is None
    assert orphaned_aggregate.principal is not None and orphaned_aggregate.principal.distributor_id == gone.id


def test_last_activity_is_latest_signal_capped_at_recompute_time(db_session: Session) -> None:
    principal = _organization(db_session, "Future Foods", updated_at=NOW - timedelta(days=30))
    _opportunity(db_session, principal, "Scheduled", created_at=NOW + timedelta(days=5))
    _contact(db_session, principal, "Zoe", "Park", updated_days_ago=3)

    aggregate = aggregate_principal(db_session, principal.id, as_of=NOW)

    assert aggregate.last_activity_date == NOW


def test_list_principal_ids_returns_only_qualifying(db_session: Session) -> None:
    first = _organization(db_session, "First Foods")
    second = _organization(db_session, "Second Foods")
    _organization(db_session, "Not A Principal", is_principal=False)
    _organization(db_session, "Deleted Foods", deleted_at=NOW)

    assert set(list_principal_ids(db_session)) == {first.id, second.id}


def test_follow_up_dates_are_compared_by_day(db_session: Session) -> None:
    principal = _organization(db_session, "Calendar Foods")
    contact = _contact(db_session, principal, "Lee", "Ward", updated_days_ago=1)
    _interaction(db_session, days_ago=1, contact_id=contact.id, follow_up_required=True, follow_up_date=NOW.date())
    _interaction(db_session, days_ago=1, contact_id=contact.id, follow_up_required=False, follow_up_date=date(2999, 1, 1))

    stats = aggregate_principal(db_session, principal.id, as_of=NOW).interactions

    assert stats.follow_ups_required == 0
    assert stats.next_follow_up_date is None


def test_lost_opportunity_is_active_in_summary_and_product_view(db_session: Session) -> None:
    principal = _organization(db_session, "Lapsed Foods")
    product = _product(db_session, principal, "Smoked Salsa", "Sauces")
    _opportunity(db_session, principal, "Lost deal", stage="Closed - Lost", product_id=product.id)

    summary_stats = aggregate_principal(db_session, principal.id, as_of=NOW).opportunities
    performance = PrincipalActivityInsightsService().product_performance(db_session, principal.id, now=NOW)

    assert summary_stats.active == 1
    assert [item.active_opportunities for item in performance] == [1]
