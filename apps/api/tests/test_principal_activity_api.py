from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMContact, CRMInteraction, CRMOpportunity, CRMOrganization, CRMProduct, CRMProductPrincipal
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


NOW = datetime.now(timezone.utc).replace(microsecond=0)
BASE = "/api/principal-activity"


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("PRINCIPAL_ACTIVITY_REFRESH_MODE", "inline")
    monkeypatch.setenv("PRINCIPAL_ACTIVITY_REFRESH_SCOPE", "all")
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth_headers(sub: str = "user-1") -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode({"sub": sub, "roles": ["user"]}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, uuid.UUID]:
    distributor = CRMOrganization(name="Metro Distribution", is_distributor=True, lead_score=60)
    db_session.add(distributor)
    db_session.flush()

    acme = CRMOrganization(
        name="Acme Foods",
        is_principal=True,
        lead_score=90,
        distributor_id=distributor.id,
        city="Austin",
        country="US",
        created_at=NOW - timedelta(days=400),
        updated_at=NOW - timedelta(days=60),
    )
    quiet = CRMOrganization(name="Quiet Brands", is_principal=True, updated_at=NOW - timedelta(days=200))
    db_session.add_all([acme, quiet])
    db_session.flush()

    db_session.add(
        CRMContact(
            organization_id=acme.id,
            first_name="Dana",
            last_name="Reyes",
            email="dana@acme.example",
            updated_at=NOW - timedelta(days=10),
        )
    )
    salsa = CRMProduct(name="Salsa", sku="SAL-1", category="Condiments")
    db_session.add(salsa)
    db_session.flush()
    db_session.add(
        CRMProductPrincipal(
            product_id=salsa.id,
            principal_id=acme.id,
            is_primary_principal=True,
            exclusive_rights=True,
            contract_start_date=NOW.date() - timedelta(days=300),
            contract_end_date=NOW.date() + timedelta(days=10),
        )
    )
    proposal = CRMOpportunity(
        name="Holiday reset",
        principal_id=acme.id,
        stage="Proposal",
        created_at=NOW - timedelta(days=40),
        updated_at=NOW - timedelta(days=5),
    )
    launch = CRMOpportunity(
        name="Salsa launch",
        principal_id=acme.id,
        product_id=salsa.id,
        stage="Closed - Won",
        is_won=True,
        created_at=NOW - timedelta(days=20),
        updated_at=NOW - timedelta(days=3),
    )
    db_session.add_all([proposal, launch])
    db_session.flush()
    db_session.add_all(
        [
            CRMInteraction(opportunity_id=proposal.id, type="CALL", interaction_date=NOW - timedelta(days=12)),
            CRMInteraction(
                opportunity_id=launch.id,
                type="MEETING",
                subject="Launch review",
                interaction_date=NOW - timedelta(days=2),
                follow_up_required=True,
                follow_up_date=NOW.date() + timedelta(days=5),
            ),
        ]
    )
    db_session.commit()
    return {"acme": acme.id, "quiet": quiet.id, "distributor": distributor.id, "salsa": salsa.id}


def _refresh(client: TestClient) -> dict:
    response = client.post(f"{BASE}/refresh", headers=_auth_headers())
    assert response.status_code == 200
    return response.json()


def test_refresh_then_list_principals(client: TestClient, seeded: dict[str, uuid.UUID]) -> None:
    report = _refresh(client)
    assert report["status"] == "Succeeded"
    assert report["scope"] == "all"
    assert report["refreshed"] == 2

    response = client.get(f"{BASE}/principals")
    assert response.status_code == 200
    body = response.json()
    assert [item["principal_name"] for item in body["data"]] == ["Acme Foods", "Quiet Brands"]
    acme = body["data"][0]
    assert acme["engagement_score"] == pytest.approx(41.2)
    assert acme["activity_status"] == "ACTIVE"
    assert acme["distributor_name"] == "Metro Distribution"
    assert acme["product_categories"] == ["Condiments"]
    assert acme["follow_ups_required"] == 1
    assert body["pagination"] == {
        "page": 1,
        "limit": 20,
        "total": 2,
        "total_pages": 1,
        "has_next": False,
        "has_previous": False,
    }
    assert body["analytics_summary"]["total_count"] == 2
    assert body["sort"] == {"field": "engagement_score", "direction": "desc"}


def test_list_principals_applies_query_filters(client: TestClient, seeded: dict[str, uuid.UUID]) -> None:
    _refresh(client)

    def names(query: str) -> list[str]:
        response = client.get(f"{BASE}/principals?{query}")
        assert response.status_code == 200
        return [item["principal_name"] for item in response.json()["data"]]

    assert names("activity_status=active") == ["Acme Foods"]
    assert names("activity_status=NO_ACTIVITY,stale") == ["Quiet Brands"]
    assert names("search=acme") == ["Acme Foods"]
    assert names("has_products=false") == ["Quiet Brands"]
    assert names("product_categories=Condiments,Frozen") == ["Acme Foods"]
    assert names(f"distributor_id={seeded['distributor']}") == ["Acme Foods"]
    assert names("min_lead_score=50") == ["Acme Foods"]
    assert names("last_activity_days=30") == ["Acme Foods"]
    assert names("sort_by=principal_name&sort_order=DESC") == ["Quiet Brands", "Acme Foods"]
    assert names("limit=1&page=2") == ["Quiet Brands"]


@pytest.mark.parametrize(
    "query",
    [
        "sort_by=created_by",
        "sort_order=random",
        "min_engagement_score=80&max_engagement_score=10",
        "max_lead_score=101",
        "activity_status=dormant",
        "limit=0",
        "limit=101",
        "page=0",
        "last_activity_days=0",
    ],
)
def test_invalid_query_parameters_return_422(client: TestClient, query: str) -> None:
    response = client.get(f"{BASE}/principals?{query}")
    assert response.status_code == 422
    assert isinstance(response.json()["detail"], list)


def test_get_single_summary_and_missing_summary(client: TestClient, seeded: dict[str, uuid.UUID]) -> None:
    _refresh(client)

    found = client.get(f"{BASE}/principals/{seeded['acme']}")
    assert found.status_code == 200
    assert found.json()["primary_contact_name"] == "Dana Reyes"

    missing = client.get(f"{BASE}/principals/{uuid.uuid4()}")
    assert missing.status_code == 404
    assert missing.json()["detail"] == "principal activity summary not found"


def test_refresh_single_principal(client: TestClient, seeded: dict[str, uuid.UUID]) -> None:
    response = client.post(
        f"{BASE}/refresh",
        json={"principal_id": str(seeded["quiet"])},
        headers=_auth_headers("analyst-9"),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["scope"] == "principals"
    assert body["requested"] == 1
    assert client.get(f"{BASE}/principals/{seeded['quiet']}").status_code == 200
    assert client.get(f"{BASE}/principals/{seeded['acme']}").status_code == 404

    runs = client.get(f"{BASE}/refresh-runs").json()
    assert runs[0]["id"] == body["run_id"]
    assert runs[0]["requested_by"] == "analyst-9"
    assert runs[0]["trigger"] == "manual"


def test_stats_breakdown_and_follow_ups(client: TestClient, seeded: dict[str, uuid.UUID]) -> None:
    _refresh(client)

    stats = client.get(f"{BASE}/stats?top=1").json()
    assert stats["total_principals"] == 2
    assert stats["active_principals"] == 1
    assert stats["principals_with_products"] == 1
    assert [performer["principal_name"] for performer in stats["top_performers"]] == ["Acme Foods"]

    breakdown = client.get(f"{BASE}/engagement-breakdown").json()
    assert breakdown == {"high": 0, "medium": 1, "low": 0, "inactive": 1, "total": 2}

    follow_ups = client.get(f"{BASE}/follow-ups").json()
    assert [item["principal_name"] for item in follow_ups] == ["Acme Foods"]
    assert follow_ups[0]["next_follow_up_date"] == (NOW.date() + timedelta(days=5)).isoformat()


def test_distributor_relationships(client: TestClient, seeded: dict[str, uuid.UUID]) -> None:
    response = client.get(f"{BASE}/distributor-relationships")

    assert response.status_code == 200
    rows = {row["principal_name"]: row for row in response.json()}
    assert set(rows) == {"Acme Foods", "Quiet Brands"}
    assert rows["Acme Foods"]["relationship_type"] == "HAS_DISTRIBUTOR"
    assert rows["Acme Foods"]["distributor_name"] == "Metro Distribution"
    assert rows["Quiet Brands"]["relationship_type"] == "DIRECT"
    assert rows["Quiet Brands"]["distributor_id"] is None


def test_product_performance(client: TestClient, seeded: dict[str, uuid.UUID]) -> None:
    response = client.get(f"{BASE}/principals/{seeded['acme']}/products")

    assert response.status_code == 200
    [salsa] = response.json()
    assert salsa["product_name"] == "Salsa"
    assert salsa["contract_status"] == "EXPIRING_SOON"
    assert salsa["opportunity_count"] == 1
    assert salsa["won_opportunities"] == 1
    assert salsa["active_opportunities"] == 0
    assert salsa["recent_interaction_count"] == 1
    assert salsa["performance_score"] == pytest.approx(63.0)

    missing = client.get(f"{BASE}/principals/{seeded['distributor']}/products")
    assert missing.status_code == 404


def test_timeline_is_newest_first_and_limited(client: TestClient, seeded: dict[str, uuid.UUID]) -> None:
    full = client.get(f"{BASE}/timeline?principal_id={seeded['acme']}").json()
    limited = client.get(f"{BASE}/timeline?principal_id={seeded['acme']}&limit=2").json()

    assert len(full) == 6
    assert {entry["activity_type"] for entry in full} == {
        "CONTACT_UPDATE",
        "INTERACTION",
        "OPPORTUNITY_CREATED",
        "PRODUCT_ASSOCIATION",
    }
    dates = [entry["activity_date"] for entry in full]
    assert dates == sorted(dates, reverse=True)
    assert limited == full[:2]

    everyone = client.get(f"{BASE}/timeline").json()
    assert {entry["principal_name"] for entry in everyone} == {"Acme Foods"}


def test_timeline_includes_interactions_logged_against_contacts(
    client: TestClient,
    seeded: dict[str, uuid.UUID],
    db_session: Session,
) -> None:
    contact = db_session.scalar(select(CRMContact).where(CRMContact.organization_id == seeded["acme"]))
    db_session.add(
        CRMInteraction(
            contact_id=contact.id,
            type="EMAIL",
            subject="Price list sent",
            interaction_date=NOW - timedelta(days=1),
        )
    )
    db_session.commit()

    entries = client.get(f"{BASE}/timeline?principal_id={seeded['acme']}").json()

    interactions = [entry for entry in entries if entry["activity_type"] == "INTERACTION"]
    assert len(interactions) == 3
    assert "Price list sent" in {entry["title"] for entry in interactions}
    assert {entry["principal_name"] for entry in interactions} == {"Acme Foods"}


def test_demoted_principal_drops_out_of_stats_and_single_reads(
    client: TestClient,
    seeded: dict[str, uuid.UUID],
    db_session: Session,
) -> None:
    _refresh(client)
    acme = db_session.get(CRMOrganization, seeded["acme"])
    acme.is_principal = False
    db_session.commit()

    assert client.get(f"{BASE}/principals/{seeded['acme']}").status_code == 404
    stats = client.get(f"{BASE}/stats").json()
    assert stats["total_principals"] == 1
    assert [performer["principal_name"] for performer in stats["top_performers"]] == ["Quiet Brands"]
    assert client.get(f"{BASE}/engagement-breakdown").json() == {"high": 0, "medium": 0, "low": 0, "inactive": 1, "total": 1}
    assert client.get(f"{BASE}/follow-ups").json() == []


def test_notification_triggers_inline_refresh(client: TestClient, seeded: dict[str, uuid.UUID]) -> None:
    response = client.post(
        f"{BASE}/notifications",
        json={"source_entity": "interactions", "operation": "insert"},
        headers={**_auth_headers("crm-writer"), "X-Correlation-Id": "notify-corr-1"},
    )

    assert response.status_code == 202
    body = response.json()
    assert body["event_type"] == "crm.upstream.mutated"
    assert body["operation"] == "INSERT"
    assert events.published_events[-1]["correlation_id"] == "notify-corr-1"

    assert client.get(f"{BASE}/principals/{seeded['acme']}").status_code == 200
    runs = client.get(f"{BASE}/refresh-runs").json()
    assert runs[0]["trigger"] == "notification"
    assert runs[0]["requested_by"] == "crm-writer"
    assert runs[0]["correlation_id"] == "notify-corr-1"


def test_notification_rejects_unknown_entity(client: TestClient) -> None:
    response = client.post(f"{BASE}/notifications", json={"source_entity": "invoices", "operation": "INSERT"})

    assert response.status_code == 422
