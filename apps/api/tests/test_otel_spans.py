from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.principal_activity.service as service_module
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMOrganization
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_tracing


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
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_tracing("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_principals(db_session: Session, count: int) -> list[uuid.UUID]:
    organizations = [CRMOrganization(name=f"Traced Foods {index}", is_principal=True) for index in range(count)]
    db_session.add_all(organizations)
    db_session.commit()
    return [organization.id for organization in organizations]


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/principal-activity/principals", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_refresh_spans_nest_per_principal(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    principal_ids = _seed_principals(db_session, 2)

    response = client.post("/api/principal-activity/refresh", headers={"X-Correlation-Id": "otel-refresh-1"})
    assert response.status_code == 200
    run_id = response.json()["run_id"]

    spans = span_exporter.get_finished_spans()
    run_spans = [span for span in spans if span.name == "principal_activity.refresh"]
    assert len(run_spans) == 1
    run_span = run_spans[0]
    assert run_span.attributes.get("run_id") == run_id
    assert run_span.attributes.get("trigger") == "manual"
    assert run_span.attributes.get("correlation_id") == "otel-refresh-1"
    assert run_span.attributes.get("status") == "Succeeded"

    principal_spans = [span for span in spans if span.name == "principal_activity.refresh_principal"]
    assert {span.attributes.get("principal_id") for span in principal_spans} == {str(value) for value in principal_ids}
    assert all(span.parent is not None and span.parent.span_id == run_span.context.span_id for span in principal_spans)
    assert all(span.attributes.get("outcome") == "refreshed" for span in principal_spans)


def test_failed_principal_marks_span_error(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    [principal_id] = _seed_principals(db_session, 1)

    def boom(session: Session, principal_id: uuid.UUID, *, as_of):  # type: ignore[no-untyped-def]
        raise RuntimeError("aggregate exploded")

    monkeypatch.setattr(service_module, "aggregate_principal", boom)
    response = client.post("/api/principal-activity/refresh")
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    failed = [span for span in spans if span.name == "principal_activity.refresh_principal"]
    assert failed
    assert failed[0].attributes.get("principal_id") == str(principal_id)
    assert failed[0].status.status_code == StatusCode.ERROR
    assert any(event.name == "exception" for event in failed[0].events)
