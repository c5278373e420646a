from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.seed import seed_defaults
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


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
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions={"crm.leads", "crm.investors", "crm.import_export"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    seed_defaults(db_session)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"full_name": "Traced Lead", "email": "traced@example.com"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_csv_spans_carry_entity_type_and_row_count(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    for index in range(2):
        created = client.post(
            "/api/crm/leads",
            json={"full_name": f"Span Lead {index}", "email": f"span{index}@example.com"},
        )
        assert created.status_code == 201

    export = client.get("/api/crm/export/lead", headers={"X-Correlation-Id": "otel-csv-1"})
    assert export.status_code == 200
    imported = client.post(
        "/api/crm/import/lead",
        files={"file": ("import.csv", export.content, "text/csv")},
        headers={"X-Correlation-Id": "otel-csv-1"},
    )
    assert imported.status_code == 200

    spans = span_exporter.get_finished_spans()
    export_spans = [span for span in spans if span.name == "crm.csv.export"]
    import_spans = [span for span in spans if span.name == "crm.csv.import"]
    assert export_spans
    assert import_spans
    assert any(
        span.attributes.get("entity_type") == "lead"
        and span.attributes.get("row_count") == 2
        and span.attributes.get("correlation_id") == "otel-csv-1"
        for span in export_spans
    )
    assert any(
        span.attributes.get("row_count") == 2
        and span.attributes.get("updated_count") == 2
        and span.attributes.get("error_count") == 0
        for span in import_spans
    )


def test_failed_import_marks_span_as_error(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/import/lead",
        files={"file": ("import.csv", b"full_name,email\n", "text/csv")},
    )
    assert response.status_code == 422

    import_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.csv.import"]
    assert import_spans
    assert import_spans[-1].status.status_code == StatusCode.ERROR


def test_promote_span_links_lead_and_investor(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    lead = client.post("/api/crm/leads", json={"full_name": "Promoted Lead", "email": "promoted@example.com"})
    assert lead.status_code == 201

    promoted = client.post(
        f"/api/crm/leads/{lead.json()['id']}/promote",
        json={"description": "Signed term sheet"},
        headers={"X-Correlation-Id": "otel-promote-1"},
    )
    assert promoted.status_code == 201

    promote_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.lead.promote"]
    assert len(promote_spans) == 1
    attributes = promote_spans[0].attributes
    assert attributes.get("lead_id") == lead.json()["id"]
    assert attributes.get("investor_id") == promoted.json()["id"]
    assert attributes.get("correlation_id") == "otel-promote-1"
