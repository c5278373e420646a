from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.requests import Request

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.seed import seed_defaults
from app.crm.service import ActorUser
from app.main import app
from app.metrics import resolve_http_path_label
from app.middleware.rate_limit import reset_rate_limiter


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={"crm.leads", "crm.settings", "crm.import_export"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    seed_defaults(db_session)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_field_and_csv_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    field = client.post(
        "/api/crm/settings/lead/fields",
        json={"name": "budget", "label": "Budget", "type": "number"},
    )
    assert field.status_code == 201

    lead = client.post("/api/crm/leads", json={"full_name": "Metrics Lead", "email": "metrics@example.com"})
    assert lead.status_code == 201
    assert client.get(f"/api/crm/leads/{lead.json()['id']}").status_code == 200

    export = client.get("/api/crm/export/lead")
    assert export.status_code == 200
    imported = client.post(
        "/api/crm/import/lead",
        files={"file": ("import.csv", export.content, "text/csv")},
    )
    assert imported.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_field_mutations_total" in body
    assert "crm_csv_rows_total" in body
    assert "crm_csv_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/leads/{id}"' in body
    assert 'path="/api/crm/settings/{entity_type}/fields"' in body
    # label order in the exposition text varies across prometheus-client releases
    assert REGISTRY.get_sample_value("crm_field_mutations_total", {"entity_type": "lead", "operation": "create"}) >= 1
    assert (
        REGISTRY.get_sample_value(
            "crm_csv_rows_total", {"entity_type": "lead", "direction": "export", "outcome": "exported"}
        )
        >= 1
    )
    assert (
        REGISTRY.get_sample_value(
            "crm_csv_rows_total", {"entity_type": "lead", "direction": "import", "outcome": "updated"}
        )
        >= 1
    )


def test_metrics_requires_permission(client: TestClient) -> None:
    def override_guest() -> AuthUser:
        return AuthUser(sub="guest-user", roles=["guest"])

    app.dependency_overrides[auth_get_current_user] = override_guest
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    assert client.get("/metrics").status_code == 404


def test_unmatched_paths_collapse_numeric_segments() -> None:
    scope = {"type": "http", "method": "GET", "path": "/api/crm/unknown/123/items/45", "headers": [], "query_string": b""}
    assert resolve_http_path_label(Request(scope)) == "/api/crm/unknown/{id}/items/{id}"
