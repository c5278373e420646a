from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.seed import seed_defaults
from app.crm.service import ActorUser
from app.main import app
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions={"crm.leads", "crm.settings", "crm.import_export"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    seed_defaults(db_session)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_mutating_crm_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [
        client.post("/api/crm/leads", json={"full_name": f"Rate Limit Lead {index}"})
        for index in range(5)
    ]

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert int(first_limited.headers["Retry-After"]) >= 1


def test_settings_buckets_are_separate_per_entity_type(client: TestClient) -> None:
    for index in range(3):
        response = client.post(
            "/api/crm/settings/lead/fields",
            json={"name": f"lead_field_{index}", "label": f"Lead Field {index}", "type": "text"},
        )
        assert response.status_code == 201

    blocked = client.post(
        "/api/crm/settings/lead/fields",
        json={"name": "lead_field_extra", "label": "Lead Field Extra", "type": "text"},
    )
    assert blocked.status_code == 429

    investor = client.post(
        "/api/crm/settings/investor/fields",
        json={"name": "investor_field", "label": "Investor Field", "type": "text"},
    )
    assert investor.status_code == 201

    lead = client.post("/api/crm/leads", json={"full_name": "Separate Bucket"})
    assert lead.status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post("/api/crm/leads", json={"full_name": "Readable Lead"})
    assert create.status_code == 201

    responses = [client.get("/api/crm/leads") for _ in range(10)]
    assert all(response.status_code == 200 for response in responses)
    assert client.get("/api/crm/settings/lead/fields").status_code == 200


def test_imports_use_their_own_allowance(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_CRM_IMPORTS_PER_MINUTE", "1")
    get_settings.cache_clear()

    def upload(index: int):
        payload = f"full_name,email\nImported {index},imported{index}@example.com\n".encode("utf-8")
        return client.post("/api/crm/import/lead", files={"file": ("import.csv", payload, "text/csv")})

    assert upload(1).status_code != 429
    limited = upload(2)
    assert limited.status_code == 429
    assert limited.json()["details"] == {"retry_after_seconds": int(limited.headers["Retry-After"])}

    assert client.post("/api/crm/leads", json={"full_name": "Still Allowed"}).status_code == 201
