from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crm.models import CRMFieldDefinition, CRMFormSection
from app.crm.seed import DEFAULT_SECTIONS, DEFAULT_SYSTEM_FIELDS, seed_defaults
from app.crm.service import field_registry, section_registry


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


def test_seed_creates_sections_and_system_fields(db_session: Session) -> None:
    created = seed_defaults(db_session)
    assert created == {
        "sections": sum(len(items) for items in DEFAULT_SECTIONS.values()),
        "fields": sum(len(items) for items in DEFAULT_SYSTEM_FIELDS.values()),
    }

    assert [item.section_key for item in section_registry.list_sections(db_session, "investor")] == [
        "investor_information",
        "investment_details",
    ]
    lead_fields = field_registry.list_fields(db_session, "lead")
    assert [item.name for item in lead_fields] == ["source", "status", "priority"]
    assert all(item.is_system_field and item.type == "select" for item in lead_fields)
    status = next(item for item in lead_fields if item.name == "status")
    assert status.options[0].value == "new"
    assert "won" in [option.value for option in status.options]


def test_seed_is_idempotent(db_session: Session) -> None:
    seed_defaults(db_session)
    assert seed_defaults(db_session) == {"sections": 0, "fields": 0}
    assert db_session.scalar(select(func.count()).select_from(CRMFormSection)) == 4
    assert db_session.scalar(select(func.count()).select_from(CRMFieldDefinition)) == 6
