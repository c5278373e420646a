from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.crm.coercion import DecodeMode
from app.crm.models import CRMInvestor, CRMLead
from app.crm.schemas import FieldDefinitionCreate, FieldOptionInput
from app.crm.seed import seed_defaults
from app.crm.serializer import (
    build_export_rows,
    build_form_layout,
    build_import_plan,
    build_template_row,
    export_headers,
    serialize_record_with_fields,
)
from app.crm.service import ActorUser, field_registry, field_value_store, section_registry


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
def clear_stubs() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="admin-1", permissions={"admin"})


def _field(session: Session, actor: ActorUser, entity_type: str, name: str, label: str, field_type: str, **extra):
    return field_registry.create_field(
        session,
        entity_type,
        FieldDefinitionCreate(name=name, label=label, type=field_type, **extra),
        actor,
    )


def _lead(session: Session, full_name: str, email: str | None, **extra) -> CRMLead:
    lead = CRMLead(full_name=full_name, email=email, source="website", status="new", **extra)
    session.add(lead)
    session.commit()
    return lead


def test_serialize_decodes_multiselect_values(db_session: Session, actor: ActorUser) -> None:
    stage = _field(db_session, actor, "lead", "stage", "Stage", "text")
    tags = _field(db_session, actor, "lead", "tags", "Tags", "multiselect")
    lead = _lead(db_session, "Ada Lovelace", "ada@example.com")

    field_value_store.replace_values(db_session, "lead", lead.id, {str(stage.id): "contacted", str(tags.id): ["a", "b"]})
    db_session.commit()
    assert field_value_store.get_values(db_session, "lead", lead.id) == {stage.id: "contacted", tags.id: '["a","b"]'}

    payload = serialize_record_with_fields(db_session, "lead", lead)
    assert payload["id"] == lead.id
    assert payload["full_name"] == "Ada Lovelace"
    values = {item.field_id: item.value for item in payload["field_values"]}
    assert values == {stage.id: "contacted", tags.id: ["a", "b"]}


def test_serialize_skips_inactive_fields_and_degrades_malformed_text(db_session: Session, actor: ActorUser) -> None:
    tags = _field(db_session, actor, "lead", "tags", "Tags", "multiselect")
    hidden = _field(db_session, actor, "lead", "hidden", "Hidden", "text", is_active=False)
    lead = _lead(db_session, "Grace Hopper", "grace@example.com")
    field_value_store.replace_values(db_session, "lead", lead.id, {str(tags.id): "[broken", str(hidden.id): "x"})
    db_session.commit()

    payload = serialize_record_with_fields(db_session, "lead", lead)
    assert [(item.field_id, item.value) for item in payload["field_values"]] == [(tags.id, "[broken")]


def test_decode_mode_follows_settings(
    db_session: Session,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    tags = _field(db_session, actor, "lead", "tags", "Tags", "multiselect")
    lead = _lead(db_session, "Alan Turing", "alan@example.com")
    field_value_store.replace_values(db_session, "lead", lead.id, {str(tags.id): '"solo"'})
    db_session.commit()

    legacy = serialize_record_with_fields(db_session, "lead", lead)
    assert legacy["field_values"][0].value == "solo"

    monkeypatch.setenv("FIELD_DECODE_MODE", "strict")
    get_settings.cache_clear()
    strict = serialize_record_with_fields(db_session, "lead", lead)
    assert strict["field_values"][0].value == '"solo"'

    explicit = serialize_record_with_fields(db_session, "lead", lead, mode=DecodeMode.LEGACY)
    assert explicit["field_values"][0].value == "solo"


def test_export_rows_follow_current_field_set(db_session: Session, actor: ActorUser) -> None:
    tags = _field(db_session, actor, "lead", "tags", "Tags", "multiselect")
    budget = _field(db_session, actor, "lead", "budget", "Budget", "number")
    lead = _lead(db_session, "Ada Lovelace", "ada@example.com")
    field_value_store.replace_values(db_session, "lead", lead.id, {str(tags.id): ["Low", "High"], str(budget.id): "12.50"})
    db_session.commit()

    fields = field_registry.list_fields(db_session, "lead", only_active=True)
    headers = export_headers("lead", fields)
    assert headers[:3] == ["full_name", "email", "phone"]
    assert headers[-2:] == ["Tags", "Budget"]

    rows = build_export_rows(db_session, "lead", [lead])
    assert rows[0]["Tags"] == "Low; High"
    assert rows[0]["Budget"] == "12.50"
    assert rows[0]["email"] == "ada@example.com"

    field_registry.toggle_active(db_session, "lead", budget.id, actor)
    narrowed = build_export_rows(db_session, "lead", [lead])
    assert "Budget" not in narrowed[0]
    assert "Budget" not in export_headers("lead", field_registry.list_fields(db_session, "lead", only_active=True))


def test_export_rows_read_system_fields_from_record_columns(db_session: Session) -> None:
    seed_defaults(db_session)
    lead = _lead(db_session, "Ada Lovelace", "ada@example.com", priority="high")

    rows = build_export_rows(db_session, "lead", [lead])
    assert rows[0]["source"] == "website"
    assert rows[0]["priority"] == "high"
    assert "Source" not in rows[0]
    assert "Priority" not in rows[0]
    assert export_headers("lead", field_registry.list_fields(db_session, "lead", only_active=True)).count("source") == 1


def test_import_plan_maps_labels_to_field_ids(db_session: Session, actor: ActorUser) -> None:
    risk = _field(
        db_session,
        actor,
        "investor",
        "risk",
        "Risk Level",
        "select",
        options=[FieldOptionInput(value="low", label="Low"), FieldOptionInput(value="high", label="High")],
    )

    plan = build_import_plan(
        db_session,
        "investor",
        [{"full_name": "Jo Investor", "email": "jo@example.com", "Risk Level": "Low; High", "Unknown": "ignored"}],
    )
    assert len(plan) == 1
    row = plan[0]
    assert row.row_number == 2
    assert row.match_field == "email"
    assert row.existing_id is None
    assert row.field_values == {risk.id: ["Low", "High"]}
    assert row.static_fields == {"full_name": "Jo Investor", "email": "jo@example.com"}
    assert row.errors == []


def test_import_plan_label_match_is_case_sensitive(db_session: Session, actor: ActorUser) -> None:
    _field(db_session, actor, "lead", "budget", "Budget", "number")
    plan = build_import_plan(db_session, "lead", [{"full_name": "A", "email": "a@example.com", "budget": "10"}])
    assert plan[0].field_values == {}


def test_import_plan_matches_existing_records(db_session: Session) -> None:
    lead = _lead(db_session, "Ada Lovelace", "ada@example.com")
    investor = CRMInvestor(full_name="Phone Only", phone="+15550001", source="other", status="potential")
    db_session.add(investor)
    db_session.commit()

    lead_plan = build_import_plan(db_session, "lead", [{"email": "ada@example.com"}, {"phone": "+15550001"}])
    assert lead_plan[0].existing_id == lead.id
    assert lead_plan[0].is_update
    assert lead_plan[1].is_rejected
    assert lead_plan[1].errors[0]["message"] == "email is required"

    investor_plan = build_import_plan(db_session, "investor", [{"phone": "+15550001", "full_name": "Renamed"}])
    assert investor_plan[0].match_field == "phone"
    assert investor_plan[0].existing_id == investor.id


def test_import_plan_investor_falls_back_to_phone(db_session: Session) -> None:
    investor = CRMInvestor(full_name="Phone Only", phone="+15550001", source="other", status="potential")
    db_session.add(investor)
    db_session.commit()

    plan = build_import_plan(
        db_session,
        "investor",
        [
            {"email": "fresh@example.com", "phone": "+15550001", "full_name": "Phone Only"},
            {"email": "other@example.com", "phone": "+15559999", "full_name": "Someone Else"},
        ],
    )
    assert plan[0].match_field == "phone"
    assert plan[0].match_value == "+15550001"
    assert plan[0].existing_id == investor.id
    assert plan[1].match_field == "email"
    assert plan[1].existing_id is None


def test_import_plan_reports_invalid_cells_and_required_fields(db_session: Session, actor: ActorUser) -> None:
    budget = _field(db_session, actor, "lead", "budget", "Budget", "number")
    _field(db_session, actor, "lead", "website", "Website", "url", is_required=True)

    plan = build_import_plan(
        db_session,
        "lead",
        [{"full_name": "A", "email": "a@example.com", "Budget": "lots", "Website": ""}],
    )
    row = plan[0]
    assert budget.id not in row.field_values
    messages = {(error["field"], error["message"]) for error in row.errors}
    assert ("Budget", "Invalid number: lots") in messages
    assert ("Website", "Website is required") in messages
    # cell errors do not reject the row
    assert not row.is_rejected


def test_import_plan_requires_full_name_for_new_records(db_session: Session) -> None:
    plan = build_import_plan(db_session, "lead", [{"email": "new@example.com"}])
    assert plan[0].is_rejected
    assert plan[0].errors[0]["field"] == "full_name"


def test_template_row_uses_first_active_options(db_session: Session, actor: ActorUser) -> None:
    seed_defaults(db_session)
    _field(
        db_session,
        actor,
        "investor",
        "sectors",
        "Sectors",
        "multiselect",
        options=[
            FieldOptionInput(value="fintech", label="Fintech"),
            FieldOptionInput(value="health", label="Health"),
            FieldOptionInput(value="energy", label="Energy"),
        ],
    )
    fields = field_registry.list_fields(db_session, "investor", only_active=True)
    row = build_template_row("investor", fields)

    assert row["Sectors"] == "Fintech; Health"
    assert row["source"] == "website"
    assert "Source" not in row
    assert row["full_name"] == "John Doe"
    assert "created_at" not in export_headers("investor", fields, include_timestamps=False)


def test_form_layout_groups_fields_and_collects_orphans(db_session: Session, actor: ActorUser) -> None:
    seed_defaults(db_session)
    _field(db_session, actor, "lead", "linkedin", "LinkedIn", "url", section_key="contact_information")
    _field(db_session, actor, "lead", "loose", "Loose", "text")
    _field(db_session, actor, "lead", "stale", "Stale", "text")
    _field(db_session, actor, "lead", "inactive", "Inactive", "text", section_key="contact_information", is_active=False)

    sections = section_registry.list_sections(db_session, "lead")
    fields = [
        item.model_copy(update={"section_key": "retired_section"}) if item.name == "stale" else item
        for item in field_registry.list_fields(db_session, "lead")
    ]
    layout = build_form_layout(sections, fields)

    assert [item.section_key for item in layout] == ["contact_information", "lead_details", "other"]
    assert [item.name for item in layout[0].fields] == ["linkedin"]
    assert [item.name for item in layout[1].fields] == ["source", "status", "priority"]
    assert [item.name for item in layout[2].fields] == ["loose", "stale"]


def test_form_layout_hides_invisible_sections(db_session: Session) -> None:
    seed_defaults(db_session)
    sections = [
        item.model_copy(update={"is_visible": item.section_key != "lead_details"})
        for item in section_registry.list_sections(db_session, "lead")
    ]
    layout = build_form_layout(sections, field_registry.list_fields(db_session, "lead"))
    assert [item.section_key for item in layout] == ["contact_information"]
