from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import and_, inspect as sa_inspect, select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.coercion import (
    DecodeMode,
    decode_value,
    format_csv_value,
    has_options,
    is_multiselect,
    parse_csv_value,
    resolve_decode_mode,
    to_plain,
    validate_text_for_type,
)
from app.crm.models import CRMFieldValue, CRMInvestor, CRMLead
from app.crm.schemas import FieldDefinitionRead, FieldValueRead, FormLayoutSection, SectionRead
from app.crm.service import STATIC_EXPORT_COLUMNS, SYSTEM_FIELD_NAMES, field_registry, field_value_store


TIMESTAMP_COLUMNS = ("created_at", "updated_at")
STATIC_IMPORT_COLUMNS: dict[str, tuple[str, ...]] = {
    entity_type: tuple(column for column in columns if column not in TIMESTAMP_COLUMNS)
    for entity_type, columns in STATIC_EXPORT_COLUMNS.items()
}
RECORD_MODELS: dict[str, type[CRMLead] | type[CRMInvestor]] = {"lead": CRMLead, "investor": CRMInvestor}
MATCH_COLUMNS: dict[str, tuple[str, ...]] = {"lead": ("email",), "investor": ("email", "phone")}
CATCH_ALL_SECTION_KEY = "other"
CATCH_ALL_SECTION_NAME = "Other"


def current_decode_mode() -> DecodeMode:
    return resolve_decode_mode(get_settings().field_decode_mode)


def record_columns(record: Any) -> dict[str, Any]:
    columns = {attr.key: getattr(record, attr.key) for attr in sa_inspect(record).mapper.column_attrs}
    for key in ("id", "lead_id"):
        if columns.get(key) is not None:
            columns[key] = int(columns[key])
    return columns


def decode_field_values(
    fields: Sequence[FieldDefinitionRead],
    stored: Mapping[int, str],
    mode: DecodeMode | None = None,
) -> list[FieldValueRead]:
    resolved_mode = mode or current_decode_mode()
    decoded: list[FieldValueRead] = []
    for definition in fields:
        raw = stored.get(definition.id)
        if raw is None:
            continue
        decoded.append(
            FieldValueRead(
                field_id=definition.id,
                name=definition.name,
                label=definition.label,
                type=definition.type,
                value=to_plain(decode_value(definition.type, raw, resolved_mode)),
            )
        )
    return decoded


def serialize_record_with_fields(
    session: Session,
    entity_type: str,
    record: Any,
    *,
    fields: Sequence[FieldDefinitionRead] | None = None,
    mode: DecodeMode | None = None,
) -> dict[str, Any]:
    active_fields = fields if fields is not None else field_registry.list_fields(session, entity_type, only_active=True)
    payload = record_columns(record)
    stored = field_value_store.get_values(session, entity_type, payload["id"])
    payload["field_values"] = decode_field_values(active_fields, stored, mode)
    return payload


def load_values_for_records(session: Session, entity_type: str, record_ids: Sequence[int]) -> dict[int, dict[int, str]]:
    values: dict[int, dict[int, str]] = {record_id: {} for record_id in record_ids}
    if not record_ids:
        return values
    rows = session.execute(
        select(CRMFieldValue.record_id, CRMFieldValue.field_id, CRMFieldValue.value).where(
            and_(CRMFieldValue.entity_type == entity_type, CRMFieldValue.record_id.in_(list(record_ids)))
        )
    ).all()
    for record_id, field_id, value in rows:
        values.setdefault(int(record_id), {})[int(field_id)] = value
    return values


def export_headers(
    entity_type: str,
    fields: Sequence[FieldDefinitionRead],
    *,
    include_timestamps: bool = True,
) -> list[str]:
    static = STATIC_EXPORT_COLUMNS[entity_type] if include_timestamps else STATIC_IMPORT_COLUMNS[entity_type]
    return list(static) + [definition.label for definition in fields if not _is_record_column(definition)]


def _is_record_column(definition: FieldDefinitionRead) -> bool:
    return definition.is_system_field and definition.name in SYSTEM_FIELD_NAMES


def _format_static(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def build_export_rows(
    session: Session,
    entity_type: str,
    records: Sequence[Any],
    *,
    fields: Sequence[FieldDefinitionRead] | None = None,
) -> list[dict[str, str]]:
    """Flatten records to CSV rows: static columns first, then one column per active custom field keyed by label.

    The column set follows the field registry at call time.
    """
    active_fields = fields if fields is not None else field_registry.list_fields(session, entity_type, only_active=True)
    static_columns = STATIC_EXPORT_COLUMNS[entity_type]
    values = load_values_for_records(session, entity_type, [int(record.id) for record in records])

    rows: list[dict[str, str]] = []
    for record in records:
        row = {column: _format_static(getattr(record, column)) for column in static_columns}
        stored = values.get(int(record.id), {})
        for definition in active_fields:
            if _is_record_column(definition):
                continue
            row[definition.label] = format_csv_value(definition.type, stored.get(definition.id))
        rows.append(row)
    return rows


def build_template_row(entity_type: str, fields: Sequence[FieldDefinitionRead]) -> dict[str, str]:
    example: dict[str, str] = {
        "full_name": "John Doe",
        "email": "john@example.com",
        "phone": "+1234567890",
        "company": "Example Capital",
        "position": "Partner",
        "budget": "100000",
        "timeline": "Q3",
    }
    row = {column: example.get(column, "") for column in STATIC_IMPORT_COLUMNS[entity_type]}
    for definition in fields:
        if _is_record_column(definition):
            continue
        active_options = [option for option in definition.options if option.is_active]
        if has_options(definition.type) and active_options:
            if is_multiselect(definition.type):
                row[definition.label] = "; ".join(option.label for option in active_options[:2])
            else:
                row[definition.label] = active_options[0].label
        else:
            row[definition.label] = ""
    for name in SYSTEM_FIELD_NAMES:
        system_field = next((item for item in fields if item.is_system_field and item.name == name), None)
        if system_field is not None and system_field.options and not row.get(name):
            row[name] = system_field.options[0].value
    return row


@dataclass
class ImportPlanRow:
    row_number: int
    match_field: str | None
    match_value: str | None
    existing_id: int | None
    static_fields: dict[str, str] = field(default_factory=dict)
    field_values: dict[int, str | list[str]] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_update(self) -> bool:
        return self.existing_id is not None

    @property
    def is_rejected(self) -> bool:
        return self.match_value is None or any(item.get("fatal") for item in self.errors)


def _row_error(row_number: int, field_name: str | None, message: str, *, fatal: bool = False) -> dict[str, Any]:
    error: dict[str, Any] = {"row": row_number, "field": field_name, "message": message}
    if fatal:
        error["fatal"] = True
    return error


def _match_key(entity_type: str, static_fields: Mapping[str, str]) -> tuple[str | None, str | None]:
    for column in MATCH_COLUMNS[entity_type]:
        if static_fields.get(column):
            return column, static_fields[column]
    return None, None


def find_existing_id(
    session: Session, entity_type: str, static_fields: Mapping[str, str]
) -> tuple[str | None, int | None]:
    """Try each match column in order; returns the column that hit and the record id."""
    model = RECORD_MODELS[entity_type]
    for column in MATCH_COLUMNS[entity_type]:
        value = static_fields.get(column)
        if not value:
            continue
        found = session.scalar(select(model.id).where(getattr(model, column) == value))
        if found is not None:
            return column, int(found)
    return None, None


def build_import_plan(
    session: Session,
    entity_type: str,
    rows: Sequence[Mapping[str, str | None]],
    *,
    fields: Sequence[FieldDefinitionRead] | None = None,
) -> list[ImportPlanRow]:
    """Resolve each CSV row to a create/update against the current records and field registry.

    Custom columns are matched to active fields by exact label; unknown
    headers are ignored. Cell errors skip the cell, a missing match key
    rejects the row.
    """
    active_fields = fields if fields is not None else field_registry.list_fields(session, entity_type, only_active=True)
    static_columns = STATIC_IMPORT_COLUMNS[entity_type]
    by_label: dict[str, FieldDefinitionRead] = {}
    for definition in active_fields:
        by_label.setdefault(definition.label, definition)

    plan: list[ImportPlanRow] = []
    for index, row in enumerate(rows):
        row_number = index + 2
        static_fields: dict[str, str] = {}
        for column in static_columns:
            cell = row.get(column)
            if cell is not None and cell.strip():
                static_fields[column] = cell.strip()

        errors: list[dict[str, Any]] = []
        field_values: dict[int, str | list[str]] = {}
        for header, cell in row.items():
            if header is None or header in static_columns:
                continue
            definition = by_label.get(header)
            if definition is None:
                continue
            if _is_record_column(definition):
                if cell and cell.strip() and definition.name not in static_fields:
                    static_fields[definition.name] = cell.strip()
                continue
            message = validate_text_for_type(definition.type, definition.label, cell, required=False)
            if message is not None:
                errors.append(_row_error(row_number, definition.label, message))
                continue
            parsed = parse_csv_value(definition.type, cell)
            if parsed is not None and parsed != []:
                field_values[definition.id] = parsed

        match_field, match_value = _match_key(entity_type, static_fields)
        existing_id = None
        if match_field is None or match_value is None:
            key_label = "email" if entity_type == "lead" else "email or phone"
            errors.append(_row_error(row_number, "email", f"{key_label} is required", fatal=True))
        else:
            hit_field, existing_id = find_existing_id(session, entity_type, static_fields)
            if hit_field is not None:
                match_field, match_value = hit_field, static_fields[hit_field]
            if existing_id is None and not static_fields.get("full_name"):
                errors.append(_row_error(row_number, "full_name", "full_name is required", fatal=True))

        if existing_id is None:
            for definition in active_fields:
                if definition.is_system_field or not definition.is_required:
                    continue
                if definition.id not in field_values:
                    errors.append(_row_error(row_number, definition.label, f"{definition.label} is required"))

        plan.append(
            ImportPlanRow(
                row_number=row_number,
                match_field=match_field,
                match_value=match_value,
                existing_id=existing_id,
                static_fields=static_fields,
                field_values=field_values,
                errors=errors,
            )
        )
    return plan


def build_form_layout(
    sections: Sequence[SectionRead],
    fields: Sequence[FieldDefinitionRead],
) -> list[FormLayoutSection]:
    """Visible sections in order, each with its active fields; unassigned or orphaned fields land in ``other``."""
    ordered_sections = sorted(sections, key=lambda item: (item.sort_order, item.id))
    known_keys = {item.section_key for item in ordered_sections}
    active_fields = sorted((item for item in fields if item.is_active), key=lambda item: (item.sort_order, item.id))

    layout: list[FormLayoutSection] = []
    for section in ordered_sections:
        if not section.is_visible:
            continue
        layout.append(
            FormLayoutSection(
                section_key=section.section_key,
                name=section.name,
                icon=section.icon,
                gradient=section.gradient,
                is_default_open=section.is_default_open,
                fields=[item for item in active_fields if item.section_key == section.section_key],
            )
        )

    orphaned = [item for item in active_fields if item.section_key is None or item.section_key not in known_keys]
    if orphaned:
        layout.append(
            FormLayoutSection(
                section_key=CATCH_ALL_SECTION_KEY,
                name=CATCH_ALL_SECTION_NAME,
                fields=orphaned,
            )
        )
    return layout
