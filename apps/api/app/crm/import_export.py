from __future__ import annotations

import csv
import io
import logging
import time
from collections.abc import Sequence
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.core.config import get_settings
from app.crm.errors import ImportFileTooLargeError, ValidationError
from app.crm.records import RECORD_SERVICES
from app.crm.schemas import ImportResult, ImportRowError
from app.crm.serializer import (
    ImportPlanRow,
    build_export_rows,
    build_import_plan,
    build_template_row,
    export_headers,
    find_existing_id,
)
from app.crm.service import SYSTEM_FIELD_NAMES, ActorUser, field_registry, field_value_store, utcnow, validate_entity_type
from app.metrics import observe_csv_duration, observe_csv_rows
from app.otel import crm_span


logger = logging.getLogger("app.crm.import_export")


def check_import_size(size_bytes: int | None, max_bytes: int | None = None) -> None:
    limit = max_bytes if max_bytes is not None else get_settings().import_max_bytes
    if size_bytes is not None and size_bytes > limit:
        raise ImportFileTooLargeError(size_bytes, limit)


def read_csv_rows(content: bytes) -> list[dict[str, str | None]]:
    try:
        csv_text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationError("CSV file must be UTF-8 encoded", details={"file": "invalid encoding"})

    reader = csv.DictReader(io.StringIO(csv_text))
    if not reader.fieldnames:
        raise ValidationError("CSV file is empty", details={"file": "no header row"})
    reader.fieldnames = [name.strip() for name in reader.fieldnames]
    rows = [dict(row) for row in reader]
    if not rows:
        raise ValidationError("CSV file is empty", details={"file": "no data rows"})
    return rows


def write_csv(headers: Sequence[str], rows: Sequence[dict[str, str]]) -> bytes:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=list(headers), extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return output.getvalue().encode("utf-8")


def _public_error(error: dict[str, Any]) -> ImportRowError:
    return ImportRowError(row=error["row"], field=error.get("field"), message=error["message"])


class ImportExportService:
    def export_csv(self, session: Session, entity_type: str, actor_user: ActorUser) -> tuple[bytes, str]:
        validate_entity_type(entity_type)
        started = time.perf_counter()
        service = RECORD_SERVICES[entity_type]
        with crm_span("crm.csv.export", entity_type, actor_user.correlation_id) as span:
            fields = field_registry.list_fields(session, entity_type, only_active=True)
            records = session.scalars(
                select(service.model)
                .order_by(service.model.created_at.desc(), service.model.id.desc())
                .limit(get_settings().export_row_limit)
            ).all()
            rows = build_export_rows(session, entity_type, records, fields=fields)
            payload = write_csv(export_headers(entity_type, fields), rows)
            span.set_attribute("row_count", len(rows))

        observe_csv_rows(entity_type, "export", "exported", len(rows))
        observe_csv_duration(entity_type, "export", time.perf_counter() - started)
        logger.info(
            "crm.csv.exported",
            extra={"entity_type": entity_type, "operation": "export", "row_count": len(rows)},
        )
        return payload, f"{entity_type}s_export_{date.today().isoformat()}.csv"

    def export_template(self, session: Session, entity_type: str, actor_user: ActorUser) -> tuple[bytes, str]:
        validate_entity_type(entity_type)
        fields = field_registry.list_fields(session, entity_type, only_active=True)
        headers = export_headers(entity_type, fields, include_timestamps=False)
        payload = write_csv(headers, [build_template_row(entity_type, fields)])
        return payload, f"{entity_type}s_import_template.csv"

    def import_csv(
        self,
        session: Session,
        entity_type: str,
        content: bytes,
        actor_user: ActorUser,
        *,
        reported_size: int | None = None,
    ) -> ImportResult:
        validate_entity_type(entity_type)
        check_import_size(reported_size)
        check_import_size(len(content))

        started = time.perf_counter()
        with crm_span("crm.csv.import", entity_type, actor_user.correlation_id) as span:
            rows = read_csv_rows(content)
            plan = build_import_plan(session, entity_type, rows)

            errors: list[ImportRowError] = []
            created_count = 0
            updated_count = 0
            rejected_count = 0
            for item in plan:
                errors.extend(_public_error(error) for error in item.errors)
                if item.is_rejected:
                    rejected_count += 1
                    continue
                outcome = self._apply_row(session, entity_type, item)
                if outcome == "created":
                    created_count += 1
                elif outcome == "updated":
                    updated_count += 1
                else:
                    rejected_count += 1
                    errors.append(ImportRowError(row=item.row_number, field="general", message=outcome))

            span.set_attribute("row_count", len(rows))
            span.set_attribute("created_count", created_count)
            span.set_attribute("updated_count", updated_count)
            span.set_attribute("error_count", len(errors))

        observe_csv_rows(entity_type, "import", "created", created_count)
        observe_csv_rows(entity_type, "import", "updated", updated_count)
        observe_csv_rows(entity_type, "import", "rejected", rejected_count)
        observe_csv_duration(entity_type, "import", time.perf_counter() - started)

        result = ImportResult(
            total_rows=len(rows),
            created_count=created_count,
            updated_count=updated_count,
            error_count=len(errors),
            errors=errors,
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=f"crm.{entity_type}.import",
            entity_id=entity_type,
            action="imported",
            before=None,
            after=result.model_dump(mode="json", exclude={"errors"}),
            correlation_id=actor_user.correlation_id,
        )
        logger.info(
            "crm.csv.imported",
            extra={"entity_type": entity_type, "operation": "import", "row_count": len(rows)},
        )
        return result

    def _apply_row(self, session: Session, entity_type: str, item: ImportPlanRow) -> str:
        """Write one plan row in its own transaction; returns ``created``, ``updated`` or an error message."""
        service = RECORD_SERVICES[entity_type]
        existing_id = item.existing_id
        if existing_id is None and item.match_value:
            # an earlier row of the same file may have created the record
            _, existing_id = find_existing_id(session, entity_type, item.static_fields)

        try:
            if existing_id is not None:
                record = session.get(service.model, existing_id)
                if record is None:
                    return "record disappeared during import"
                for column, value in item.static_fields.items():
                    setattr(record, column, value)
                record.updated_at = utcnow()
                merged: dict[Any, Any] = {
                    str(field_id): raw
                    for field_id, raw in field_value_store.get_values(session, entity_type, existing_id).items()
                }
                merged.update({str(field_id): value for field_id, value in item.field_values.items()})
                field_value_store.replace_values(session, entity_type, existing_id, merged)
                outcome = "updated"
            else:
                if not item.static_fields.get("full_name"):
                    return "full_name is required"
                record = service.model(**item.static_fields)
                for name in SYSTEM_FIELD_NAMES:
                    if getattr(record, name) is None:
                        setattr(record, name, service.system_defaults.get(name))
                session.add(record)
                session.flush()
                field_value_store.replace_values(
                    session,
                    entity_type,
                    int(record.id),
                    {str(field_id): value for field_id, value in item.field_values.items()},
                )
                outcome = "created"
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            logger.warning(
                "crm.csv.row_failed",
                extra={"entity_type": entity_type, "operation": "import", "error": str(exc.orig)},
            )
            return "Duplicate email or phone"
        return outcome


import_export_service = ImportExportService()
