from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping, Sequence
from typing import Any, ClassVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.crm.errors import NotFoundError, UniqueConstraintViolationError, ValidationError
from app.crm.models import CRMInvestor, CRMLead
from app.crm.schemas import (
    FieldDefinitionRead,
    InvestorCreate,
    InvestorRead,
    InvestorUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
)
from app.crm.serializer import serialize_record_with_fields
from app.crm.service import (
    SYSTEM_FIELD_NAMES,
    ActorUser,
    field_registry,
    field_value_store,
    parse_field_id,
    utcnow,
)
from app.otel import crm_span


logger = logging.getLogger("app.crm.records")

MIN_PROMOTION_DESCRIPTION_LENGTH = 3


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def split_system_values(
    custom_fields: Mapping[str, Any],
    fields: Sequence[FieldDefinitionRead],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Separate record-column system values (by name or by field id) from custom field values.

    A value keyed by the system field's name wins over one keyed by its id.
    """
    system_ids = {
        item.id: item.name for item in fields if item.is_system_field and item.name in SYSTEM_FIELD_NAMES
    }
    system: dict[str, Any] = {}
    custom: dict[str, Any] = {}
    by_id: dict[str, Any] = {}
    for key, value in custom_fields.items():
        if key in SYSTEM_FIELD_NAMES:
            if not _is_blank(value):
                system[key] = value
            continue
        field_id = parse_field_id(key)
        if field_id is not None and field_id in system_ids:
            if not _is_blank(value):
                by_id[system_ids[field_id]] = value
            continue
        custom[key] = value
    for name, value in by_id.items():
        system.setdefault(name, value)
    return system, custom


def missing_required_labels(custom_fields: Mapping[str, Any], fields: Sequence[FieldDefinitionRead]) -> list[str]:
    missing: list[str] = []
    for definition in fields:
        if not definition.is_active or not definition.is_required or definition.is_system_field:
            continue
        value = custom_fields.get(definition.name)
        if _is_blank(value):
            value = custom_fields.get(str(definition.id))
        if _is_blank(value):
            missing.append(definition.label)
    return missing


def resolve_custom_values(custom_fields: Mapping[str, Any], fields: Sequence[FieldDefinitionRead]) -> dict[str, Any]:
    """Key custom values by field id; values keyed by a field name are translated to that field's id."""
    by_name = {item.name: item.id for item in fields}
    resolved: dict[str, Any] = {}
    for key, value in custom_fields.items():
        field_id = parse_field_id(key)
        if field_id is None and key in by_name:
            field_id = by_name[key]
        if field_id is None:
            continue
        resolved[str(field_id)] = value
    return resolved


class RecordService:
    entity_type: ClassVar[str]
    model: ClassVar[type[CRMLead] | type[CRMInvestor]]
    read_model: ClassVar[type[LeadRead] | type[InvestorRead]]
    column_fields: ClassVar[tuple[str, ...]]
    system_defaults: ClassVar[dict[str, str | None]]

    @property
    def audit_entity(self) -> str:
        return f"crm.{self.entity_type}"

    def list_records(self, session: Session, actor_user: ActorUser, *, limit: int = 100, offset: int = 0) -> list[Any]:
        records = session.scalars(
            select(self.model).order_by(self.model.created_at.desc(), self.model.id.desc()).offset(offset).limit(limit)
        ).all()
        fields = field_registry.list_fields(session, self.entity_type, only_active=True)
        return [self._to_read(session, item, fields) for item in records]

    def get_record(self, session: Session, actor_user: ActorUser, record_id: int) -> Any:
        return self._to_read(session, self._load(session, record_id))

    def create(self, session: Session, actor_user: ActorUser, dto: LeadCreate | InvestorCreate) -> Any:
        fields = field_registry.list_fields(session, self.entity_type, only_active=True)
        payload = dto.model_dump(exclude={"custom_fields"})
        custom_fields = dict(dto.custom_fields or {})
        self._normalize_contact(payload)
        self._ensure_unique(session, payload)

        missing = missing_required_labels(custom_fields, fields)
        if missing:
            raise ValidationError(
                f"Please fill in the following required fields: {', '.join(missing)}",
                details={"missing_fields": missing},
            )

        system_values, custom_values = split_system_values(custom_fields, fields)
        record = self.model(**payload)
        for name in SYSTEM_FIELD_NAMES:
            value = system_values.get(name, self.system_defaults.get(name))
            setattr(record, name, str(value) if value is not None else None)
        session.add(record)
        try:
            session.flush()
            field_value_store.replace_values(
                session,
                self.entity_type,
                int(record.id),
                resolve_custom_values(custom_values, fields),
            )
            session.commit()
        except IntegrityError:
            session.rollback()
            raise UniqueConstraintViolationError(f"{self.entity_type} email or phone already exists")
        session.refresh(record)

        created = self._to_read(session, record, fields)
        self._publish(actor_user, created, action="created", before=None)
        return created

    def update(self, session: Session, actor_user: ActorUser, record_id: int, dto: LeadUpdate | InvestorUpdate) -> Any:
        record = self._load(session, record_id)
        fields = field_registry.list_fields(session, self.entity_type, only_active=True)
        before = self._to_read(session, record, fields).model_dump(mode="json")

        payload = dto.model_dump(exclude_unset=True)
        custom_fields_provided = "custom_fields" in payload and payload["custom_fields"] is not None
        custom_fields = dict(payload.pop("custom_fields", None) or {})
        self._normalize_contact(payload)
        self._ensure_unique(session, payload, exclude_id=int(record.id))

        if custom_fields_provided:
            missing = missing_required_labels(custom_fields, fields)
            if missing:
                raise ValidationError(
                    f"Please fill in the following required fields: {', '.join(missing)}",
                    details={"missing_fields": missing},
                )

        for key, value in payload.items():
            if key in self.column_fields and not (key == "full_name" and value is None):
                setattr(record, key, value)
        record.updated_at = utcnow()

        try:
            if custom_fields_provided:
                system_values, custom_values = split_system_values(custom_fields, fields)
                for name, value in system_values.items():
                    setattr(record, name, str(value))
                field_value_store.replace_values(
                    session,
                    self.entity_type,
                    int(record.id),
                    resolve_custom_values(custom_values, fields),
                )
            session.add(record)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise UniqueConstraintViolationError(f"{self.entity_type} email or phone already exists")
        session.refresh(record)

        updated = self._to_read(session, record, fields)
        self._publish(actor_user, updated, action="updated", before=before)
        return updated

    def delete(self, session: Session, actor_user: ActorUser, record_id: int) -> None:
        record = self._load(session, record_id)
        before = self._to_read(session, record).model_dump(mode="json")
        try:
            removed = field_value_store.delete_values(session, self.entity_type, int(record.id))
            self._before_delete(session, record)
            session.delete(record)
            session.commit()
        except Exception:
            session.rollback()
            raise

        self._publish(actor_user, None, action="deleted", before=before, record_id=record_id)
        logger.info(
            "crm.record.deleted",
            extra={"entity_type": self.entity_type, "record_id": record_id, "row_count": removed},
        )

    def _before_delete(self, session: Session, record: Any) -> None:
        return None

    def _load(self, session: Session, record_id: int) -> Any:
        record = session.get(self.model, record_id)
        if record is None:
            raise NotFoundError(f"{self.entity_type} not found", details={"id": record_id})
        return record

    def _to_read(self, session: Session, record: Any, fields: Sequence[FieldDefinitionRead] | None = None) -> Any:
        return self.read_model.model_validate(
            serialize_record_with_fields(session, self.entity_type, record, fields=fields)
        )

    @staticmethod
    def _normalize_contact(payload: dict[str, Any]) -> None:
        for key in ("email", "phone"):
            if key in payload:
                value = payload[key]
                payload[key] = value.strip() if isinstance(value, str) and value.strip() else None
        if isinstance(payload.get("full_name"), str):
            payload["full_name"] = payload["full_name"].strip()

    def _ensure_unique(self, session: Session, payload: Mapping[str, Any], exclude_id: int | None = None) -> None:
        for key in ("email", "phone"):
            value = payload.get(key)
            if not value:
                continue
            stmt = select(self.model.id).where(getattr(self.model, key) == value)
            if exclude_id is not None:
                stmt = stmt.where(self.model.id != exclude_id)
            if session.scalar(stmt) is not None:
                raise UniqueConstraintViolationError(
                    f"A {self.entity_type} with this {key} already exists",
                    details={"field": key, "value": value},
                )

    def _publish(
        self,
        actor_user: ActorUser,
        read: Any,
        *,
        action: str,
        before: dict[str, Any] | None,
        record_id: int | None = None,
    ) -> None:
        entity_id = str(read.id if read is not None else record_id)
        after = read.model_dump(mode="json") if read is not None else None
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.audit_entity,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": f"{self.audit_entity}.{action}",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user.user_id,
                "version": 1,
                "payload": {"entity_type": self.entity_type, "id": entity_id},
                "correlation_id": actor_user.correlation_id,
            }
        )


class LeadService(RecordService):
    entity_type = "lead"
    model = CRMLead
    read_model = LeadRead
    column_fields = ("full_name", "email", "phone", "notes_text")
    system_defaults = {"source": "website", "status": "new", "priority": None}

    def _before_delete(self, session: Session, record: Any) -> None:
        # investors keep their data when the originating lead goes away
        for investor in session.scalars(select(CRMInvestor).where(CRMInvestor.lead_id == record.id)).all():
            investor.lead_id = None

    def promote(self, session: Session, actor_user: ActorUser, lead_id: int, description: str | None) -> InvestorRead:
        """Create an investor from a lead, carrying over custom values of same-named investor fields."""
        with crm_span("crm.lead.promote", "lead", actor_user.correlation_id, lead_id=lead_id) as span:
            promoted = self._promote(session, actor_user, lead_id, description)
            span.set_attribute("investor_id", promoted.id)
        return promoted

    def _promote(self, session: Session, actor_user: ActorUser, lead_id: int, description: str | None) -> InvestorRead:
        text = (description or "").strip()
        if len(text) < MIN_PROMOTION_DESCRIPTION_LENGTH:
            raise ValidationError(
                "Description is required and must be at least 3 characters",
                details={"description": f"min length {MIN_PROMOTION_DESCRIPTION_LENGTH}"},
            )

        lead = self._load(session, lead_id)
        existing = session.scalar(select(CRMInvestor.id).where(CRMInvestor.lead_id == lead.id))
        if existing is not None:
            raise UniqueConstraintViolationError(
                "This lead has already been converted to an investor",
                details={"investor_id": int(existing)},
            )
        for key in ("email", "phone"):
            value = getattr(lead, key)
            if value and session.scalar(select(CRMInvestor.id).where(getattr(CRMInvestor, key) == value)) is not None:
                raise UniqueConstraintViolationError(
                    f"An investor with this {key} already exists",
                    details={"field": key, "value": value},
                )

        lead_fields = {item.id: item for item in field_registry.list_fields(session, "lead")}
        investor_fields = {
            item.name: item for item in field_registry.list_fields(session, "investor", only_active=True)
        }
        carried: dict[int, str] = {}
        for field_id, raw in field_value_store.get_values(session, "lead", int(lead.id)).items():
            lead_field = lead_fields.get(field_id)
            if lead_field is None or lead_field.name in SYSTEM_FIELD_NAMES:
                continue
            target = investor_fields.get(lead_field.name)
            if target is not None and raw:
                carried[target.id] = raw

        investor = CRMInvestor(
            lead_id=lead.id,
            full_name=lead.full_name,
            email=lead.email,
            phone=lead.phone,
            source=lead.source or "other",
            status="potential",
            priority=lead.priority or "medium",
            notes=text,
        )
        session.add(investor)
        try:
            session.flush()
            field_value_store.replace_values(session, "investor", int(investor.id), carried)
            lead.status = "won"
            lead.updated_at = utcnow()
            session.commit()
        except IntegrityError:
            session.rollback()
            raise UniqueConstraintViolationError("This lead has already been converted to an investor")
        session.refresh(investor)

        promoted = investor_service.get_record(session, actor_user, int(investor.id))
        investor_service._publish(actor_user, promoted, action="created", before=None)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.audit_entity,
            entity_id=str(lead_id),
            action="promoted",
            before=None,
            after={"investor_id": promoted.id},
            correlation_id=actor_user.correlation_id,
        )
        logger.info(
            "crm.lead.promoted",
            extra={"entity_type": "lead", "record_id": lead_id, "row_count": len(carried)},
        )
        return promoted


class InvestorService(RecordService):
    entity_type = "investor"
    model = CRMInvestor
    read_model = InvestorRead
    column_fields = ("full_name", "email", "phone", "company", "position", "budget", "timeline", "notes")
    system_defaults = {"source": "other", "status": "potential", "priority": None}


lead_service = LeadService()
investor_service = InvestorService()
RECORD_SERVICES: dict[str, RecordService] = {"lead": lead_service, "investor": investor_service}

