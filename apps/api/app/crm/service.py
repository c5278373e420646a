from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, and_, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.crm.coercion import FIELD_TYPES, encode_value, has_options
from app.crm.errors import NotFoundError, SystemFieldProtectedError, UniqueConstraintViolationError, ValidationError
from app.crm.models import CRMFieldDefinition, CRMFieldOption, CRMFieldValue, CRMFormSection
from app.crm.schemas import (
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldOptionInput,
    FieldOptionRead,
    FieldSectionAssignment,
    SectionRead,
    SectionUpdate,
)
from app.metrics import observe_field_mutation


logger = logging.getLogger("app.crm.fields")

ENTITY_TYPES = ("lead", "investor")
SYSTEM_FIELD_NAMES = ("source", "status", "priority")
STATIC_EXPORT_COLUMNS: dict[str, tuple[str, ...]] = {
    "lead": (
        "full_name",
        "email",
        "phone",
        "source",
        "status",
        "priority",
        "notes_text",
        "created_at",
        "updated_at",
    ),
    "investor": (
        "full_name",
        "email",
        "phone",
        "company",
        "position",
        "source",
        "status",
        "priority",
        "budget",
        "timeline",
        "notes",
        "created_at",
        "updated_at",
    ),
}
_FIELD_ID_RE = re.compile(r"^\d+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def validate_entity_type(entity_type: str) -> str:
    if entity_type not in ENTITY_TYPES:
        raise ValidationError("invalid entity_type", details={"entity_type": entity_type, "allowed": list(ENTITY_TYPES)})
    return entity_type


def parse_field_id(key: Any) -> int | None:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key if key > 0 else None
    if isinstance(key, str) and _FIELD_ID_RE.match(key.strip()):
        return int(key.strip())
    return None


def _ordered_options(definition: CRMFieldDefinition, only_active: bool) -> list[CRMFieldOption]:
    options = [option for option in definition.options if option.is_active or not only_active]
    return sorted(options, key=lambda option: (option.sort_order, option.id))


def to_field_read(definition: CRMFieldDefinition, *, only_active: bool = False) -> FieldDefinitionRead:
    return FieldDefinitionRead(
        id=int(definition.id),
        entity_type=definition.entity_type,
        name=definition.name,
        label=definition.label,
        type=definition.type,
        is_required=definition.is_required,
        is_active=definition.is_active,
        is_system_field=definition.is_system_field,
        sort_order=definition.sort_order,
        section_key=definition.section_key,
        placeholder=definition.placeholder,
        help_text=definition.help_text,
        default_value=definition.default_value,
        validation_rules=definition.validation_rules,
        options=[
            FieldOptionRead(
                id=int(option.id),
                value=option.value,
                label=option.label,
                sort_order=option.sort_order,
                is_active=option.is_active,
            )
            for option in _ordered_options(definition, only_active)
        ],
        created_at=definition.created_at,
        updated_at=definition.updated_at,
    )


def to_section_read(section: CRMFormSection) -> SectionRead:
    return SectionRead(
        id=int(section.id),
        entity_type=section.entity_type,
        section_key=section.section_key,
        name=section.name,
        icon=section.icon,
        gradient=section.gradient,
        is_visible=section.is_visible,
        is_default_open=section.is_default_open,
        sort_order=section.sort_order,
    )


def _record_change(
    actor_user: ActorUser,
    *,
    entity_type: str,
    audit_entity: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
) -> None:
    audit.record(
        actor_user_id=actor_user.user_id,
        entity_type=audit_entity,
        entity_id=entity_id,
        action=action,
        before=before,
        after=after,
        correlation_id=actor_user.correlation_id,
    )
    events.publish(
        {
            "event_id": str(uuid.uuid4()),
            "event_type": f"{audit_entity}.{action}",
            "occurred_at": utcnow().isoformat(),
            "actor_user_id": actor_user.user_id,
            "version": 1,
            "payload": {"entity_type": entity_type, "id": entity_id},
            "correlation_id": actor_user.correlation_id,
        }
    )


class FieldRegistry:
    audit_entity = "crm.field_definition"

    def list_fields(self, session: Session, entity_type: str, *, only_active: bool = False) -> list[FieldDefinitionRead]:
        validate_entity_type(entity_type)
        stmt: Select[tuple[CRMFieldDefinition]] = (
            select(CRMFieldDefinition)
            .options(selectinload(CRMFieldDefinition.options))
            .where(CRMFieldDefinition.entity_type == entity_type)
        )
        if only_active:
            stmt = stmt.where(CRMFieldDefinition.is_active.is_(True))
        definitions = session.scalars(
            stmt.order_by(CRMFieldDefinition.sort_order.asc(), CRMFieldDefinition.id.asc())
        ).all()
        return [to_field_read(item, only_active=only_active) for item in definitions]

    def get_field(self, session: Session, entity_type: str, field_id: int) -> FieldDefinitionRead:
        return to_field_read(self._load(session, entity_type, field_id))

    def create_field(
        self,
        session: Session,
        entity_type: str,
        dto: FieldDefinitionCreate,
        actor_user: ActorUser,
    ) -> FieldDefinitionRead:
        validate_entity_type(entity_type)
        name = dto.name.strip()
        label = dto.label.strip()
        errors: dict[str, str] = {}
        if not name:
            errors["name"] = "name is required"
        if not label:
            errors["label"] = "label is required"
        if dto.type not in FIELD_TYPES:
            errors["type"] = f"unsupported field type: {dto.type}"
        if errors:
            raise ValidationError("invalid field definition", details=errors)

        if self._find_by_name(session, entity_type, name) is not None:
            raise UniqueConstraintViolationError(
                f"field '{name}' already exists for {entity_type}",
                details={"entity_type": entity_type, "name": name},
            )
        self._ensure_label_available(session, entity_type, label)
        self._ensure_section_exists(session, entity_type, dto.section_key)

        sort_order = dto.sort_order
        if sort_order is None:
            current_max = session.scalar(
                select(func.max(CRMFieldDefinition.sort_order)).where(CRMFieldDefinition.entity_type == entity_type)
            )
            sort_order = (current_max or 0) + 1

        definition = CRMFieldDefinition(
            entity_type=entity_type,
            name=name,
            label=label,
            type=dto.type,
            is_required=dto.is_required,
            is_active=dto.is_active,
            is_system_field=False,
            sort_order=sort_order,
            section_key=dto.section_key,
            placeholder=dto.placeholder or None,
            help_text=dto.help_text or None,
            default_value=dto.default_value or None,
            validation_rules=dto.validation_rules or None,
        )
        if has_options(dto.type) and dto.options:
            definition.options = self._build_options(dto.options)
        session.add(definition)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise UniqueConstraintViolationError(
                f"field '{name}' already exists for {entity_type}",
                details={"entity_type": entity_type, "name": name},
            )
        session.refresh(definition)

        created = to_field_read(definition)
        observe_field_mutation(entity_type, "create")
        _record_change(
            actor_user,
            entity_type=entity_type,
            audit_entity=self.audit_entity,
            entity_id=str(created.id),
            action="created",
            before=None,
            after=created.model_dump(mode="json"),
        )
        logger.info(
            "crm.field.created",
            extra={"entity_type": entity_type, "field_id": created.id, "operation": "create"},
        )
        return created

    def update_field(
        self,
        session: Session,
        entity_type: str,
        field_id: int,
        dto: FieldDefinitionUpdate,
        actor_user: ActorUser,
    ) -> FieldDefinitionRead:
        definition = self._load(session, entity_type, field_id)
        before = to_field_read(definition).model_dump(mode="json")
        payload = dto.model_dump(exclude_unset=True)
        options = dto.options if "options" in payload else None
        payload.pop("options", None)

        if "name" in payload and payload["name"] is not None:
            new_name = payload["name"].strip()
            if new_name != definition.name:
                self._ensure_renamable(session, definition, new_name)
            payload["name"] = new_name
        if "label" in payload and payload["label"] is not None:
            payload["label"] = payload["label"].strip()
            if not payload["label"]:
                raise ValidationError("invalid field definition", details={"label": "label is required"})
            if payload["label"] != definition.label:
                self._ensure_label_available(session, entity_type, payload["label"], exclude_id=int(definition.id))
        if payload.get("section_key") is not None and payload["section_key"] != definition.section_key:
            self._ensure_section_exists(session, entity_type, payload["section_key"])

        for key in [
            "name",
            "label",
            "type",
            "is_required",
            "is_active",
            "sort_order",
            "section_key",
            "placeholder",
            "help_text",
            "default_value",
            "validation_rules",
        ]:
            if key not in payload:
                continue
            if key in {"name", "label", "type", "is_required", "is_active", "sort_order"} and payload[key] is None:
                continue
            setattr(definition, key, payload[key])

        if not has_options(definition.type):
            self._delete_options(session, definition)
        elif options is not None:
            # full replace, never a merge
            self._delete_options(session, definition)
            for option in self._build_options(options):
                option.field_id = definition.id
                session.add(option)

        definition.updated_at = utcnow()
        session.add(definition)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise UniqueConstraintViolationError(
                f"field '{definition.name}' already exists for {entity_type}",
                details={"entity_type": entity_type, "name": definition.name},
            )
        session.refresh(definition)

        updated = to_field_read(definition)
        observe_field_mutation(entity_type, "update")
        _record_change(
            actor_user,
            entity_type=entity_type,
            audit_entity=self.audit_entity,
            entity_id=str(updated.id),
            action="updated",
            before=before,
            after=updated.model_dump(mode="json"),
        )
        logger.info(
            "crm.field.updated",
            extra={"entity_type": entity_type, "field_id": updated.id, "operation": "update"},
        )
        return updated

    def delete_field(self, session: Session, entity_type: str, field_id: int, actor_user: ActorUser) -> None:
        definition = self._load(session, entity_type, field_id)
        if definition.is_system_field:
            raise SystemFieldProtectedError(int(definition.id), definition.name)

        before = to_field_read(definition).model_dump(mode="json")
        definition_id = definition.id
        try:
            removed_values = session.execute(
                delete(CRMFieldValue).where(CRMFieldValue.field_id == definition_id)
            ).rowcount
            session.execute(delete(CRMFieldOption).where(CRMFieldOption.field_id == definition_id))
            session.execute(delete(CRMFieldDefinition).where(CRMFieldDefinition.id == definition_id))
            session.commit()
        except Exception:
            session.rollback()
            raise

        observe_field_mutation(entity_type, "delete")
        _record_change(
            actor_user,
            entity_type=entity_type,
            audit_entity=self.audit_entity,
            entity_id=str(definition_id),
            action="deleted",
            before=before,
            after=None,
        )
        logger.info(
            "crm.field.deleted",
            extra={
                "entity_type": entity_type,
                "field_id": int(definition_id),
                "operation": "delete",
                "row_count": removed_values,
            },
        )

    def toggle_active(self, session: Session, entity_type: str, field_id: int, actor_user: ActorUser) -> FieldDefinitionRead:
        definition = self._load(session, entity_type, field_id)
        definition.is_active = not definition.is_active
        definition.updated_at = utcnow()
        session.add(definition)
        session.commit()
        session.refresh(definition)

        toggled = to_field_read(definition)
        observe_field_mutation(entity_type, "toggle")
        _record_change(
            actor_user,
            entity_type=entity_type,
            audit_entity=self.audit_entity,
            entity_id=str(toggled.id),
            action="toggled",
            before=None,
            after={"is_active": toggled.is_active},
        )
        return toggled

    def reorder(self, session: Session, entity_type: str, field_ids: list[int], actor_user: ActorUser) -> None:
        validate_entity_type(entity_type)
        if not field_ids:
            return
        definitions = {
            int(item.id): item
            for item in session.scalars(
                select(CRMFieldDefinition).where(
                    and_(
                        CRMFieldDefinition.entity_type == entity_type,
                        CRMFieldDefinition.id.in_(sorted(set(field_ids))),
                    )
                )
            ).all()
        }
        missing = sorted({item for item in field_ids if item not in definitions})
        if missing:
            raise NotFoundError("field not found", details={"entity_type": entity_type, "field_ids": missing})

        now = utcnow()
        for position, field_id in enumerate(field_ids):
            definitions[field_id].sort_order = position
            definitions[field_id].updated_at = now
        session.commit()

        observe_field_mutation(entity_type, "reorder")
        _record_change(
            actor_user,
            entity_type=entity_type,
            audit_entity=self.audit_entity,
            entity_id=entity_type,
            action="reordered",
            before=None,
            after={"field_ids": list(field_ids)},
        )
        logger.info(
            "crm.field.reordered",
            extra={"entity_type": entity_type, "operation": "reorder", "row_count": len(field_ids)},
        )

    def _load(self, session: Session, entity_type: str, field_id: int) -> CRMFieldDefinition:
        validate_entity_type(entity_type)
        definition = session.scalar(
            select(CRMFieldDefinition)
            .options(selectinload(CRMFieldDefinition.options))
            .where(and_(CRMFieldDefinition.id == field_id, CRMFieldDefinition.entity_type == entity_type))
        )
        if definition is None:
            raise NotFoundError("field not found", details={"entity_type": entity_type, "field_id": field_id})
        return definition

    def _find_by_name(self, session: Session, entity_type: str, name: str) -> CRMFieldDefinition | None:
        return session.scalar(
            select(CRMFieldDefinition).where(
                and_(CRMFieldDefinition.entity_type == entity_type, CRMFieldDefinition.name == name)
            )
        )

    def _ensure_renamable(self, session: Session, definition: CRMFieldDefinition, new_name: str) -> None:
        if not new_name:
            raise ValidationError("invalid field definition", details={"name": "name is required"})
        if definition.is_system_field:
            raise ValidationError("system field name cannot change", details={"name": definition.name})
        referenced = session.scalar(
            select(func.count()).select_from(CRMFieldValue).where(CRMFieldValue.field_id == definition.id)
        )
        if referenced:
            raise ValidationError(
                "field name cannot change once values are stored",
                details={"name": definition.name, "stored_values": int(referenced)},
            )
        if self._find_by_name(session, definition.entity_type, new_name) is not None:
            raise UniqueConstraintViolationError(
                f"field '{new_name}' already exists for {definition.entity_type}",
                details={"entity_type": definition.entity_type, "name": new_name},
            )

    def _ensure_label_available(
        self, session: Session, entity_type: str, label: str, *, exclude_id: int | None = None
    ) -> None:
        """CSV columns are keyed by label, so a label must name exactly one column."""
        if label in STATIC_EXPORT_COLUMNS[entity_type]:
            raise ValidationError(
                "label collides with a built-in column",
                details={"entity_type": entity_type, "label": label},
            )
        stmt = select(CRMFieldDefinition.id).where(
            and_(CRMFieldDefinition.entity_type == entity_type, CRMFieldDefinition.label == label)
        )
        if exclude_id is not None:
            stmt = stmt.where(CRMFieldDefinition.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise UniqueConstraintViolationError(
                f"label '{label}' already exists for {entity_type}",
                details={"entity_type": entity_type, "label": label},
            )

    def _ensure_section_exists(self, session: Session, entity_type: str, section_key: str | None) -> None:
        if section_key is None or section_key in section_registry.section_keys(session, entity_type):
            return
        raise ValidationError(
            "unknown section_key",
            details={"entity_type": entity_type, "section_keys": [section_key]},
        )

    def _delete_options(self, session: Session, definition: CRMFieldDefinition) -> None:
        session.execute(delete(CRMFieldOption).where(CRMFieldOption.field_id == definition.id))
        session.expire(definition, ["options"])

    @staticmethod
    def _build_options(options: Iterable[FieldOptionInput]) -> list[CRMFieldOption]:
        return [
            CRMFieldOption(
                value=option.value,
                label=option.label,
                sort_order=option.sort_order if option.sort_order is not None else index,
                is_active=option.is_active,
            )
            for index, option in enumerate(options)
        ]


class SectionRegistry:
    audit_entity = "crm.form_section"

    def list_sections(self, session: Session, entity_type: str) -> list[SectionRead]:
        validate_entity_type(entity_type)
        sections = session.scalars(
            select(CRMFormSection)
            .where(CRMFormSection.entity_type == entity_type)
            .order_by(CRMFormSection.sort_order.asc(), CRMFormSection.id.asc())
        ).all()
        return [to_section_read(item) for item in sections]

    def section_keys(self, session: Session, entity_type: str) -> set[str]:
        return set(
            session.scalars(select(CRMFormSection.section_key).where(CRMFormSection.entity_type == entity_type)).all()
        )

    def bulk_update(
        self,
        session: Session,
        entity_type: str,
        updates: list[SectionUpdate],
        actor_user: ActorUser,
    ) -> list[SectionRead]:
        validate_entity_type(entity_type)
        ids = {item.id for item in updates}
        sections: dict[int, CRMFormSection] = {}
        if ids:
            rows = session.scalars(
                select(CRMFormSection).where(
                    and_(CRMFormSection.entity_type == entity_type, CRMFormSection.id.in_(sorted(ids)))
                )
            ).all()
            sections = {int(item.id): item for item in rows}
        missing = sorted(ids - set(sections))
        if missing:
            raise NotFoundError("section not found", details={"entity_type": entity_type, "section_ids": missing})

        now = utcnow()
        for item in updates:
            section = sections[item.id]
            for key in ["is_visible", "is_default_open", "sort_order"]:
                value = getattr(item, key)
                if value is not None:
                    setattr(section, key, value)
            section.updated_at = now
        session.commit()

        observe_field_mutation(entity_type, "sections_update")
        _record_change(
            actor_user,
            entity_type=entity_type,
            audit_entity=self.audit_entity,
            entity_id=entity_type,
            action="updated",
            before=None,
            after={"sections": [item.model_dump(mode="json", exclude_none=True) for item in updates]},
        )
        return self.list_sections(session, entity_type)

    def assign_fields_to_sections(
        self,
        session: Session,
        entity_type: str,
        assignments: list[FieldSectionAssignment],
        actor_user: ActorUser,
    ) -> None:
        validate_entity_type(entity_type)
        known_keys = self.section_keys(session, entity_type)
        unknown_keys = sorted(
            {item.section_key for item in assignments if item.section_key is not None and item.section_key not in known_keys}
        )
        if unknown_keys:
            raise ValidationError(
                "unknown section_key",
                details={"entity_type": entity_type, "section_keys": unknown_keys},
            )

        field_ids = {item.field_id for item in assignments}
        definitions: dict[int, CRMFieldDefinition] = {}
        if field_ids:
            rows = session.scalars(
                select(CRMFieldDefinition).where(
                    and_(CRMFieldDefinition.entity_type == entity_type, CRMFieldDefinition.id.in_(sorted(field_ids)))
                )
            ).all()
            definitions = {int(item.id): item for item in rows}
        missing = sorted(field_ids - set(definitions))
        if missing:
            raise NotFoundError("field not found", details={"entity_type": entity_type, "field_ids": missing})

        now = utcnow()
        for item in assignments:
            definitions[item.field_id].section_key = item.section_key
            definitions[item.field_id].updated_at = now
        session.commit()

        observe_field_mutation(entity_type, "assign_sections")
        _record_change(
            actor_user,
            entity_type=entity_type,
            audit_entity=self.audit_entity,
            entity_id=entity_type,
            action="fields_assigned",
            before=None,
            after={"assignments": [item.model_dump(mode="json") for item in assignments]},
        )


class FieldValueStore:
    """Per-record custom field values. Writes flush only; the caller owns the transaction."""

    def get_values(self, session: Session, entity_type: str, record_id: int) -> dict[int, str]:
        rows = session.execute(
            select(CRMFieldValue.field_id, CRMFieldValue.value).where(
                and_(CRMFieldValue.entity_type == entity_type, CRMFieldValue.record_id == record_id)
            )
        ).all()
        return {int(field_id): value for field_id, value in rows}

    def replace_values(
        self,
        session: Session,
        entity_type: str,
        record_id: int,
        values: Mapping[Any, Any],
    ) -> dict[int, str]:
        """Delete every stored value of the record, then insert the non-empty entries of ``values``.

        Keys that are not field ids of ``entity_type`` (system names such as
        ``status``, ids of the other entity type, junk) are dropped silently.
        """
        validate_entity_type(entity_type)
        known_ids = {
            int(item)
            for item in session.scalars(
                select(CRMFieldDefinition.id).where(CRMFieldDefinition.entity_type == entity_type)
            ).all()
        }

        stored: dict[int, str] = {}
        for key, value in values.items():
            field_id = parse_field_id(key)
            if field_id is None or field_id not in known_ids:
                continue
            if value is None or value == "":
                continue
            encoded = encode_value(value)
            if encoded == "":
                continue
            stored[field_id] = encoded

        session.execute(
            delete(CRMFieldValue).where(
                and_(CRMFieldValue.entity_type == entity_type, CRMFieldValue.record_id == record_id)
            )
        )
        session.add_all(
            [
                CRMFieldValue(entity_type=entity_type, record_id=record_id, field_id=field_id, value=value)
                for field_id, value in stored.items()
            ]
        )
        session.flush()
        return stored

    def delete_values(self, session: Session, entity_type: str, record_id: int) -> int:
        result = session.execute(
            delete(CRMFieldValue).where(
                and_(CRMFieldValue.entity_type == entity_type, CRMFieldValue.record_id == record_id)
            )
        )
        return int(result.rowcount or 0)


field_registry = FieldRegistry()
section_registry = SectionRegistry()
field_value_store = FieldValueStore()
