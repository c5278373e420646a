from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


EntityType = Literal["lead", "investor"]
FieldType = Literal[
    "text",
    "textarea",
    "email",
    "phone",
    "url",
    "number",
    "date",
    "select",
    "multiselect",
    "multiselect_dropdown",
]
FieldValuePayload = str | int | float | bool | list[Any] | dict[str, Any] | None


class FieldOptionInput(BaseModel):
    value: str = Field(min_length=1)
    label: str = Field(min_length=1)
    sort_order: int | None = None
    is_active: bool = True


class FieldOptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    value: str
    label: str
    sort_order: int
    is_active: bool


class FieldDefinitionCreate(BaseModel):
    name: str = Field(min_length=1)
    label: str = Field(min_length=1)
    type: FieldType
    is_required: bool = False
    is_active: bool = True
    sort_order: int | None = None
    section_key: str | None = None
    placeholder: str | None = None
    help_text: str | None = None
    default_value: str | None = None
    validation_rules: dict[str, Any] | None = None
    options: list[FieldOptionInput] | None = None


class FieldDefinitionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    label: str | None = Field(default=None, min_length=1)
    type: FieldType | None = None
    is_required: bool | None = None
    is_active: bool | None = None
    sort_order: int | None = None
    section_key: str | None = None
    placeholder: str | None = None
    help_text: str | None = None
    default_value: str | None = None
    validation_rules: dict[str, Any] | None = None
    options: list[FieldOptionInput] | None = None


class FieldDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: EntityType
    name: str
    label: str
    type: FieldType
    is_required: bool
    is_active: bool
    is_system_field: bool
    sort_order: int
    section_key: str | None
    placeholder: str | None
    help_text: str | None
    default_value: str | None
    validation_rules: dict[str, Any] | None
    options: list[FieldOptionRead]
    created_at: datetime
    updated_at: datetime


class FieldReorderRequest(BaseModel):
    field_ids: list[int]


class SectionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: EntityType
    section_key: str
    name: str
    icon: str | None
    gradient: str | None
    is_visible: bool
    is_default_open: bool
    sort_order: int


class SectionUpdate(BaseModel):
    id: int
    is_visible: bool | None = None
    is_default_open: bool | None = None
    sort_order: int | None = None


class SectionBulkUpdateRequest(BaseModel):
    sections: list[SectionUpdate]


class FieldSectionAssignment(BaseModel):
    field_id: int
    section_key: str | None = None


class FieldSectionAssignRequest(BaseModel):
    assignments: list[FieldSectionAssignment]


class FormLayoutSection(BaseModel):
    section_key: str
    name: str
    icon: str | None = None
    gradient: str | None = None
    is_default_open: bool = True
    fields: list[FieldDefinitionRead]


class FieldValueRead(BaseModel):
    field_id: int
    name: str
    label: str
    type: FieldType
    value: str | list[str] | None


class LeadCreate(BaseModel):
    full_name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    notes_text: str | None = None
    custom_fields: dict[str, FieldValuePayload] = Field(default_factory=dict)


class LeadUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    phone: str | None = None
    notes_text: str | None = None
    custom_fields: dict[str, FieldValuePayload] | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: str
    email: str | None
    phone: str | None
    source: str | None
    status: str | None
    priority: str | None
    notes_text: str | None
    created_at: datetime
    updated_at: datetime
    field_values: list[FieldValueRead] = Field(default_factory=list)


class InvestorCreate(BaseModel):
    full_name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    budget: str | None = None
    timeline: str | None = None
    notes: str | None = None
    custom_fields: dict[str, FieldValuePayload] = Field(default_factory=dict)


class InvestorUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=1)
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    budget: str | None = None
    timeline: str | None = None
    notes: str | None = None
    custom_fields: dict[str, FieldValuePayload] | None = None


class InvestorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int | None
    full_name: str
    email: str | None
    phone: str | None
    company: str | None
    position: str | None
    source: str | None
    status: str | None
    priority: str | None
    budget: str | None
    timeline: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime
    field_values: list[FieldValueRead] = Field(default_factory=list)


class LeadPromoteRequest(BaseModel):
    description: str


class ImportRowError(BaseModel):
    row: int
    field: str | None = None
    message: str


class ImportResult(BaseModel):
    total_rows: int
    created_count: int
    updated_count: int
    error_count: int
    errors: list[ImportRowError]
