from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.core.rbac import require_access
from app.crm.errors import CRMError
from app.crm.import_export import import_export_service
from app.crm.records import RECORD_SERVICES, lead_service
from app.crm.schemas import (
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldReorderRequest,
    FieldSectionAssignRequest,
    FormLayoutSection,
    ImportResult,
    InvestorCreate,
    InvestorRead,
    InvestorUpdate,
    LeadCreate,
    LeadPromoteRequest,
    LeadRead,
    LeadUpdate,
    SectionBulkUpdateRequest,
    SectionRead,
)
from app.crm.serializer import build_form_layout
from app.crm.service import ActorUser, field_registry, section_registry, validate_entity_type

settings_router = APIRouter(prefix="/api/crm/settings", tags=["crm.settings"])
leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
investors_router = APIRouter(prefix="/api/crm", tags=["crm.investors"])
import_export_router = APIRouter(prefix="/api/crm", tags=["crm.import_export"])

IMPORT_EXPORT_RESOURCE = "crm.import_export"


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: CRMError | HTTPException, code: str) -> JSONResponse:
    if isinstance(exc, CRMError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def settings_resource(entity_type: str) -> str:
    return f"crm.settings.{validate_entity_type(entity_type)}_fields"


def record_resource(entity_type: str) -> str:
    return f"crm.{entity_type}s"


@settings_router.get("/{entity_type}/fields", response_model=list[FieldDefinitionRead])
def list_fields(
    request: Request,
    entity_type: str,
    only_active: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        return field_registry.list_fields(db, entity_type, only_active=only_active)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_fields_list_failed")


@settings_router.post("/{entity_type}/fields", response_model=FieldDefinitionRead, status_code=status.HTTP_201_CREATED)
def create_field(
    request: Request,
    entity_type: str,
    dto: FieldDefinitionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        return field_registry.create_field(db, entity_type, dto, user)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_fields_create_failed")


@settings_router.post("/{entity_type}/fields/reorder", status_code=status.HTTP_204_NO_CONTENT)
def reorder_fields(
    request: Request,
    entity_type: str,
    dto: FieldReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        field_registry.reorder(db, entity_type, dto.field_ids, user)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_fields_reorder_failed")


@settings_router.get("/{entity_type}/fields/{field_id}", response_model=FieldDefinitionRead)
def get_field(
    request: Request,
    entity_type: str,
    field_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        return field_registry.get_field(db, entity_type, field_id)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_fields_get_failed")


@settings_router.patch("/{entity_type}/fields/{field_id}", response_model=FieldDefinitionRead)
def update_field(
    request: Request,
    entity_type: str,
    field_id: int,
    dto: FieldDefinitionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        return field_registry.update_field(db, entity_type, field_id, dto, user)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_fields_update_failed")


@settings_router.delete("/{entity_type}/fields/{field_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_field(
    request: Request,
    entity_type: str,
    field_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        field_registry.delete_field(db, entity_type, field_id, user)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_fields_delete_failed")


@settings_router.post("/{entity_type}/fields/{field_id}/toggle", response_model=FieldDefinitionRead)
def toggle_field(
    request: Request,
    entity_type: str,
    field_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        return field_registry.toggle_active(db, entity_type, field_id, user)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_fields_toggle_failed")


@settings_router.get("/{entity_type}/sections", response_model=list[SectionRead])
def list_sections(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SectionRead] | JSONResponse:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        return section_registry.list_sections(db, entity_type)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_sections_list_failed")


@settings_router.put("/{entity_type}/sections", response_model=list[SectionRead])
def update_sections(
    request: Request,
    entity_type: str,
    dto: SectionBulkUpdateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SectionRead] | JSONResponse:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        return section_registry.bulk_update(db, entity_type, dto.sections, user)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_sections_update_failed")


@settings_router.post("/{entity_type}/sections/assign-fields", response_model=list[FieldDefinitionRead])
def assign_fields_to_sections(
    request: Request,
    entity_type: str,
    dto: FieldSectionAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        require_access(user.permissions, settings_resource(entity_type))
        section_registry.assign_fields_to_sections(db, entity_type, dto.assignments, user)
        return field_registry.list_fields(db, entity_type)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_sections_assign_failed")


@settings_router.get("/{entity_type}/form-layout", response_model=list[FormLayoutSection])
def get_form_layout(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FormLayoutSection] | JSONResponse:
    try:
        validate_entity_type(entity_type)
        require_access(user.permissions, record_resource(entity_type))
        sections = section_registry.list_sections(db, entity_type)
        fields = field_registry.list_fields(db, entity_type, only_active=True)
        return build_form_layout(sections, fields)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_form_layout_failed")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_access(user.permissions, "crm.leads")
        return lead_service.list_records(db, user, limit=limit, offset=offset)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_leads_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_access(user.permissions, "crm.leads")
        return lead_service.create(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_leads_create_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_access(user.permissions, "crm.leads")
        return lead_service.get_record(db, user, lead_id)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_leads_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: int,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_access(user.permissions, "crm.leads")
        return lead_service.update(db, user, lead_id, dto)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_leads_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_access(user.permissions, "crm.leads")
        lead_service.delete(db, user, lead_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_leads_delete_failed")


@leads_router.post("/leads/{lead_id}/promote", response_model=InvestorRead, status_code=status.HTTP_201_CREATED)
def promote_lead(
    request: Request,
    lead_id: int,
    dto: LeadPromoteRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvestorRead | JSONResponse:
    try:
        require_access(user.permissions, "crm.leads")
        require_access(user.permissions, "crm.investors")
        return lead_service.promote(db, user, lead_id, dto.description)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_leads_promote_failed")


@investors_router.get("/investors", response_model=list[InvestorRead])
def list_investors(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[InvestorRead] | JSONResponse:
    try:
        require_access(user.permissions, "crm.investors")
        return RECORD_SERVICES["investor"].list_records(db, user, limit=limit, offset=offset)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_investors_list_failed")


@investors_router.post("/investors", response_model=InvestorRead, status_code=status.HTTP_201_CREATED)
def create_investor(
    request: Request,
    dto: InvestorCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvestorRead | JSONResponse:
    try:
        require_access(user.permissions, "crm.investors")
        return RECORD_SERVICES["investor"].create(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_investors_create_failed")


@investors_router.get("/investors/{investor_id}", response_model=InvestorRead)
def get_investor(
    request: Request,
    investor_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvestorRead | JSONResponse:
    try:
        require_access(user.permissions, "crm.investors")
        return RECORD_SERVICES["investor"].get_record(db, user, investor_id)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_investors_get_failed")


@investors_router.patch("/investors/{investor_id}", response_model=InvestorRead)
def update_investor(
    request: Request,
    investor_id: int,
    dto: InvestorUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvestorRead | JSONResponse:
    try:
        require_access(user.permissions, "crm.investors")
        return RECORD_SERVICES["investor"].update(db, user, investor_id, dto)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_investors_update_failed")


@investors_router.delete("/investors/{investor_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_investor(
    request: Request,
    investor_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_access(user.permissions, "crm.investors")
        RECORD_SERVICES["investor"].delete(db, user, investor_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_investors_delete_failed")


def _csv_response(payload: bytes, filename: str) -> Response:
    return Response(
        content=payload,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@import_export_router.get("/export/{entity_type}")
def export_csv(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        validate_entity_type(entity_type)
        require_access(user.permissions, IMPORT_EXPORT_RESOURCE)
        payload, filename = import_export_service.export_csv(db, entity_type, user)
        return _csv_response(payload, filename)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_export_failed")


@import_export_router.get("/export/{entity_type}/template")
def export_template(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        validate_entity_type(entity_type)
        require_access(user.permissions, IMPORT_EXPORT_RESOURCE)
        payload, filename = import_export_service.export_template(db, entity_type, user)
        return _csv_response(payload, filename)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_export_template_failed")


@import_export_router.post("/import/{entity_type}", response_model=ImportResult)
def import_csv(
    request: Request,
    entity_type: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ImportResult | JSONResponse:
    try:
        validate_entity_type(entity_type)
        require_access(user.permissions, IMPORT_EXPORT_RESOURCE)
        max_bytes = get_settings().import_max_bytes
        # never buffer more than one byte past the ceiling
        content = file.file.read(max_bytes + 1)
        return import_export_service.import_csv(db, entity_type, content, user, reported_size=file.size)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_import_failed")
