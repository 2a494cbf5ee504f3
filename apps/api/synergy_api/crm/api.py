from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from synergy_api.context import get_correlation_id
from synergy_api.core.database import get_db
from synergy_api.crm.deals import deal_service
from synergy_api.crm.emails import contact_email_service
from synergy_api.crm.errors import CRMError
from synergy_api.crm.relationships import CompanyRef, relationship_maintainer
from synergy_api.crm.schemas import (
    AreaOfActivityRead,
    AreaOfActivityUpdate,
    BranchCreate,
    BranchRead,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactEmailCreate,
    ContactEmailRead,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
    DealStageChangeRequest,
    DealUpdate,
    LinkContactRequest,
    OrphanLinkRead,
    PipelineStageCreate,
    PipelineStageRead,
    StaleSynergyRead,
    SynergyRead,
)
from synergy_api.crm.store import entity_store
from synergy_api.crm.synergies import synergy_deriver

contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
companies_router = APIRouter(prefix="/api/crm", tags=["crm.companies"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
relationships_router = APIRouter(prefix="/api/crm", tags=["crm.relationships"])
synergies_router = APIRouter(prefix="/api/crm", tags=["crm.synergies"])
diagnostics_router = APIRouter(prefix="/api/crm/diagnostics", tags=["crm.diagnostics"])


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


def crm_error_response(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(request: Request, dto: ContactCreate, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.create(db, "contact", dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> Any:
    try:
        return entity_store.list(db, "contact", {"status": status_filter}, include_archived=include_archived)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(request: Request, contact_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.get(db, "contact", contact_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def patch_contact(request: Request, contact_id: uuid.UUID, dto: ContactUpdate, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.update(db, "contact", contact_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.delete("/contacts/{contact_id}", response_model=ContactRead)
def delete_contact(request: Request, contact_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.delete(db, "contact", contact_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.get("/contacts/{contact_id}/emails", response_model=list[ContactEmailRead])
def list_contact_emails(request: Request, contact_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return contact_email_service.list_emails(db, contact_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.post(
    "/contacts/{contact_id}/emails",
    response_model=ContactEmailRead,
    status_code=status.HTTP_201_CREATED,
)
def add_contact_email(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactEmailCreate,
    db: Session = Depends(get_db),
) -> Any:
    try:
        return contact_email_service.add_email(db, contact_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.post("/contact-emails/{email_id}/primary", response_model=ContactEmailRead)
def set_primary_contact_email(request: Request, email_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return contact_email_service.set_primary_email(db, email_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.delete("/contact-emails/{email_id}", response_model=None)
def delete_contact_email(request: Request, email_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        contact_email_service.remove_email(db, email_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.post("/companies", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(request: Request, dto: CompanyCreate, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.create(db, "company", dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.get("/companies", response_model=list[CompanyRead])
def list_companies(
    request: Request,
    industry: str | None = Query(default=None),
    country: str | None = Query(default=None),
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> Any:
    try:
        return entity_store.list(
            db,
            "company",
            {"industry": industry, "country": country},
            include_archived=include_archived,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.get("/companies/{company_id}", response_model=CompanyRead)
def get_company(request: Request, company_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.get(db, "company", company_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.patch("/companies/{company_id}", response_model=CompanyRead)
def patch_company(request: Request, company_id: uuid.UUID, dto: CompanyUpdate, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.update(db, "company", company_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.delete("/companies/{company_id}", response_model=CompanyRead)
def delete_company(request: Request, company_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.delete(db, "company", company_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.get("/companies/{company_id}/branches", response_model=list[BranchRead])
def list_branches(request: Request, company_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        entity_store.get(db, "company", company_id)
        return entity_store.list(db, "branch", {"company_id": company_id})
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.post(
    "/companies/{company_id}/branches",
    response_model=BranchRead,
    status_code=status.HTTP_201_CREATED,
)
def create_branch(
    request: Request,
    company_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
) -> Any:
    try:
        return entity_store.create(db, "branch", {**payload, "company_id": company_id})
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.delete("/branches/{branch_id}", response_model=None)
def delete_branch(request: Request, branch_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        entity_store.delete(db, "branch", branch_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.get("/companies/{company_id}/contacts", response_model=list[ContactRead])
def list_company_contacts(request: Request, company_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return relationship_maintainer.contacts_for_company(db, company_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.get("/pipeline-stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(request: Request, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.list(db, "pipeline_stage")
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.post("/pipeline-stages", response_model=PipelineStageRead, status_code=status.HTTP_201_CREATED)
def create_pipeline_stage(request: Request, dto: PipelineStageCreate, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.create(db, "pipeline_stage", dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.post("/pipeline-stages/defaults", response_model=list[PipelineStageRead])
def seed_default_pipeline_stages(request: Request, db: Session = Depends(get_db)) -> Any:
    try:
        return deal_service.ensure_default_stages(db)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(request: Request, dto: DealCreate, db: Session = Depends(get_db)) -> Any:
    try:
        return deal_service.create_deal(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    stage_id: uuid.UUID | None = Query(default=None),
    contact_id: uuid.UUID | None = Query(default=None),
    company_id: uuid.UUID | None = Query(default=None),
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> Any:
    try:
        return entity_store.list(
            db,
            "deal",
            {"stage_id": stage_id, "contact_id": contact_id, "company_id": company_id},
            include_archived=include_archived,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(request: Request, deal_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.get(db, "deal", deal_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def patch_deal(request: Request, deal_id: uuid.UUID, dto: DealUpdate, db: Session = Depends(get_db)) -> Any:
    try:
        return deal_service.update_deal(db, deal_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.post("/deals/{deal_id}/stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealStageChangeRequest,
    db: Session = Depends(get_db),
) -> Any:
    try:
        return deal_service.move_stage(db, deal_id, dto.stage_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.delete("/deals/{deal_id}", response_model=DealRead)
def delete_deal(request: Request, deal_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.delete(db, "deal", deal_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.get("/deals/{deal_id}/synergies", response_model=list[SynergyRead])
def list_deal_synergies(
    request: Request,
    deal_id: uuid.UUID,
    include_archived: bool = Query(default=True),
    db: Session = Depends(get_db),
) -> Any:
    try:
        entity_store.get(db, "deal", deal_id)
        return synergy_deriver.list_for_deal(db, deal_id, include_archived=include_archived)
    except CRMError as exc:
        return crm_error_response(request, exc)


@relationships_router.post(
    "/contacts/{contact_id}/areas-of-activity",
    response_model=AreaOfActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def link_contact_to_company(
    request: Request,
    contact_id: uuid.UUID,
    dto: LinkContactRequest,
    db: Session = Depends(get_db),
) -> Any:
    try:
        return relationship_maintainer.link_contact_to_company(
            db,
            contact_id,
            CompanyRef(company_id=dto.company_id, company_name=dto.company_name),
            role=dto.role,
            job_description=dto.job_description,
            is_primary=dto.is_primary,
            branch_id=dto.branch_id,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@relationships_router.get("/contacts/{contact_id}/areas-of-activity", response_model=list[AreaOfActivityRead])
def list_contact_companies(request: Request, contact_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return relationship_maintainer.companies_for_contact(db, contact_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@relationships_router.patch("/areas-of-activity/{area_id}", response_model=AreaOfActivityRead)
def patch_area_of_activity(
    request: Request,
    area_id: uuid.UUID,
    dto: AreaOfActivityUpdate,
    db: Session = Depends(get_db),
) -> Any:
    try:
        return relationship_maintainer.update_area(db, area_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@relationships_router.post("/areas-of-activity/{area_id}/primary", response_model=AreaOfActivityRead)
def set_primary_area_of_activity(request: Request, area_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return relationship_maintainer.set_primary(db, area_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@relationships_router.delete("/areas-of-activity/{area_id}", response_model=None)
def unlink_area_of_activity(request: Request, area_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        relationship_maintainer.unlink(db, area_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return crm_error_response(request, exc)


@synergies_router.get("/contacts/{contact_id}/synergies", response_model=list[SynergyRead])
def list_contact_synergies(request: Request, contact_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return synergy_deriver.list_active_for_contact(db, contact_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@synergies_router.get("/companies/{company_id}/synergies", response_model=list[SynergyRead])
def list_company_synergies(request: Request, company_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return synergy_deriver.list_active_for_company(db, company_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@synergies_router.post("/synergies", response_model=SynergyRead, status_code=status.HTTP_201_CREATED)
def create_synergy(request: Request, payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.create(db, "synergy", payload)
    except CRMError as exc:
        return crm_error_response(request, exc)


@synergies_router.get("/synergies/{synergy_id}", response_model=SynergyRead)
def get_synergy(request: Request, synergy_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return synergy_deriver.get_synergy(db, synergy_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@synergies_router.patch("/synergies/{synergy_id}", response_model=SynergyRead)
def patch_synergy(
    request: Request,
    synergy_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
) -> Any:
    try:
        return synergy_deriver.update_synergy(db, synergy_id, payload)
    except CRMError as exc:
        return crm_error_response(request, exc)


@synergies_router.post("/synergies/{synergy_id}/archive", response_model=SynergyRead)
def archive_synergy(request: Request, synergy_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return synergy_deriver.archive_synergy(db, synergy_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@synergies_router.delete("/synergies/{synergy_id}", response_model=SynergyRead)
def delete_synergy(request: Request, synergy_id: uuid.UUID, db: Session = Depends(get_db)) -> Any:
    try:
        return entity_store.delete(db, "synergy", synergy_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@diagnostics_router.get("/orphan-links", response_model=list[OrphanLinkRead])
def list_orphan_links(db: Session = Depends(get_db)) -> list[OrphanLinkRead]:
    return relationship_maintainer.find_orphans(db)


@diagnostics_router.get("/stale-synergies", response_model=list[StaleSynergyRead])
def list_stale_synergies(db: Session = Depends(get_db)) -> list[StaleSynergyRead]:
    return synergy_deriver.find_stale(db)
