from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from synergy_api import audit, events
from synergy_api.crm.deals import DealService, deal_service
from synergy_api.crm.emails import ContactEmailService, contact_email_service
from synergy_api.crm.errors import ConflictError, ValidationError
from synergy_api.crm.models import (
    CRMAreaOfActivity,
    CRMBranch,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMPipelineStage,
)
from synergy_api.crm.relationships import CompanyRef, RelationshipMaintainer, relationship_maintainer
from synergy_api.crm.repositories import (
    BaseRepository,
    area_of_activity_repository,
    branch_repository,
    company_repository,
    contact_repository,
    deal_repository,
    pipeline_stage_repository,
    synergy_repository,
    write_transaction,
)
from synergy_api.crm.schemas import (
    AreaOfActivityCreate,
    AreaOfActivityRead,
    AreaOfActivityUpdate,
    BranchCreate,
    BranchRead,
    BranchUpdate,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    SynergyCreate,
    SynergyRead,
    SynergyUpdate,
    validate_payload,
)
from synergy_api.crm.synergies import SynergyDeriver, synergy_deriver


logger = logging.getLogger("synergy_api.crm.store")

SYNERGY_IDENTITY_FIELDS = ("contact_id", "company_id", "deal_id")
LEGACY_LOCATION_FIELDS = ("country", "city")
REQUIRED_ON_UPDATE = {
    "contact": ("first_name", "last_name"),
    "company": ("name",),
    "branch": ("name", "is_headquarters"),
    "pipeline_stage": ("name", "position"),
}
EMPTY_ON_CLEAR = {"tags": list, "custom_fields": dict}


@dataclass(frozen=True)
class EntityKind:
    name: str
    repository: BaseRepository[Any]
    read_schema: type[BaseModel]
    create_schema: type[BaseModel]
    update_schema: type[BaseModel]

    @property
    def entity_type(self) -> str:
        return f"crm.{self.name}"


KINDS: dict[str, EntityKind] = {
    kind.name: kind
    for kind in (
        EntityKind("contact", contact_repository, ContactRead, ContactCreate, ContactUpdate),
        EntityKind("company", company_repository, CompanyRead, CompanyCreate, CompanyUpdate),
        EntityKind("branch", branch_repository, BranchRead, BranchCreate, BranchUpdate),
        EntityKind("pipeline_stage", pipeline_stage_repository, PipelineStageRead, PipelineStageCreate, PipelineStageUpdate),
        EntityKind("deal", deal_repository, DealRead, DealCreate, DealUpdate),
        EntityKind(
            "area_of_activity",
            area_of_activity_repository,
            AreaOfActivityRead,
            AreaOfActivityCreate,
            AreaOfActivityUpdate,
        ),
        EntityKind("synergy", synergy_repository, SynergyRead, SynergyCreate, SynergyUpdate),
    )
}


def migrate_legacy_location(values: dict[str, Any]) -> dict[str, Any]:
    """Move country/city out of a company's custom fields into the first-class columns."""
    custom_fields = dict(values.get("custom_fields") or {})
    for key in LEGACY_LOCATION_FIELDS:
        legacy = custom_fields.pop(key, None)
        if legacy and not values.get(key):
            values[key] = str(legacy)
    values["custom_fields"] = custom_fields
    return values


class EntityStore:
    """Single entry point for reading and writing every CRM kind.

    Kinds with invariants of their own hand off to their service: deals re-derive
    synergies, areas of activity go through the relationship maintainer, and
    synergies can only be created by derivation.
    """

    def __init__(
        self,
        deals: DealService | None = None,
        relationships: RelationshipMaintainer | None = None,
        synergies: SynergyDeriver | None = None,
        emails: ContactEmailService | None = None,
    ) -> None:
        self.deals = deals or deal_service
        self.relationships = relationships or relationship_maintainer
        self.synergies = synergies or synergy_deriver
        self.emails = emails or contact_email_service

    def kind(self, name: str) -> EntityKind:
        try:
            return KINDS[name]
        except KeyError:
            raise ValidationError(f"Unknown entity kind '{name}'", fields=["kind"]) from None

    def get(self, session: Session, kind: str, entity_id: uuid.UUID) -> BaseModel:
        entry = self.kind(kind)
        return entry.read_schema.model_validate(entry.repository.get(session, entity_id))

    def list(
        self,
        session: Session,
        kind: str,
        filters: dict[str, Any] | None = None,
        *,
        include_archived: bool = False,
    ) -> list[BaseModel]:
        entry = self.kind(kind)
        active_filters = {key: value for key, value in (filters or {}).items() if value is not None}
        rows = entry.repository.list(session, active_filters, include_archived=include_archived)
        return [entry.read_schema.model_validate(row) for row in rows]

    def create(
        self,
        session: Session,
        kind: str,
        payload: BaseModel | dict[str, Any],
        *,
        derived: bool = False,
    ) -> BaseModel:
        entry = self.kind(kind)
        if kind == "synergy":
            return self._create_synergy(session, payload, derived=derived)

        dto = validate_payload(entry.create_schema, payload)
        if kind == "deal":
            return self.deals.create_deal(session, dto)
        if kind == "area_of_activity":
            return self.relationships.link_contact_to_company(
                session,
                dto.contact_id,
                CompanyRef(company_id=dto.company_id, company_name=dto.company_name),
                role=dto.role,
                job_description=dto.job_description,
                is_primary=dto.is_primary,
                branch_id=dto.branch_id,
            )

        with write_transaction(session, kind):
            entity = self._build(session, kind, dto)
            session.add(entity)
            session.flush()
            if kind == "contact":
                for email in dto.emails:
                    self.emails.attach(session, entity.id, email)
                session.refresh(entity)
            read_model = entry.read_schema.model_validate(entity)

        self._record(entry, read_model.id, "create", None, read_model)
        events.emit(f"{entry.entity_type}.created", entity_id=read_model.id)
        return read_model

    def update(
        self,
        session: Session,
        kind: str,
        entity_id: uuid.UUID,
        patch: BaseModel | dict[str, Any],
    ) -> BaseModel:
        entry = self.kind(kind)
        if kind == "synergy":
            return self.synergies.update_synergy(session, entity_id, patch)
        if kind == "deal":
            return self.deals.update_deal(session, entity_id, patch)
        if kind == "area_of_activity":
            return self.relationships.update_area(session, entity_id, patch)

        dto = validate_payload(entry.update_schema, patch)
        changes = dto.model_dump(exclude_unset=True)
        cleared = [name for name in REQUIRED_ON_UPDATE.get(kind, ()) if name in changes and changes[name] is None]
        if cleared:
            raise ValidationError(f"Required fields cannot be cleared on {kind}", fields=cleared)
        for name, empty in EMPTY_ON_CLEAR.items():
            if name in changes and changes[name] is None:
                changes[name] = empty()

        with write_transaction(session, kind):
            entity = entry.repository.get_for_update(session, entity_id)
            before = entry.read_schema.model_validate(entity)
            if kind == "company":
                changes = self._prepare_company_changes(session, entity, changes)
            for key, value in changes.items():
                setattr(entity, key, value)
            session.flush()
            read_model = entry.read_schema.model_validate(entity)

        self._record(entry, entity_id, "update", before, read_model)
        events.emit(f"{entry.entity_type}.updated", entity_id=entity_id, changed_fields=sorted(changes))
        return read_model

    def archive(self, session: Session, kind: str, entity_id: uuid.UUID) -> BaseModel:
        entry = self.kind(kind)
        if kind == "synergy":
            return self.synergies.archive_synergy(session, entity_id)
        if kind == "deal":
            return self.deals.archive_deal(session, entity_id)
        if not entry.repository.archivable:
            raise ValidationError(f"{kind} records cannot be archived", fields=["kind"])

        with write_transaction(session, kind):
            entity = entry.repository.get_for_update(session, entity_id)
            if entity.status == "archived":
                return entry.read_schema.model_validate(entity)
            entity.status = "archived"
            session.flush()
            read_model = entry.read_schema.model_validate(entity)

        self._record(entry, entity_id, "archive", {"status": "active"}, read_model)
        events.emit(f"{entry.entity_type}.archived", entity_id=entity_id)
        return read_model

    def delete(self, session: Session, kind: str, entity_id: uuid.UUID) -> BaseModel | None:
        """Remove a record; kinds that are never physically deleted are archived instead."""
        entry = self.kind(kind)
        if entry.repository.archivable:
            logger.info("crm.delete_archived", extra={"resource": kind, "action": "archive"})
            return self.archive(session, kind, entity_id)
        if kind == "area_of_activity":
            self.relationships.unlink(session, entity_id)
            return None

        with write_transaction(session, kind):
            entity = entry.repository.get_for_update(session, entity_id)
            if self._is_referenced(session, kind, entity_id):
                raise ConflictError(f"{kind} is still referenced", details={"kind": kind, "id": str(entity_id)})
            before = entry.read_schema.model_validate(entity)
            session.delete(entity)

        self._record(entry, entity_id, "delete", before, None)
        events.emit(f"{entry.entity_type}.deleted", entity_id=entity_id)
        return None

    def _create_synergy(self, session: Session, payload: BaseModel | dict[str, Any], *, derived: bool) -> SynergyRead:
        raw = payload.model_dump(exclude_unset=True) if isinstance(payload, BaseModel) else dict(payload)
        missing = [name for name in SYNERGY_IDENTITY_FIELDS if raw.get(name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Synergy requires {', '.join(missing)}; synergies originate from a deal",
                fields=missing,
            )
        if not derived:
            raise ValidationError(
                "Synergies are derived from deals; set the deal's contact and company instead",
                fields=["deal_id"],
            )

        dto = validate_payload(SynergyCreate, raw)
        with write_transaction(session, "synergy"):
            deal = deal_repository.get_for_update(session, dto.deal_id)
            if (deal.contact_id, deal.company_id) != (dto.contact_id, dto.company_id):
                raise ValidationError(
                    "Synergy must match the deal's current contact and company",
                    fields=["contact_id", "company_id"],
                )
            outcome = self.synergies.on_deal_association_changed(session, deal, deal.contact_id, deal.company_id)
            synergy = synergy_repository.find_active(session, dto.contact_id, dto.company_id, dto.deal_id)
            if synergy is None:
                raise ConflictError("Archived deals do not carry synergies", details={"deal_id": str(dto.deal_id)})
            if dto.description is not None and synergy.description is None:
                synergy.description = dto.description
            if dto.type is not None and any(created.id == synergy.id for created in outcome.created):
                synergy.type = dto.type
            session.flush()
            read_model = SynergyRead.model_validate(synergy)

        self.synergies.publish(outcome)
        return read_model

    def _build(self, session: Session, kind: str, dto: Any) -> Any:
        if kind == "contact":
            return CRMContact(**dto.model_dump(exclude={"emails"}))
        if kind == "company":
            values = migrate_legacy_location(dto.model_dump())
            if values["parent_company_id"] is not None:
                company_repository.get(session, values["parent_company_id"])
            return CRMCompany(**values)
        if kind == "branch":
            company_repository.get(session, dto.company_id)
            return CRMBranch(**dto.model_dump())
        return CRMPipelineStage(**dto.model_dump())

    def _prepare_company_changes(
        self,
        session: Session,
        company: CRMCompany,
        changes: dict[str, Any],
    ) -> dict[str, Any]:
        if "custom_fields" in changes:
            merged = {key: changes.get(key, getattr(company, key)) for key in LEGACY_LOCATION_FIELDS}
            merged["custom_fields"] = changes["custom_fields"]
            changes = {**changes, **migrate_legacy_location(merged)}
        parent_id = changes.get("parent_company_id")
        if parent_id is not None:
            if parent_id == company.id:
                raise ValidationError("A company cannot be its own parent", fields=["parent_company_id"])
            company_repository.get(session, parent_id)
        return changes

    def _is_referenced(self, session: Session, kind: str, entity_id: uuid.UUID) -> bool:
        if kind == "branch":
            return bool(
                session.scalar(select(exists().where(CRMDeal.branch_id == entity_id)))
                or session.scalar(select(exists().where(CRMAreaOfActivity.branch_id == entity_id)))
            )
        if kind == "pipeline_stage":
            return bool(session.scalar(select(exists().where(CRMDeal.stage_id == entity_id))))
        return False

    def _record(
        self,
        entry: EntityKind,
        entity_id: uuid.UUID,
        action: str,
        before: BaseModel | dict[str, Any] | None,
        after: BaseModel | None,
    ) -> None:
        audit.record(
            entity_type=entry.entity_type,
            entity_id=str(entity_id),
            action=action,
            before=before.model_dump(mode="json") if isinstance(before, BaseModel) else before,
            after=after.model_dump(mode="json") if after is not None else None,
        )


entity_store = EntityStore()
