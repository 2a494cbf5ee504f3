from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from synergy_api import audit, events
from synergy_api.crm.errors import ValidationError
from synergy_api.crm.models import CRMAreaOfActivity, CRMCompany, CRMContact, utcnow
from synergy_api.crm.repositories import (
    area_of_activity_repository,
    branch_repository,
    company_repository,
    contact_repository,
    write_transaction,
)
from synergy_api.crm.schemas import (
    AreaOfActivityRead,
    AreaOfActivityUpdate,
    ContactRead,
    OrphanLinkRead,
    validate_payload,
)
from synergy_api.metrics import observe_area_of_activity_op
from synergy_api.otel import get_tracer, tag_correlation


logger = logging.getLogger("synergy_api.crm.relationships")
tracer = get_tracer("synergy_api.crm.relationships")


@dataclass(frozen=True)
class CompanyRef:
    """Either an existing company id or the free-text name of a company not yet on file."""

    company_id: uuid.UUID | None = None
    company_name: str | None = None


class RelationshipMaintainer:
    entity_type = "crm.area_of_activity"
    resource = "area_of_activity"

    def link_contact_to_company(
        self,
        session: Session,
        contact_id: uuid.UUID,
        company: CompanyRef,
        *,
        role: str | None = None,
        job_description: str | None = None,
        is_primary: bool = False,
        branch_id: uuid.UUID | None = None,
    ) -> AreaOfActivityRead:
        """Attach a contact to a company and keep the contact's single primary link.

        The contact row is locked for the whole transaction so concurrent links for the
        same contact apply one after the other. A contact with no primary link receives
        the new one as primary.
        """
        with tracer.start_as_current_span("crm.relationships.link") as span:
            span.set_attribute("crm.contact_id", str(contact_id))
            tag_correlation(span)
            with write_transaction(session, self.resource):
                contact = contact_repository.get_for_update(session, contact_id)
                company_id, company_name = self._resolve_company(session, company)
                self._check_branch(session, branch_id, company_id)

                current_primary = self._current_primary(session, contact.id)
                make_primary = is_primary or current_primary is None
                if make_primary and current_primary is not None:
                    self._clear_primary(session, contact.id)

                area = CRMAreaOfActivity(
                    contact_id=contact.id,
                    company_id=company_id,
                    company_name=company_name,
                    branch_id=branch_id,
                    role=role,
                    job_description=job_description,
                    is_primary=make_primary,
                )
                session.add(area)
                session.flush()
                read_model = AreaOfActivityRead.model_validate(area)

            span.set_attribute("crm.area_id", str(read_model.id))

        observe_area_of_activity_op("link")
        audit.record(
            entity_type=self.entity_type,
            entity_id=str(read_model.id),
            action="link",
            before=None,
            after=read_model.model_dump(mode="json"),
        )
        events.emit(
            "crm.area_of_activity.linked",
            area_id=read_model.id,
            contact_id=read_model.contact_id,
            company_id=read_model.company_id,
            is_primary=read_model.is_primary,
        )
        logger.info(
            "area_of_activity.linked",
            extra={"area_id": str(read_model.id), "contact_id": str(contact_id), "company_id": str(company_id)},
        )
        return read_model

    def update_area(
        self,
        session: Session,
        area_id: uuid.UUID,
        patch: AreaOfActivityUpdate | dict[str, Any],
    ) -> AreaOfActivityRead:
        dto = patch if isinstance(patch, AreaOfActivityUpdate) else _validate_patch(patch)
        changes = dto.model_dump(exclude_unset=True)

        with write_transaction(session, self.resource):
            area = area_of_activity_repository.get(session, area_id)
            contact_repository.get_for_update(session, area.contact_id)
            before = AreaOfActivityRead.model_validate(area).model_dump(mode="json")

            if "company_id" in changes or "company_name" in changes:
                company_id = changes.get("company_id", area.company_id)
                # Clearing company_id without a new name keeps the current name as a placeholder.
                if "company_name" in changes or company_id is not None:
                    company_name = changes.get("company_name")
                else:
                    company_name = area.company_name
                company_id, company_name = self._resolve_company(
                    session,
                    CompanyRef(company_id=company_id, company_name=company_name),
                )
                area.company_id = company_id
                area.company_name = company_name

            if "branch_id" in changes:
                area.branch_id = changes["branch_id"]
            if area.branch_id is not None:
                self._check_branch(session, area.branch_id, area.company_id)

            for field in ("role", "job_description"):
                if field in changes:
                    setattr(area, field, changes[field])

            if changes.get("is_primary") is True and not area.is_primary:
                self._clear_primary(session, area.contact_id)
                area.is_primary = True
            elif changes.get("is_primary") is False:
                area.is_primary = False

            session.flush()
            read_model = AreaOfActivityRead.model_validate(area)

        observe_area_of_activity_op("update")
        audit.record(
            entity_type=self.entity_type,
            entity_id=str(area_id),
            action="update",
            before=before,
            after=read_model.model_dump(mode="json"),
        )
        events.emit("crm.area_of_activity.updated", area_id=area_id, contact_id=read_model.contact_id)
        return read_model

    def set_primary(self, session: Session, area_id: uuid.UUID) -> AreaOfActivityRead:
        return self.update_area(session, area_id, AreaOfActivityUpdate(is_primary=True))

    def unlink(self, session: Session, area_id: uuid.UUID) -> None:
        """Remove a link. Remaining links keep their flags; no new primary is chosen."""
        with tracer.start_as_current_span("crm.relationships.unlink") as span:
            span.set_attribute("crm.area_id", str(area_id))
            tag_correlation(span)
            with write_transaction(session, self.resource):
                area = area_of_activity_repository.get(session, area_id)
                contact_repository.get_for_update(session, area.contact_id)
                before = AreaOfActivityRead.model_validate(area).model_dump(mode="json")
                session.delete(area)

        observe_area_of_activity_op("unlink")
        audit.record(entity_type=self.entity_type, entity_id=str(area_id), action="unlink", before=before, after=None)
        events.emit("crm.area_of_activity.unlinked", area_id=area_id, contact_id=before["contact_id"])
        logger.info("area_of_activity.unlinked", extra={"area_id": str(area_id), "contact_id": before["contact_id"]})

    def companies_for_contact(self, session: Session, contact_id: uuid.UUID) -> list[AreaOfActivityRead]:
        contact_repository.get(session, contact_id)
        rows = area_of_activity_repository.list(session, {"contact_id": contact_id})
        return [AreaOfActivityRead.model_validate(row) for row in rows]

    def contacts_for_company(self, session: Session, company_id: uuid.UUID) -> list[ContactRead]:
        company_repository.get(session, company_id)
        linked_ids = select(CRMAreaOfActivity.contact_id).where(CRMAreaOfActivity.company_id == company_id)
        # IN over a subquery keeps each contact once however many links point at the company.
        stmt = (
            select(CRMContact)
            .where(CRMContact.id.in_(linked_ids), CRMContact.status != "archived")
            .order_by(CRMContact.first_name.asc(), CRMContact.last_name.asc(), CRMContact.id.asc())
        )
        return [ContactRead.model_validate(row) for row in session.scalars(stmt).all()]

    def find_orphans(self, session: Session) -> list[OrphanLinkRead]:
        stmt = (
            select(CRMAreaOfActivity)
            .outerjoin(CRMCompany, CRMCompany.id == CRMAreaOfActivity.company_id)
            .where(CRMAreaOfActivity.company_id.is_not(None), CRMCompany.id.is_(None))
            .order_by(CRMAreaOfActivity.created_at.asc())
        )
        orphans = [
            OrphanLinkRead(area_id=row.id, contact_id=row.contact_id, company_id=row.company_id)
            for row in session.scalars(stmt).all()
        ]
        if orphans:
            logger.warning("area_of_activity.orphans_found", extra={"count": len(orphans)})
        return orphans

    def _resolve_company(self, session: Session, company: CompanyRef) -> tuple[uuid.UUID | None, str | None]:
        if company.company_id is not None:
            existing = company_repository.get(session, company.company_id)
            if company.company_name is not None and company.company_name.strip() != existing.name:
                raise ValidationError(
                    "company_name follows the linked company; clear company_id to use a free-text name",
                    fields=["company_name"],
                )
            return existing.id, existing.name
        name = (company.company_name or "").strip()
        if not name:
            raise ValidationError(
                "Either company_id or a non-empty company_name is required",
                fields=["company_id", "company_name"],
            )
        return None, name

    def _check_branch(self, session: Session, branch_id: uuid.UUID | None, company_id: uuid.UUID | None) -> None:
        if branch_id is None:
            return
        branch = branch_repository.get(session, branch_id)
        if branch.company_id != company_id:
            raise ValidationError("Branch does not belong to the linked company", fields=["branch_id"])

    def _current_primary(self, session: Session, contact_id: uuid.UUID) -> CRMAreaOfActivity | None:
        return session.scalar(
            select(CRMAreaOfActivity).where(
                CRMAreaOfActivity.contact_id == contact_id,
                CRMAreaOfActivity.is_primary.is_(True),
            )
        )

    def _clear_primary(self, session: Session, contact_id: uuid.UUID) -> None:
        result = session.execute(
            update(CRMAreaOfActivity)
            .where(and_(CRMAreaOfActivity.contact_id == contact_id, CRMAreaOfActivity.is_primary.is_(True)))
            .values(is_primary=False, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount:
            logger.info("area_of_activity.primary_cleared", extra={"contact_id": str(contact_id)})


def _validate_patch(patch: dict[str, Any]) -> AreaOfActivityUpdate:
    return validate_payload(AreaOfActivityUpdate, patch)


relationship_maintainer = RelationshipMaintainer()
