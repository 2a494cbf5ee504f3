from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from synergy_api import audit, events
from synergy_api.core.config import get_settings
from synergy_api.crm.errors import ConflictError, ImmutableFieldError, ValidationError
from synergy_api.crm.models import CRMDeal, CRMSynergy, utcnow
from synergy_api.crm.repositories import synergy_repository, write_transaction
from synergy_api.crm.schemas import StaleSynergyRead, SynergyRead, SynergyUpdate, validate_payload
from synergy_api.metrics import observe_synergy_transition
from synergy_api.otel import get_tracer, tag_correlation


logger = logging.getLogger("synergy_api.crm.synergies")
tracer = get_tracer("synergy_api.crm.synergies")

ARCHIVED = "archived"
COMPLETED = "Completed"
OPEN_STATUSES = frozenset({"Active", "Inactive", "Pending", "On Hold"})
IMMUTABLE_FIELDS = ("contact_id", "company_id", "deal_id")


def check_transition(current: str, target: str) -> None:
    """Open statuses move freely among themselves; Completed may only be archived; archived never moves."""
    if current == target or current in OPEN_STATUSES:
        return
    if current == COMPLETED and target == ARCHIVED:
        return
    message = "Archived synergies cannot change" if current == ARCHIVED else "Completed synergies can only be archived"
    raise ConflictError(message, details={"from": current, "to": target})


@dataclass
class DerivationOutcome:
    deal_id: uuid.UUID
    created: list[SynergyRead] = field(default_factory=list)
    archived: list[SynergyRead] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.archived)


class SynergyDeriver:
    entity_type = "crm.synergy"
    resource = "synergy"

    def on_deal_association_changed(
        self,
        session: Session,
        deal: CRMDeal,
        previous_contact_id: uuid.UUID | None,
        previous_company_id: uuid.UUID | None,
    ) -> DerivationOutcome:
        """Bring the deal's synergies in line with its current contact and company.

        Runs inside the caller's transaction and never commits; callers hold the deal
        row lock and hand the returned outcome to ``publish`` once their commit succeeded.
        """
        outcome = DerivationOutcome(deal_id=deal.id)
        with tracer.start_as_current_span("crm.synergies.derive") as span:
            span.set_attribute("crm.deal_id", str(deal.id))
            tag_correlation(span)
            previous_complete = previous_contact_id is not None and previous_company_id is not None
            current_complete = deal.contact_id is not None and deal.company_id is not None
            unchanged = previous_contact_id == deal.contact_id and previous_company_id == deal.company_id

            if previous_complete and not unchanged:
                stale = synergy_repository.find_active(session, previous_contact_id, previous_company_id, deal.id)
                if stale is not None:
                    self._archive_row(stale)
                    session.flush()
                    outcome.archived.append(SynergyRead.model_validate(stale))

            if current_complete and deal.status != ARCHIVED:
                existing = synergy_repository.find_active(session, deal.contact_id, deal.company_id, deal.id)
                if existing is None:
                    synergy = CRMSynergy(
                        contact_id=deal.contact_id,
                        company_id=deal.company_id,
                        deal_id=deal.id,
                        type=get_settings().synergy_default_type,
                        status="Active",
                        start_date=utcnow().date(),
                    )
                    session.add(synergy)
                    session.flush()
                    outcome.created.append(SynergyRead.model_validate(synergy))

            span.set_attribute("crm.synergies.created", len(outcome.created))
            span.set_attribute("crm.synergies.archived", len(outcome.archived))
        return outcome

    def archive_for_deal(self, session: Session, deal: CRMDeal) -> DerivationOutcome:
        outcome = DerivationOutcome(deal_id=deal.id)
        for synergy in synergy_repository.list(session, {"deal_id": deal.id}):
            self._archive_row(synergy)
            outcome.archived.append(SynergyRead.model_validate(synergy))
        session.flush()
        return outcome

    def publish(self, outcome: DerivationOutcome) -> None:
        if not outcome.changed:
            return
        for created in outcome.created:
            observe_synergy_transition("created")
            audit.record(
                entity_type=self.entity_type,
                entity_id=str(created.id),
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
            )
            events.emit(
                "crm.synergy.created",
                synergy_id=created.id,
                deal_id=created.deal_id,
                contact_id=created.contact_id,
                company_id=created.company_id,
            )
            logger.info("synergy.created", extra=_log_fields(created))
        for archived in outcome.archived:
            self._announce_archived(archived, previous_status=None)

    def get_synergy(self, session: Session, synergy_id: uuid.UUID) -> SynergyRead:
        return SynergyRead.model_validate(synergy_repository.get(session, synergy_id))

    def list_active_for_contact(self, session: Session, contact_id: uuid.UUID) -> list[SynergyRead]:
        return self._list_active(session, CRMSynergy.contact_id == contact_id)

    def list_active_for_company(self, session: Session, company_id: uuid.UUID) -> list[SynergyRead]:
        return self._list_active(session, CRMSynergy.company_id == company_id)

    def list_for_deal(
        self,
        session: Session,
        deal_id: uuid.UUID,
        *,
        include_archived: bool = False,
    ) -> list[SynergyRead]:
        rows = synergy_repository.list(session, {"deal_id": deal_id}, include_archived=include_archived)
        return [SynergyRead.model_validate(row) for row in rows]

    def update_synergy(
        self,
        session: Session,
        synergy_id: uuid.UUID,
        patch: SynergyUpdate | dict[str, Any],
    ) -> SynergyRead:
        touched = patch.model_fields_set if isinstance(patch, SynergyUpdate) else set(patch)
        immutable = [name for name in IMMUTABLE_FIELDS if name in touched]
        if immutable:
            raise ImmutableFieldError(self.resource, immutable)

        dto = validate_payload(SynergyUpdate, patch)
        requested = dto.model_dump(exclude_unset=True)
        if "status" in requested and requested["status"] is None:
            raise ValidationError("Synergy status cannot be cleared", fields=["status"])

        with write_transaction(session, self.resource):
            synergy = synergy_repository.get_for_update(session, synergy_id)
            before = SynergyRead.model_validate(synergy)
            changes = {key: value for key, value in requested.items() if getattr(synergy, key) != value}
            if not changes:
                return before
            if synergy.status == ARCHIVED:
                raise ConflictError(
                    "Archived synergies cannot change",
                    details={"fields": sorted(changes)},
                )

            target_status = changes.get("status", synergy.status)
            check_transition(synergy.status, target_status)

            if target_status == ARCHIVED:
                self._archive_row(synergy, end_date=changes.get("end_date"))
            else:
                synergy.status = target_status
                if "end_date" in changes:
                    synergy.end_date = changes["end_date"]
                elif target_status == COMPLETED and synergy.end_date is None:
                    synergy.end_date = utcnow().date()
            if "description" in changes:
                synergy.description = changes["description"]

            session.flush()
            read_model = SynergyRead.model_validate(synergy)

        if target_status == ARCHIVED:
            self._announce_archived(read_model, previous_status=before.status)
        else:
            if before.status != read_model.status:
                observe_synergy_transition(_action_for(read_model.status))
                logger.info(
                    "synergy.status_changed",
                    extra={
                        **_log_fields(read_model),
                        "from_status": before.status,
                        "to_status": read_model.status,
                    },
                )
            audit.record(
                entity_type=self.entity_type,
                entity_id=str(synergy_id),
                action="update",
                before=before.model_dump(mode="json"),
                after=read_model.model_dump(mode="json"),
            )
            events.emit("crm.synergy.updated", synergy_id=synergy_id, status=read_model.status)
        return read_model

    def archive_synergy(self, session: Session, synergy_id: uuid.UUID) -> SynergyRead:
        with write_transaction(session, self.resource):
            synergy = synergy_repository.get_for_update(session, synergy_id)
            previous_status = synergy.status
            if previous_status == ARCHIVED:
                return SynergyRead.model_validate(synergy)
            self._archive_row(synergy)
            session.flush()
            read_model = SynergyRead.model_validate(synergy)

        self._announce_archived(read_model, previous_status=previous_status)
        return read_model

    def find_stale(self, session: Session) -> list[StaleSynergyRead]:
        """Active synergies whose deal is gone, archived, or no longer carries the same pair."""
        stmt = (
            select(CRMSynergy, CRMDeal)
            .outerjoin(CRMDeal, CRMDeal.id == CRMSynergy.deal_id)
            .where(CRMSynergy.status != ARCHIVED)
            .order_by(CRMSynergy.created_at.asc())
        )
        stale: list[StaleSynergyRead] = []
        for synergy, deal in session.execute(stmt).all():
            if deal is None:
                reason = "deal_missing"
            elif deal.status == ARCHIVED:
                reason = "deal_archived"
            elif deal.contact_id != synergy.contact_id or deal.company_id != synergy.company_id:
                reason = "association_mismatch"
            else:
                continue
            stale.append(
                StaleSynergyRead(
                    synergy_id=synergy.id,
                    deal_id=synergy.deal_id,
                    contact_id=synergy.contact_id,
                    company_id=synergy.company_id,
                    reason=reason,
                )
            )
        if stale:
            logger.warning("synergy.stale_found", extra={"count": len(stale)})
        return stale

    def _list_active(self, session: Session, criterion: Any) -> list[SynergyRead]:
        stmt = (
            select(CRMSynergy)
            .where(criterion, CRMSynergy.status != ARCHIVED)
            .order_by(CRMSynergy.start_date.desc(), CRMSynergy.created_at.desc())
        )
        return [SynergyRead.model_validate(row) for row in session.scalars(stmt).all()]

    def _archive_row(self, synergy: CRMSynergy, end_date: Any = None) -> None:
        synergy.status = ARCHIVED
        synergy.end_date = end_date or utcnow().date()

    def _announce_archived(self, archived: SynergyRead, previous_status: str | None) -> None:
        observe_synergy_transition("archived")
        audit.record(
            entity_type=self.entity_type,
            entity_id=str(archived.id),
            action="archive",
            before={"status": previous_status} if previous_status else None,
            after=archived.model_dump(mode="json"),
        )
        events.emit("crm.synergy.archived", synergy_id=archived.id, deal_id=archived.deal_id)
        logger.info("synergy.archived", extra=_log_fields(archived))


def _action_for(status: str) -> str:
    return "completed" if status == COMPLETED else "status_changed"


def _log_fields(synergy: SynergyRead) -> dict[str, str]:
    return {
        "synergy_id": str(synergy.id),
        "deal_id": str(synergy.deal_id),
        "contact_id": str(synergy.contact_id),
        "company_id": str(synergy.company_id),
    }


synergy_deriver = SynergyDeriver()
