from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from synergy_api import audit, events
from synergy_api.core.config import get_settings
from synergy_api.crm.errors import ConflictError, ValidationError
from synergy_api.crm.models import CRMDeal, CRMPipelineStage
from synergy_api.crm.repositories import (
    branch_repository,
    company_repository,
    contact_repository,
    deal_repository,
    pipeline_stage_repository,
    write_transaction,
)
from synergy_api.crm.schemas import (
    DealCreate,
    DealRead,
    DealUpdate,
    PipelineStageRead,
    validate_payload,
)
from synergy_api.crm.synergies import DerivationOutcome, SynergyDeriver, synergy_deriver


logger = logging.getLogger("synergy_api.crm.deals")


class DealService:
    entity_type = "crm.deal"
    resource = "deal"

    def __init__(self, deriver: SynergyDeriver | None = None) -> None:
        self.deriver = deriver or synergy_deriver

    def create_deal(self, session: Session, payload: DealCreate | dict[str, Any]) -> DealRead:
        dto = validate_payload(DealCreate, payload)
        with write_transaction(session, self.resource):
            self._check_references(session, dto.model_dump())
            deal = CRMDeal(
                name=dto.name,
                value=dto.value,
                stage_id=dto.stage_id,
                contact_id=dto.contact_id,
                company_id=dto.company_id,
                branch_id=dto.branch_id,
                expected_close_date=dto.expected_close_date,
                notes=dto.notes,
                tags=list(dto.tags),
            )
            session.add(deal)
            session.flush()
            outcome = self.deriver.on_deal_association_changed(session, deal, None, None)
            read_model = DealRead.model_validate(deal)

        audit.record(
            entity_type=self.entity_type,
            entity_id=str(read_model.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
        )
        events.emit("crm.deal.created", deal_id=read_model.id, stage_id=read_model.stage_id)
        self.deriver.publish(outcome)
        return read_model

    def update_deal(
        self,
        session: Session,
        deal_id: uuid.UUID,
        patch: DealUpdate | dict[str, Any],
    ) -> DealRead:
        """Apply a deal patch and re-derive synergies for the new contact/company pair in one commit."""
        dto = validate_payload(DealUpdate, patch)
        changes = dto.model_dump(exclude_unset=True)

        with write_transaction(session, self.resource):
            deal = deal_repository.get_for_update(session, deal_id)
            if deal.status == "archived":
                raise ConflictError("Archived deals cannot be edited", details={"deal_id": str(deal_id)})
            before = DealRead.model_validate(deal)

            if "name" in changes and changes["name"] is None:
                raise ValidationError("Deal name cannot be cleared", fields=["name"])
            self._check_references(session, changes, company_id=changes.get("company_id", deal.company_id))

            for key, value in changes.items():
                setattr(deal, key, list(value or []) if key == "tags" else value)
            session.flush()

            outcome = DerivationOutcome(deal_id=deal.id)
            if (before.contact_id, before.company_id) != (deal.contact_id, deal.company_id):
                outcome = self.deriver.on_deal_association_changed(
                    session,
                    deal,
                    previous_contact_id=before.contact_id,
                    previous_company_id=before.company_id,
                )
            read_model = DealRead.model_validate(deal)

        audit.record(
            entity_type=self.entity_type,
            entity_id=str(deal_id),
            action="update",
            before=before.model_dump(mode="json"),
            after=read_model.model_dump(mode="json"),
        )
        events.emit("crm.deal.updated", deal_id=deal_id, changed_fields=sorted(changes))
        if before.stage_id != read_model.stage_id:
            events.emit(
                "crm.deal.stage_changed",
                deal_id=deal_id,
                from_stage_id=before.stage_id,
                to_stage_id=read_model.stage_id,
            )
        self.deriver.publish(outcome)
        return read_model

    def move_stage(self, session: Session, deal_id: uuid.UUID, stage_id: uuid.UUID) -> DealRead:
        return self.update_deal(session, deal_id, DealUpdate(stage_id=stage_id))

    def archive_deal(self, session: Session, deal_id: uuid.UUID) -> DealRead:
        with write_transaction(session, self.resource):
            deal = deal_repository.get_for_update(session, deal_id)
            if deal.status == "archived":
                return DealRead.model_validate(deal)
            deal.status = "archived"
            outcome = self.deriver.archive_for_deal(session, deal)
            read_model = DealRead.model_validate(deal)

        audit.record(
            entity_type=self.entity_type,
            entity_id=str(deal_id),
            action="archive",
            before={"status": "active"},
            after=read_model.model_dump(mode="json"),
        )
        events.emit("crm.deal.archived", deal_id=deal_id)
        self.deriver.publish(outcome)
        logger.info("deal.archived", extra={"deal_id": str(deal_id), "count": len(outcome.archived)})
        return read_model

    def ensure_default_stages(self, session: Session) -> list[PipelineStageRead]:
        """Seed the configured pipeline when no stages exist yet."""
        with write_transaction(session, "pipeline_stage"):
            existing = session.scalar(select(func.count()).select_from(CRMPipelineStage)) or 0
            if not existing:
                for position, name in enumerate(get_settings().default_pipeline_stages):
                    session.add(CRMPipelineStage(name=name, position=position))
                session.flush()
                logger.info("pipeline_stage.seeded", extra={"count": len(get_settings().default_pipeline_stages)})
        return [PipelineStageRead.model_validate(row) for row in pipeline_stage_repository.list(session)]

    def _check_references(
        self,
        session: Session,
        values: dict[str, Any],
        *,
        company_id: uuid.UUID | None = None,
    ) -> None:
        if values.get("stage_id") is not None:
            pipeline_stage_repository.get(session, values["stage_id"])
        if values.get("contact_id") is not None:
            contact_repository.get(session, values["contact_id"])
        if values.get("company_id") is not None:
            company_repository.get(session, values["company_id"])
        if values.get("branch_id") is not None:
            branch = branch_repository.get(session, values["branch_id"])
            owner = company_id if company_id is not None else values.get("company_id")
            if branch.company_id != owner:
                raise ValidationError("Branch does not belong to the deal's company", fields=["branch_id"])


deal_service = DealService()
