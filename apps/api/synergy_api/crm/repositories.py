from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from synergy_api.crm.errors import ConflictError, NotFoundError, ValidationError
from synergy_api.crm.models import (
    CRMAreaOfActivity,
    CRMBranch,
    CRMCompany,
    CRMContact,
    CRMContactEmail,
    CRMDeal,
    CRMPipelineStage,
    CRMSynergy,
)
from synergy_api.metrics import observe_conflict


logger = logging.getLogger("synergy_api.crm.store")

ModelT = TypeVar("ModelT")


@contextmanager
def write_transaction(session: Session, resource: str) -> Generator[Session, None, None]:
    """Commit the enclosed writes once, or roll all of them back.

    Unique-index violations surface as ``ConflictError``; every other error is re-raised
    after the rollback.
    """
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        observe_conflict(resource)
        logger.warning("crm.write_conflict", extra={"resource": resource, "error": str(exc.orig)[:500]})
        raise ConflictError(f"Concurrent or duplicate write rejected for {resource}") from exc
    except Exception:
        session.rollback()
        raise


class BaseRepository(Generic[ModelT]):
    resource = ""
    model: type[ModelT]
    archivable = False

    def get(self, session: Session, entity_id: uuid.UUID) -> ModelT:
        entity = session.get(self.model, entity_id)
        if entity is None:
            raise NotFoundError(self.resource, entity_id)
        return entity

    def get_for_update(self, session: Session, entity_id: uuid.UUID) -> ModelT:
        # Row lock on backends that support it; SQLite serializes writers on its own.
        entity = session.scalar(
            select(self.model).where(self.model.id == entity_id).with_for_update()  # type: ignore[attr-defined]
        )
        if entity is None:
            raise NotFoundError(self.resource, entity_id)
        return entity

    def exists(self, session: Session, entity_id: uuid.UUID) -> bool:
        return session.get(self.model, entity_id) is not None

    def list(
        self,
        session: Session,
        filters: dict[str, Any] | None = None,
        *,
        include_archived: bool = False,
    ) -> list[ModelT]:
        stmt: Select[Any] = select(self.model)
        for key, value in (filters or {}).items():
            column = getattr(self.model, key, None)
            if column is None or key.startswith("_") or not hasattr(column, "property"):
                raise ValidationError(f"Unknown filter '{key}' for {self.resource}", fields=[key])
            stmt = stmt.where(column == value)
        if self.archivable and not include_archived and "status" not in (filters or {}):
            stmt = stmt.where(self.model.status != "archived")  # type: ignore[attr-defined]
        return list(session.scalars(self.apply_ordering(stmt)).all())

    def apply_ordering(self, stmt: Select[Any]) -> Select[Any]:
        return stmt.order_by(self.model.created_at.asc())  # type: ignore[attr-defined]


class ContactRepository(BaseRepository[CRMContact]):
    resource = "contact"
    model = CRMContact
    archivable = True

    def apply_ordering(self, stmt: Select[Any]) -> Select[Any]:
        return stmt.order_by(CRMContact.first_name.asc(), CRMContact.last_name.asc())


class ContactEmailRepository(BaseRepository[CRMContactEmail]):
    resource = "contact_email"
    model = CRMContactEmail

    def apply_ordering(self, stmt: Select[Any]) -> Select[Any]:
        return stmt.order_by(CRMContactEmail.is_primary.desc(), CRMContactEmail.type.asc())


class CompanyRepository(BaseRepository[CRMCompany]):
    resource = "company"
    model = CRMCompany
    archivable = True

    def apply_ordering(self, stmt: Select[Any]) -> Select[Any]:
        return stmt.order_by(CRMCompany.name.asc())


class BranchRepository(BaseRepository[CRMBranch]):
    resource = "branch"
    model = CRMBranch

    def apply_ordering(self, stmt: Select[Any]) -> Select[Any]:
        return stmt.order_by(CRMBranch.is_headquarters.desc(), CRMBranch.name.asc())


class PipelineStageRepository(BaseRepository[CRMPipelineStage]):
    resource = "pipeline_stage"
    model = CRMPipelineStage

    def apply_ordering(self, stmt: Select[Any]) -> Select[Any]:
        return stmt.order_by(CRMPipelineStage.position.asc())


class DealRepository(BaseRepository[CRMDeal]):
    resource = "deal"
    model = CRMDeal
    archivable = True


class AreaOfActivityRepository(BaseRepository[CRMAreaOfActivity]):
    resource = "area_of_activity"
    model = CRMAreaOfActivity

    def apply_ordering(self, stmt: Select[Any]) -> Select[Any]:
        return stmt.order_by(CRMAreaOfActivity.is_primary.desc(), CRMAreaOfActivity.company_name.asc())


class SynergyRepository(BaseRepository[CRMSynergy]):
    resource = "synergy"
    model = CRMSynergy
    archivable = True

    def find_active(
        self,
        session: Session,
        contact_id: uuid.UUID,
        company_id: uuid.UUID,
        deal_id: uuid.UUID,
    ) -> CRMSynergy | None:
        return session.scalar(
            select(CRMSynergy).where(
                CRMSynergy.contact_id == contact_id,
                CRMSynergy.company_id == company_id,
                CRMSynergy.deal_id == deal_id,
                CRMSynergy.status != "archived",
            )
        )


contact_repository = ContactRepository()
contact_email_repository = ContactEmailRepository()
company_repository = CompanyRepository()
branch_repository = BranchRepository()
pipeline_stage_repository = PipelineStageRepository()
deal_repository = DealRepository()
area_of_activity_repository = AreaOfActivityRepository()
synergy_repository = SynergyRepository()
