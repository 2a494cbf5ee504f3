from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from synergy_api import audit, events
from synergy_api.crm.errors import ConflictError
from synergy_api.crm.models import CRMContactEmail, utcnow
from synergy_api.crm.repositories import contact_email_repository, contact_repository, write_transaction
from synergy_api.crm.schemas import ContactEmailCreate, ContactEmailRead, validate_payload


logger = logging.getLogger("synergy_api.crm.emails")


class ContactEmailService:
    """Keeps exactly one primary address per contact that has any addresses at all."""

    entity_type = "crm.contact_email"
    resource = "contact_email"

    def add_email(
        self,
        session: Session,
        contact_id: uuid.UUID,
        payload: ContactEmailCreate | dict[str, Any],
    ) -> ContactEmailRead:
        dto = validate_payload(ContactEmailCreate, payload)
        with write_transaction(session, self.resource):
            contact_repository.get_for_update(session, contact_id)
            email = self.attach(session, contact_id, dto)
            read_model = ContactEmailRead.model_validate(email)

        audit.record(
            entity_type=self.entity_type,
            entity_id=str(read_model.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
        )
        events.emit("crm.contact_email.added", contact_id=contact_id, email_id=read_model.id)
        return read_model

    def attach(self, session: Session, contact_id: uuid.UUID, dto: ContactEmailCreate) -> CRMContactEmail:
        """Insert an address inside the caller's transaction; the contact must already be locked."""
        duplicate = session.scalar(
            select(CRMContactEmail.id).where(
                CRMContactEmail.contact_id == contact_id,
                CRMContactEmail.email_address == dto.email_address,
            )
        )
        if duplicate is not None:
            raise ConflictError(f"Email address '{dto.email_address}' already exists for this contact")

        has_primary = self._primary_for(session, contact_id) is not None
        make_primary = dto.is_primary or not has_primary
        if make_primary and has_primary:
            self._clear_primary(session, contact_id)

        email = CRMContactEmail(
            contact_id=contact_id,
            email_address=dto.email_address,
            type=dto.type,
            is_primary=make_primary,
        )
        session.add(email)
        session.flush()
        return email

    def set_primary_email(self, session: Session, email_id: uuid.UUID) -> ContactEmailRead:
        with write_transaction(session, self.resource):
            email = contact_email_repository.get(session, email_id)
            contact_repository.get_for_update(session, email.contact_id)
            if not email.is_primary:
                self._clear_primary(session, email.contact_id)
                email.is_primary = True
                session.flush()
            read_model = ContactEmailRead.model_validate(email)

        events.emit("crm.contact_email.primary_changed", contact_id=read_model.contact_id, email_id=email_id)
        return read_model

    def remove_email(self, session: Session, email_id: uuid.UUID) -> None:
        """Delete an address; when it was the primary, the oldest remaining address takes over."""
        promoted: CRMContactEmail | None = None
        with write_transaction(session, self.resource):
            email = contact_email_repository.get(session, email_id)
            contact_id = email.contact_id
            contact_repository.get_for_update(session, contact_id)
            before = ContactEmailRead.model_validate(email).model_dump(mode="json")
            was_primary = email.is_primary
            session.delete(email)
            session.flush()

            if was_primary:
                promoted = session.scalar(
                    select(CRMContactEmail)
                    .where(CRMContactEmail.contact_id == contact_id)
                    .order_by(CRMContactEmail.created_at.asc(), CRMContactEmail.id.asc())
                    .limit(1)
                )
                if promoted is not None:
                    promoted.is_primary = True
                    session.flush()
            promoted_id = promoted.id if promoted is not None else None

        audit.record(entity_type=self.entity_type, entity_id=str(email_id), action="delete", before=before, after=None)
        events.emit("crm.contact_email.removed", contact_id=contact_id, email_id=email_id)
        if promoted_id is not None:
            logger.info(
                "contact_email.primary_promoted",
                extra={"contact_id": str(contact_id), "email_id": str(promoted_id)},
            )

    def list_emails(self, session: Session, contact_id: uuid.UUID) -> list[ContactEmailRead]:
        contact_repository.get(session, contact_id)
        rows = contact_email_repository.list(session, {"contact_id": contact_id})
        return [ContactEmailRead.model_validate(row) for row in rows]

    def _primary_for(self, session: Session, contact_id: uuid.UUID) -> uuid.UUID | None:
        return session.scalar(
            select(CRMContactEmail.id).where(
                CRMContactEmail.contact_id == contact_id,
                CRMContactEmail.is_primary.is_(True),
            )
        )

    def _clear_primary(self, session: Session, contact_id: uuid.UUID) -> None:
        session.execute(
            update(CRMContactEmail)
            .where(CRMContactEmail.contact_id == contact_id, CRMContactEmail.is_primary.is_(True))
            .values(is_primary=False, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )


contact_email_service = ContactEmailService()
