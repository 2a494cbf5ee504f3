from __future__ import annotations

import random
import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from synergy_api import audit, events
from synergy_api.core.database import Base
from synergy_api.crm.errors import ConflictError, NotFoundError, ValidationError
from synergy_api.crm.models import CRMAreaOfActivity, CRMBranch, CRMCompany, CRMContact
from synergy_api.crm.relationships import CompanyRef, RelationshipMaintainer


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def maintainer() -> RelationshipMaintainer:
    return RelationshipMaintainer()


def _contact(session: Session, first_name: str = "Ada", last_name: str = "Lovelace") -> uuid.UUID:
    contact = CRMContact(first_name=first_name, last_name=last_name)
    session.add(contact)
    session.commit()
    return contact.id


def _company(session: Session, name: str) -> uuid.UUID:
    company = CRMCompany(name=name)
    session.add(company)
    session.commit()
    return company.id


def _primary_count(session: Session, contact_id: uuid.UUID) -> int:
    return session.scalar(
        select(func.count())
        .select_from(CRMAreaOfActivity)
        .where(CRMAreaOfActivity.contact_id == contact_id, CRMAreaOfActivity.is_primary.is_(True))
    )


def test_second_primary_link_replaces_the_first(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    c1 = _contact(db_session)
    k1 = _company(db_session, "K1")
    k2 = _company(db_session, "K2")

    first = maintainer.link_contact_to_company(db_session, c1, CompanyRef(company_id=k1), is_primary=True)
    assert first.is_primary is True
    assert len(maintainer.companies_for_contact(db_session, c1)) == 1

    second = maintainer.link_contact_to_company(db_session, c1, CompanyRef(company_id=k2), is_primary=True)

    links = maintainer.companies_for_contact(db_session, c1)
    assert len(links) == 2
    assert [link.id for link in links if link.is_primary] == [second.id]
    assert links[0].company_id == k2


def test_first_link_becomes_primary_and_later_links_do_not(
    db_session: Session,
    maintainer: RelationshipMaintainer,
) -> None:
    contact_id = _contact(db_session)
    k1 = _company(db_session, "Alpha")
    k2 = _company(db_session, "Beta")

    first = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=k1))
    second = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=k2))

    assert first.is_primary is True
    assert second.is_primary is False
    assert _primary_count(db_session, contact_id) == 1


@pytest.mark.parametrize("seed", range(12))
def test_random_link_sequences_keep_exactly_one_primary(
    db_session: Session,
    maintainer: RelationshipMaintainer,
    seed: int,
) -> None:
    rng = random.Random(seed)
    contacts = [_contact(db_session, first_name=f"C{index}") for index in range(3)]
    companies = [_company(db_session, f"Company {index}") for index in range(4)]

    for _ in range(25):
        contact_id = rng.choice(contacts)
        if rng.random() < 0.25:
            company = CompanyRef(company_name=f"Prospect {rng.randint(1, 99)}")
        else:
            company = CompanyRef(company_id=rng.choice(companies))
        maintainer.link_contact_to_company(db_session, contact_id, company, is_primary=rng.random() < 0.5)

        assert _primary_count(db_session, contact_id) == 1


def test_link_requires_company_id_or_name(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    contact_id = _contact(db_session)

    with pytest.raises(ValidationError) as exc_info:
        maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_name="   "))

    assert set(exc_info.value.fields) == {"company_id", "company_name"}
    assert maintainer.companies_for_contact(db_session, contact_id) == []


def test_link_to_unknown_company_is_not_found(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    contact_id = _contact(db_session)

    with pytest.raises(NotFoundError) as exc_info:
        maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=uuid.uuid4()))

    assert exc_info.value.kind == "company"


def test_link_with_placeholder_company_name(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    contact_id = _contact(db_session)

    link = maintainer.link_contact_to_company(
        db_session,
        contact_id,
        CompanyRef(company_name="  Not Yet Inc  "),
        role="Advisor",
    )

    assert link.company_id is None
    assert link.company_name == "Not Yet Inc"
    assert link.role == "Advisor"


def test_branch_must_belong_to_linked_company(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    contact_id = _contact(db_session)
    k1 = _company(db_session, "Owner")
    k2 = _company(db_session, "Other")
    branch = CRMBranch(company_id=k2, name="Elsewhere")
    db_session.add(branch)
    db_session.commit()

    with pytest.raises(ValidationError) as exc_info:
        maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=k1), branch_id=branch.id)

    assert exc_info.value.fields == ["branch_id"]


def test_unlink_only_link_leaves_no_primary(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    contact_id = _contact(db_session)
    k1 = _company(db_session, "Solo")
    link = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=k1), is_primary=True)

    maintainer.unlink(db_session, link.id)

    assert maintainer.companies_for_contact(db_session, contact_id) == []


def test_unlink_primary_does_not_promote_remaining_link(
    db_session: Session,
    maintainer: RelationshipMaintainer,
) -> None:
    contact_id = _contact(db_session)
    primary = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=_company(db_session, "P")))
    other = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=_company(db_session, "O")))

    maintainer.unlink(db_session, primary.id)

    remaining = maintainer.companies_for_contact(db_session, contact_id)
    assert [link.id for link in remaining] == [other.id]
    assert remaining[0].is_primary is False


def test_unlink_unknown_area_is_not_found(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    with pytest.raises(NotFoundError):
        maintainer.unlink(db_session, uuid.uuid4())


def test_set_primary_moves_flag(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    contact_id = _contact(db_session)
    first = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=_company(db_session, "A")))
    second = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=_company(db_session, "B")))

    updated = maintainer.set_primary(db_session, second.id)

    assert updated.is_primary is True
    flags = {link.id: link.is_primary for link in maintainer.companies_for_contact(db_session, contact_id)}
    assert flags == {first.id: False, second.id: True}


def test_update_area_changes_role_and_company(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    contact_id = _contact(db_session)
    link = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_name="Draft Co"))
    company_id = _company(db_session, "Real Co")

    updated = maintainer.update_area(db_session, link.id, {"company_id": company_id, "role": "CTO"})

    assert updated.company_id == company_id
    assert updated.company_name == "Real Co"
    assert updated.role == "CTO"


def test_company_name_cannot_override_a_linked_company(
    db_session: Session,
    maintainer: RelationshipMaintainer,
) -> None:
    contact_id = _contact(db_session)
    company_id = _company(db_session, "Kept Co")
    link = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=company_id))

    with pytest.raises(ValidationError) as exc_info:
        maintainer.update_area(db_session, link.id, {"company_name": "Other"})

    assert exc_info.value.fields == ["company_name"]
    (current,) = maintainer.companies_for_contact(db_session, contact_id)
    assert (current.company_id, current.company_name) == (company_id, "Kept Co")


def test_clearing_company_id_switches_to_free_text_name(
    db_session: Session,
    maintainer: RelationshipMaintainer,
) -> None:
    contact_id = _contact(db_session)
    link = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=_company(db_session, "Was Co")))

    renamed = maintainer.update_area(db_session, link.id, {"company_id": None, "company_name": "Other"})
    assert (renamed.company_id, renamed.company_name) == (None, "Other")

    resent = maintainer.update_area(db_session, link.id, {"company_name": "Other Again"})
    assert resent.company_name == "Other Again"


def test_link_rejects_a_name_that_disagrees_with_the_company(
    db_session: Session,
    maintainer: RelationshipMaintainer,
) -> None:
    contact_id = _contact(db_session)
    company_id = _company(db_session, "Named Co")

    with pytest.raises(ValidationError) as exc_info:
        maintainer.link_contact_to_company(
            db_session,
            contact_id,
            CompanyRef(company_id=company_id, company_name="Someone Else"),
        )
    assert exc_info.value.fields == ["company_name"]

    same = maintainer.link_contact_to_company(
        db_session,
        contact_id,
        CompanyRef(company_id=company_id, company_name=" Named Co "),
    )
    assert same.company_name == "Named Co"


def test_concurrent_primary_insert_is_a_conflict(
    db_session: Session,
    maintainer: RelationshipMaintainer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    contact_id = _contact(db_session)
    first = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=_company(db_session, "K1")))
    other_company = _company(db_session, "K2")
    # A writer that read the contact before the first link committed sees no primary.
    monkeypatch.setattr(maintainer, "_current_primary", lambda session, contact_id: None)

    with pytest.raises(ConflictError):
        maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=other_company))

    links = maintainer.companies_for_contact(db_session, contact_id)
    assert [(link.id, link.is_primary) for link in links] == [(first.id, True)]
    assert _primary_count(db_session, contact_id) == 1


def test_failed_link_keeps_the_earlier_primary(
    db_session: Session,
    maintainer: RelationshipMaintainer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    contact_id = _contact(db_session)
    first = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=_company(db_session, "K1")))
    other_company = _company(db_session, "K2")
    clear_primary = maintainer._clear_primary

    def clear_then_fail(session: Session, contact_id: uuid.UUID) -> None:
        clear_primary(session, contact_id)
        raise RuntimeError("insert failed")

    monkeypatch.setattr(maintainer, "_clear_primary", clear_then_fail)

    with pytest.raises(RuntimeError):
        maintainer.link_contact_to_company(
            db_session,
            contact_id,
            CompanyRef(company_id=other_company),
            is_primary=True,
        )

    db_session.expire_all()
    links = maintainer.companies_for_contact(db_session, contact_id)
    assert [(link.id, link.is_primary) for link in links] == [(first.id, True)]


def test_contacts_for_company_has_no_duplicates(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    company_id = _company(db_session, "Shared")
    ada = _contact(db_session, "Ada", "Lovelace")
    alan = _contact(db_session, "Alan", "Turing")

    maintainer.link_contact_to_company(db_session, ada, CompanyRef(company_id=company_id), role="Engineer")
    maintainer.link_contact_to_company(db_session, ada, CompanyRef(company_id=company_id), role="Advisor")
    maintainer.link_contact_to_company(db_session, alan, CompanyRef(company_id=company_id))

    contacts = maintainer.contacts_for_company(db_session, company_id)

    assert [contact.id for contact in contacts] == [ada, alan]


def test_contacts_for_company_skips_archived_contacts(
    db_session: Session,
    maintainer: RelationshipMaintainer,
) -> None:
    company_id = _company(db_session, "Quiet")
    contact_id = _contact(db_session)
    maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=company_id))
    db_session.get(CRMContact, contact_id).status = "archived"
    db_session.commit()

    assert maintainer.contacts_for_company(db_session, company_id) == []


def test_traversal_tolerates_empty_results(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    assert maintainer.contacts_for_company(db_session, _company(db_session, "Nobody")) == []
    assert maintainer.companies_for_contact(db_session, _contact(db_session)) == []


def test_find_orphans_reports_links_to_removed_companies(
    db_session: Session,
    maintainer: RelationshipMaintainer,
) -> None:
    contact_id = _contact(db_session)
    kept = _company(db_session, "Kept")
    removed = _company(db_session, "Removed")
    maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=kept))
    orphan = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_id=removed))
    maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_name="Placeholder"))

    db_session.execute(delete(CRMCompany).where(CRMCompany.id == removed))
    db_session.commit()

    orphans = maintainer.find_orphans(db_session)

    assert len(orphans) == 1
    assert orphans[0].area_id == orphan.id
    assert orphans[0].contact_id == contact_id
    assert orphans[0].company_id == removed
    assert db_session.get(CRMAreaOfActivity, orphan.id) is not None


def test_link_records_audit_and_event(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    audit.audit_entries.clear()
    events.published_events.clear()
    contact_id = _contact(db_session)

    link = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_name="Audit Co"))

    assert any(entry["entity_id"] == str(link.id) and entry["action"] == "link" for entry in audit.audit_entries)
    linked = [event for event in events.published_events if event["event_type"] == "crm.area_of_activity.linked"]
    assert linked
    assert linked[-1]["payload"]["contact_id"] == str(contact_id)
    assert linked[-1]["entity_type"] == "crm.area_of_activity"
    assert linked[-1]["entity_id"] == str(link.id)


def test_update_audit_lists_changed_fields(db_session: Session, maintainer: RelationshipMaintainer) -> None:
    contact_id = _contact(db_session)
    link = maintainer.link_contact_to_company(db_session, contact_id, CompanyRef(company_name="Audit Co"))
    audit.audit_entries.clear()

    maintainer.update_area(db_session, link.id, {"role": "Buyer"})

    (entry,) = audit.entries_for("crm.area_of_activity", str(link.id))
    assert entry["action"] == "update"
    assert entry["changed_fields"] == ["role"]
