from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from synergy_api.core.config import get_settings
from synergy_api.core.database import Base, get_db
from synergy_api.crm.models import CRMCompany
from synergy_api.main import app
from synergy_api.middleware.rate_limit import reset_rate_limiter


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_contact(client: TestClient, first_name: str = "Carol", last_name: str = "Shaw") -> dict:
    response = client.post("/api/crm/contacts", json={"first_name": first_name, "last_name": last_name})
    assert response.status_code == 201
    return response.json()


def _create_company(client: TestClient, name: str) -> dict:
    response = client.post("/api/crm/companies", json={"name": name})
    assert response.status_code == 201
    return response.json()


def _create_deal(client: TestClient, **fields: str | None) -> dict:
    response = client.post("/api/crm/deals", json={"name": "Deal", **fields})
    assert response.status_code == 201
    return response.json()


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_deal_scenario_over_http(client: TestClient) -> None:
    c1 = _create_contact(client, "Cora", "One")
    c2 = _create_contact(client, "Cyril", "Two")
    k1 = _create_company(client, "Kilo")
    d1 = _create_deal(client)

    assert client.get(f"/api/crm/deals/{d1['id']}/synergies").json() == []

    patched = client.patch(f"/api/crm/deals/{d1['id']}", json={"contact_id": c1["id"], "company_id": k1["id"]})
    assert patched.status_code == 200
    (s1,) = client.get(f"/api/crm/contacts/{c1['id']}/synergies").json()
    assert (s1["contact_id"], s1["company_id"], s1["deal_id"], s1["status"]) == (c1["id"], k1["id"], d1["id"], "Active")

    moved = client.patch(f"/api/crm/deals/{d1['id']}", json={"contact_id": c2["id"]})
    assert moved.status_code == 200

    history = client.get(f"/api/crm/deals/{d1['id']}/synergies").json()
    by_id = {row["id"]: row for row in history}
    assert by_id[s1["id"]]["status"] == "archived"
    assert by_id[s1["id"]]["end_date"] is not None
    active = client.get(f"/api/crm/companies/{k1['id']}/synergies").json()
    assert [(row["contact_id"], row["status"]) for row in active] == [(c2["id"], "Active")]


def test_generic_synergy_create_is_a_validation_error(client: TestClient) -> None:
    contact = _create_contact(client)
    company = _create_company(client, "Nope Inc")

    response = client.post(
        "/api/crm/synergies",
        json={"contact_id": contact["id"], "company_id": company["id"]},
        headers={"X-Correlation-Id": "synergy-create-1"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["details"] == {"fields": ["deal_id"]}
    assert body["correlation_id"] == "synergy-create-1"


def test_synergy_patch_of_identity_field_is_rejected(client: TestClient) -> None:
    contact = _create_contact(client)
    company = _create_company(client, "Immutable Ltd")
    _create_deal(client, contact_id=contact["id"], company_id=company["id"])
    (synergy,) = client.get(f"/api/crm/contacts/{contact['id']}/synergies").json()

    response = client.patch(f"/api/crm/synergies/{synergy['id']}", json={"company_id": str(uuid.uuid4())})

    assert response.status_code == 409
    assert response.json()["code"] == "immutable_field"
    assert response.json()["details"] == {"fields": ["company_id"]}
    assert client.get(f"/api/crm/synergies/{synergy['id']}").json()["company_id"] == company["id"]


def test_synergy_delete_archives_and_archived_rejects_edits(client: TestClient) -> None:
    contact = _create_contact(client)
    company = _create_company(client, "Archive Co")
    _create_deal(client, contact_id=contact["id"], company_id=company["id"])
    (synergy,) = client.get(f"/api/crm/contacts/{contact['id']}/synergies").json()

    deleted = client.delete(f"/api/crm/synergies/{synergy['id']}")
    assert deleted.status_code == 200
    assert deleted.json()["status"] == "archived"

    assert client.get(f"/api/crm/synergies/{synergy['id']}").status_code == 200
    assert client.get(f"/api/crm/contacts/{contact['id']}/synergies").json() == []

    edit = client.patch(f"/api/crm/synergies/{synergy['id']}", json={"status": "Active"})
    assert edit.status_code == 409
    assert edit.json()["code"] == "conflict"


def test_link_and_traverse_over_http(client: TestClient) -> None:
    contact = _create_contact(client)
    k1 = _create_company(client, "First Co")
    k2 = _create_company(client, "Second Co")

    first = client.post(
        f"/api/crm/contacts/{contact['id']}/areas-of-activity",
        json={"company_id": k1["id"], "is_primary": True, "role": "Founder"},
    )
    second = client.post(
        f"/api/crm/contacts/{contact['id']}/areas-of-activity",
        json={"company_id": k2["id"], "is_primary": True},
    )
    assert first.status_code == 201
    assert second.status_code == 201

    links = client.get(f"/api/crm/contacts/{contact['id']}/areas-of-activity").json()
    assert [(link["company_id"], link["is_primary"]) for link in links] == [(k2["id"], True), (k1["id"], False)]

    contacts = client.get(f"/api/crm/companies/{k1['id']}/contacts").json()
    assert [row["id"] for row in contacts] == [contact["id"]]

    primary = client.post(f"/api/crm/areas-of-activity/{first.json()['id']}/primary")
    assert primary.status_code == 200
    assert primary.json()["is_primary"] is True

    unlinked = client.delete(f"/api/crm/areas-of-activity/{second.json()['id']}")
    assert unlinked.status_code == 200
    assert len(client.get(f"/api/crm/contacts/{contact['id']}/areas-of-activity").json()) == 1


def test_link_without_company_is_a_validation_error(client: TestClient) -> None:
    contact = _create_contact(client)

    response = client.post(f"/api/crm/contacts/{contact['id']}/areas-of-activity", json={"role": "Ghost"})

    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"
    assert set(response.json()["details"]["fields"]) == {"company_id", "company_name"}


def test_unknown_contact_is_not_found_envelope(client: TestClient) -> None:
    missing = uuid.uuid4()

    response = client.get(f"/api/crm/contacts/{missing}", headers={"X-Correlation-Id": "nf-1"})

    assert response.status_code == 404
    assert response.json() == {
        "code": "not_found",
        "message": "contact not found",
        "details": {"kind": "contact", "id": str(missing)},
        "correlation_id": "nf-1",
    }


def test_request_body_errors_use_the_envelope(client: TestClient) -> None:
    response = client.post("/api/crm/companies", json={"website": "https://example.com"})

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["details"] == {"fields": ["name"]}
    assert body["correlation_id"]


def test_contact_delete_archives(client: TestClient) -> None:
    contact = _create_contact(client)

    response = client.delete(f"/api/crm/contacts/{contact['id']}")

    assert response.status_code == 200
    assert response.json()["status"] == "archived"
    assert client.get("/api/crm/contacts").json() == []
    assert len(client.get("/api/crm/contacts", params={"include_archived": True}).json()) == 1


def test_contact_emails_over_http(client: TestClient) -> None:
    contact = _create_contact(client)

    first = client.post(f"/api/crm/contacts/{contact['id']}/emails", json={"email_address": "carol@work.example"})
    second = client.post(
        f"/api/crm/contacts/{contact['id']}/emails",
        json={"email_address": "carol@home.example", "type": "personal"},
    )
    assert first.json()["is_primary"] is True
    assert second.json()["is_primary"] is False

    client.post(f"/api/crm/contact-emails/{second.json()['id']}/primary")
    removed = client.delete(f"/api/crm/contact-emails/{second.json()['id']}")
    assert removed.status_code == 200

    emails = client.get(f"/api/crm/contacts/{contact['id']}/emails").json()
    assert [(email["email_address"], email["is_primary"]) for email in emails] == [("carol@work.example", True)]


def test_pipeline_defaults_and_stage_move(client: TestClient) -> None:
    seeded = client.post("/api/crm/pipeline-stages/defaults")
    assert seeded.status_code == 200
    stages = seeded.json()
    assert [stage["name"] for stage in stages][:2] == ["Lead", "Qualified"]

    again = client.post("/api/crm/pipeline-stages/defaults").json()
    assert len(again) == len(stages)

    deal = _create_deal(client, stage_id=stages[0]["id"])
    moved = client.post(f"/api/crm/deals/{deal['id']}/stage", json={"stage_id": stages[3]["id"]})
    assert moved.status_code == 200
    assert moved.json()["stage_id"] == stages[3]["id"]

    missing_stage = client.post(f"/api/crm/deals/{deal['id']}/stage", json={"stage_id": str(uuid.uuid4())})
    assert missing_stage.status_code == 404


def test_branches_over_http(client: TestClient) -> None:
    company = _create_company(client, "Branch Co")

    created = client.post(f"/api/crm/companies/{company['id']}/branches", json={"name": "Porto office"})
    assert created.status_code == 201
    assert created.json()["company_id"] == company["id"]

    listed = client.get(f"/api/crm/companies/{company['id']}/branches").json()
    assert [branch["name"] for branch in listed] == ["Porto office"]

    assert client.delete(f"/api/crm/branches/{created.json()['id']}").status_code == 200
    assert client.get(f"/api/crm/companies/{company['id']}/branches").json() == []


def test_diagnostics_endpoints(client: TestClient, db_session: Session) -> None:
    contact = _create_contact(client)
    company = _create_company(client, "Vanishing Co")
    link = client.post(f"/api/crm/contacts/{contact['id']}/areas-of-activity", json={"company_id": company["id"]})
    assert link.status_code == 201

    db_session.execute(delete(CRMCompany).where(CRMCompany.id == uuid.UUID(company["id"])))
    db_session.commit()

    orphans = client.get("/api/crm/diagnostics/orphan-links").json()
    assert orphans == [{"area_id": link.json()["id"], "contact_id": contact["id"], "company_id": company["id"]}]
    assert client.get("/api/crm/diagnostics/stale-synergies").json() == []


def test_me_reports_anonymous_without_token(client: TestClient) -> None:
    response = client.get("/me")

    assert response.status_code == 200
    assert response.json() == {"sub": "anonymous", "authenticated": False}


def test_null_collections_on_patch_become_empty(client: TestClient) -> None:
    contact = client.post("/api/crm/contacts", json={"first_name": "Tia", "last_name": "Tags", "tags": ["vip"]}).json()
    company = client.post(
        "/api/crm/companies",
        json={"name": "Null Co", "tags": ["partner"], "custom_fields": {"tier": "gold"}},
    ).json()

    patched_contact = client.patch(f"/api/crm/contacts/{contact['id']}", json={"tags": None, "custom_fields": None})
    patched_company = client.patch(f"/api/crm/companies/{company['id']}", json={"tags": None, "custom_fields": None})

    assert patched_contact.status_code == 200
    assert (patched_contact.json()["tags"], patched_contact.json()["custom_fields"]) == ([], {})
    assert patched_company.status_code == 200
    assert (patched_company.json()["tags"], patched_company.json()["custom_fields"]) == ([], {})


def test_null_synergy_status_is_a_validation_error(client: TestClient) -> None:
    contact = _create_contact(client)
    company = _create_company(client, "Status Co")
    _create_deal(client, contact_id=contact["id"], company_id=company["id"])
    (synergy,) = client.get(f"/api/crm/contacts/{contact['id']}/synergies").json()

    response = client.patch(f"/api/crm/synergies/{synergy['id']}", json={"status": None})

    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"
    assert response.json()["details"] == {"fields": ["status"]}
    assert client.get(f"/api/crm/synergies/{synergy['id']}").json()["status"] == "Active"


def test_patching_company_name_over_linked_company_is_rejected(client: TestClient) -> None:
    contact = _create_contact(client)
    company = _create_company(client, "Linked Co")
    link = client.post(f"/api/crm/contacts/{contact['id']}/areas-of-activity", json={"company_id": company["id"]}).json()

    response = client.patch(f"/api/crm/areas-of-activity/{link['id']}", json={"company_name": "Other"})

    assert response.status_code == 422
    assert response.json()["details"] == {"fields": ["company_name"]}
