from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from synergy_api import audit, events
from synergy_api.core.config import get_settings
from synergy_api.core.database import Base, get_db
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


def _create_company(client: TestClient, correlation_id: str, headers: dict[str, str] | None = None) -> dict:
    response = client.post(
        "/api/crm/companies",
        json={"name": "Correlated Co"},
        headers={"X-Correlation-Id": correlation_id, **(headers or {})},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/companies/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/companies/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "not allowed/with spaces"})

    header_value = response.headers.get("x-correlation-id")
    assert header_value != "not allowed/with spaces"
    assert uuid.UUID(header_value)


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    company = _create_company(client, "corr-audit-1")

    company_audits = audit.entries_for("crm.company", company["id"])
    assert company_audits
    assert company_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    company = _create_company(client, "corr-event-1")

    created_events = [
        item
        for item in events.published_events
        if item.get("event_type") == "crm.company.created" and item["payload"].get("entity_id") == company["id"]
    ]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_synergy_events_carry_the_deal_update_correlation_id(client: TestClient) -> None:
    contact = client.post("/api/crm/contacts", json={"first_name": "Tess", "last_name": "Trace"}).json()
    company = _create_company(client, "corr-setup-1")
    deal = client.post("/api/crm/deals", json={"name": "Traced"}).json()

    response = client.patch(
        f"/api/crm/deals/{deal['id']}",
        json={"contact_id": contact["id"], "company_id": company["id"]},
        headers={"X-Correlation-Id": "corr-derive-1"},
    )
    assert response.status_code == 200

    created = [item for item in events.published_events if item.get("event_type") == "crm.synergy.created"]
    assert created
    assert created[-1]["payload"]["deal_id"] == deal["id"]
    assert created[-1]["correlation_id"] == "corr-derive-1"


def test_audit_records_bearer_token_subject(client: TestClient) -> None:
    settings = get_settings()
    token = jwt.encode({"sub": "user-42"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    company = _create_company(client, "corr-actor-1", headers={"Authorization": f"Bearer {token}"})

    assert audit.entries_for("crm.company", company["id"])[-1]["actor_user_id"] == "user-42"


def test_anonymous_writes_are_attributed_to_anonymous(client: TestClient) -> None:
    company = _create_company(client, "corr-actor-2")

    assert audit.entries_for("crm.company", company["id"])[-1]["actor_user_id"] == "anonymous"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post("/api/crm/companies", json={"name": "Limited 1"}, headers={"X-Correlation-Id": "corr-rate-1"})
    assert first.status_code == 201

    second = client.post(
        "/api/crm/companies",
        json={"name": "Limited 2"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
