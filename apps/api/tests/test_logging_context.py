from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from synergy_api import events
from synergy_api.context import reset_correlation_id, set_correlation_id
from synergy_api.core.config import get_settings
from synergy_api.core.database import Base, get_db
from synergy_api.logging import JsonLogFormatter
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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    contact_id = uuid.uuid4()
    path = f"/api/crm/contacts/{contact_id}"

    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record
        for record in caplog.records
        if record.name == "synergy_api.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/contacts/{id}"
        and getattr(record, "status_code", None) == 404
        and record.levelno == logging.WARNING
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_synergy_context_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    contact = client.post("/api/crm/contacts", json={"first_name": "Lena", "last_name": "Log"}).json()
    company = client.post("/api/crm/companies", json={"name": "Log Co"}).json()

    deal = client.post(
        "/api/crm/deals",
        json={"name": "Logged deal", "contact_id": contact["id"], "company_id": company["id"]},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert deal.status_code == 201

    (synergy,) = client.get(f"/api/crm/deals/{deal.json()['id']}/synergies").json()
    synergy_records = [record for record in caplog.records if record.name == "synergy_api.crm.synergies"]
    assert synergy_records
    assert any(
        record.getMessage() == "synergy.created"
        and getattr(record, "synergy_id", None) == synergy["id"]
        and getattr(record, "deal_id", None) == deal.json()["id"]
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in synergy_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    token = set_correlation_id("fmt-1")
    try:
        record = logging.getLogger("synergy_api.test").makeRecord(
            "synergy_api.test",
            logging.INFO,
            __file__,
            1,
            "area_of_activity.linked",
            None,
            None,
            extra={"contact_id": "c-1", "password": "hunter2"},
        )
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "area_of_activity.linked"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"contact_id": "c-1"}


def test_synergy_event_subscriptions_end_with_the_app(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    def synergy_event_logs() -> list[logging.LogRecord]:
        return [record for record in caplog.records if record.getMessage() == "synergy_event"]

    for _ in range(2):
        with TestClient(app):
            caplog.clear()
            events.emit("crm.synergy.created", synergy_id="s-1", deal_id="d-1")
            assert len(synergy_event_logs()) == 1

    caplog.clear()
    events.emit("crm.synergy.created", synergy_id="s-1", deal_id="d-1")
    assert synergy_event_logs() == []
