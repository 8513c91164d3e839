from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.authz.api import get_current_user
from app.authz.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.correlation_id import resolve_correlation_id
from app.middleware.rate_limit import reset_rate_limiter
from app.models.audit import AuditLog


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTO_MESSAGES_ENABLED", "false")
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            email="user-1@example.com",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_workspace(client: TestClient, correlation_id: str, name: str = "Corr Workspace") -> dict:
    response = client.post("/api/workspaces", json={"name": name}, headers={"X-Correlation-Id": correlation_id})
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/workspaces/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/workspaces/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(f"/api/workspaces/{uuid.uuid4()}", headers={"X-Correlation-Id": "bad id <script>"})
    header_value = response.headers.get("x-correlation-id")
    assert header_value != "bad id <script>"
    assert uuid.UUID(header_value)


def test_resolve_correlation_id() -> None:
    assert resolve_correlation_id("req:42.a_b-c") == "req:42.a_b-c"
    assert resolve_correlation_id("x" * 129) != "x" * 129
    assert resolve_correlation_id(None)


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    workspace = _create_workspace(client, "corr-audit-1")

    workspace_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "workspace"]
    assert workspace_audits
    assert workspace_audits[-1]["correlation_id"] == "corr-audit-1"

    stored = db_session.scalar(select(AuditLog).where(AuditLog.entity_id == workspace["id"]))
    assert stored is not None
    assert stored.correlation_id == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    workspace = _create_workspace(client, "corr-workspace-1")
    response = client.post(
        f"/api/workspaces/{workspace['id']}/leads",
        json={"name": "Corr Lead"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    _create_workspace(client, "corr-rate-1", name="Rate Limit 1")

    second = client.post(
        "/api/workspaces",
        json={"name": "Rate Limit 2"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
