from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.authz.api import get_current_user
from app.authz.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
    monkeypatch.setenv("AUTO_MESSAGES_ENABLED", "false")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-owner",
            email="owner@example.com",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def workspace_id(client: TestClient) -> str:
    return client.post("/api/workspaces", json={"name": "Acme Vendas"}).json()["id"]


def test_create_campaign_defaults(client: TestClient, workspace_id: str) -> None:
    response = client.post(
        f"/api/workspaces/{workspace_id}/campaigns",
        json={"name": " Outbound Q3 ", "context": "Software de gestão para indústrias", "ai_instructions": "  "},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["name"] == "Outbound Q3"
    assert body["voice_tone"] == "neutral"
    assert body["status"] == "active"
    assert body["trigger_stage"] is None
    assert body["ai_instructions"] is None
    assert body["lead_count"] == 0
    assert body["created_by"] == "user-owner"


def test_create_campaign_validation(client: TestClient, workspace_id: str) -> None:
    bad_trigger = client.post(
        f"/api/workspaces/{workspace_id}/campaigns",
        json={"name": "X", "trigger_stage": "ganho"},
    )
    assert bad_trigger.status_code == 422
    assert bad_trigger.json()["details"] == [{"field": "trigger_stage", "message": "Etapa desconhecida: ganho"}]

    bad_formality = client.post(
        f"/api/workspaces/{workspace_id}/campaigns",
        json={"name": "X", "formality_level": 6},
    )
    assert bad_formality.status_code == 422

    bad_tone = client.post(
        f"/api/workspaces/{workspace_id}/campaigns",
        json={"name": "X", "voice_tone": "sarcastic"},
    )
    assert bad_tone.status_code == 422

    blank_name = client.post(f"/api/workspaces/{workspace_id}/campaigns", json={"name": "   "})
    assert blank_name.status_code == 422
    assert blank_name.json()["details"] == [{"field": "name", "message": "Nome da campanha é obrigatório"}]
    assert client.get(f"/api/workspaces/{workspace_id}/campaigns").json() == []


def test_list_campaigns_with_status_filter_and_lead_count(client: TestClient, workspace_id: str) -> None:
    active = client.post(f"/api/workspaces/{workspace_id}/campaigns", json={"name": "Ativa"}).json()
    paused = client.post(
        f"/api/workspaces/{workspace_id}/campaigns",
        json={"name": "Pausada", "status": "paused"},
    ).json()
    for name in ("Ana", "Bia"):
        client.post(f"/api/workspaces/{workspace_id}/leads", json={"name": name, "campaign_id": active["id"]})
    archived = client.post(
        f"/api/workspaces/{workspace_id}/leads",
        json={"name": "Gil", "campaign_id": active["id"]},
    ).json()
    client.post(f"/api/workspaces/{workspace_id}/leads/{archived['id']}/archive")

    listed = client.get(f"/api/workspaces/{workspace_id}/campaigns")
    assert listed.status_code == 200
    counts = {item["id"]: item["lead_count"] for item in listed.json()}
    assert counts == {active["id"]: 2, paused["id"]: 0}

    only_paused = client.get(f"/api/workspaces/{workspace_id}/campaigns", params={"status": "paused"}).json()
    assert [item["id"] for item in only_paused] == [paused["id"]]

    single = client.get(f"/api/workspaces/{workspace_id}/campaigns/{active['id']}").json()
    assert single["lead_count"] == 2


def test_update_campaign(client: TestClient, workspace_id: str) -> None:
    campaign = client.post(
        f"/api/workspaces/{workspace_id}/campaigns",
        json={"name": "Outbound", "trigger_stage": "lead_mapeado"},
    ).json()

    updated = client.patch(
        f"/api/workspaces/{workspace_id}/campaigns/{campaign['id']}",
        json={"voice_tone": "formal", "formality_level": 4, "status": "paused", "trigger_stage": ""},
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["voice_tone"] == "formal"
    assert body["formality_level"] == 4
    assert body["status"] == "paused"
    assert body["trigger_stage"] is None
    assert body["name"] == "Outbound"

    null_name = client.patch(f"/api/workspaces/{workspace_id}/campaigns/{campaign['id']}", json={"name": None})
    assert null_name.status_code == 422

    blank_name = client.patch(f"/api/workspaces/{workspace_id}/campaigns/{campaign['id']}", json={"name": "  "})
    assert blank_name.status_code == 422
    assert client.get(f"/api/workspaces/{workspace_id}/campaigns/{campaign['id']}").json()["name"] == "Outbound"

    missing = client.get(f"/api/workspaces/{workspace_id}/campaigns/{uuid.uuid4()}")
    assert missing.status_code == 404


def test_campaigns_are_scoped_to_members(client: TestClient, workspace_id: str) -> None:
    campaign = client.post(f"/api/workspaces/{workspace_id}/campaigns", json={"name": "Outbound"}).json()

    def outsider(request: Request) -> ActorUser:
        return ActorUser(user_id="user-outsider", email="outsider@example.com")

    app.dependency_overrides[get_current_user] = outsider
    assert client.get(f"/api/workspaces/{workspace_id}/campaigns").status_code == 403
    assert client.get(f"/api/workspaces/{workspace_id}/campaigns/{campaign['id']}").status_code == 403
