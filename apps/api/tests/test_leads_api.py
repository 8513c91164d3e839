from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.authz.api import get_current_user
from app.authz.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.models.audit import AuditLog
from app.workspaces.models import WorkspaceMember


ACTORS = {
    "owner": ActorUser(user_id="user-owner", email="owner@example.com", display_name="Olivia Owner"),
    "member": ActorUser(user_id="user-member", email="member@example.com"),
    "outsider": ActorUser(user_id="user-outsider", email="outsider@example.com"),
}


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
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "owner"}

    def override_get_current_user(request: Request) -> ActorUser:
        actor = ACTORS[state["current"]]
        return ActorUser(
            user_id=actor.user_id,
            email=actor.email,
            display_name=actor.display_name,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


@pytest.fixture()
def workspace_id(client, db_session: Session) -> str:
    test_client, _ = client
    response = test_client.post("/api/workspaces", json={"name": "Acme Vendas"})
    assert response.status_code == 201
    workspace_id = response.json()["id"]
    db_session.add(WorkspaceMember(workspace_id=uuid.UUID(workspace_id), user_id="user-member", role="member"))
    db_session.commit()
    return workspace_id


def _create_lead(test_client: TestClient, workspace_id: str, **values) -> dict:
    response = test_client.post(f"/api/workspaces/{workspace_id}/leads", json=values)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_lead_defaults_to_base_and_is_audited(client, db_session: Session, workspace_id: str) -> None:
    test_client, _ = client
    lead = _create_lead(
        test_client,
        workspace_id,
        name="  Carlos  ",
        company="Acme",
        email="c@acme.com",
        responsible_user_ids=["user-member", "user-member"],
    )

    assert lead["stage"] == "base"
    assert lead["name"] == "Carlos"
    assert lead["responsible_user_ids"] == ["user-member"]
    assert lead["created_by"] == "user-owner"

    stored_audits = db_session.scalar(
        select(func.count(AuditLog.id)).where(
            AuditLog.entity_type == "crm.lead", AuditLog.entity_id == lead["id"], AuditLog.action == "create"
        )
    )
    assert stored_audits == 1
    created = [item for item in events.published_events if item["event_type"] == "crm.lead.created"]
    assert created[-1]["payload"] == {"lead_id": lead["id"], "stage": "base"}


def test_create_lead_rejects_unknown_stage_and_foreign_responsible(client, workspace_id: str) -> None:
    test_client, _ = client
    unknown = test_client.post(f"/api/workspaces/{workspace_id}/leads", json={"name": "Ana", "stage": "ganho"})
    assert unknown.status_code == 422

    foreign = test_client.post(
        f"/api/workspaces/{workspace_id}/leads",
        json={"name": "Ana", "responsible_user_ids": ["user-outsider"]},
    )
    assert foreign.status_code == 422
    assert foreign.json()["details"][0]["field"] == "responsible_user_ids"

    missing_campaign = test_client.post(
        f"/api/workspaces/{workspace_id}/leads",
        json={"name": "Ana", "campaign_id": str(uuid.uuid4())},
    )
    assert missing_campaign.status_code == 404


def test_members_can_work_leads_but_outsiders_cannot(client, workspace_id: str) -> None:
    test_client, set_actor = client
    lead = _create_lead(test_client, workspace_id, name="Ana")

    set_actor("member")
    updated = test_client.patch(f"/api/workspaces/{workspace_id}/leads/{lead['id']}", json={"notes": "ligar amanhã"})
    assert updated.status_code == 200
    assert updated.json()["notes"] == "ligar amanhã"

    set_actor("outsider")
    assert test_client.get(f"/api/workspaces/{workspace_id}/leads/{lead['id']}").status_code == 403
    assert test_client.get(f"/api/workspaces/{workspace_id}/leads").status_code == 403


def test_lead_is_scoped_to_its_workspace(client, workspace_id: str) -> None:
    test_client, _ = client
    other = test_client.post("/api/workspaces", json={"name": "Outro Workspace"}).json()
    lead = _create_lead(test_client, other["id"], name="Ana")

    response = test_client.get(f"/api/workspaces/{workspace_id}/leads/{lead['id']}")
    assert response.status_code == 404


def test_list_leads_filters(client, workspace_id: str) -> None:
    test_client, _ = client
    campaign = test_client.post(f"/api/workspaces/{workspace_id}/campaigns", json={"name": "Outbound Q3"}).json()
    carlos = _create_lead(test_client, workspace_id, name="Carlos", company="Acme", campaign_id=campaign["id"])
    bia = _create_lead(test_client, workspace_id, name="Bia", company="Globex", stage="qualificado")
    archived = _create_lead(test_client, workspace_id, name="Gil", company="Acme")
    test_client.post(f"/api/workspaces/{workspace_id}/leads/{archived['id']}/archive")

    def ids(**params) -> set[str]:
        response = test_client.get(f"/api/workspaces/{workspace_id}/leads", params=params)
        assert response.status_code == 200
        return {item["id"] for item in response.json()}

    assert ids() == {carlos["id"], bia["id"]}
    assert ids(stage="qualificado") == {bia["id"]}
    assert ids(campaign_id=campaign["id"]) == {carlos["id"]}
    assert ids(q="acme") == {carlos["id"]}
    assert ids(q="acme", include_archived="true") == {carlos["id"], archived["id"]}


def test_archive_and_restore(client, workspace_id: str) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, workspace_id, name="Ana")

    archived = test_client.post(f"/api/workspaces/{workspace_id}/leads/{lead['id']}/archive")
    assert archived.status_code == 200
    assert archived.json()["archived_at"] is not None

    restored = test_client.post(f"/api/workspaces/{workspace_id}/leads/{lead['id']}/restore")
    assert restored.status_code == 200
    assert restored.json()["archived_at"] is None


def test_custom_field_values_are_validated(client, workspace_id: str) -> None:
    test_client, _ = client
    budget = test_client.post(
        f"/api/workspaces/{workspace_id}/custom-fields",
        json={"name": "Orçamento", "field_type": "number", "required": True},
    ).json()
    size = test_client.post(
        f"/api/workspaces/{workspace_id}/custom-fields",
        json={"name": "Porte", "field_type": "select", "options": ["PME", "Enterprise"]},
    ).json()

    missing_required = test_client.post(f"/api/workspaces/{workspace_id}/leads", json={"name": "Ana"})
    assert missing_required.status_code == 422
    assert missing_required.json()["details"] == [{"field": budget["id"], "message": "Orçamento é obrigatório"}]

    wrong_types = test_client.post(
        f"/api/workspaces/{workspace_id}/leads",
        json={"name": "Ana", "custom_fields": {budget["id"]: "muito", size["id"]: "Startup", "extra": "x"}},
    )
    assert wrong_types.status_code == 422
    assert {item["field"] for item in wrong_types.json()["details"]} == {budget["id"], size["id"], "extra"}

    lead = _create_lead(
        test_client,
        workspace_id,
        name="Ana",
        custom_fields={budget["id"]: "1500,50", size["id"]: "PME"},
    )
    assert lead["custom_fields"] == {budget["id"]: "1500,50", size["id"]: "PME"}

    merged = test_client.patch(
        f"/api/workspaces/{workspace_id}/leads/{lead['id']}",
        json={"custom_fields": {size["id"]: "Enterprise"}},
    )
    assert merged.status_code == 200
    assert merged.json()["custom_fields"] == {budget["id"]: "1500,50", size["id"]: "Enterprise"}


def test_lead_activities_merge_changes_and_messages_newest_first(client, workspace_id: str) -> None:
    test_client, set_actor = client
    lead = _create_lead(test_client, workspace_id, name="Carlos", company="Acme")
    other = _create_lead(test_client, workspace_id, name="Outro")

    sent = test_client.post(
        f"/api/workspaces/{workspace_id}/leads/{lead['id']}/messages",
        json={"channel": "whatsapp", "content": "Oi Carlos!"},
    )
    assert sent.status_code == 201, sent.text
    renamed = test_client.patch(f"/api/workspaces/{workspace_id}/leads/{lead['id']}", json={"name": "Carlos Lima"})
    assert renamed.status_code == 200

    set_actor("member")
    response = test_client.get(f"/api/workspaces/{workspace_id}/leads/{lead['id']}/activities")
    assert response.status_code == 200, response.text
    activities = response.json()

    actions = [(item["entity_type"], item["action"]) for item in activities]
    assert actions[0] == ("crm.lead", "update")
    assert set(actions[1:3]) == {("outreach.message", "sent"), ("crm.lead", "move_stage")}
    assert actions[-1] == ("crm.lead", "create")
    assert len(actions) == 4
    assert {item["actor_name"] for item in activities} == {"Olivia Owner"}

    move = next(item for item in activities if item["action"] == "move_stage")
    assert move["before"] == {"stage": "base"}
    assert move["after"] == {"stage": "tentando_contato"}

    other_activities = test_client.get(f"/api/workspaces/{workspace_id}/leads/{other['id']}/activities").json()
    assert [item["action"] for item in other_activities] == ["create"]


def test_lead_activities_require_access_and_known_lead(client, workspace_id: str) -> None:
    test_client, set_actor = client
    lead = _create_lead(test_client, workspace_id, name="Carlos")

    missing = test_client.get(f"/api/workspaces/{workspace_id}/leads/{uuid.uuid4()}/activities")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    set_actor("outsider")
    denied = test_client.get(f"/api/workspaces/{workspace_id}/leads/{lead['id']}/activities")
    assert denied.status_code == 403


def test_history_filters_by_entity_id(client, workspace_id: str) -> None:
    test_client, _ = client
    lead = _create_lead(test_client, workspace_id, name="Carlos")
    _create_lead(test_client, workspace_id, name="Outro")
    test_client.post(f"/api/workspaces/{workspace_id}/leads/{lead['id']}/archive")

    history = test_client.get(
        f"/api/workspaces/{workspace_id}/history",
        params={"entity_type": "crm.lead", "entity_id": lead["id"]},
    )
    assert history.status_code == 200
    assert [item["action"] for item in history.json()] == ["archive", "create"]
    assert {item["entity_id"] for item in history.json()} == {lead["id"]}
