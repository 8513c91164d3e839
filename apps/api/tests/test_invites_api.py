from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from typing import Any

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
from app.middleware.rate_limit import reset_rate_limiter
from app.workspaces import service as workspace_service_module
from app.workspaces.mailer import InviteMailer, MailDeliveryError, set_invite_mailer
from app.workspaces.models import WorkspaceInvite, WorkspaceMember


ACTORS = {
    "owner": ActorUser(user_id="user-owner", email="owner@example.com", display_name="Olivia Owner"),
    "invitee": ActorUser(user_id="user-invitee", email="Invitee@Example.com", display_name="Iris Invitee"),
    "other": ActorUser(user_id="user-other", email="other@example.com"),
}


class RecordingTransport:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[dict[str, Any]] = []

    def send(self, message: dict[str, Any]) -> None:
        if self.fail:
            raise MailDeliveryError("mail API error 500: upstream unavailable")
        self.messages.append(message)


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
    monkeypatch.setenv("SITE_BASE_URL", "https://app.leadflow.test")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    set_invite_mailer(None)
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def transport() -> RecordingTransport:
    recording = RecordingTransport()
    set_invite_mailer(InviteMailer(transport=recording))
    return recording


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "owner"}

    def override_get_current_user(request: Request) -> ActorUser:
        actor = ACTORS[state["current"]]
        return ActorUser(
            user_id=actor.user_id,
            email=actor.email.lower(),
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


def _create_workspace(test_client: TestClient) -> dict:
    response = test_client.post("/api/workspaces", json={"name": "Acme Vendas"})
    assert response.status_code == 201
    return response.json()


def _invite(test_client: TestClient, workspace_id: str, email: str = "invitee@example.com", role: str = "member") -> dict:
    response = test_client.post(f"/api/workspaces/{workspace_id}/invites", json={"email": email, "role": role})
    assert response.status_code == 201, response.text
    return response.json()


def _token(invite_result: dict) -> str:
    return invite_result["accept_url"].rsplit("/", 1)[1]


def test_invite_sends_email_with_accept_link(client, transport: RecordingTransport) -> None:
    test_client, _ = client
    workspace = _create_workspace(test_client)

    result = _invite(test_client, workspace["id"], email="Invitee@Example.com", role="admin")

    assert result["email_sent"] is True
    assert result["warning"] is None
    assert result["invite"]["email"] == "invitee@example.com"
    assert result["invite"]["status"] == "pending"
    assert result["accept_url"].startswith("https://app.leadflow.test/invites/accept/")
    assert len(_token(result)) == 64

    assert len(transport.messages) == 1
    message = transport.messages[0]
    assert message["to"] == ["invitee@example.com"]
    assert message["subject"] == "Convite para Acme Vendas"
    assert "Olivia Owner" in message["text"]
    assert "Administrador" in message["text"]
    assert result["accept_url"] in message["html"]


def test_mail_failure_keeps_invite_and_returns_warning(
    client,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    test_client, _ = client
    set_invite_mailer(InviteMailer(transport=RecordingTransport(fail=True)))
    workspace = _create_workspace(test_client)
    caplog.set_level(logging.WARNING)

    result = _invite(test_client, workspace["id"])

    assert result["email_sent"] is False
    assert result["warning"] == "invite created but the email could not be sent"
    assert db_session.scalar(select(WorkspaceInvite).where(WorkspaceInvite.email == "invitee@example.com")) is not None
    assert any(record.getMessage() == "mail.invite_failed" for record in caplog.records)


def test_invite_without_mail_configuration_is_still_created(client) -> None:
    test_client, _ = client
    workspace = _create_workspace(test_client)

    result = _invite(test_client, workspace["id"])

    assert result["email_sent"] is False
    assert "not configured" in result["warning"]


def test_invite_rules(client, db_session: Session, transport: RecordingTransport) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)

    owner_role = test_client.post(
        f"/api/workspaces/{workspace['id']}/invites",
        json={"email": "new@example.com", "role": "owner"},
    )
    assert owner_role.status_code == 422
    assert owner_role.json()["code"] == "invalid_role"

    _invite(test_client, workspace["id"])
    duplicate = test_client.post(
        f"/api/workspaces/{workspace['id']}/invites",
        json={"email": "invitee@example.com", "role": "member"},
    )
    assert duplicate.status_code == 409

    self_invite = test_client.post(
        f"/api/workspaces/{workspace['id']}/invites",
        json={"email": "owner@example.com", "role": "member"},
    )
    assert self_invite.status_code == 409

    db_session.add(WorkspaceMember(workspace_id=uuid.UUID(workspace["id"]), user_id="user-other", role="member"))
    db_session.commit()
    set_actor("other")
    denied = test_client.post(
        f"/api/workspaces/{workspace['id']}/invites",
        json={"email": "friend@example.com", "role": "member"},
    )
    assert denied.status_code == 403


def test_accept_invite_creates_membership_once(client, db_session: Session, transport: RecordingTransport) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    token = _token(_invite(test_client, workspace["id"], role="admin"))

    set_actor("invitee")
    preview = test_client.get(f"/api/invites/{token}")
    assert preview.status_code == 200
    assert preview.json()["workspace_name"] == "Acme Vendas"
    assert preview.json()["role"] == "admin"

    accepted = test_client.post(f"/api/invites/{token}/accept")
    assert accepted.status_code == 200
    assert accepted.json()["role"] == "admin"
    assert accepted.json()["current_workspace_id"] == workspace["id"]

    again = test_client.post(f"/api/invites/{token}/accept")
    assert again.status_code == 409
    assert again.json()["code"] == "invite_already_processed"

    memberships = db_session.scalars(
        select(WorkspaceMember).where(WorkspaceMember.user_id == "user-invitee")
    ).all()
    assert [(str(row.workspace_id), row.role) for row in memberships] == [(workspace["id"], "admin")]
    assert test_client.get("/api/me").json()["current_workspace_id"] == workspace["id"]

    joined = [item for item in events.published_events if item["event_type"] == "workspace.member.joined"]
    assert joined and joined[-1]["payload"]["user_id"] == "user-invitee"


def test_accept_after_expiry_marks_invite_expired(
    client,
    db_session: Session,
    transport: RecordingTransport,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    token = _token(_invite(test_client, workspace["id"]))

    eight_days_later = datetime.now(timezone.utc) + timedelta(days=8)
    monkeypatch.setattr(workspace_service_module, "utcnow", lambda: eight_days_later)

    set_actor("invitee")
    response = test_client.post(f"/api/invites/{token}/accept")
    assert response.status_code == 410
    assert response.json()["code"] == "invite_expired"

    invite = db_session.scalar(select(WorkspaceInvite).where(WorkspaceInvite.token == token))
    db_session.refresh(invite)
    assert invite.status == "expired"
    assert db_session.scalar(select(WorkspaceMember).where(WorkspaceMember.user_id == "user-invitee")) is None


def test_accept_with_different_email_is_rejected(client, db_session: Session, transport: RecordingTransport) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    token = _token(_invite(test_client, workspace["id"]))

    set_actor("other")
    response = test_client.post(f"/api/invites/{token}/accept")
    assert response.status_code == 403
    assert response.json()["code"] == "invite_email_mismatch"

    invite = db_session.scalar(select(WorkspaceInvite).where(WorkspaceInvite.token == token))
    assert invite.status == "pending"


def test_reject_and_cancel_close_the_invite(client, transport: RecordingTransport) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    rejected_token = _token(_invite(test_client, workspace["id"]))
    cancelled = _invite(test_client, workspace["id"], email="other@example.com")

    set_actor("invitee")
    rejected = test_client.post(f"/api/invites/{rejected_token}/reject")
    assert rejected.status_code == 200
    assert rejected.json()["status"] == "cancelled"
    assert test_client.post(f"/api/invites/{rejected_token}/accept").status_code == 409

    set_actor("owner")
    cancel = test_client.post(f"/api/workspaces/{workspace['id']}/invites/{cancelled['invite']['id']}/cancel")
    assert cancel.status_code == 200
    assert cancel.json()["status"] == "cancelled"

    cancel_again = test_client.post(f"/api/workspaces/{workspace['id']}/invites/{cancelled['invite']['id']}/cancel")
    assert cancel_again.status_code == 409

    assert test_client.get(f"/api/workspaces/{workspace['id']}/invites").json() == []


def test_onboarding_routes_new_users_to_pending_invites(client, transport: RecordingTransport) -> None:
    test_client, set_actor = client

    set_actor("invitee")
    assert test_client.get("/api/onboarding").json()["route"] == "create_workspace"

    set_actor("owner")
    workspace = _create_workspace(test_client)
    token = _token(_invite(test_client, workspace["id"]))

    set_actor("invitee")
    pending = test_client.get("/api/invites/pending")
    assert pending.status_code == 200
    assert [item["token"] for item in pending.json()] == [token]

    route = test_client.get("/api/onboarding").json()
    assert route["route"] == "invite"
    assert route["invite_token"] == token

    test_client.post(f"/api/invites/{token}/accept")
    route = test_client.get("/api/onboarding").json()
    assert route["route"] == "dashboard"
    assert route["workspace_id"] == workspace["id"]


def test_expired_invites_are_hidden_and_cannot_be_cancelled(
    client,
    db_session: Session,
    transport: RecordingTransport,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    workspace = _create_workspace(test_client)
    invite = _invite(test_client, workspace["id"])

    eight_days_later = datetime.now(timezone.utc) + timedelta(days=8)
    monkeypatch.setattr(workspace_service_module, "utcnow", lambda: eight_days_later)

    assert test_client.get(f"/api/workspaces/{workspace['id']}/invites").json() == []

    cancel = test_client.post(f"/api/workspaces/{workspace['id']}/invites/{invite['invite']['id']}/cancel")
    assert cancel.status_code == 410
    assert cancel.json()["code"] == "invite_expired"

    stored = db_session.scalar(select(WorkspaceInvite).where(WorkspaceInvite.id == uuid.UUID(invite["invite"]["id"])))
    db_session.refresh(stored)
    assert stored.status == "expired"


@pytest.mark.parametrize("stored_status", ["cancelled", "accepted"])
def test_past_expiry_wins_over_stored_status(
    client,
    db_session: Session,
    transport: RecordingTransport,
    monkeypatch: pytest.MonkeyPatch,
    stored_status: str,
) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    token = _token(_invite(test_client, workspace["id"]))

    stored = db_session.scalar(select(WorkspaceInvite).where(WorkspaceInvite.token == token))
    stored.status = stored_status
    db_session.commit()

    eight_days_later = datetime.now(timezone.utc) + timedelta(days=8)
    monkeypatch.setattr(workspace_service_module, "utcnow", lambda: eight_days_later)

    set_actor("invitee")
    preview = test_client.get(f"/api/invites/{token}")
    assert preview.status_code == 410
    assert preview.json()["code"] == "invite_expired"

    accept = test_client.post(f"/api/invites/{token}/accept")
    assert accept.status_code == 410
    assert db_session.scalar(select(WorkspaceMember).where(WorkspaceMember.user_id == "user-invitee")) is None
