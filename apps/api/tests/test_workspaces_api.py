from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from pathlib import Path

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
from app.storage import LocalObjectStorage, set_object_storage
from app.workspaces.models import Profile, WorkspaceMember


ACTORS = {
    "owner": ActorUser(user_id="user-owner", email="owner@example.com", display_name="Olivia Owner"),
    "admin": ActorUser(user_id="user-admin", email="admin@example.com", display_name="Ana Admin"),
    "member": ActorUser(user_id="user-member", email="member@example.com", display_name="Marcos Member"),
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


def _create_workspace(test_client: TestClient, name: str = "Acme Vendas") -> dict:
    response = test_client.post("/api/workspaces", json={"name": name})
    assert response.status_code == 201, response.text
    return response.json()


def _add_member(db_session: Session, workspace_id: str, actor: str, role: str) -> None:
    user = ACTORS[actor]
    db_session.add(Profile(id=user.user_id, email=user.email, full_name=user.display_name))
    db_session.add(WorkspaceMember(workspace_id=uuid.UUID(workspace_id), user_id=user.user_id, role=role))
    db_session.commit()


def test_create_workspace_makes_creator_owner_and_current(client) -> None:
    test_client, _ = client
    workspace = _create_workspace(test_client)

    assert workspace["slug"] == "acme-vendas"
    assert workspace["owner_id"] == "user-owner"

    listed = test_client.get("/api/workspaces")
    assert listed.status_code == 200
    assert [(item["id"], item["role"]) for item in listed.json()] == [(workspace["id"], "owner")]

    me = test_client.get("/api/me")
    assert me.status_code == 200
    assert me.json()["current_workspace_id"] == workspace["id"]
    assert me.json()["profile"]["full_name"] == "Olivia Owner"

    created = [item for item in events.published_events if item["event_type"] == "workspace.created"]
    assert created and created[-1]["workspace_id"] == workspace["id"]


def test_slug_strips_accents_and_gets_suffix_on_collision(client) -> None:
    test_client, set_actor = client
    first = _create_workspace(test_client, "Ação Comercial")
    assert first["slug"] == "acao-comercial"

    set_actor("admin")
    second = _create_workspace(test_client, "Ação Comercial")
    assert second["slug"] == "acao-comercial-1"


def test_owner_cannot_reuse_workspace_name(client) -> None:
    test_client, _ = client
    _create_workspace(test_client, "Acme Vendas")

    duplicate = test_client.post("/api/workspaces", json={"name": "acme vendas"})
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "conflict"


def test_permissions_reflect_role(client, db_session: Session) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    _add_member(db_session, workspace["id"], "member", "member")

    owner_permissions = test_client.get(f"/api/workspaces/{workspace['id']}/permissions").json()
    assert owner_permissions["role"] == "owner"
    assert owner_permissions["can_manage_members"] is True

    set_actor("member")
    member_permissions = test_client.get(f"/api/workspaces/{workspace['id']}/permissions").json()
    assert member_permissions["role"] == "member"
    assert member_permissions["can_manage_members"] is False
    assert member_permissions["can_edit_workspace"] is False
    assert member_permissions["can_view_history"] is False

    set_actor("outsider")
    outsider = test_client.get(f"/api/workspaces/{workspace['id']}")
    assert outsider.status_code == 403
    assert outsider.json()["code"] == "forbidden"


def test_unknown_workspace_returns_not_found(client) -> None:
    test_client, _ = client
    response = test_client.get(f"/api/workspaces/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_update_workspace_requires_edit_role(client, db_session: Session) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    _add_member(db_session, workspace["id"], "admin", "admin")
    _add_member(db_session, workspace["id"], "member", "member")

    set_actor("member")
    denied = test_client.patch(f"/api/workspaces/{workspace['id']}", json={"name": "Renamed"})
    assert denied.status_code == 403

    set_actor("admin")
    renamed = test_client.patch(f"/api/workspaces/{workspace['id']}", json={"name": "Renamed"})
    assert renamed.status_code == 200
    assert renamed.json()["workspace"]["name"] == "Renamed"
    assert renamed.json()["workspace"]["slug"] == "acme-vendas"


def test_logo_upload_stores_file_and_rejects_unsupported_types(client, tmp_path: Path) -> None:
    test_client, _ = client
    storage = LocalObjectStorage(root=tmp_path, public_base_url="http://files.test")
    set_object_storage(storage)
    try:
        workspace = _create_workspace(test_client)
        uploaded = test_client.post(
            f"/api/workspaces/{workspace['id']}/logo",
            files={"file": ("logo.png", b"\x89PNG-bytes", "image/png")},
        )
        assert uploaded.status_code == 200
        logo_url = uploaded.json()["workspace"]["logo_url"]
        assert logo_url == f"http://files.test/workspace-logos/{workspace['id']}/logo.png"
        assert storage.read("workspace-logos", f"{workspace['id']}/logo.png") == b"\x89PNG-bytes"

        rejected = test_client.post(
            f"/api/workspaces/{workspace['id']}/logo",
            files={"file": ("logo.gif", b"GIF89a", "image/gif")},
        )
        assert rejected.status_code == 422
        assert rejected.json()["code"] == "validation_failed"
    finally:
        set_object_storage(None)


class FailingStorage:
    def upload(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        raise OSError("bucket unavailable")


def test_avatar_upload_saves_profile_and_avatar(client, tmp_path: Path) -> None:
    test_client, _ = client
    storage = LocalObjectStorage(root=tmp_path, public_base_url="http://files.test")
    set_object_storage(storage)
    try:
        response = test_client.post(
            "/api/me/avatar",
            data={"full_name": "Olivia O.", "position": "Head de Vendas"},
            files={"file": ("me.webp", b"RIFF-webp", "image/webp")},
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["warning"] is None
        assert body["profile"]["full_name"] == "Olivia O."
        assert body["profile"]["position"] == "Head de Vendas"
        assert body["profile"]["avatar_url"] == "http://files.test/avatars/user-owner/avatar.webp"
        assert storage.read("avatars", "user-owner/avatar.webp") == b"RIFF-webp"
    finally:
        set_object_storage(None)


def test_avatar_storage_failure_keeps_profile_changes(client, db_session: Session) -> None:
    test_client, _ = client
    set_object_storage(FailingStorage())
    try:
        response = test_client.post(
            "/api/me/avatar",
            data={"position": "SDR"},
            files={"file": ("me.png", b"\x89PNG-bytes", "image/png")},
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["warning"] == "profile saved but the avatar could not be uploaded"
        assert body["profile"]["avatar_url"] is None

        profile = db_session.get(Profile, "user-owner")
        assert profile is not None
        assert profile.position == "SDR"
    finally:
        set_object_storage(None)


def test_avatar_rejects_unsupported_image_type(client, tmp_path: Path) -> None:
    test_client, _ = client
    set_object_storage(LocalObjectStorage(root=tmp_path, public_base_url="http://files.test"))
    try:
        response = test_client.post(
            "/api/me/avatar",
            data={"full_name": "Nunca Salvo"},
            files={"file": ("me.gif", b"GIF89a", "image/gif")},
        )
        assert response.status_code == 422
        assert response.json()["code"] == "validation_failed"
        assert response.json()["details"] == [{"field": "avatar", "message": "Formato de imagem não suportado"}]

        me = test_client.get("/api/me")
        assert me.json()["profile"]["full_name"] == "Olivia Owner"
    finally:
        set_object_storage(None)


def test_history_is_limited_to_managers(client, db_session: Session) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    _add_member(db_session, workspace["id"], "member", "member")

    history = test_client.get(f"/api/workspaces/{workspace['id']}/history")
    assert history.status_code == 200
    assert any(entry["action"] == "create" and entry["entity_type"] == "workspace" for entry in history.json())

    set_actor("member")
    assert test_client.get(f"/api/workspaces/{workspace['id']}/history").status_code == 403


def test_change_role_and_owner_protection(client, db_session: Session) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    _add_member(db_session, workspace["id"], "admin", "admin")
    _add_member(db_session, workspace["id"], "member", "member")

    promoted = test_client.patch(f"/api/workspaces/{workspace['id']}/members/user-member", json={"role": "admin"})
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "admin"

    to_owner = test_client.patch(f"/api/workspaces/{workspace['id']}/members/user-member", json={"role": "owner"})
    assert to_owner.status_code == 422
    assert to_owner.json()["code"] == "invalid_role"

    set_actor("admin")
    demote_owner = test_client.patch(f"/api/workspaces/{workspace['id']}/members/user-owner", json={"role": "member"})
    assert demote_owner.status_code == 403

    members = test_client.get(f"/api/workspaces/{workspace['id']}/members").json()
    assert [item["role"] for item in members] == ["owner", "admin", "admin"]


def test_transfer_ownership_demotes_previous_owner_to_admin(client, db_session: Session) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    _add_member(db_session, workspace["id"], "admin", "admin")

    set_actor("admin")
    denied = test_client.post(
        f"/api/workspaces/{workspace['id']}/transfer-ownership",
        json={"new_owner_id": "user-admin"},
    )
    assert denied.status_code == 403

    set_actor("owner")
    transferred = test_client.post(
        f"/api/workspaces/{workspace['id']}/transfer-ownership",
        json={"new_owner_id": "user-admin"},
    )
    assert transferred.status_code == 200
    assert transferred.json()["owner_id"] == "user-admin"

    assert test_client.get(f"/api/workspaces/{workspace['id']}/permissions").json()["role"] == "admin"
    set_actor("admin")
    assert test_client.get(f"/api/workspaces/{workspace['id']}/permissions").json()["role"] == "owner"

    rows = db_session.scalars(
        select(WorkspaceMember).where(WorkspaceMember.workspace_id == uuid.UUID(workspace["id"]))
    ).all()
    assert {(row.user_id, row.role) for row in rows} == {("user-owner", "admin")}


def test_remove_member_and_leave(client, db_session: Session) -> None:
    test_client, set_actor = client
    workspace = _create_workspace(test_client)
    _add_member(db_session, workspace["id"], "admin", "admin")
    _add_member(db_session, workspace["id"], "member", "member")

    set_actor("admin")
    remove_owner = test_client.delete(f"/api/workspaces/{workspace['id']}/members/user-owner")
    assert remove_owner.status_code == 403

    removed = test_client.delete(f"/api/workspaces/{workspace['id']}/members/user-member")
    assert removed.status_code == 204

    set_actor("member")
    assert test_client.get(f"/api/workspaces/{workspace['id']}").status_code == 403

    set_actor("owner")
    owner_leave = test_client.post(f"/api/workspaces/{workspace['id']}/leave")
    assert owner_leave.status_code == 403

    set_actor("admin")
    left = test_client.post(f"/api/workspaces/{workspace['id']}/leave")
    assert left.status_code == 204
    assert test_client.get("/api/workspaces").json() == []


def test_switch_workspace_updates_current_preference(client, db_session: Session) -> None:
    test_client, set_actor = client
    first = _create_workspace(test_client, "Primeiro")
    set_actor("admin")
    second = _create_workspace(test_client, "Segundo")
    _add_member(db_session, first["id"], "member", "member")
    db_session.add(WorkspaceMember(workspace_id=uuid.UUID(second["id"]), user_id="user-member", role="member"))
    db_session.commit()

    set_actor("member")
    switched = test_client.post(f"/api/workspaces/{second['id']}/switch")
    assert switched.status_code == 200
    assert switched.json()["current_workspace_id"] == second["id"]
    assert test_client.get("/api/me").json()["current_workspace_id"] == second["id"]

    set_actor("outsider")
    assert test_client.post(f"/api/workspaces/{second['id']}/switch").status_code == 403
