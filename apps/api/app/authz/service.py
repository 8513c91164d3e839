from __future__ import annotations

import enum
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.core.errors import ForbiddenError, NotFoundError
from app.workspaces.models import Workspace, WorkspaceMember


class WorkspaceRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


MEMBERSHIP_ROLES = frozenset({WorkspaceRole.ADMIN, WorkspaceRole.MEMBER})
_MANAGING_ROLES = frozenset({WorkspaceRole.OWNER, WorkspaceRole.ADMIN})


@dataclass
class ActorUser:
    user_id: str
    email: str
    display_name: str | None = None
    correlation_id: str | None = None


def parse_role(value: str | None) -> WorkspaceRole | None:
    if value is None:
        return None
    try:
        return WorkspaceRole(value.strip().lower())
    except ValueError:
        return None


def resolve_role(session: Session, workspace_id: uuid.UUID, user_id: str) -> WorkspaceRole | None:
    workspace = session.get(Workspace, workspace_id)
    if workspace is None:
        return None
    if workspace.owner_id == user_id:
        return WorkspaceRole.OWNER

    stored_role = session.scalar(
        select(WorkspaceMember.role).where(
            and_(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id)
        )
    )
    role = parse_role(stored_role)
    # Ownership lives on the workspace row only.
    if role == WorkspaceRole.OWNER:
        return None
    return role


def has_access(session: Session, workspace_id: uuid.UUID, user_id: str) -> bool:
    return resolve_role(session, workspace_id, user_id) is not None


def can_manage_members(role: WorkspaceRole | None) -> bool:
    return role in _MANAGING_ROLES


def can_edit_workspace(role: WorkspaceRole | None) -> bool:
    return role in _MANAGING_ROLES


def can_view_history(role: WorkspaceRole | None) -> bool:
    return role in _MANAGING_ROLES


def require_role(
    session: Session,
    workspace_id: uuid.UUID,
    actor_user: ActorUser,
    predicate: Callable[[WorkspaceRole | None], bool] | None = None,
    *,
    action: str = "access this workspace",
) -> WorkspaceRole:
    if session.get(Workspace, workspace_id) is None:
        raise NotFoundError("workspace not found")
    role = resolve_role(session, workspace_id, actor_user.user_id)
    if role is None:
        raise ForbiddenError("user is not a member of this workspace")
    if predicate is not None and not predicate(role):
        raise ForbiddenError(f"role '{role.value}' is not allowed to {action}")
    return role


def require_access(session: Session, workspace_id: uuid.UUID, actor_user: ActorUser) -> WorkspaceRole:
    return require_role(session, workspace_id, actor_user)


def require_manage_members(session: Session, workspace_id: uuid.UUID, actor_user: ActorUser) -> WorkspaceRole:
    return require_role(session, workspace_id, actor_user, can_manage_members, action="manage members")


def require_edit_workspace(session: Session, workspace_id: uuid.UUID, actor_user: ActorUser) -> WorkspaceRole:
    return require_role(session, workspace_id, actor_user, can_edit_workspace, action="edit workspace settings")


def require_view_history(session: Session, workspace_id: uuid.UUID, actor_user: ActorUser) -> WorkspaceRole:
    return require_role(session, workspace_id, actor_user, can_view_history, action="view workspace history")
