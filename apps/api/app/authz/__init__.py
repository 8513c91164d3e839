from app.authz.service import (
    ActorUser,
    WorkspaceRole,
    can_edit_workspace,
    can_manage_members,
    can_view_history,
    has_access,
    resolve_role,
)

__all__ = [
    "ActorUser",
    "WorkspaceRole",
    "resolve_role",
    "has_access",
    "can_manage_members",
    "can_edit_workspace",
    "can_view_history",
]
