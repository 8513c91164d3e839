from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import exception_response
from app.authz.schemas import WorkspacePermissionsRead
from app.authz.service import (
    ActorUser,
    can_edit_workspace,
    can_manage_members,
    can_view_history,
    require_access,
)
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_session_user
from app.core.database import get_db
from app.core.errors import UnauthorizedError


router = APIRouter(prefix="/api/workspaces", tags=["authz"])


def get_current_user(request: Request, auth_user: AuthUser | None = Depends(get_session_user)) -> ActorUser:
    if auth_user is None:
        raise UnauthorizedError("authentication required")
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        email=auth_user.email,
        display_name=auth_user.name,
        correlation_id=correlation_id,
    )


@router.get("/{workspace_id}/permissions", response_model=WorkspacePermissionsRead)
def get_workspace_permissions(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkspacePermissionsRead | JSONResponse:
    try:
        role = require_access(db, workspace_id, user)
        return WorkspacePermissionsRead(
            workspace_id=workspace_id,
            role=role.value,
            can_manage_members=can_manage_members(role),
            can_edit_workspace=can_edit_workspace(role),
            can_view_history=can_view_history(role),
        )
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_permissions_failed")
