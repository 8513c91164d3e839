from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.api.errors import exception_response
from app.authz.api import get_current_user
from app.authz.service import ActorUser
from app.core.database import get_db
from app.workspaces.schemas import (
    AuditEntryRead,
    ChangeRoleRequest,
    InviteAcceptResult,
    InviteCreate,
    InviteCreateResult,
    InvitePreviewRead,
    InviteRead,
    MemberRead,
    OnboardingRouteRead,
    PendingInviteRead,
    ProfileRead,
    ProfileUpdate,
    ProfileUpdateResult,
    SessionRead,
    TransferOwnershipRequest,
    WorkspaceCreate,
    WorkspaceRead,
    WorkspaceSummaryRead,
    WorkspaceUpdate,
    WorkspaceUpdateResult,
)
from app.workspaces.service import (
    ImageUpload,
    invite_service,
    membership_service,
    profile_service,
    workspace_service,
)


session_router = APIRouter(prefix="/api", tags=["session"])
router = APIRouter(prefix="/api/workspaces", tags=["workspaces"])
members_router = APIRouter(prefix="/api/workspaces", tags=["workspaces.members"])
invites_router = APIRouter(prefix="/api", tags=["workspaces.invites"])


@session_router.get("/me", response_model=SessionRead)
def get_me(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SessionRead | JSONResponse:
    try:
        return profile_service.get_session(db, user)
    except HTTPException as exc:
        return exception_response(request, exc, code="session_get_failed")


@session_router.patch("/me/profile", response_model=ProfileRead)
def patch_profile(
    request: Request,
    dto: ProfileUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProfileRead | JSONResponse:
    try:
        return profile_service.update_profile(db, user, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="profile_update_failed")


@session_router.post("/me/avatar", response_model=ProfileUpdateResult)
def save_profile_with_avatar(
    request: Request,
    file: UploadFile = File(...),
    full_name: str | None = Form(default=None),
    position: str | None = Form(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProfileUpdateResult | JSONResponse:
    fields = {key: value for key, value in {"full_name": full_name, "position": position}.items() if value is not None}
    avatar = ImageUpload(
        content=file.file.read(),
        filename=file.filename or "avatar",
        content_type=(file.content_type or "application/octet-stream").lower(),
    )
    try:
        return profile_service.save_profile(db, user, ProfileUpdate(**fields), avatar=avatar)
    except HTTPException as exc:
        return exception_response(request, exc, code="profile_avatar_upload_failed")


@session_router.get("/onboarding", response_model=OnboardingRouteRead)
def get_onboarding_route(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OnboardingRouteRead | JSONResponse:
    try:
        return invite_service.resolve_onboarding_route(db, user)
    except HTTPException as exc:
        return exception_response(request, exc, code="onboarding_route_failed")


@router.post("", response_model=WorkspaceRead, status_code=status.HTTP_201_CREATED)
def create_workspace(
    request: Request,
    dto: WorkspaceCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkspaceRead | JSONResponse:
    try:
        return workspace_service.create_workspace(db, user, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_create_failed")


@router.get("", response_model=list[WorkspaceSummaryRead])
def list_workspaces(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkspaceSummaryRead] | JSONResponse:
    try:
        return workspace_service.list_workspaces(db, user)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_list_failed")


@router.get("/{workspace_id}", response_model=WorkspaceSummaryRead)
def get_workspace(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkspaceSummaryRead | JSONResponse:
    try:
        return workspace_service.get_workspace(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_get_failed")


@router.patch("/{workspace_id}", response_model=WorkspaceUpdateResult)
def patch_workspace(
    request: Request,
    workspace_id: uuid.UUID,
    dto: WorkspaceUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkspaceUpdateResult | JSONResponse:
    try:
        return workspace_service.update_workspace(db, user, workspace_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_update_failed")


@router.post("/{workspace_id}/logo", response_model=WorkspaceUpdateResult)
def upload_workspace_logo(
    request: Request,
    workspace_id: uuid.UUID,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkspaceUpdateResult | JSONResponse:
    content = file.file.read()
    logo = ImageUpload(
        content=content,
        filename=file.filename or "logo",
        content_type=(file.content_type or "application/octet-stream").lower(),
    )
    try:
        return workspace_service.update_workspace(db, user, workspace_id, WorkspaceUpdate(), logo=logo)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_logo_upload_failed")


@router.post("/{workspace_id}/switch", response_model=SessionRead)
def switch_workspace(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SessionRead | JSONResponse:
    try:
        return workspace_service.switch_workspace(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_switch_failed")


@router.get("/{workspace_id}/history", response_model=list[AuditEntryRead])
def list_workspace_history(
    request: Request,
    workspace_id: uuid.UUID,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AuditEntryRead] | JSONResponse:
    try:
        return workspace_service.list_history(
            db, user, workspace_id, entity_type=entity_type, entity_id=entity_id, limit=limit
        )
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_history_failed")


@members_router.get("/{workspace_id}/members", response_model=list[MemberRead])
def list_members(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[MemberRead] | JSONResponse:
    try:
        return membership_service.list_members(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_member_list_failed")


@members_router.patch("/{workspace_id}/members/{user_id}", response_model=MemberRead)
def change_member_role(
    request: Request,
    workspace_id: uuid.UUID,
    user_id: str,
    dto: ChangeRoleRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MemberRead | JSONResponse:
    try:
        return membership_service.change_role(db, user, workspace_id, user_id, dto.role)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_member_update_failed")


@members_router.delete("/{workspace_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_member(
    request: Request,
    workspace_id: uuid.UUID,
    user_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        membership_service.remove_member(db, user, workspace_id, user_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_member_remove_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@members_router.post("/{workspace_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
def leave_workspace(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        membership_service.leave_workspace(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_leave_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@members_router.post("/{workspace_id}/transfer-ownership", response_model=WorkspaceRead)
def transfer_ownership(
    request: Request,
    workspace_id: uuid.UUID,
    dto: TransferOwnershipRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkspaceRead | JSONResponse:
    try:
        return membership_service.transfer_ownership(db, user, workspace_id, dto.new_owner_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_transfer_failed")


@members_router.post(
    "/{workspace_id}/invites",
    response_model=InviteCreateResult,
    status_code=status.HTTP_201_CREATED,
)
def create_invite(
    request: Request,
    workspace_id: uuid.UUID,
    dto: InviteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InviteCreateResult | JSONResponse:
    try:
        return invite_service.invite_member(db, user, workspace_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_invite_create_failed")


@members_router.get("/{workspace_id}/invites", response_model=list[InviteRead])
def list_invites(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[InviteRead] | JSONResponse:
    try:
        return invite_service.list_invites(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_invite_list_failed")


@members_router.post("/{workspace_id}/invites/{invite_id}/cancel", response_model=InviteRead)
def cancel_invite(
    request: Request,
    workspace_id: uuid.UUID,
    invite_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InviteRead | JSONResponse:
    try:
        return invite_service.cancel_invite(db, user, workspace_id, invite_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="workspace_invite_cancel_failed")


@invites_router.get("/invites/pending", response_model=list[PendingInviteRead])
def list_pending_invites(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PendingInviteRead] | JSONResponse:
    try:
        return invite_service.check_pending_invites(db, user)
    except HTTPException as exc:
        return exception_response(request, exc, code="invite_pending_list_failed")


@invites_router.get("/invites/{token}", response_model=InvitePreviewRead)
def get_invite(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
) -> InvitePreviewRead | JSONResponse:
    try:
        return invite_service.get_invite_preview(db, token)
    except HTTPException as exc:
        return exception_response(request, exc, code="invite_get_failed")


@invites_router.post("/invites/{token}/accept", response_model=InviteAcceptResult)
def accept_invite(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InviteAcceptResult | JSONResponse:
    try:
        return invite_service.accept_invite(db, user, token)
    except HTTPException as exc:
        return exception_response(request, exc, code="invite_accept_failed")


@invites_router.post("/invites/{token}/reject", response_model=InviteRead)
def reject_invite(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InviteRead | JSONResponse:
    try:
        return invite_service.reject_invite(db, user, token)
    except HTTPException as exc:
        return exception_response(request, exc, code="invite_reject_failed")
