from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


InviteRole = Literal["owner", "admin", "member"]
InviteStatus = Literal["pending", "accepted", "expired", "cancelled"]


class ProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: str | None
    position: str | None
    avatar_url: str | None
    current_workspace_id: UUID | None


class ProfileUpdate(BaseModel):
    full_name: str | None = Field(default=None, max_length=200)
    position: str | None = Field(default=None, max_length=200)


class ProfileUpdateResult(BaseModel):
    profile: ProfileRead
    warning: str | None = None


class SessionRead(BaseModel):
    user_id: str
    email: str
    profile: ProfileRead
    current_workspace_id: UUID | None


class WorkspaceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)


class WorkspaceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)


class WorkspaceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    logo_url: str | None
    owner_id: str
    created_at: datetime
    updated_at: datetime


class WorkspaceSummaryRead(WorkspaceRead):
    role: str


class WorkspaceUpdateResult(BaseModel):
    workspace: WorkspaceRead
    warning: str | None = None


class MemberRead(BaseModel):
    user_id: str
    role: str
    email: str | None
    full_name: str | None
    avatar_url: str | None
    joined_at: datetime | None


class ChangeRoleRequest(BaseModel):
    role: InviteRole


class TransferOwnershipRequest(BaseModel):
    new_owner_id: str = Field(min_length=1)


class InviteCreate(BaseModel):
    email: EmailStr
    role: InviteRole = "member"


class InviteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    email: str
    role: str
    status: str
    invited_by: str
    expires_at: datetime
    accepted_at: datetime | None
    created_at: datetime


class InviteCreateResult(BaseModel):
    invite: InviteRead
    accept_url: str
    email_sent: bool
    warning: str | None = None


class InvitePreviewRead(BaseModel):
    workspace_id: UUID
    workspace_name: str
    workspace_logo_url: str | None
    email: str
    role: str
    status: str
    expires_at: datetime


class PendingInviteRead(BaseModel):
    id: UUID
    token: str
    workspace_id: UUID
    workspace_name: str
    role: str
    expires_at: datetime


class InviteAcceptResult(BaseModel):
    workspace_id: UUID
    user_id: str
    role: str
    current_workspace_id: UUID


class OnboardingRouteRead(BaseModel):
    route: Literal["dashboard", "invite", "invites", "create_workspace"]
    workspace_id: UUID | None = None
    invite_token: str | None = None
    pending_invites: int = 0


class AuditEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    actor_user_id: str
    entity_type: str
    entity_id: str
    action: str
    before: dict | None
    after: dict | None
    correlation_id: str | None
    occurred_at: datetime
