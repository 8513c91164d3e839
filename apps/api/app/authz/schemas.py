from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel


class WorkspacePermissionsRead(BaseModel):
    workspace_id: UUID
    role: str
    can_manage_members: bool
    can_edit_workspace: bool
    can_view_history: bool
