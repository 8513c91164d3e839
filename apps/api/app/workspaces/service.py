from __future__ import annotations

import logging
import re
import secrets
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.authz.service import (
    ActorUser,
    MEMBERSHIP_ROLES,
    WorkspaceRole,
    has_access,
    parse_role,
    require_access,
    require_edit_workspace,
    require_manage_members,
    require_view_history,
    resolve_role,
)
from app.core.config import get_settings
from app.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidRoleError,
    InviteAlreadyProcessedError,
    InviteEmailMismatchError,
    InviteExpiredError,
    NotFoundError,
    ValidationFailedError,
)
from app.metrics import observe_invite
from app.models.audit import AuditLog
from app.storage import get_object_storage
from app.workspaces.mailer import InviteEmail, get_invite_mailer
from app.workspaces.models import Profile, Workspace, WorkspaceInvite, WorkspaceMember
from app.workspaces.schemas import (
    AuditEntryRead,
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
    WorkspaceCreate,
    WorkspaceRead,
    WorkspaceSummaryRead,
    WorkspaceUpdate,
    WorkspaceUpdateResult,
)


logger = logging.getLogger("app.workspaces")

INVITE_TOKEN_BYTES = 32
LOGO_BUCKET = "workspace-logos"
AVATAR_BUCKET = "avatars"
IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}
_SLUG_ATTEMPTS = 20
_ROLE_ORDER = {WorkspaceRole.OWNER.value: 0, WorkspaceRole.ADMIN.value: 1, WorkspaceRole.MEMBER.value: 2}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def normalize_email(value: str) -> str:
    return value.strip().lower()


def slugify(name: str) -> str:
    decomposed = unicodedata.normalize("NFD", name.lower())
    without_accents = "".join(char for char in decomposed if unicodedata.category(char) != "Mn")
    return re.sub(r"[^a-z0-9]+", "-", without_accents).strip("-")


def _workspace_snapshot(workspace: Workspace) -> dict[str, Any]:
    return {
        "name": workspace.name,
        "slug": workspace.slug,
        "logo_url": workspace.logo_url,
        "owner_id": workspace.owner_id,
    }


def _member_event(event_type: str, actor_user: ActorUser, workspace_id: uuid.UUID, payload: dict[str, Any]) -> None:
    events.publish(
        events.build_envelope(
            event_type,
            actor_user_id=actor_user.user_id,
            workspace_id=str(workspace_id),
            payload=payload,
        )
    )


@dataclass
class ImageUpload:
    content: bytes
    filename: str
    content_type: str


def _validate_image(upload: ImageUpload, field: str, max_bytes: int) -> None:
    if upload.content_type not in IMAGE_EXTENSIONS:
        raise ValidationFailedError(
            f"{field} must be a JPEG, PNG or WebP image",
            details=[{"field": field, "message": "Formato de imagem não suportado"}],
        )
    if len(upload.content) > max_bytes:
        raise ValidationFailedError(
            f"{field} exceeds the maximum size",
            details=[{"field": field, "message": f"A imagem deve ter no máximo {max_bytes // (1024 * 1024)}MB"}],
        )


class ProfileService:
    def ensure_profile(self, session: Session, actor_user: ActorUser) -> Profile:
        profile = session.get(Profile, actor_user.user_id)
        email = normalize_email(actor_user.email)
        if profile is None:
            profile = Profile(id=actor_user.user_id, email=email, full_name=actor_user.display_name)
            session.add(profile)
            session.flush()
            return profile
        if profile.email != email:
            profile.email = email
        if not profile.full_name and actor_user.display_name:
            profile.full_name = actor_user.display_name
        return profile

    def get_session(self, session: Session, actor_user: ActorUser) -> SessionRead:
        profile = self.ensure_profile(session, actor_user)
        current = profile.current_workspace_id
        if current is not None and not has_access(session, current, actor_user.user_id):
            current = None
        if current is None:
            accessible = workspace_service.list_workspaces(session, actor_user)
            current = accessible[0].id if accessible else None
        profile.current_workspace_id = current
        session.commit()
        session.refresh(profile)
        return SessionRead(
            user_id=actor_user.user_id,
            email=profile.email,
            profile=ProfileRead.model_validate(profile),
            current_workspace_id=current,
        )

    def update_profile(self, session: Session, actor_user: ActorUser, dto: ProfileUpdate) -> ProfileRead:
        return self.save_profile(session, actor_user, dto).profile

    def save_profile(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: ProfileUpdate,
        avatar: ImageUpload | None = None,
    ) -> ProfileUpdateResult:
        """Saves profile fields; an avatar the storage rejects leaves a warning instead of failing the save."""
        if avatar is not None:
            _validate_image(avatar, "avatar", get_settings().avatar_max_bytes)
        profile = self.ensure_profile(session, actor_user)
        payload = dto.model_dump(exclude_unset=True)
        for key in ["full_name", "position"]:
            if key in payload:
                value = payload[key]
                setattr(profile, key, value.strip() if isinstance(value, str) and value.strip() else None)

        warning: str | None = None
        if avatar is not None:
            path = f"{profile.id}/avatar.{IMAGE_EXTENSIONS[avatar.content_type]}"
            try:
                profile.avatar_url = get_object_storage().upload(AVATAR_BUCKET, path, avatar.content, avatar.content_type)
            except (OSError, ValueError) as exc:
                warning = "profile saved but the avatar could not be uploaded"
                logger.warning("profile.avatar_upload_failed", extra={"error": str(exc)})

        session.commit()
        session.refresh(profile)
        return ProfileUpdateResult(profile=ProfileRead.model_validate(profile), warning=warning)

    def display_name(self, session: Session, actor_user: ActorUser) -> str:
        profile = session.get(Profile, actor_user.user_id)
        if profile is not None and profile.full_name:
            return profile.full_name
        return actor_user.display_name or actor_user.email


class WorkspaceService:
    entity_type = "workspace"

    def create_workspace(self, session: Session, actor_user: ActorUser, dto: WorkspaceCreate) -> WorkspaceRead:
        name = dto.name.strip()
        if not name:
            raise ValidationFailedError("workspace name is required", details=[{"field": "name", "message": "Nome é obrigatório"}])
        self._ensure_unique_name(session, actor_user.user_id, name)

        base_slug = slugify(name) or "workspace"
        workspace: Workspace | None = None
        for _ in range(_SLUG_ATTEMPTS):
            candidate = Workspace(
                id=uuid.uuid4(),
                name=name,
                slug=self._next_free_slug(session, base_slug),
                owner_id=actor_user.user_id,
            )
            session.add(candidate)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                continue
            workspace = candidate
            break
        if workspace is None:
            raise ConflictError("could not allocate a unique workspace slug")

        profile = profile_service.ensure_profile(session, actor_user)
        profile.current_workspace_id = workspace.id
        audit.record(
            session,
            workspace.id,
            actor_user.user_id,
            self.entity_type,
            str(workspace.id),
            "create",
            None,
            _workspace_snapshot(workspace),
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workspace)
        _member_event("workspace.created", actor_user, workspace.id, {"slug": workspace.slug})
        logger.info("workspace.created", extra={"workspace_id": str(workspace.id)})
        return WorkspaceRead.model_validate(workspace)

    def list_workspaces(self, session: Session, actor_user: ActorUser) -> list[WorkspaceSummaryRead]:
        member_rows = session.execute(
            select(Workspace, WorkspaceMember.role)
            .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)
            .where(WorkspaceMember.user_id == actor_user.user_id)
        ).all()
        owned = session.scalars(select(Workspace).where(Workspace.owner_id == actor_user.user_id)).all()

        summaries: dict[uuid.UUID, WorkspaceSummaryRead] = {}
        for workspace in owned:
            summaries[workspace.id] = self._to_summary(workspace, WorkspaceRole.OWNER)
        for workspace, stored_role in member_rows:
            if workspace.id in summaries:
                continue
            role = parse_role(stored_role)
            if role is None or role == WorkspaceRole.OWNER:
                continue
            summaries[workspace.id] = self._to_summary(workspace, role)
        return sorted(summaries.values(), key=lambda item: (item.created_at, item.name.lower()))

    def get_workspace(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> WorkspaceSummaryRead:
        role = require_access(session, workspace_id, actor_user)
        workspace = session.get(Workspace, workspace_id)
        return self._to_summary(workspace, role)

    def update_workspace(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: WorkspaceUpdate,
        logo: ImageUpload | None = None,
    ) -> WorkspaceUpdateResult:
        require_edit_workspace(session, workspace_id, actor_user)
        workspace = session.get(Workspace, workspace_id)
        before = _workspace_snapshot(workspace)

        if logo is not None:
            _validate_image(logo, "logo", get_settings().logo_max_bytes)

        if dto.name is not None:
            name = dto.name.strip()
            if not name:
                raise ValidationFailedError("workspace name is required", details=[{"field": "name", "message": "Nome é obrigatório"}])
            if name.lower() != workspace.name.lower():
                self._ensure_unique_name(session, workspace.owner_id, name, exclude_id=workspace.id)
            workspace.name = name

        warning: str | None = None
        if logo is not None:
            path = f"{workspace.id}/logo.{IMAGE_EXTENSIONS[logo.content_type]}"
            try:
                workspace.logo_url = get_object_storage().upload(LOGO_BUCKET, path, logo.content, logo.content_type)
            except (OSError, ValueError) as exc:
                warning = "workspace updated but the logo could not be uploaded"
                logger.warning("workspace.logo_upload_failed", extra={"workspace_id": str(workspace.id), "error": str(exc)})

        audit.record(
            session,
            workspace.id,
            actor_user.user_id,
            self.entity_type,
            str(workspace.id),
            "update",
            before,
            _workspace_snapshot(workspace),
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workspace)
        return WorkspaceUpdateResult(workspace=WorkspaceRead.model_validate(workspace), warning=warning)

    def switch_workspace(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> SessionRead:
        require_access(session, workspace_id, actor_user)
        profile = profile_service.ensure_profile(session, actor_user)
        profile.current_workspace_id = workspace_id
        session.commit()
        return profile_service.get_session(session, actor_user)

    def list_history(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditEntryRead]:
        require_view_history(session, workspace_id, actor_user)
        stmt = select(AuditLog).where(AuditLog.workspace_id == workspace_id)
        if entity_type:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        if entity_id:
            stmt = stmt.where(AuditLog.entity_id == entity_id)
        rows = session.scalars(stmt.order_by(AuditLog.occurred_at.desc()).limit(limit)).all()
        return [AuditEntryRead.model_validate(row) for row in rows]

    def _ensure_unique_name(
        self,
        session: Session,
        owner_id: str,
        name: str,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(Workspace.id).where(
            and_(Workspace.owner_id == owner_id, func.lower(Workspace.name) == name.lower())
        )
        if exclude_id is not None:
            stmt = stmt.where(Workspace.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise ConflictError("you already own a workspace with this name")

    def _next_free_slug(self, session: Session, base_slug: str) -> str:
        taken = set(
            session.scalars(
                select(Workspace.slug).where(or_(Workspace.slug == base_slug, Workspace.slug.like(f"{base_slug}-%")))
            ).all()
        )
        if base_slug not in taken:
            return base_slug
        suffix = 1
        while f"{base_slug}-{suffix}" in taken:
            suffix += 1
        return f"{base_slug}-{suffix}"

    def _to_summary(self, workspace: Workspace, role: WorkspaceRole) -> WorkspaceSummaryRead:
        base = WorkspaceRead.model_validate(workspace)
        return WorkspaceSummaryRead(**base.model_dump(), role=role.value)


class MembershipService:
    entity_type = "workspace.member"

    def list_members(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> list[MemberRead]:
        require_access(session, workspace_id, actor_user)
        workspace = session.get(Workspace, workspace_id)
        rows = session.execute(
            select(WorkspaceMember, Profile)
            .outerjoin(Profile, Profile.id == WorkspaceMember.user_id)
            .where(WorkspaceMember.workspace_id == workspace_id)
        ).all()

        owner_profile = session.get(Profile, workspace.owner_id)
        members = [self._to_read(workspace.owner_id, WorkspaceRole.OWNER.value, owner_profile, workspace.created_at)]
        for member, profile in rows:
            role = parse_role(member.role)
            if role is None or member.user_id == workspace.owner_id:
                continue
            members.append(self._to_read(member.user_id, role.value, profile, member.created_at))

        return sorted(
            members,
            key=lambda item: (_ROLE_ORDER.get(item.role, 99), (item.full_name or item.email or item.user_id).lower()),
        )

    def change_role(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        target_user_id: str,
        new_role: str,
    ) -> MemberRead:
        require_manage_members(session, workspace_id, actor_user)
        role = parse_role(new_role)
        if role is None:
            raise InvalidRoleError(f"invalid role: {new_role}")
        if role == WorkspaceRole.OWNER:
            raise InvalidRoleError("the owner role can only be assigned by transferring ownership")

        workspace = session.get(Workspace, workspace_id)
        if target_user_id == workspace.owner_id:
            raise ForbiddenError("the workspace owner's role cannot be changed")

        member = self._get_member(session, workspace_id, target_user_id)
        before = {"role": member.role}
        member.role = role.value
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            target_user_id,
            "change_role",
            before,
            {"role": member.role},
            actor_user.correlation_id,
        )
        session.commit()
        _member_event("workspace.member.role_changed", actor_user, workspace_id, {"user_id": target_user_id, "role": member.role})
        return self._to_read(member.user_id, member.role, session.get(Profile, member.user_id), member.created_at)

    def transfer_ownership(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        new_owner_id: str,
    ) -> WorkspaceRead:
        role = require_access(session, workspace_id, actor_user)
        if role != WorkspaceRole.OWNER:
            raise ForbiddenError("only the workspace owner can transfer ownership")

        workspace = session.get(Workspace, workspace_id)
        previous_owner_id = workspace.owner_id
        if new_owner_id == previous_owner_id:
            raise ConflictError("user already owns this workspace")

        new_owner_membership = self._get_member(session, workspace_id, new_owner_id)
        previous_owner_membership = session.scalar(
            select(WorkspaceMember).where(
                and_(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == previous_owner_id)
            )
        )

        workspace.owner_id = new_owner_id
        session.delete(new_owner_membership)
        if previous_owner_membership is None:
            session.add(WorkspaceMember(workspace_id=workspace_id, user_id=previous_owner_id, role=WorkspaceRole.ADMIN.value))
        else:
            previous_owner_membership.role = WorkspaceRole.ADMIN.value

        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            "workspace",
            str(workspace_id),
            "transfer_ownership",
            {"owner_id": previous_owner_id},
            {"owner_id": new_owner_id},
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workspace)
        _member_event(
            "workspace.ownership_transferred",
            actor_user,
            workspace_id,
            {"previous_owner_id": previous_owner_id, "new_owner_id": new_owner_id},
        )
        return WorkspaceRead.model_validate(workspace)

    def remove_member(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, target_user_id: str) -> None:
        require_manage_members(session, workspace_id, actor_user)
        workspace = session.get(Workspace, workspace_id)
        if target_user_id == workspace.owner_id:
            raise ForbiddenError("the workspace owner cannot be removed")
        member = self._get_member(session, workspace_id, target_user_id)
        self._delete_membership(session, actor_user, member, action="remove")

    def leave_workspace(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> None:
        role = require_access(session, workspace_id, actor_user)
        if role == WorkspaceRole.OWNER:
            raise ForbiddenError("transfer ownership before leaving the workspace")
        member = self._get_member(session, workspace_id, actor_user.user_id)
        self._delete_membership(session, actor_user, member, action="leave")

    def _delete_membership(self, session: Session, actor_user: ActorUser, member: WorkspaceMember, *, action: str) -> None:
        workspace_id = member.workspace_id
        user_id = member.user_id
        session.delete(member)
        session.execute(
            update(Profile)
            .where(and_(Profile.id == user_id, Profile.current_workspace_id == workspace_id))
            .values(current_workspace_id=None)
        )
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            user_id,
            action,
            {"role": member.role},
            None,
            actor_user.correlation_id,
        )
        session.commit()
        _member_event("workspace.member.removed", actor_user, workspace_id, {"user_id": user_id, "reason": action})

    def _get_member(self, session: Session, workspace_id: uuid.UUID, user_id: str) -> WorkspaceMember:
        member = session.scalar(
            select(WorkspaceMember).where(
                and_(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user_id)
            )
        )
        if member is None:
            raise NotFoundError("member not found")
        return member

    def _to_read(self, user_id: str, role: str, profile: Profile | None, joined_at: datetime | None) -> MemberRead:
        return MemberRead(
            user_id=user_id,
            role=role,
            email=profile.email if profile is not None else None,
            full_name=profile.full_name if profile is not None else None,
            avatar_url=profile.avatar_url if profile is not None else None,
            joined_at=joined_at,
        )


class InviteService:
    entity_type = "workspace.invite"

    def invite_member(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: InviteCreate,
    ) -> InviteCreateResult:
        require_manage_members(session, workspace_id, actor_user)
        role = parse_role(dto.role)
        if role is None or role not in MEMBERSHIP_ROLES:
            raise InvalidRoleError("invites can only grant the admin or member role")

        email = normalize_email(str(dto.email))
        workspace = session.get(Workspace, workspace_id)
        self._ensure_not_member(session, workspace, email)

        now = utcnow()
        pending = session.scalars(
            select(WorkspaceInvite).where(
                and_(
                    WorkspaceInvite.workspace_id == workspace_id,
                    WorkspaceInvite.email == email,
                    WorkspaceInvite.status == "pending",
                )
            )
        ).all()
        if any(_aware(item.expires_at) > now for item in pending):
            raise ConflictError("a pending invite already exists for this email")

        settings = get_settings()
        invite = WorkspaceInvite(
            workspace_id=workspace_id,
            email=email,
            role=role.value,
            token=secrets.token_hex(INVITE_TOKEN_BYTES),
            status="pending",
            invited_by=actor_user.user_id,
            expires_at=now + timedelta(days=settings.invite_ttl_days),
        )
        session.add(invite)
        session.flush()
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(invite.id),
            "create",
            None,
            {"email": email, "role": invite.role},
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(invite)
        observe_invite("created")
        _member_event("workspace.invite.created", actor_user, workspace_id, {"invite_id": str(invite.id), "role": invite.role})

        accept_url = f"{settings.site_base_url.rstrip('/')}/invites/accept/{invite.token}"
        mail_result = get_invite_mailer().send_invite(
            InviteEmail(
                to=email,
                workspace_name=workspace.name,
                inviter_name=profile_service.display_name(session, actor_user),
                role=invite.role,
                accept_url=accept_url,
                expires_at=invite.expires_at,
            )
        )
        return InviteCreateResult(
            invite=InviteRead.model_validate(invite),
            accept_url=accept_url,
            email_sent=mail_result.sent,
            warning=mail_result.warning,
        )

    def list_invites(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> list[InviteRead]:
        require_manage_members(session, workspace_id, actor_user)
        recent_cutoff = utcnow() - timedelta(days=30)
        rows = session.scalars(
            select(WorkspaceInvite)
            .where(WorkspaceInvite.workspace_id == workspace_id)
            .order_by(WorkspaceInvite.created_at.desc())
        ).all()
        visible = [
            row
            for row in rows
            if (row.status == "pending" and not self._expire_if_needed(session, row))
            or (row.status == "accepted" and row.accepted_at is not None and _aware(row.accepted_at) >= recent_cutoff)
        ]
        return [InviteRead.model_validate(row) for row in visible]

    def cancel_invite(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        invite_id: uuid.UUID,
    ) -> InviteRead:
        require_manage_members(session, workspace_id, actor_user)
        invite = session.scalar(
            select(WorkspaceInvite).where(
                and_(WorkspaceInvite.id == invite_id, WorkspaceInvite.workspace_id == workspace_id)
            )
        )
        if invite is None:
            raise NotFoundError("invite not found")
        if self._expire_if_needed(session, invite):
            raise InviteExpiredError("invite has expired")
        if not self._transition(session, invite, "cancelled"):
            raise InviteAlreadyProcessedError("only pending invites can be cancelled")
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(invite.id),
            "cancel",
            {"status": "pending"},
            {"status": "cancelled"},
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(invite)
        observe_invite("cancelled")
        return InviteRead.model_validate(invite)

    def get_invite_preview(self, session: Session, token: str) -> InvitePreviewRead:
        invite = self._get_by_token(session, token)
        if self._expire_if_needed(session, invite):
            raise InviteExpiredError("invite has expired")
        workspace = invite.workspace
        return InvitePreviewRead(
            workspace_id=workspace.id,
            workspace_name=workspace.name,
            workspace_logo_url=workspace.logo_url,
            email=invite.email,
            role=invite.role,
            status=invite.status,
            expires_at=invite.expires_at,
        )

    def accept_invite(self, session: Session, actor_user: ActorUser, token: str) -> InviteAcceptResult:
        invite = self._load_for_response(session, actor_user, token)
        workspace_id = invite.workspace_id
        workspace = invite.workspace

        if not self._transition(session, invite, "accepted", accepted_at=utcnow()):
            raise InviteAlreadyProcessedError("invite has already been processed")

        role = invite.role
        if workspace.owner_id == actor_user.user_id:
            role = WorkspaceRole.OWNER.value
        else:
            member = session.scalar(
                select(WorkspaceMember).where(
                    and_(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == actor_user.user_id)
                )
            )
            if member is None:
                session.add(WorkspaceMember(workspace_id=workspace_id, user_id=actor_user.user_id, role=invite.role))
            else:
                member.role = invite.role

        profile = profile_service.ensure_profile(session, actor_user)
        profile.current_workspace_id = workspace_id
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(invite.id),
            "accept",
            {"status": "pending"},
            {"status": "accepted", "role": invite.role},
            actor_user.correlation_id,
        )
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise InviteAlreadyProcessedError("invite has already been processed")

        observe_invite("accepted")
        _member_event("workspace.member.joined", actor_user, workspace_id, {"user_id": actor_user.user_id, "role": role})
        logger.info("workspace.invite_accepted", extra={"workspace_id": str(workspace_id), "invite_id": str(invite.id)})
        return InviteAcceptResult(
            workspace_id=workspace_id,
            user_id=actor_user.user_id,
            role=role,
            current_workspace_id=workspace_id,
        )

    def reject_invite(self, session: Session, actor_user: ActorUser, token: str) -> InviteRead:
        invite = self._load_for_response(session, actor_user, token)
        if not self._transition(session, invite, "cancelled"):
            raise InviteAlreadyProcessedError("invite has already been processed")
        audit.record(
            session,
            invite.workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(invite.id),
            "reject",
            {"status": "pending"},
            {"status": "cancelled"},
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(invite)
        observe_invite("rejected")
        return InviteRead.model_validate(invite)

    def check_pending_invites(self, session: Session, actor_user: ActorUser) -> list[PendingInviteRead]:
        email = normalize_email(actor_user.email)
        now = utcnow()
        rows = session.scalars(
            select(WorkspaceInvite)
            .where(and_(WorkspaceInvite.email == email, WorkspaceInvite.status == "pending"))
            .order_by(WorkspaceInvite.created_at.asc())
        ).all()

        pending: list[PendingInviteRead] = []
        for invite in rows:
            if _aware(invite.expires_at) <= now:
                continue
            if has_access(session, invite.workspace_id, actor_user.user_id):
                continue
            pending.append(
                PendingInviteRead(
                    id=invite.id,
                    token=invite.token,
                    workspace_id=invite.workspace_id,
                    workspace_name=invite.workspace.name,
                    role=invite.role,
                    expires_at=invite.expires_at,
                )
            )
        return pending

    def resolve_onboarding_route(self, session: Session, actor_user: ActorUser) -> OnboardingRouteRead:
        workspaces = workspace_service.list_workspaces(session, actor_user)
        if workspaces:
            session_read = profile_service.get_session(session, actor_user)
            return OnboardingRouteRead(route="dashboard", workspace_id=session_read.current_workspace_id)

        pending = self.check_pending_invites(session, actor_user)
        if len(pending) == 1:
            return OnboardingRouteRead(route="invite", invite_token=pending[0].token, pending_invites=1)
        if len(pending) > 1:
            return OnboardingRouteRead(route="invites", pending_invites=len(pending))
        return OnboardingRouteRead(route="create_workspace")

    def _load_for_response(self, session: Session, actor_user: ActorUser, token: str) -> WorkspaceInvite:
        invite = self._get_by_token(session, token)
        if self._expire_if_needed(session, invite):
            raise InviteExpiredError("invite has expired")
        if invite.status != "pending":
            raise InviteAlreadyProcessedError("invite has already been processed")
        if normalize_email(invite.email) != normalize_email(actor_user.email):
            raise InviteEmailMismatchError("this invite was sent to a different email address")
        return invite

    def _get_by_token(self, session: Session, token: str) -> WorkspaceInvite:
        invite = session.scalar(select(WorkspaceInvite).where(WorkspaceInvite.token == token))
        if invite is None:
            raise NotFoundError("invite not found")
        return invite

    def _expire_if_needed(self, session: Session, invite: WorkspaceInvite) -> bool:
        if utcnow() <= _aware(invite.expires_at):
            return False
        if invite.status == "pending" and self._transition(session, invite, "expired"):
            session.commit()
            observe_invite("expired")
        return True

    def _transition(self, session: Session, invite: WorkspaceInvite, new_status: str, **values: Any) -> bool:
        result = session.execute(
            update(WorkspaceInvite)
            .where(and_(WorkspaceInvite.id == invite.id, WorkspaceInvite.status == "pending"))
            .values(status=new_status, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        invite.status = new_status
        for key, value in values.items():
            setattr(invite, key, value)
        return True

    def _ensure_not_member(self, session: Session, workspace: Workspace, email: str) -> None:
        profile_ids = session.scalars(select(Profile.id).where(Profile.email == email)).all()
        for profile_id in profile_ids:
            if resolve_role(session, workspace.id, profile_id) is not None:
                raise ConflictError("this user is already a member of the workspace")


profile_service = ProfileService()
workspace_service = WorkspaceService()
membership_service = MembershipService()
invite_service = InviteService()
