from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.orm import Session

from app import audit, events
from app.authz.service import ActorUser, has_access, require_access, require_edit_workspace
from app.core.errors import NotFoundError, ValidationFailedError
from app.crm.models import CRMCampaign, CRMCustomField, CRMLead
from app.crm.schemas import (
    CampaignCreate,
    CampaignRead,
    CampaignUpdate,
    CustomFieldCreate,
    CustomFieldRead,
    CustomFieldReorder,
    CustomFieldUpdate,
    LeadActivityRead,
    LeadCreate,
    LeadRead,
    LeadUpdate,
)
from app.models.audit import AuditLog
from app.outreach.models import AISuggestionBatch, OutreachMessage
from app.pipeline.models import StageConfig
from app.pipeline.service import is_blank, publish_stage_changed, stage_validator
from app.pipeline.stages import BASE_STAGE, is_known_stage
from app.workspaces.models import Profile


logger = logging.getLogger("app.crm")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9()\-\s.]{6,}$")
LEAD_TEXT_FIELDS = ("name", "email", "phone", "position", "company", "segment", "revenue", "linkedin", "notes")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _lead_snapshot(lead: CRMLead) -> dict[str, Any]:
    snapshot: dict[str, Any] = {key: getattr(lead, key) for key in LEAD_TEXT_FIELDS}
    snapshot.update(
        stage=lead.stage,
        campaign_id=str(lead.campaign_id) if lead.campaign_id else None,
        custom_fields=dict(lead.custom_fields or {}),
        responsible_user_ids=list(lead.responsible_user_ids or []),
        archived=lead.archived_at is not None,
    )
    return snapshot


def _field_error(field: str, message: str) -> dict[str, str]:
    return {"field": field, "message": message}


def _campaign_name(value: str) -> str:
    name = value.strip()
    if not name:
        raise ValidationFailedError("campaign name is required", details=[_field_error("name", "Nome da campanha é obrigatório")])
    return name


class CustomFieldService:
    entity_type = "crm.custom_field"

    def list_fields(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> list[CustomFieldRead]:
        require_access(session, workspace_id, actor_user)
        return [CustomFieldRead.model_validate(row) for row in self._load(session, workspace_id)]

    def create_field(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: CustomFieldCreate,
    ) -> CustomFieldRead:
        require_edit_workspace(session, workspace_id, actor_user)
        name = dto.name.strip()
        if not name:
            raise ValidationFailedError("field name is required", details=[_field_error("name", "Nome do campo é obrigatório")])
        options = self._validate_options(dto.field_type, dto.options)

        next_position = session.scalar(
            select(func.coalesce(func.max(CRMCustomField.position), -1)).where(CRMCustomField.workspace_id == workspace_id)
        )
        field = CRMCustomField(
            workspace_id=workspace_id,
            name=name,
            field_type=dto.field_type,
            required=dto.required,
            options=options,
            position=int(next_position) + 1,
        )
        session.add(field)
        session.flush()
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(field.id),
            "create",
            None,
            {"name": field.name, "field_type": field.field_type, "required": field.required},
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(field)
        return CustomFieldRead.model_validate(field)

    def update_field(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        field_id: uuid.UUID,
        dto: CustomFieldUpdate,
    ) -> CustomFieldRead:
        require_edit_workspace(session, workspace_id, actor_user)
        field = self._get(session, workspace_id, field_id)
        before = {"name": field.name, "required": field.required, "options": field.options}
        changes = dto.model_dump(exclude_unset=True)

        if "name" in changes and changes["name"] is not None:
            name = changes["name"].strip()
            if not name:
                raise ValidationFailedError("field name is required", details=[_field_error("name", "Nome do campo é obrigatório")])
            field.name = name
        if "required" in changes and changes["required"] is not None:
            field.required = changes["required"]
        if "options" in changes:
            field.options = self._validate_options(field.field_type, changes["options"])

        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(field.id),
            "update",
            before,
            {"name": field.name, "required": field.required, "options": field.options},
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(field)
        return CustomFieldRead.model_validate(field)

    def delete_field(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, field_id: uuid.UUID) -> None:
        require_edit_workspace(session, workspace_id, actor_user)
        field = self._get(session, workspace_id, field_id)
        key = str(field.id)

        stage_configs = session.scalars(select(StageConfig).where(StageConfig.workspace_id == workspace_id)).all()
        for config in stage_configs:
            if key in (config.required_fields or []):
                config.required_fields = [item for item in config.required_fields if item != key]

        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            key,
            "delete",
            {"name": field.name, "field_type": field.field_type},
            None,
            actor_user.correlation_id,
        )
        session.delete(field)
        session.commit()

    def reorder_fields(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: CustomFieldReorder,
    ) -> list[CustomFieldRead]:
        require_edit_workspace(session, workspace_id, actor_user)
        fields = {row.id: row for row in self._load(session, workspace_id)}
        if len(set(dto.field_ids)) != len(dto.field_ids) or set(dto.field_ids) != set(fields):
            raise ValidationFailedError(
                "field_ids must list every custom field of the workspace exactly once",
                details=[_field_error("field_ids", "Lista de campos inválida")],
            )
        for position, field_id in enumerate(dto.field_ids):
            fields[field_id].position = position
        session.commit()
        return [CustomFieldRead.model_validate(row) for row in self._load(session, workspace_id)]

    def validate_values(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        values: dict[str, Any],
        *,
        enforce_required: bool,
    ) -> dict[str, Any]:
        """Returns the cleaned value map keyed by custom field id."""
        definitions = {str(row.id): row for row in self._load(session, workspace_id)}
        errors: list[dict[str, str]] = []
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            definition = definitions.get(key)
            if definition is None:
                errors.append(_field_error(key, f"Campo desconhecido: {key}"))
                continue
            if is_blank(value):
                continue
            message = self._check_value(definition, value)
            if message is not None:
                errors.append(_field_error(key, message))
                continue
            cleaned[key] = value.strip() if isinstance(value, str) else value

        if enforce_required:
            for key, definition in definitions.items():
                if definition.required and key not in cleaned:
                    errors.append(_field_error(key, f"{definition.name} é obrigatório"))

        if errors:
            raise ValidationFailedError("invalid custom field values", details=errors)
        return cleaned

    def _check_value(self, definition: CRMCustomField, value: Any) -> str | None:
        field_type = definition.field_type
        if field_type in ("text", "textarea"):
            return None if isinstance(value, str) else f"{definition.name} deve ser um texto"
        if field_type == "number":
            if isinstance(value, bool):
                return f"{definition.name} deve ser um número"
            if isinstance(value, (int, float)):
                return None
            try:
                float(str(value).replace(",", "."))
            except ValueError:
                return f"{definition.name} deve ser um número"
            return None
        if field_type == "email":
            return None if isinstance(value, str) and _EMAIL_RE.match(value.strip()) else f"{definition.name} deve ser um email válido"
        if field_type == "phone":
            return None if isinstance(value, str) and _PHONE_RE.match(value.strip()) else f"{definition.name} deve ser um telefone válido"
        if field_type == "date":
            if not isinstance(value, str):
                return f"{definition.name} deve ser uma data"
            try:
                date.fromisoformat(value.strip())
            except ValueError:
                return f"{definition.name} deve ser uma data"
            return None
        if field_type == "select":
            allowed = definition.options or []
            return None if value in allowed else f"{definition.name} deve ser uma das opções: {', '.join(allowed)}"
        return f"{definition.name} tem um tipo não suportado"

    def _validate_options(self, field_type: str, options: list[str] | None) -> list[str] | None:
        if field_type != "select":
            if options:
                raise ValidationFailedError(
                    "options are only supported for select fields",
                    details=[_field_error("options", "Opções só são permitidas em campos de seleção")],
                )
            return None
        cleaned: list[str] = []
        for option in options or []:
            text = option.strip() if isinstance(option, str) else ""
            if text and text not in cleaned:
                cleaned.append(text)
        if not cleaned:
            raise ValidationFailedError(
                "select fields need at least one option",
                details=[_field_error("options", "Campos do tipo 'select' devem ter pelo menos uma opção")],
            )
        return cleaned

    def _load(self, session: Session, workspace_id: uuid.UUID) -> list[CRMCustomField]:
        return list(
            session.scalars(
                select(CRMCustomField)
                .where(CRMCustomField.workspace_id == workspace_id)
                .order_by(CRMCustomField.position.asc(), CRMCustomField.created_at.asc())
            ).all()
        )

    def _get(self, session: Session, workspace_id: uuid.UUID, field_id: uuid.UUID) -> CRMCustomField:
        field = session.scalar(
            select(CRMCustomField).where(and_(CRMCustomField.id == field_id, CRMCustomField.workspace_id == workspace_id))
        )
        if field is None:
            raise NotFoundError("custom field not found")
        return field


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, dto: LeadCreate) -> LeadRead:
        require_access(session, workspace_id, actor_user)
        stage = dto.stage or BASE_STAGE
        if not is_known_stage(stage):
            raise ValidationFailedError(f"unknown stage: {stage}", details=[_field_error("stage", f"Etapa desconhecida: {stage}")])
        if dto.campaign_id is not None:
            campaign_service.get_campaign_row(session, workspace_id, dto.campaign_id)
        responsible = self._validate_responsible(session, workspace_id, dto.responsible_user_ids)
        custom_fields = custom_field_service.validate_values(session, workspace_id, dto.custom_fields, enforce_required=True)

        lead = CRMLead(
            id=uuid.uuid4(),
            workspace_id=workspace_id,
            campaign_id=dto.campaign_id,
            stage=stage,
            custom_fields=custom_fields,
            responsible_user_ids=responsible,
            created_by=actor_user.user_id,
            **{key: _clean_text(getattr(dto, key)) for key in LEAD_TEXT_FIELDS},
        )
        if stage != BASE_STAGE:
            stage_validator.ensure_can_move(session, lead, stage)

        session.add(lead)
        session.flush()
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(lead.id),
            "create",
            None,
            _lead_snapshot(lead),
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(lead)

        events.publish(
            events.build_envelope(
                "crm.lead.created",
                actor_user_id=actor_user.user_id,
                workspace_id=str(workspace_id),
                payload={"lead_id": str(lead.id), "stage": lead.stage},
            )
        )
        if stage != BASE_STAGE:
            publish_stage_changed(actor_user.user_id, lead, None)
        logger.info("crm.lead_created", extra={"workspace_id": str(workspace_id), "lead_id": str(lead.id)})
        return LeadRead.model_validate(lead)

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        *,
        stage: str | None = None,
        campaign_id: uuid.UUID | None = None,
        q: str | None = None,
        include_archived: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LeadRead]:
        require_access(session, workspace_id, actor_user)
        stmt: Select[tuple[CRMLead]] = select(CRMLead).where(CRMLead.workspace_id == workspace_id)
        if not include_archived:
            stmt = stmt.where(CRMLead.archived_at.is_(None))
        if stage:
            stmt = stmt.where(CRMLead.stage == stage)
        if campaign_id is not None:
            stmt = stmt.where(CRMLead.campaign_id == campaign_id)
        if q:
            pattern = f"%{q.strip()}%"
            stmt = stmt.where(
                or_(CRMLead.name.ilike(pattern), CRMLead.email.ilike(pattern), CRMLead.company.ilike(pattern))
            )
        rows = session.scalars(stmt.order_by(CRMLead.created_at.desc()).offset(offset).limit(limit)).all()
        return [LeadRead.model_validate(row) for row in rows]

    def get_lead(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, lead_id: uuid.UUID) -> LeadRead:
        require_access(session, workspace_id, actor_user)
        return LeadRead.model_validate(self.get_lead_row(session, workspace_id, lead_id))

    def list_activities(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        *,
        limit: int = 100,
    ) -> list[LeadActivityRead]:
        """Timeline of one lead, newest first: its own changes plus the messages and suggestions tied to it."""
        require_access(session, workspace_id, actor_user)
        lead = self.get_lead_row(session, workspace_id, lead_id)

        message_ids = [str(value) for value in session.scalars(select(OutreachMessage.id).where(OutreachMessage.lead_id == lead.id))]
        batch_ids = [str(value) for value in session.scalars(select(AISuggestionBatch.id).where(AISuggestionBatch.lead_id == lead.id))]
        scopes = [and_(AuditLog.entity_type == self.entity_type, AuditLog.entity_id == str(lead.id))]
        if message_ids:
            scopes.append(and_(AuditLog.entity_type == "outreach.message", AuditLog.entity_id.in_(message_ids)))
        if batch_ids:
            scopes.append(and_(AuditLog.entity_type == "outreach.suggestion_batch", AuditLog.entity_id.in_(batch_ids)))

        rows = session.scalars(
            select(AuditLog)
            .where(AuditLog.workspace_id == workspace_id, or_(*scopes))
            .order_by(AuditLog.occurred_at.desc())
            .limit(limit)
        ).all()
        actor_ids = {row.actor_user_id for row in rows}
        names = {
            profile.id: profile.full_name or profile.email
            for profile in session.scalars(select(Profile).where(Profile.id.in_(actor_ids)))
        } if actor_ids else {}
        return [
            LeadActivityRead(
                id=row.id,
                entity_type=row.entity_type,
                action=row.action,
                actor_user_id=row.actor_user_id,
                actor_name=names.get(row.actor_user_id),
                before=row.before,
                after=row.after,
                occurred_at=row.occurred_at,
            )
            for row in rows
        ]

    def update_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
    ) -> LeadRead:
        require_access(session, workspace_id, actor_user)
        lead = self.get_lead_row(session, workspace_id, lead_id)
        before = _lead_snapshot(lead)
        changes = dto.model_dump(exclude_unset=True)

        if "campaign_id" in changes and changes["campaign_id"] is not None:
            campaign_service.get_campaign_row(session, workspace_id, changes["campaign_id"])
        if "responsible_user_ids" in changes:
            changes["responsible_user_ids"] = self._validate_responsible(
                session, workspace_id, changes["responsible_user_ids"] or []
            )
        if "custom_fields" in changes:
            merged = {**(lead.custom_fields or {}), **(changes["custom_fields"] or {})}
            changes["custom_fields"] = custom_field_service.validate_values(
                session, workspace_id, merged, enforce_required=False
            )

        target_stage = changes.pop("stage", None)
        for key, value in changes.items():
            setattr(lead, key, _clean_text(value) if key in LEAD_TEXT_FIELDS else value)

        from_stage = lead.stage
        stage_changed = target_stage is not None and target_stage != from_stage
        if stage_changed:
            try:
                stage_validator.ensure_can_move(session, lead, target_stage)
            except ValidationFailedError:
                session.rollback()
                raise
            lead.stage = target_stage

        lead.updated_at = utcnow()
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(lead.id),
            "update",
            before,
            _lead_snapshot(lead),
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(lead)
        if stage_changed:
            publish_stage_changed(actor_user.user_id, lead, from_stage)
        return LeadRead.model_validate(lead)

    def move_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        target_stage: str,
    ) -> LeadRead:
        require_access(session, workspace_id, actor_user)
        lead = self.get_lead_row(session, workspace_id, lead_id)
        from_stage = lead.stage
        stage_validator.ensure_can_move(session, lead, target_stage)
        if target_stage == from_stage:
            return LeadRead.model_validate(lead)

        lead.stage = target_stage
        lead.updated_at = utcnow()
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(lead.id),
            "move_stage",
            {"stage": from_stage},
            {"stage": target_stage},
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(lead)
        publish_stage_changed(actor_user.user_id, lead, from_stage)
        return LeadRead.model_validate(lead)

    def archive_lead(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, lead_id: uuid.UUID) -> LeadRead:
        return self._set_archived(session, actor_user, workspace_id, lead_id, archived=True)

    def restore_lead(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, lead_id: uuid.UUID) -> LeadRead:
        return self._set_archived(session, actor_user, workspace_id, lead_id, archived=False)

    def get_lead_row(self, session: Session, workspace_id: uuid.UUID, lead_id: uuid.UUID) -> CRMLead:
        lead = session.scalar(select(CRMLead).where(and_(CRMLead.id == lead_id, CRMLead.workspace_id == workspace_id)))
        if lead is None:
            raise NotFoundError("lead not found")
        return lead

    def _set_archived(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        *,
        archived: bool,
    ) -> LeadRead:
        require_access(session, workspace_id, actor_user)
        lead = self.get_lead_row(session, workspace_id, lead_id)
        if (lead.archived_at is not None) == archived:
            return LeadRead.model_validate(lead)
        lead.archived_at = utcnow() if archived else None
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(lead.id),
            "archive" if archived else "restore",
            {"archived": not archived},
            {"archived": archived},
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def _validate_responsible(self, session: Session, workspace_id: uuid.UUID, user_ids: list[str]) -> list[str]:
        cleaned: list[str] = []
        for user_id in user_ids:
            if user_id in cleaned:
                continue
            if not has_access(session, workspace_id, user_id):
                raise ValidationFailedError(
                    "responsible users must belong to the workspace",
                    details=[_field_error("responsible_user_ids", f"Usuário {user_id} não pertence ao workspace")],
                )
            cleaned.append(user_id)
        return cleaned


class CampaignService:
    entity_type = "crm.campaign"

    def create_campaign(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: CampaignCreate,
    ) -> CampaignRead:
        require_access(session, workspace_id, actor_user)
        name = _campaign_name(dto.name)
        self._validate_trigger_stage(dto.trigger_stage)
        campaign = CRMCampaign(
            workspace_id=workspace_id,
            name=name,
            context=dto.context.strip(),
            voice_tone=dto.voice_tone,
            ai_instructions=_clean_text(dto.ai_instructions),
            formality_level=dto.formality_level,
            status=dto.status,
            trigger_stage=dto.trigger_stage or None,
            created_by=actor_user.user_id,
        )
        session.add(campaign)
        session.flush()
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(campaign.id),
            "create",
            None,
            self._snapshot(campaign),
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(campaign)
        return self._to_read(session, campaign)

    def list_campaigns(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        *,
        status: str | None = None,
    ) -> list[CampaignRead]:
        require_access(session, workspace_id, actor_user)
        stmt = select(CRMCampaign).where(CRMCampaign.workspace_id == workspace_id)
        if status:
            stmt = stmt.where(CRMCampaign.status == status)
        campaigns = session.scalars(stmt.order_by(CRMCampaign.created_at.desc())).all()
        counts = dict(
            session.execute(
                select(CRMLead.campaign_id, func.count(CRMLead.id))
                .where(and_(CRMLead.workspace_id == workspace_id, CRMLead.archived_at.is_(None)))
                .group_by(CRMLead.campaign_id)
            ).all()
        )
        return [self._to_read(session, campaign, lead_count=counts.get(campaign.id, 0)) for campaign in campaigns]

    def get_campaign(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID, campaign_id: uuid.UUID) -> CampaignRead:
        require_access(session, workspace_id, actor_user)
        return self._to_read(session, self.get_campaign_row(session, workspace_id, campaign_id))

    def update_campaign(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        campaign_id: uuid.UUID,
        dto: CampaignUpdate,
    ) -> CampaignRead:
        require_access(session, workspace_id, actor_user)
        campaign = self.get_campaign_row(session, workspace_id, campaign_id)
        before = self._snapshot(campaign)
        changes = dto.model_dump(exclude_unset=True)
        if "trigger_stage" in changes:
            self._validate_trigger_stage(changes["trigger_stage"])
            changes["trigger_stage"] = changes["trigger_stage"] or None
        if "name" in changes:
            changes["name"] = _campaign_name(changes["name"])
        if "ai_instructions" in changes:
            changes["ai_instructions"] = _clean_text(changes["ai_instructions"])
        for key, value in changes.items():
            if value is None and key in ("context", "voice_tone", "status"):
                continue
            setattr(campaign, key, value)

        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(campaign.id),
            "update",
            before,
            self._snapshot(campaign),
            actor_user.correlation_id,
        )
        session.commit()
        session.refresh(campaign)
        return self._to_read(session, campaign)

    def get_campaign_row(self, session: Session, workspace_id: uuid.UUID, campaign_id: uuid.UUID) -> CRMCampaign:
        campaign = session.scalar(
            select(CRMCampaign).where(and_(CRMCampaign.id == campaign_id, CRMCampaign.workspace_id == workspace_id))
        )
        if campaign is None:
            raise NotFoundError("campaign not found")
        return campaign

    def _validate_trigger_stage(self, trigger_stage: str | None) -> None:
        if trigger_stage and not is_known_stage(trigger_stage):
            raise ValidationFailedError(
                f"unknown trigger stage: {trigger_stage}",
                details=[_field_error("trigger_stage", f"Etapa desconhecida: {trigger_stage}")],
            )

    def _snapshot(self, campaign: CRMCampaign) -> dict[str, Any]:
        return {
            "name": campaign.name,
            "voice_tone": campaign.voice_tone,
            "formality_level": campaign.formality_level,
            "status": campaign.status,
            "trigger_stage": campaign.trigger_stage,
        }

    def _to_read(self, session: Session, campaign: CRMCampaign, lead_count: int | None = None) -> CampaignRead:
        if lead_count is None:
            lead_count = session.scalar(
                select(func.count(CRMLead.id)).where(
                    and_(CRMLead.campaign_id == campaign.id, CRMLead.archived_at.is_(None))
                )
            ) or 0
        base = CampaignRead.model_validate(campaign)
        return base.model_copy(update={"lead_count": int(lead_count)})


custom_field_service = CustomFieldService()
lead_service = LeadService()
campaign_service = CampaignService()
