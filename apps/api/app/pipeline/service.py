from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.authz.service import ActorUser, require_access, require_edit_workspace
from app.core.config import get_settings
from app.core.errors import ConflictError, ValidationFailedError
from app.crm.models import CRMCustomField, CRMLead
from app.crm.schemas import LeadRead
from app.metrics import observe_leads_promoted
from app.pipeline.models import PipelineConfig, StageConfig
from app.pipeline.schemas import (
    AvailableFieldRead,
    FieldError,
    PipelineConfigRead,
    PipelineConfigReplace,
    PromotionPreviewRead,
    PromotionResult,
    StageConfigRead,
    StageRead,
)
from app.pipeline.stages import (
    BASE_STAGE,
    BUILTIN_FIELDS,
    LEGACY_REQUIRED_FIELDS,
    MAPPED_STAGE,
    STAGES,
    is_configurable_stage,
    is_known_stage,
)


logger = logging.getLogger("app.pipeline")

STAGE_CHANGED_EVENT = "crm.lead.stage_changed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def publish_stage_changed(actor_user_id: str, lead: CRMLead, from_stage: str | None) -> None:
    events.publish(
        events.build_envelope(
            STAGE_CHANGED_EVENT,
            actor_user_id=actor_user_id,
            workspace_id=str(lead.workspace_id),
            payload={
                "lead_id": str(lead.id),
                "campaign_id": str(lead.campaign_id) if lead.campaign_id else None,
                "from_stage": from_stage,
                "to_stage": lead.stage,
            },
        )
    )


def _custom_field_names(session: Session, workspace_id: uuid.UUID) -> dict[str, str]:
    rows = session.execute(
        select(CRMCustomField.id, CRMCustomField.name).where(CRMCustomField.workspace_id == workspace_id)
    ).all()
    return {str(field_id): name for field_id, name in rows}


class PipelineConfigService:
    entity_type = "pipeline.config"

    def list_stages(self) -> list[StageRead]:
        return [
            StageRead(slug=stage.slug, name=stage.name, order=stage.order, configurable=stage.configurable, hidden=stage.hidden)
            for stage in STAGES
        ]

    def available_fields(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> list[AvailableFieldRead]:
        require_access(session, workspace_id, actor_user)
        fields = [AvailableFieldRead(id=field.id, name=field.label, builtin=True) for field in BUILTIN_FIELDS.values()]
        custom = session.scalars(
            select(CRMCustomField)
            .where(CRMCustomField.workspace_id == workspace_id)
            .order_by(CRMCustomField.position.asc(), CRMCustomField.created_at.asc())
        ).all()
        fields.extend(AvailableFieldRead(id=str(item.id), name=item.name, builtin=False) for item in custom)
        return fields

    def get_config(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> PipelineConfigRead:
        require_access(session, workspace_id, actor_user)
        self._ensure_header(session, workspace_id)
        session.commit()
        return self._to_read(session, workspace_id)

    def replace_config(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: PipelineConfigReplace,
    ) -> PipelineConfigRead:
        require_edit_workspace(session, workspace_id, actor_user)
        requested = self._validate_request(session, workspace_id, dto)
        self._ensure_header(session, workspace_id)

        existing = {
            row.stage: row
            for row in session.scalars(select(StageConfig).where(StageConfig.workspace_id == workspace_id)).all()
        }
        before = {stage: list(row.required_fields or []) for stage, row in existing.items()}

        for stage, required_fields in requested.items():
            row = existing.get(stage)
            if row is None:
                session.add(StageConfig(workspace_id=workspace_id, stage=stage, required_fields=required_fields))
            else:
                row.required_fields = list(required_fields)
                row.updated_at = utcnow()

        stale = [stage for stage in existing if stage not in requested]
        if stale:
            session.execute(
                delete(StageConfig).where(and_(StageConfig.workspace_id == workspace_id, StageConfig.stage.in_(stale)))
            )

        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(workspace_id),
            "replace",
            before,
            requested,
            actor_user.correlation_id,
        )
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("pipeline configuration was changed concurrently; retry")
        logger.info("pipeline.config_replaced", extra={"workspace_id": str(workspace_id)})
        return self._to_read(session, workspace_id)

    def _ensure_header(self, session: Session, workspace_id: uuid.UUID) -> PipelineConfig:
        header = session.scalar(select(PipelineConfig).where(PipelineConfig.workspace_id == workspace_id))
        if header is not None:
            return header
        header = PipelineConfig(workspace_id=workspace_id)
        session.add(header)
        try:
            session.flush()
        except IntegrityError:
            # Another request created the header first.
            session.rollback()
            header = session.scalar(select(PipelineConfig).where(PipelineConfig.workspace_id == workspace_id))
        return header

    def _validate_request(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        dto: PipelineConfigReplace,
    ) -> dict[str, list[str]]:
        custom_ids = set(_custom_field_names(session, workspace_id))
        errors: list[dict[str, str]] = []
        requested: dict[str, list[str]] = {}
        for item in dto.stages:
            stage = item.stage
            if not is_known_stage(stage):
                errors.append({"field": stage, "message": f"Etapa desconhecida: {stage}"})
                continue
            if not is_configurable_stage(stage):
                errors.append({"field": stage, "message": f"A etapa {stage} não pode ser configurada"})
                continue
            if stage in requested:
                errors.append({"field": stage, "message": f"Etapa duplicada: {stage}"})
                continue
            fields: list[str] = []
            for field_id in item.required_fields:
                if field_id not in BUILTIN_FIELDS and field_id not in custom_ids:
                    errors.append({"field": field_id, "message": f"Campo desconhecido: {field_id}"})
                    continue
                if field_id not in fields:
                    fields.append(field_id)
            requested[stage] = fields
        if errors:
            raise ValidationFailedError("invalid pipeline configuration", details=errors)
        return requested

    def _to_read(self, session: Session, workspace_id: uuid.UUID) -> PipelineConfigRead:
        order = {stage.slug: stage.order for stage in STAGES}
        rows = session.scalars(select(StageConfig).where(StageConfig.workspace_id == workspace_id)).all()
        rows = sorted(rows, key=lambda row: order.get(row.stage, len(order)))
        return PipelineConfigRead(
            workspace_id=workspace_id,
            stages=[StageConfigRead.model_validate(row) for row in rows],
        )


class StageTransitionValidator:
    """Checks that a lead carries every field its target stage requires.

    Stages have no ordering constraint. Required fields come from the
    workspace's StageConfig for the target stage; built-in ids read lead
    attributes, anything else reads the lead's custom field values.
    """

    def validate(self, session: Session, lead: CRMLead, target_stage: str) -> list[FieldError]:
        if not is_known_stage(target_stage):
            raise ValidationFailedError(
                f"unknown stage: {target_stage}",
                details=[{"field": "stage", "message": f"Etapa desconhecida: {target_stage}"}],
            )

        required = self.required_fields(session, lead.workspace_id, target_stage)
        if not required:
            return []

        custom_names = _custom_field_names(session, lead.workspace_id)
        custom_values = lead.custom_fields or {}
        errors: list[FieldError] = []
        for field_id in required:
            builtin = BUILTIN_FIELDS.get(field_id)
            if builtin is not None:
                value = getattr(lead, builtin.attribute, None)
                label = builtin.label
            else:
                value = custom_values.get(field_id)
                label = custom_names.get(field_id, field_id)
            if is_blank(value):
                errors.append(FieldError(field=field_id, message=f"{label} é obrigatório"))
        return errors

    def required_fields(self, session: Session, workspace_id: uuid.UUID, stage: str) -> list[str]:
        row = session.scalar(
            select(StageConfig).where(and_(StageConfig.workspace_id == workspace_id, StageConfig.stage == stage))
        )
        fields = list(row.required_fields or []) if row is not None else []
        if get_settings().legacy_stage_rules_enabled and is_configurable_stage(stage):
            fields.extend(field_id for field_id in LEGACY_REQUIRED_FIELDS if field_id not in fields)
        return fields

    def ensure_can_move(self, session: Session, lead: CRMLead, target_stage: str) -> None:
        errors = self.validate(session, lead, target_stage)
        if errors:
            raise ValidationFailedError(
                "lead is missing fields required by the target stage",
                details=[error.model_dump() for error in errors],
            )


def find_eligible_for_promotion(leads: Iterable[CRMLead]) -> list[CRMLead]:
    """Base-stage, non-archived leads with a name, a company or position, and an email or phone."""
    eligible = []
    for lead in leads:
        if lead.stage != BASE_STAGE or lead.archived_at is not None:
            continue
        if is_blank(lead.name):
            continue
        if is_blank(lead.company) and is_blank(lead.position):
            continue
        if is_blank(lead.email) and is_blank(lead.phone):
            continue
        eligible.append(lead)
    return eligible


class PromotionService:
    entity_type = "crm.lead"

    def eligible_count(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> PromotionPreviewRead:
        require_access(session, workspace_id, actor_user)
        return PromotionPreviewRead(eligible_count=len(find_eligible_for_promotion(self._base_leads(session, workspace_id))))

    def promote_eligible(self, session: Session, actor_user: ActorUser, workspace_id: uuid.UUID) -> PromotionResult:
        require_access(session, workspace_id, actor_user)
        eligible = find_eligible_for_promotion(self._base_leads(session, workspace_id))
        if not eligible:
            return PromotionResult(promoted_count=0, leads=[])

        now = utcnow()
        for lead in eligible:
            lead.stage = MAPPED_STAGE
            lead.updated_at = now
            audit.record(
                session,
                workspace_id,
                actor_user.user_id,
                self.entity_type,
                str(lead.id),
                "promote",
                {"stage": BASE_STAGE},
                {"stage": MAPPED_STAGE},
                actor_user.correlation_id,
            )
        session.commit()

        observe_leads_promoted(len(eligible))
        logger.info(
            "pipeline.leads_promoted",
            extra={"workspace_id": str(workspace_id), "promoted_count": len(eligible)},
        )
        promoted = []
        for lead in eligible:
            session.refresh(lead)
            promoted.append(LeadRead.model_validate(lead))
            publish_stage_changed(actor_user.user_id, lead, BASE_STAGE)
        return PromotionResult(promoted_count=len(promoted), leads=promoted)

    def _base_leads(self, session: Session, workspace_id: uuid.UUID) -> list[CRMLead]:
        return list(
            session.scalars(
                select(CRMLead)
                .where(
                    and_(
                        CRMLead.workspace_id == workspace_id,
                        CRMLead.stage == BASE_STAGE,
                        CRMLead.archived_at.is_(None),
                    )
                )
                .order_by(CRMLead.created_at.asc())
            ).all()
        )


pipeline_config_service = PipelineConfigService()
stage_validator = StageTransitionValidator()
promotion_service = PromotionService()
