from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.authz.service import ActorUser, require_access
from app.core.config import get_settings
from app.core.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationFailedError
from app.crm.models import CRMCampaign, CRMCustomField, CRMLead
from app.crm.schemas import LeadRead
from app.crm.service import campaign_service, lead_service
from app.metrics import observe_generation_attempt, observe_generation_duration
from app.otel import start_span
from app.outreach.client import GenerationClient, get_generation_client
from app.outreach.models import AISuggestionBatch, OutreachMessage
from app.outreach.prompts import CampaignBrief, LeadBrief, Sender, build_prompt, parse_suggestions
from app.outreach.retry import RetryPolicy
from app.outreach.schemas import (
    AutoGenerationResult,
    GenerateMessagesRequest,
    GenerateMessagesResponse,
    MessageSentCreate,
    MessageSentRead,
    MessageSentResult,
    SuggestionBatchRead,
    SuggestionRead,
)
from app.pipeline.service import publish_stage_changed, stage_validator
from app.pipeline.stages import BASE_STAGE, CONTACTING_STAGE, MAPPED_STAGE
from app.workspaces.models import Profile, Workspace


logger = logging.getLogger("app.outreach")

T = TypeVar("T")

CHANNELS = ("whatsapp", "email")
_TYPE_ORDER = {"WhatsApp": 0, "Email": 1}
_CONTACT_ADVANCING_STAGES = {BASE_STAGE, MAPPED_STAGE}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.generation_max_attempts,
        base_delay=settings.generation_retry_base_delay_seconds,
    )


@dataclass
class GenerationResult:
    suggestions: list[SuggestionRead] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


class OutreachOrchestrator:
    """Fans prompt generation out per channel and merges the results.

    Each channel is generated concurrently and retried on its own; one
    channel failing leaves the others intact and is reported in ``errors``.
    Only when every channel fails, or the whole fan-out exceeds ``timeout``,
    does generation raise ``ExternalServiceError``.
    """

    def __init__(
        self,
        client_factory: Callable[[], GenerationClient] = get_generation_client,
        retry_policy_factory: Callable[[], RetryPolicy] = default_retry_policy,
    ) -> None:
        self._client_factory = client_factory
        self._retry_policy_factory = retry_policy_factory

    async def generate(
        self,
        campaign: CampaignBrief,
        lead: LeadBrief,
        channels: Sequence[str],
        *,
        variations_per_channel: int = 2,
        sender: Sender | None = None,
        timeout: float | None = None,
    ) -> GenerationResult:
        requested = list(dict.fromkeys(channels))
        unknown = [channel for channel in requested if channel not in CHANNELS]
        if not requested or unknown:
            raise ValidationFailedError(
                "channels must be a non-empty subset of whatsapp and email",
                details=[{"field": "channels", "message": f"Canal inválido: {', '.join(unknown) or 'nenhum'}"}],
            )

        client = self._client_factory()
        policy = self._retry_policy_factory()
        with start_span("app.outreach", "outreach.generate", **{"outreach.channels": ",".join(requested)}):
            try:
                outcomes = await asyncio.wait_for(
                    asyncio.gather(
                        *(
                            self._generate_channel(client, policy, campaign, lead, channel, variations_per_channel, sender)
                            for channel in requested
                        ),
                        return_exceptions=True,
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("outreach.generation_timeout", extra={"error": f"timed out after {timeout}s"})
                raise ExternalServiceError("message generation timed out")

        result = GenerationResult()
        for channel, outcome in zip(requested, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("outreach.channel_failed", extra={"channel": channel, "error": str(outcome)})
                result.errors[channel] = f"Failed to generate {channel} messages"
                continue
            result.suggestions.extend(outcome)

        if not result.suggestions:
            raise ExternalServiceError(". ".join(result.errors.values()) or "message generation failed", details=result.errors)
        result.suggestions.sort(key=lambda item: _TYPE_ORDER.get(item.type, len(_TYPE_ORDER)))
        return result

    async def _generate_channel(
        self,
        client: GenerationClient,
        policy: RetryPolicy,
        campaign: CampaignBrief,
        lead: LeadBrief,
        channel: str,
        variations: int,
        sender: Sender | None,
    ) -> list[SuggestionRead]:
        prompt = build_prompt(campaign, lead, channel, variations, sender)

        async def attempt() -> list[SuggestionRead]:
            text = await client.generate_text(prompt)
            return parse_suggestions(text, channel, sender)

        def on_retry(attempt_number: int, delay: float, exc: BaseException) -> None:
            observe_generation_attempt(channel, "retry")
            logger.info(
                "outreach.generation_retry",
                extra={
                    "channel": channel,
                    "attempt": attempt_number,
                    "max_attempts": policy.max_attempts,
                    "delay_seconds": delay,
                    "error": str(exc),
                },
            )

        started = time.perf_counter()
        with start_span("app.outreach", "outreach.generate_channel", **{"outreach.channel": channel}) as span:
            try:
                suggestions = await policy.run(attempt, on_retry=on_retry)
            except Exception:
                observe_generation_attempt(channel, "failure")
                span.set_attribute("outreach.success", False)
                raise
            finally:
                observe_generation_duration(channel, time.perf_counter() - started)
            observe_generation_attempt(channel, "success")
            span.set_attribute("outreach.success", True)
        return suggestions


def campaign_brief(campaign: CRMCampaign) -> CampaignBrief:
    return CampaignBrief(
        name=campaign.name,
        context=campaign.context,
        voice_tone=campaign.voice_tone,
        ai_instructions=campaign.ai_instructions,
        formality_level=campaign.formality_level,
    )


def lead_brief(session: Session, lead: CRMLead) -> LeadBrief:
    names = dict(
        session.execute(
            select(CRMCustomField.id, CRMCustomField.name).where(CRMCustomField.workspace_id == lead.workspace_id)
        ).all()
    )
    custom: dict[str, str] = {}
    for key, value in (lead.custom_fields or {}).items():
        if value in (None, ""):
            continue
        try:
            label = names.get(uuid.UUID(key), key)
        except ValueError:
            label = key
        custom[label] = str(value)
    return LeadBrief(
        name=lead.name,
        email=lead.email,
        phone=lead.phone,
        position=lead.position,
        company=lead.company,
        segment=lead.segment,
        revenue=lead.revenue,
        notes=lead.notes,
        custom_fields=custom,
    )


def sender_for(session: Session, user_id: str, workspace_id: uuid.UUID, fallback_name: str | None = None) -> Sender:
    profile = session.get(Profile, user_id)
    workspace = session.get(Workspace, workspace_id)
    name = (profile.full_name if profile is not None else None) or fallback_name
    if not name and profile is not None:
        name = profile.email
    return Sender(
        name=name or "",
        company=workspace.name if workspace is not None else "",
        position=profile.position if profile is not None else None,
    )


class SuggestionService:
    entity_type = "outreach.suggestion_batch"

    def __init__(self, orchestrator: OutreachOrchestrator | None = None) -> None:
        self.orchestrator = orchestrator or OutreachOrchestrator()

    def generate_for_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        dto: GenerateMessagesRequest,
    ) -> GenerateMessagesResponse:
        require_access(session, workspace_id, actor_user)
        lead = lead_service.get_lead_row(session, workspace_id, lead_id)
        campaign = campaign_service.get_campaign_row(session, workspace_id, dto.campaign_id)
        settings = get_settings()

        result = run_sync(
            self.orchestrator.generate(
                campaign_brief(campaign),
                lead_brief(session, lead),
                dto.channels,
                variations_per_channel=dto.variations_per_channel or settings.generation_variations_per_channel,
                sender=sender_for(session, actor_user.user_id, workspace_id, actor_user.display_name or actor_user.email),
                timeout=settings.generation_timeout_seconds,
            )
        )
        batch = self._upsert_batch(session, lead, campaign, result, source="manual", generated_by=actor_user.user_id)
        logger.info(
            "outreach.generated",
            extra={"workspace_id": str(workspace_id), "lead_id": str(lead_id), "campaign_id": str(campaign.id)},
        )
        return GenerateMessagesResponse(batch_id=batch.id, suggestions=result.suggestions, errors=result.errors)

    def generate_auto_messages_for_lead(
        self,
        session: Session,
        lead_id: uuid.UUID,
        campaign_id: uuid.UUID,
    ) -> AutoGenerationResult:
        lead = session.get(CRMLead, lead_id)
        campaign = session.get(CRMCampaign, campaign_id)
        if lead is None or campaign is None or campaign.workspace_id != lead.workspace_id:
            return self._auto_failure(lead_id, campaign_id, "lead or campaign not found")
        if campaign.trigger_stage != lead.stage:
            return self._auto_failure(lead_id, campaign_id, "campaign trigger stage does not match the lead stage")
        if campaign.status != "active":
            return self._auto_failure(lead_id, campaign_id, "campaign is not active")

        settings = get_settings()
        try:
            result = run_sync(
                self.orchestrator.generate(
                    campaign_brief(campaign),
                    lead_brief(session, lead),
                    CHANNELS,
                    variations_per_channel=settings.generation_variations_per_channel,
                    sender=sender_for(session, campaign.created_by, campaign.workspace_id),
                    timeout=settings.generation_timeout_seconds,
                )
            )
        except ExternalServiceError as exc:
            logger.warning(
                "outreach.auto_generation_failed",
                extra={"lead_id": str(lead_id), "campaign_id": str(campaign_id), "error": str(exc.detail)},
            )
            return self._auto_failure(lead_id, campaign_id, str(exc.detail))

        self._upsert_batch(session, lead, campaign, result, source="auto", generated_by=None)
        return AutoGenerationResult(
            success=True,
            lead_id=lead_id,
            campaign_id=campaign_id,
            suggestion_count=len(result.suggestions),
        )

    def handle_stage_changed(self, session: Session, envelope: dict[str, Any]) -> list[AutoGenerationResult]:
        if not get_settings().auto_messages_enabled:
            return []
        payload = envelope.get("payload") or {}
        lead_id = uuid.UUID(str(payload["lead_id"]))
        lead = session.get(CRMLead, lead_id)
        if lead is None or lead.archived_at is not None:
            return []

        stmt = select(CRMCampaign.id).where(
            and_(
                CRMCampaign.workspace_id == lead.workspace_id,
                CRMCampaign.status == "active",
                CRMCampaign.trigger_stage == lead.stage,
            )
        )
        if lead.campaign_id is not None:
            stmt = stmt.where(CRMCampaign.id == lead.campaign_id)

        results = []
        for campaign_id in session.scalars(stmt.order_by(CRMCampaign.created_at.asc())).all():
            result = self.generate_auto_messages_for_lead(session, lead_id, campaign_id)
            logger.info(
                "outreach.auto_generation",
                extra={
                    "lead_id": str(lead_id),
                    "campaign_id": str(campaign_id),
                    "status": "generated" if result.success else "skipped",
                },
            )
            results.append(result)
        return results

    def list_batches(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
    ) -> list[SuggestionBatchRead]:
        require_access(session, workspace_id, actor_user)
        lead_service.get_lead_row(session, workspace_id, lead_id)
        rows = session.scalars(
            select(AISuggestionBatch)
            .where(AISuggestionBatch.lead_id == lead_id)
            .order_by(AISuggestionBatch.updated_at.desc())
        ).all()
        return [SuggestionBatchRead.model_validate(row) for row in rows]

    def mark_viewed(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        batch_id: uuid.UUID,
    ) -> SuggestionBatchRead:
        require_access(session, workspace_id, actor_user)
        batch = session.scalar(
            select(AISuggestionBatch).where(
                and_(AISuggestionBatch.id == batch_id, AISuggestionBatch.workspace_id == workspace_id)
            )
        )
        if batch is None:
            raise NotFoundError("suggestion batch not found")
        if batch.viewed_at is None:
            batch.viewed_at = utcnow()
            session.commit()
            session.refresh(batch)
        return SuggestionBatchRead.model_validate(batch)

    def _upsert_batch(
        self,
        session: Session,
        lead: CRMLead,
        campaign: CRMCampaign,
        result: GenerationResult,
        *,
        source: str,
        generated_by: str | None,
    ) -> AISuggestionBatch:
        lead_id, campaign_id, workspace_id = lead.id, campaign.id, lead.workspace_id
        values: dict[str, Any] = {
            "suggestions": [item.model_dump() for item in result.suggestions],
            "errors": dict(result.errors),
            "source": source,
            "generated_by": generated_by,
            "viewed_at": None,
        }

        batch = self._find_batch(session, lead_id, campaign_id)
        if batch is None:
            batch = AISuggestionBatch(workspace_id=workspace_id, lead_id=lead_id, campaign_id=campaign_id, **values)
            session.add(batch)
            try:
                session.commit()
            except IntegrityError:
                # A concurrent generation stored the batch first; overwrite it.
                session.rollback()
                batch = self._find_batch(session, lead_id, campaign_id)
                if batch is None:
                    raise ConflictError("suggestion batch could not be stored")
            else:
                session.refresh(batch)
                return batch

        for key, value in values.items():
            setattr(batch, key, value)
        batch.updated_at = utcnow()
        session.commit()
        session.refresh(batch)
        return batch

    def _find_batch(self, session: Session, lead_id: uuid.UUID, campaign_id: uuid.UUID) -> AISuggestionBatch | None:
        return session.scalar(
            select(AISuggestionBatch).where(
                and_(AISuggestionBatch.lead_id == lead_id, AISuggestionBatch.campaign_id == campaign_id)
            )
        )

    def _auto_failure(self, lead_id: uuid.UUID, campaign_id: uuid.UUID, reason: str) -> AutoGenerationResult:
        return AutoGenerationResult(success=False, lead_id=lead_id, campaign_id=campaign_id, reason=reason)


class MessageLogService:
    entity_type = "outreach.message"

    def record_sent(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
        dto: MessageSentCreate,
    ) -> MessageSentResult:
        """Logs a message the user sent by hand and advances early leads to contacting.

        A lead still in base or lead_mapeado moves to tentando_contato when the
        stage's required fields are present. Missing fields do not block the
        log entry; they come back as ``stage_errors`` and the stage is kept.
        """
        require_access(session, workspace_id, actor_user)
        lead = lead_service.get_lead_row(session, workspace_id, lead_id)
        if dto.campaign_id is not None:
            campaign_service.get_campaign_row(session, workspace_id, dto.campaign_id)

        message = OutreachMessage(
            workspace_id=workspace_id,
            lead_id=lead.id,
            campaign_id=dto.campaign_id,
            user_id=actor_user.user_id,
            channel=dto.channel,
            content=dto.content,
        )
        session.add(message)
        lead.last_message_sent_at = utcnow()

        from_stage = lead.stage
        stage_errors = []
        moved = False
        if from_stage in _CONTACT_ADVANCING_STAGES:
            stage_errors = stage_validator.validate(session, lead, CONTACTING_STAGE)
            if not stage_errors:
                lead.stage = CONTACTING_STAGE
                moved = True

        session.flush()
        audit.record(
            session,
            workspace_id,
            actor_user.user_id,
            self.entity_type,
            str(message.id),
            "sent",
            None,
            {"lead_id": str(lead.id), "channel": message.channel, "stage": lead.stage},
            actor_user.correlation_id,
        )
        if moved:
            audit.record(
                session,
                workspace_id,
                actor_user.user_id,
                "crm.lead",
                str(lead.id),
                "move_stage",
                {"stage": from_stage},
                {"stage": lead.stage},
                actor_user.correlation_id,
            )
        session.commit()
        session.refresh(message)
        session.refresh(lead)
        if moved:
            publish_stage_changed(actor_user.user_id, lead, from_stage)
        return MessageSentResult(
            message=MessageSentRead.model_validate(message),
            lead=LeadRead.model_validate(lead),
            stage_errors=stage_errors,
        )

    def list_messages(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        lead_id: uuid.UUID,
    ) -> list[MessageSentRead]:
        require_access(session, workspace_id, actor_user)
        lead_service.get_lead_row(session, workspace_id, lead_id)
        rows = session.scalars(
            select(OutreachMessage)
            .where(OutreachMessage.lead_id == lead_id)
            .order_by(OutreachMessage.sent_at.desc())
        ).all()
        return [MessageSentRead.model_validate(row) for row in rows]


suggestion_service = SuggestionService()
message_log_service = MessageLogService()
