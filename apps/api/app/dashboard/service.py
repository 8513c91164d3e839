from __future__ import annotations

import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from app.authz.service import ActorUser, require_access
from app.crm.models import CRMCampaign, CRMLead
from app.dashboard.schemas import (
    ConversionRateRead,
    DashboardRead,
    DashboardSummaryRead,
    LeadsByPeriodRead,
    Period,
    StageCountRead,
    TimeByStageRead,
    UserPerformanceRead,
)
from app.models.audit import AuditLog
from app.outreach.models import OutreachMessage
from app.pipeline.stages import STAGES, stage_name
from app.workspaces.models import Profile, Workspace, WorkspaceMember


logger = logging.getLogger("app.dashboard")

QUALIFIED_STAGES = ("qualificado", "reuniao_agendada")
MEETING_STAGE = "reuniao_agendada"
FUNNEL_TRANSITIONS: tuple[tuple[str, str], ...] = (
    ("base", "lead_mapeado"),
    ("lead_mapeado", "tentando_contato"),
    ("tentando_contato", "conexao_iniciada"),
    ("conexao_iniciada", "qualificado"),
    ("qualificado", "reuniao_agendada"),
)
_STAGE_CHANGE_ACTIONS = ("move_stage", "promote", "update")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True, slots=True)
class StageChange:
    lead_id: str
    from_stage: str
    to_stage: str
    occurred_at: datetime


def period_key(value: datetime, period: Period) -> str:
    if period == "month":
        return value.strftime("%Y-%m")
    if period == "week":
        # Weeks start on Sunday.
        start = value.date() - timedelta(days=(value.weekday() + 1) % 7)
        return start.isoformat()
    return value.date().isoformat()


class DashboardService:
    def overview(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        *,
        period: Period = "day",
        days: int = 30,
    ) -> DashboardRead:
        require_access(session, workspace_id, actor_user)
        leads = session.scalars(
            select(CRMLead).where(and_(CRMLead.workspace_id == workspace_id, CRMLead.archived_at.is_(None)))
        ).all()
        changes = self.stage_changes(session, workspace_id)
        report = DashboardRead(
            workspace_id=workspace_id,
            generated_at=utcnow(),
            summary=self.summary(session, workspace_id, leads),
            conversion_rates=self.conversion_rates(changes),
            leads_by_period=self.leads_by_period(leads, period=period, days=days),
            time_by_stage=self.average_time_by_stage(changes, {str(lead.id): lead.created_at for lead in leads}),
            performance_by_user=self.performance_by_user(session, workspace_id, leads),
        )
        logger.info(
            "dashboard.generated",
            extra={"workspace_id": str(workspace_id), "leads": len(leads), "stage_changes": len(changes)},
        )
        return report

    def summary(self, session: Session, workspace_id: uuid.UUID, leads: list[CRMLead]) -> DashboardSummaryRead:
        counts = Counter(lead.stage for lead in leads)
        active_campaigns = session.scalar(
            select(func.count(CRMCampaign.id)).where(
                and_(CRMCampaign.workspace_id == workspace_id, CRMCampaign.status == "active")
            )
        )
        return DashboardSummaryRead(
            total_leads=len(leads),
            qualified_leads=sum(counts[stage] for stage in QUALIFIED_STAGES),
            active_campaigns=active_campaigns or 0,
            meetings_scheduled=counts[MEETING_STAGE],
            stage_counts=[
                StageCountRead(stage=stage.slug, stage_name=stage.name, count=counts[stage.slug]) for stage in STAGES
            ],
        )

    def stage_changes(self, session: Session, workspace_id: uuid.UUID) -> list[StageChange]:
        """Stage moves recorded in the lead history, oldest first."""
        rows = session.scalars(
            select(AuditLog)
            .where(
                and_(
                    AuditLog.workspace_id == workspace_id,
                    AuditLog.entity_type == "crm.lead",
                    AuditLog.action.in_(_STAGE_CHANGE_ACTIONS),
                )
            )
            .order_by(AuditLog.occurred_at.asc())
        ).all()
        changes: list[StageChange] = []
        for row in rows:
            from_stage = (row.before or {}).get("stage")
            to_stage = (row.after or {}).get("stage")
            if not from_stage or not to_stage or from_stage == to_stage:
                continue
            changes.append(StageChange(row.entity_id, from_stage, to_stage, _aware(row.occurred_at)))
        return changes

    def conversion_rates(self, changes: list[StageChange]) -> list[ConversionRateRead]:
        transitions = Counter((change.from_stage, change.to_stage) for change in changes)
        leaving = Counter(change.from_stage for change in changes)
        rates: list[ConversionRateRead] = []
        for from_stage, to_stage in FUNNEL_TRANSITIONS:
            count = transitions[(from_stage, to_stage)]
            total = leaving[from_stage]
            rates.append(
                ConversionRateRead(
                    from_stage=from_stage,
                    to_stage=to_stage,
                    from_stage_name=stage_name(from_stage),
                    to_stage_name=stage_name(to_stage),
                    rate=round(count / total * 100) if total else 0,
                    count=count,
                    total=total,
                )
            )
        return rates

    def leads_by_period(self, leads: list[CRMLead], *, period: Period = "day", days: int = 30) -> list[LeadsByPeriodRead]:
        start = utcnow() - timedelta(days=days)
        created = sorted(_aware(lead.created_at) for lead in leads if _aware(lead.created_at) >= start)
        grouped: Counter[str] = Counter(period_key(value, period) for value in created)
        # Counter keeps first-seen order, which is chronological here.
        return [LeadsByPeriodRead(period=key, count=count) for key, count in grouped.items()]

    def average_time_by_stage(
        self,
        changes: list[StageChange],
        created_at: dict[str, datetime],
    ) -> list[TimeByStageRead]:
        """Average hours a lead spent in each stage before leaving it.

        A lead's first stay starts at its creation; the stage it sits in now is not counted.
        """
        by_lead: dict[str, list[StageChange]] = defaultdict(list)
        for change in changes:
            by_lead[change.lead_id].append(change)

        durations: dict[str, list[float]] = defaultdict(list)
        for lead_id, lead_changes in by_lead.items():
            entered_at = _aware(created_at[lead_id]) if lead_id in created_at else None
            for change in lead_changes:
                if entered_at is not None:
                    hours = (change.occurred_at - entered_at).total_seconds() / 3600
                    durations[change.from_stage].append(max(hours, 0.0))
                entered_at = change.occurred_at

        results: list[TimeByStageRead] = []
        for stage in STAGES:
            values = durations.get(stage.slug, [])
            average = sum(values) / len(values) if values else 0.0
            results.append(
                TimeByStageRead(
                    stage=stage.slug,
                    stage_name=stage.name,
                    average_hours=round(average, 1),
                    average_days=round(average / 24, 1),
                )
            )
        return results

    def performance_by_user(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        leads: list[CRMLead],
    ) -> list[UserPerformanceRead]:
        workspace = session.get(Workspace, workspace_id)
        user_ids = set(
            session.scalars(select(WorkspaceMember.user_id).where(WorkspaceMember.workspace_id == workspace_id))
        )
        if workspace is not None:
            user_ids.add(workspace.owner_id)
        if not user_ids:
            return []

        profiles = {profile.id: profile for profile in session.scalars(select(Profile).where(Profile.id.in_(user_ids)))}
        messages = dict(
            session.execute(
                select(OutreachMessage.user_id, func.count(OutreachMessage.id))
                .where(and_(OutreachMessage.workspace_id == workspace_id, OutreachMessage.user_id.in_(user_ids)))
                .group_by(OutreachMessage.user_id)
            ).all()
        )

        results: list[UserPerformanceRead] = []
        for user_id in user_ids:
            owned = [lead for lead in leads if user_id in (lead.responsible_user_ids or [])]
            profile = profiles.get(user_id)
            results.append(
                UserPerformanceRead(
                    user_id=user_id,
                    user_name=(profile.full_name or profile.email) if profile is not None else user_id,
                    avatar_url=profile.avatar_url if profile is not None else None,
                    leads_count=len(owned),
                    qualified_count=sum(1 for lead in owned if lead.stage in QUALIFIED_STAGES),
                    messages_count=messages.get(user_id, 0),
                )
            )
        results.sort(key=lambda item: (-item.qualified_count, -item.leads_count, item.user_name))
        return results


dashboard_service = DashboardService()
