from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel


Period = Literal["day", "week", "month"]


class StageCountRead(BaseModel):
    stage: str
    stage_name: str
    count: int


class DashboardSummaryRead(BaseModel):
    total_leads: int
    qualified_leads: int
    active_campaigns: int
    meetings_scheduled: int
    stage_counts: list[StageCountRead]


class ConversionRateRead(BaseModel):
    from_stage: str
    to_stage: str
    from_stage_name: str
    to_stage_name: str
    rate: int
    count: int
    total: int


class LeadsByPeriodRead(BaseModel):
    period: str
    count: int


class TimeByStageRead(BaseModel):
    stage: str
    stage_name: str
    average_hours: float
    average_days: float


class UserPerformanceRead(BaseModel):
    user_id: str
    user_name: str
    avatar_url: str | None
    leads_count: int
    qualified_count: int
    messages_count: int


class DashboardRead(BaseModel):
    workspace_id: UUID
    generated_at: datetime
    summary: DashboardSummaryRead
    conversion_rates: list[ConversionRateRead]
    leads_by_period: list[LeadsByPeriodRead]
    time_by_stage: list[TimeByStageRead]
    performance_by_user: list[UserPerformanceRead]
