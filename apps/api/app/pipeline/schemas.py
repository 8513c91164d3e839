from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.crm.schemas import LeadRead


class FieldError(BaseModel):
    field: str
    message: str


class StageRead(BaseModel):
    slug: str
    name: str
    order: int
    configurable: bool
    hidden: bool


class AvailableFieldRead(BaseModel):
    id: str
    name: str
    builtin: bool


class StageConfigWrite(BaseModel):
    stage: str = Field(min_length=1)
    required_fields: list[str] = Field(default_factory=list)


class StageConfigRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stage: str
    required_fields: list[str]
    updated_at: datetime


class PipelineConfigRead(BaseModel):
    workspace_id: UUID
    stages: list[StageConfigRead]


class PipelineConfigReplace(BaseModel):
    stages: list[StageConfigWrite] = Field(default_factory=list)


class PromotionPreviewRead(BaseModel):
    eligible_count: int


class PromotionResult(BaseModel):
    promoted_count: int
    leads: list[LeadRead]
