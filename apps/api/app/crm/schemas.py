from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


CustomFieldType = Literal["text", "number", "email", "phone", "select", "textarea", "date"]
VoiceTone = Literal["formal", "informal", "neutral"]
CampaignStatus = Literal["active", "paused", "finished"]


class CustomFieldCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    field_type: CustomFieldType
    required: bool = False
    options: list[str] | None = None


class CustomFieldUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    required: bool | None = None
    options: list[str] | None = None


class CustomFieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    field_type: CustomFieldType
    required: bool
    options: list[str] | None
    position: int
    created_at: datetime
    updated_at: datetime


class CustomFieldReorder(BaseModel):
    field_ids: list[UUID] = Field(min_length=1)


class LeadBase(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    position: str | None = None
    company: str | None = None
    segment: str | None = None
    revenue: str | None = None
    linkedin: str | None = None
    notes: str | None = None


class LeadCreate(LeadBase):
    stage: str = "base"
    campaign_id: UUID | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    responsible_user_ids: list[str] = Field(default_factory=list)


class LeadUpdate(LeadBase):
    stage: str | None = None
    campaign_id: UUID | None = None
    custom_fields: dict[str, Any] | None = None
    responsible_user_ids: list[str] | None = None


class LeadStageMove(BaseModel):
    stage: str = Field(min_length=1)


class LeadRead(LeadBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    campaign_id: UUID | None
    stage: str
    custom_fields: dict[str, Any]
    responsible_user_ids: list[str]
    last_message_sent_at: datetime | None
    archived_at: datetime | None
    created_by: str
    created_at: datetime
    updated_at: datetime


class CampaignCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    context: str = ""
    voice_tone: VoiceTone = "neutral"
    ai_instructions: str | None = None
    formality_level: int | None = Field(default=None, ge=1, le=5)
    status: CampaignStatus = "active"
    trigger_stage: str | None = None


class CampaignUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    context: str | None = None
    voice_tone: VoiceTone | None = None
    ai_instructions: str | None = None
    formality_level: int | None = Field(default=None, ge=1, le=5)
    status: CampaignStatus | None = None
    trigger_stage: str | None = None

    @model_validator(mode="after")
    def _reject_null_name(self) -> "CampaignUpdate":
        if "name" in self.model_fields_set and self.name is None:
            raise ValueError("name cannot be null")
        return self


class CampaignRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    context: str
    voice_tone: VoiceTone
    ai_instructions: str | None
    formality_level: int | None
    status: CampaignStatus
    trigger_stage: str | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    lead_count: int = 0


class LeadActivityRead(BaseModel):
    id: UUID
    entity_type: str
    action: str
    actor_user_id: str
    actor_name: str | None
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    occurred_at: datetime
