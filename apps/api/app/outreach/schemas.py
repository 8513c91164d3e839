from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.crm.schemas import LeadRead
from app.pipeline.schemas import FieldError


Channel = Literal["whatsapp", "email"]
SuggestionType = Literal["WhatsApp", "Email"]


class SuggestionRead(BaseModel):
    id: str
    type: SuggestionType
    message: str


class GenerateMessagesRequest(BaseModel):
    campaign_id: UUID
    channels: list[Channel] = Field(default_factory=lambda: ["whatsapp", "email"], min_length=1)
    variations_per_channel: int | None = Field(default=None, ge=1, le=5)


class GenerateMessagesResponse(BaseModel):
    batch_id: UUID
    suggestions: list[SuggestionRead]
    errors: dict[str, str] = Field(default_factory=dict)


class SuggestionBatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    lead_id: UUID
    campaign_id: UUID
    source: str
    suggestions: list[SuggestionRead]
    errors: dict[str, str]
    generated_by: str | None
    viewed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class AutoGenerationResult(BaseModel):
    success: bool
    lead_id: UUID
    campaign_id: UUID
    reason: str | None = None
    suggestion_count: int = 0


class MessageSentCreate(BaseModel):
    channel: Channel
    content: str = Field(min_length=1)
    campaign_id: UUID | None = None


class MessageSentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    lead_id: UUID
    campaign_id: UUID | None
    user_id: str
    channel: str
    content: str
    sent_at: datetime


class MessageSentResult(BaseModel):
    message: MessageSentRead
    lead: LeadRead
    stage_errors: list[FieldError] = Field(default_factory=list)
