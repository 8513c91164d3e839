from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import exception_response
from app.authz.api import get_current_user
from app.authz.service import ActorUser
from app.core.database import get_db
from app.outreach.schemas import (
    GenerateMessagesRequest,
    GenerateMessagesResponse,
    MessageSentCreate,
    MessageSentRead,
    MessageSentResult,
    SuggestionBatchRead,
)
from app.outreach.service import message_log_service, suggestion_service


router = APIRouter(prefix="/api/workspaces", tags=["outreach"])


@router.post("/{workspace_id}/leads/{lead_id}/suggestions", response_model=GenerateMessagesResponse)
def generate_suggestions(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    dto: GenerateMessagesRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> GenerateMessagesResponse | JSONResponse:
    try:
        return suggestion_service.generate_for_lead(db, user, workspace_id, lead_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="outreach_generate_failed")


@router.get("/{workspace_id}/leads/{lead_id}/suggestions", response_model=list[SuggestionBatchRead])
def list_suggestion_batches(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[SuggestionBatchRead] | JSONResponse:
    try:
        return suggestion_service.list_batches(db, user, workspace_id, lead_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="outreach_batch_list_failed")


@router.post("/{workspace_id}/suggestions/{batch_id}/viewed", response_model=SuggestionBatchRead)
def mark_suggestion_batch_viewed(
    request: Request,
    workspace_id: uuid.UUID,
    batch_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SuggestionBatchRead | JSONResponse:
    try:
        return suggestion_service.mark_viewed(db, user, workspace_id, batch_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="outreach_batch_view_failed")


@router.post(
    "/{workspace_id}/leads/{lead_id}/messages",
    response_model=MessageSentResult,
    status_code=status.HTTP_201_CREATED,
)
def record_sent_message(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    dto: MessageSentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MessageSentResult | JSONResponse:
    try:
        return message_log_service.record_sent(db, user, workspace_id, lead_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="outreach_message_record_failed")


@router.get("/{workspace_id}/leads/{lead_id}/messages", response_model=list[MessageSentRead])
def list_sent_messages(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[MessageSentRead] | JSONResponse:
    try:
        return message_log_service.list_messages(db, user, workspace_id, lead_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="outreach_message_list_failed")
