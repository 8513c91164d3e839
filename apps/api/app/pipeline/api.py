from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import exception_response
from app.authz.api import get_current_user
from app.authz.service import ActorUser
from app.core.database import get_db
from app.pipeline.schemas import (
    AvailableFieldRead,
    PipelineConfigRead,
    PipelineConfigReplace,
    PromotionPreviewRead,
    PromotionResult,
    StageRead,
)
from app.pipeline.service import pipeline_config_service, promotion_service


stages_router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])
# Registered ahead of the leads router so /leads/promotion is not captured by /leads/{lead_id}.
router = APIRouter(prefix="/api/workspaces", tags=["pipeline"])


@stages_router.get("/stages", response_model=list[StageRead])
def list_stages() -> list[StageRead]:
    return pipeline_config_service.list_stages()


@router.get("/{workspace_id}/pipeline/config", response_model=PipelineConfigRead)
def get_pipeline_config(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineConfigRead | JSONResponse:
    try:
        return pipeline_config_service.get_config(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="pipeline_config_get_failed")


@router.put("/{workspace_id}/pipeline/config", response_model=PipelineConfigRead)
def replace_pipeline_config(
    request: Request,
    workspace_id: uuid.UUID,
    dto: PipelineConfigReplace,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineConfigRead | JSONResponse:
    try:
        return pipeline_config_service.replace_config(db, user, workspace_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="pipeline_config_replace_failed")


@router.get("/{workspace_id}/pipeline/fields", response_model=list[AvailableFieldRead])
def list_available_fields(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AvailableFieldRead] | JSONResponse:
    try:
        return pipeline_config_service.available_fields(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="pipeline_fields_list_failed")


@router.get("/{workspace_id}/leads/promotion", response_model=PromotionPreviewRead)
def get_promotion_preview(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PromotionPreviewRead | JSONResponse:
    try:
        return promotion_service.eligible_count(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="pipeline_promotion_preview_failed")


@router.post("/{workspace_id}/leads/promotion", response_model=PromotionResult)
def promote_eligible_leads(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PromotionResult | JSONResponse:
    try:
        return promotion_service.promote_eligible(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="pipeline_promotion_failed")
