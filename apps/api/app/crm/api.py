from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.api.errors import exception_response
from app.authz.api import get_current_user
from app.authz.service import ActorUser
from app.core.database import get_db
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
    LeadStageMove,
    LeadUpdate,
)
from app.crm.service import campaign_service, custom_field_service, lead_service


custom_fields_router = APIRouter(prefix="/api/workspaces", tags=["crm.custom_fields"])
leads_router = APIRouter(prefix="/api/workspaces", tags=["crm.leads"])
campaigns_router = APIRouter(prefix="/api/workspaces", tags=["crm.campaigns"])


@custom_fields_router.get("/{workspace_id}/custom-fields", response_model=list[CustomFieldRead])
def list_custom_fields(
    request: Request,
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CustomFieldRead] | JSONResponse:
    try:
        return custom_field_service.list_fields(db, user, workspace_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_custom_fields_list_failed")


@custom_fields_router.post(
    "/{workspace_id}/custom-fields",
    response_model=CustomFieldRead,
    status_code=status.HTTP_201_CREATED,
)
def create_custom_field(
    request: Request,
    workspace_id: uuid.UUID,
    dto: CustomFieldCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomFieldRead | JSONResponse:
    try:
        return custom_field_service.create_field(db, user, workspace_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_custom_fields_create_failed")


@custom_fields_router.put("/{workspace_id}/custom-fields/order", response_model=list[CustomFieldRead])
def reorder_custom_fields(
    request: Request,
    workspace_id: uuid.UUID,
    dto: CustomFieldReorder,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CustomFieldRead] | JSONResponse:
    try:
        return custom_field_service.reorder_fields(db, user, workspace_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_custom_fields_reorder_failed")


@custom_fields_router.patch("/{workspace_id}/custom-fields/{field_id}", response_model=CustomFieldRead)
def update_custom_field(
    request: Request,
    workspace_id: uuid.UUID,
    field_id: uuid.UUID,
    dto: CustomFieldUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomFieldRead | JSONResponse:
    try:
        return custom_field_service.update_field(db, user, workspace_id, field_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_custom_fields_update_failed")


@custom_fields_router.delete("/{workspace_id}/custom-fields/{field_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_custom_field(
    request: Request,
    workspace_id: uuid.UUID,
    field_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        custom_field_service.delete_field(db, user, workspace_id, field_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_custom_fields_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@leads_router.post("/{workspace_id}/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    workspace_id: uuid.UUID,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, workspace_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_lead_create_failed")


@leads_router.get("/{workspace_id}/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    workspace_id: uuid.UUID,
    stage: str | None = Query(default=None),
    campaign_id: uuid.UUID | None = Query(default=None),
    q: str | None = Query(default=None),
    include_archived: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(
            db,
            user,
            workspace_id,
            stage=stage,
            campaign_id=campaign_id,
            q=q,
            include_archived=include_archived,
            limit=limit,
            offset=offset,
        )
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_lead_list_failed")


@leads_router.get("/{workspace_id}/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, user, workspace_id, lead_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_lead_get_failed")


@leads_router.get("/{workspace_id}/leads/{lead_id}/activities", response_model=list[LeadActivityRead])
def list_lead_activities(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadActivityRead] | JSONResponse:
    try:
        return lead_service.list_activities(db, user, workspace_id, lead_id, limit=limit)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_lead_activities_failed")


@leads_router.patch("/{workspace_id}/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, workspace_id, lead_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_lead_update_failed")


@leads_router.post("/{workspace_id}/leads/{lead_id}/stage", response_model=LeadRead)
def move_lead_stage(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    dto: LeadStageMove,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.move_stage(db, user, workspace_id, lead_id, dto.stage)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_lead_move_failed")


@leads_router.post("/{workspace_id}/leads/{lead_id}/archive", response_model=LeadRead)
def archive_lead(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.archive_lead(db, user, workspace_id, lead_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_lead_archive_failed")


@leads_router.post("/{workspace_id}/leads/{lead_id}/restore", response_model=LeadRead)
def restore_lead(
    request: Request,
    workspace_id: uuid.UUID,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.restore_lead(db, user, workspace_id, lead_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_lead_restore_failed")


@campaigns_router.post("/{workspace_id}/campaigns", response_model=CampaignRead, status_code=status.HTTP_201_CREATED)
def create_campaign(
    request: Request,
    workspace_id: uuid.UUID,
    dto: CampaignCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CampaignRead | JSONResponse:
    try:
        return campaign_service.create_campaign(db, user, workspace_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_campaign_create_failed")


@campaigns_router.get("/{workspace_id}/campaigns", response_model=list[CampaignRead])
def list_campaigns(
    request: Request,
    workspace_id: uuid.UUID,
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CampaignRead] | JSONResponse:
    try:
        return campaign_service.list_campaigns(db, user, workspace_id, status=status_filter)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_campaign_list_failed")


@campaigns_router.get("/{workspace_id}/campaigns/{campaign_id}", response_model=CampaignRead)
def get_campaign(
    request: Request,
    workspace_id: uuid.UUID,
    campaign_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CampaignRead | JSONResponse:
    try:
        return campaign_service.get_campaign(db, user, workspace_id, campaign_id)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_campaign_get_failed")


@campaigns_router.patch("/{workspace_id}/campaigns/{campaign_id}", response_model=CampaignRead)
def update_campaign(
    request: Request,
    workspace_id: uuid.UUID,
    campaign_id: uuid.UUID,
    dto: CampaignUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CampaignRead | JSONResponse:
    try:
        return campaign_service.update_campaign(db, user, workspace_id, campaign_id, dto)
    except HTTPException as exc:
        return exception_response(request, exc, code="crm_campaign_update_failed")
