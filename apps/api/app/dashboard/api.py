from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import exception_response
from app.authz.api import get_current_user
from app.authz.service import ActorUser
from app.core.database import get_db
from app.dashboard.schemas import DashboardRead, Period
from app.dashboard.service import dashboard_service


router = APIRouter(prefix="/api/workspaces", tags=["dashboard"])


@router.get("/{workspace_id}/dashboard", response_model=DashboardRead)
def get_dashboard(
    request: Request,
    workspace_id: uuid.UUID,
    period: Period = Query(default="day"),
    days: int = Query(default=30, ge=1, le=365),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DashboardRead | JSONResponse:
    try:
        return dashboard_service.overview(db, user, workspace_id, period=period, days=days)
    except HTTPException as exc:
        return exception_response(request, exc, code="dashboard_get_failed")
