from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.authz.api import get_current_user, router as authz_router
from app.authz.service import ActorUser, WorkspaceRole
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.api import campaigns_router, custom_fields_router, leads_router
from app.dashboard.api import router as dashboard_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.outreach.api import router as outreach_router
from app.pipeline.api import router as pipeline_router, stages_router
from app.workspaces.api import invites_router, members_router, router as workspaces_router, session_router
from app.workspaces.service import workspace_service

router = APIRouter()
router.include_router(session_router)
router.include_router(workspaces_router)
router.include_router(authz_router)
router.include_router(members_router)
router.include_router(invites_router)
router.include_router(stages_router)
# Before the leads router: /leads/promotion must win over /leads/{lead_id}.
router.include_router(pipeline_router)
router.include_router(custom_fields_router)
router.include_router(leads_router)
router.include_router(campaigns_router)
router.include_router(outreach_router)
router.include_router(dashboard_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    roles = {item.role for item in workspace_service.list_workspaces(db, user)}
    if not roles & {WorkspaceRole.OWNER.value, WorkspaceRole.ADMIN.value}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="metrics require an owner or admin role")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
