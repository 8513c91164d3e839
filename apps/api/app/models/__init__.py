from app.models.audit import AuditLog
from app.crm.models import CRMCampaign, CRMCustomField, CRMLead
from app.outreach.models import AISuggestionBatch, OutreachMessage
from app.pipeline.models import PipelineConfig, StageConfig
from app.workspaces.models import Profile, Workspace, WorkspaceInvite, WorkspaceMember

__all__ = [
	"AISuggestionBatch",
	"AuditLog",
	"CRMCampaign",
	"CRMCustomField",
	"CRMLead",
	"OutreachMessage",
	"PipelineConfig",
	"Profile",
	"StageConfig",
	"Workspace",
	"WorkspaceInvite",
	"WorkspaceMember",
]
