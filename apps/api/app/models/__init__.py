from app.models.audit import AuditLog
from app.crm.models import (
	CRMAccount,
	CRMActivity,
	CRMContact,
	CRMOpportunity,
	CRMPipelineStage,
	CRMTask,
	CRMUser,
)

__all__ = [
	"AuditLog",
	"CRMAccount",
	"CRMActivity",
	"CRMContact",
	"CRMOpportunity",
	"CRMPipelineStage",
	"CRMTask",
	"CRMUser",
]
