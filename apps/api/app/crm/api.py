from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.enums import AuditAction, OpportunityStatus
from app.crm.errors import CRMError
from app.crm.schemas import (
    ActivityRead,
    AuditLogRead,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    OwnerPipelineSummaryRow,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageSummaryRow,
    PipelineStageUpdate,
    TaskRead,
)
from app.crm.service import (
    ActorUser,
    AuditService,
    OpportunityService,
    PipelineStageService,
    ReportService,
)

opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
pipeline_stages_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
audit_router = APIRouter(prefix="/api/crm", tags=["crm.audit"])
reports_router = APIRouter(prefix="/api/crm", tags=["crm.reports"])
opportunity_service = OpportunityService()
pipeline_stage_service = PipelineStageService()
audit_service = AuditService()
report_service = ReportService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: CRMError | HTTPException, code: str) -> JSONResponse:
    """Engine errors keep their own code; framework errors get the route-level ``code``."""
    if isinstance(exc, CRMError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    status_filter: OpportunityStatus | None = Query(default=None, alias="status"),
    stage_id: uuid.UUID | None = Query(default=None),
    owner_user_id: uuid.UUID | None = Query(default=None),
    account_id: uuid.UUID | None = Query(default=None),
    account_archived: bool = Query(default=False),
    search: str | None = Query(default=None, max_length=200),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_opportunities(
            db,
            filters={
                "status": status_filter,
                "stage_id": stage_id,
                "owner_user_id": owner_user_id,
                "account_id": account_id,
                "account_archived": account_archived,
                "search": search,
            },
            cursor=cursor,
            limit=limit,
        )
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_opportunity_list_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.create")
        return opportunity_service.create_opportunity(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(db, opportunity_id)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def patch_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.update")
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_opportunity_update_failed")


@opportunities_router.delete("/opportunities/{opportunity_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.opportunities.delete")
        opportunity_service.soft_delete_opportunity(db, user, opportunity_id)
        return {"status": "deleted"}
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_opportunity_delete_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/activities", response_model=list[ActivityRead])
def list_opportunity_activities(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_activities(db, opportunity_id)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_opportunity_activities_failed")


@opportunities_router.get("/opportunities/{opportunity_id}/tasks", response_model=list[TaskRead])
def list_opportunity_tasks(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_tasks(db, opportunity_id)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_opportunity_tasks_failed")


@pipeline_stages_router.get("/pipeline-stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_stage_service.list_stages(db)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_pipeline_stage_list_failed")


@pipeline_stages_router.post("/pipeline-stages", response_model=PipelineStageRead, status_code=status.HTTP_201_CREATED)
def create_pipeline_stage(
    request: Request,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_stage_service.create_stage(db, user, dto)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_pipeline_stage_create_failed")


@pipeline_stages_router.get("/pipeline-stages/{stage_id}", response_model=PipelineStageRead)
def get_pipeline_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_stage_service.get_stage(db, stage_id)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_pipeline_stage_get_failed")


@pipeline_stages_router.patch("/pipeline-stages/{stage_id}", response_model=PipelineStageRead)
def patch_pipeline_stage(
    request: Request,
    stage_id: uuid.UUID,
    dto: PipelineStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_stage_service.update_stage(db, user, stage_id, dto)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_pipeline_stage_update_failed")


@pipeline_stages_router.delete("/pipeline-stages/{stage_id}", response_model=None, status_code=status.HTTP_200_OK)
def delete_pipeline_stage(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.pipelines.manage")
        pipeline_stage_service.delete_stage(db, user, stage_id)
        return {"status": "deleted"}
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_pipeline_stage_delete_failed")


@audit_router.get("/audit", response_model=list[AuditLogRead])
def list_audit_logs(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    actor_user_id: str | None = Query(default=None),
    opportunity_id: uuid.UUID | None = Query(default=None),
    action: AuditAction | None = Query(default=None),
    occurred_from: datetime | None = Query(default=None),
    occurred_to: datetime | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AuditLogRead] | JSONResponse:
    try:
        require_permission(user, "crm.audit.read")
        return audit_service.list_audit_logs(
            db,
            filters={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "actor_user_id": actor_user_id,
                "opportunity_id": opportunity_id,
                "action": action,
                "occurred_from": occurred_from,
                "occurred_to": occurred_to,
            },
            cursor=cursor,
            limit=limit,
        )
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_audit_list_failed")


@reports_router.get("/reports/pipeline-summary", response_model=list[PipelineStageSummaryRow])
def pipeline_summary(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageSummaryRow] | JSONResponse:
    try:
        require_permission(user, "crm.reports.read")
        return report_service.pipeline_summary(db)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_pipeline_summary_failed")


@reports_router.get("/reports/owner-summary", response_model=list[OwnerPipelineSummaryRow])
def owner_summary(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OwnerPipelineSummaryRow] | JSONResponse:
    try:
        require_permission(user, "crm.reports.read")
        return report_service.owner_summary(db)
    except (CRMError, HTTPException) as exc:
        return failure_response(request, exc, "crm_owner_summary_failed")
