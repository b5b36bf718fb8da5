from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.crm.models import CRMPipelineStage
from app.crm.schemas import PipelineStageCreate, PipelineStageRead
from app.crm.service import ActorUser, PipelineStageService


DEFAULT_PIPELINE_STAGES: tuple[PipelineStageCreate, ...] = (
    PipelineStageCreate(name="Prospecting", order=10, probability=10),
    PipelineStageCreate(name="Qualified", order=20, probability=25),
    PipelineStageCreate(name="Proposal", order=30, probability=50),
    PipelineStageCreate(name="Negotiation", order=40, probability=75),
    PipelineStageCreate(name="Closed Won", order=50, probability=100, is_won=True),
    PipelineStageCreate(name="Closed Lost", order=60, probability=0, is_lost=True),
)


def seed_pipeline_stages(
    session: Session,
    *,
    actor_user_id: str = "system",
    stage_service: PipelineStageService | None = None,
) -> list[PipelineStageRead]:
    """Install the default sales pipeline; stages that already exist by name are left untouched."""
    service = stage_service or PipelineStageService()
    actor = ActorUser(user_id=actor_user_id, permissions={"crm.pipelines.manage"})
    existing = set(session.scalars(select(CRMPipelineStage.name)).all())
    for dto in DEFAULT_PIPELINE_STAGES:
        if dto.name in existing:
            continue
        service.create_stage(session, actor, dto)
    return service.list_stages(session)
