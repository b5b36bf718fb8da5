from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from opentelemetry.trace import Span
from sqlalchemy import Select, and_, func, or_, select
from sqlalchemy.orm import Session, selectinload

from app.core.config import get_settings
from app.core.database import transaction
from app.crm.automation import StageChangeAutomation
from app.crm.enums import AuditAction, OpportunityStatus
from app.crm.errors import ConflictError, CRMError, NotFoundError, ValidationFailedError
from app.crm.models import CRMAccount, CRMActivity, CRMOpportunity, CRMPipelineStage, CRMTask, CRMUser
from app.crm.repositories import CRMRepositories
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
from app.crm.status import infer_status, stage_outcome_label
from app.metrics import observe_opportunity_mutation, observe_pipeline_failure, observe_stage_transition
from app.models.audit import AuditLog
from app.otel import annotate_span, get_tracer, mark_span_failed
from app.services.audit import AuditRecorder, RawChanges, StageTransition


logger = logging.getLogger("app.crm.pipeline")
tracer = get_tracer("app.crm.pipeline")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_name(value: str) -> str:
    name = value.strip()
    if not name:
        raise ValidationFailedError("name cannot be blank", details={"field": "name"})
    return name


def _parse_cursor(cursor: str | None) -> int:
    if cursor is None or cursor == "":
        return 0
    if not cursor.isdigit():
        raise ValidationFailedError("cursor must be a non-negative integer offset", details={"cursor": cursor})
    return int(cursor)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


class OpportunityService:
    entity_type = "Opportunity"

    # Columns an update may change but never clear.
    non_nullable_fields = ("name", "account_id", "owner_user_id", "stage_id", "currency")

    def __init__(
        self,
        repositories: CRMRepositories | None = None,
        automation: StageChangeAutomation | None = None,
        recorder: AuditRecorder | None = None,
    ) -> None:
        self.repositories = repositories or CRMRepositories()
        self.automation = automation or StageChangeAutomation(self.repositories.activities, self.repositories.tasks)
        self.recorder = recorder or AuditRecorder(self.repositories.audit)

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        with tracer.start_as_current_span("crm.opportunity.create") as span:
            annotate_span(span, correlation_id=actor_user.correlation_id)
            try:
                with transaction(session):
                    self._require_account(session, dto.account_id)
                    self._require_owner(session, dto.owner_user_id)
                    stage = self._require_stage(session, dto.stage_id)
                    if dto.contact_id is not None:
                        self._require_contact(session, dto.contact_id)

                    opportunity = CRMOpportunity(
                        name=_clean_name(dto.name),
                        account_id=dto.account_id,
                        owner_user_id=dto.owner_user_id,
                        stage_id=stage.id,
                        contact_id=dto.contact_id,
                        amount=dto.amount,
                        currency=dto.currency or get_settings().default_currency,
                        probability=dto.probability if dto.probability is not None else stage.probability,
                        status=infer_status(dto.status, stage).value,
                        expected_close_date=dto.expected_close_date,
                        description=dto.description,
                        lost_reason=dto.lost_reason,
                    )
                    session.add(opportunity)
                    session.flush()
                    annotate_span(span, opportunity_id=opportunity.id)

                    self.recorder.record(
                        session,
                        entity_type=self.entity_type,
                        entity_id=opportunity.id,
                        action=AuditAction.CREATE,
                        actor_user_id=actor_user.user_id,
                        opportunity_id=opportunity.id,
                        changes=RawChanges(dto.model_dump(mode="json", exclude_unset=True)),
                        correlation_id=actor_user.correlation_id,
                    )
                    opportunity_id = opportunity.id
                    created_status = opportunity.status
            except CRMError as exc:
                self._on_failure(span, exc, AuditAction.CREATE, None)
                raise

        observe_opportunity_mutation(AuditAction.CREATE.value)
        logger.info(
            "opportunity.created",
            extra={
                "opportunity_id": str(opportunity_id),
                "actor_user_id": actor_user.user_id,
                "to_stage_id": str(dto.stage_id),
                "status": created_status,
            },
        )
        return self._to_read_model(session, opportunity_id)

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        """Apply a partial update; a changed ``stage_id`` turns the call into a stage transition.

        A transition re-infers status (unless the payload carries one), resets probability to the
        new stage's default (unless the payload carries one), fires the stage-change automation and
        records a single STAGE_CHANGE audit entry. Anything else records a single UPDATE entry.
        """
        payload = dto.model_dump(exclude_unset=True)
        expected_version = payload.pop("row_version", None)
        explicit_status = payload.pop("status", None)

        with tracer.start_as_current_span("crm.opportunity.update") as span:
            annotate_span(span, opportunity_id=opportunity_id, correlation_id=actor_user.correlation_id)
            transition: StageTransition | None = None
            try:
                with transaction(session):
                    opportunity = self._get_active_opportunity(session, opportunity_id)
                    if expected_version is not None and expected_version != opportunity.row_version:
                        raise ConflictError(
                            "row_version conflict",
                            details={"expected": expected_version, "current": opportunity.row_version},
                        )
                    for name in self.non_nullable_fields:
                        if name in payload and payload[name] is None:
                            raise ValidationFailedError(f"{name} cannot be cleared", details={"field": name})

                    new_stage = self._validate_changed_references(session, opportunity, payload)
                    if new_stage is not None:
                        transition = StageTransition(from_stage_id=opportunity.stage_id, to_stage_id=new_stage.id)
                        opportunity.status = infer_status(explicit_status, new_stage).value
                        if "probability" not in payload:
                            opportunity.probability = new_stage.probability
                    elif explicit_status is not None:
                        opportunity.status = OpportunityStatus(explicit_status).value

                    for name, value in payload.items():
                        if name == "name":
                            value = _clean_name(value)
                        setattr(opportunity, name, value)
                    opportunity.row_version += 1
                    opportunity.updated_at = utcnow()
                    session.flush()

                    if transition is not None:
                        joined = self._load(session, opportunity_id, refresh=True)
                        self.automation.on_stage_changed(session, joined)
                        self.recorder.record(
                            session,
                            entity_type=self.entity_type,
                            entity_id=opportunity_id,
                            action=AuditAction.STAGE_CHANGE,
                            actor_user_id=actor_user.user_id,
                            opportunity_id=opportunity_id,
                            changes=transition,
                            correlation_id=actor_user.correlation_id,
                        )
                    else:
                        self.recorder.record(
                            session,
                            entity_type=self.entity_type,
                            entity_id=opportunity_id,
                            action=AuditAction.UPDATE,
                            actor_user_id=actor_user.user_id,
                            opportunity_id=opportunity_id,
                            changes=RawChanges(dto.model_dump(mode="json", exclude_unset=True)),
                            correlation_id=actor_user.correlation_id,
                        )
                    updated_status = opportunity.status
            except CRMError as exc:
                action = AuditAction.STAGE_CHANGE if transition is not None else AuditAction.UPDATE
                self._on_failure(span, exc, action, opportunity_id)
                raise

        if transition is not None:
            observe_opportunity_mutation(AuditAction.STAGE_CHANGE.value)
            observe_stage_transition(stage_outcome_label(new_stage))
            logger.info(
                "opportunity.stage_changed",
                extra={
                    "opportunity_id": str(opportunity_id),
                    "actor_user_id": actor_user.user_id,
                    "from_stage_id": str(transition.from_stage_id),
                    "to_stage_id": str(transition.to_stage_id),
                    "status": updated_status,
                },
            )
        else:
            observe_opportunity_mutation(AuditAction.UPDATE.value)
            logger.info(
                "opportunity.updated",
                extra={"opportunity_id": str(opportunity_id), "actor_user_id": actor_user.user_id, "status": updated_status},
            )
        return self._to_read_model(session, opportunity_id)

    def soft_delete_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> None:
        with tracer.start_as_current_span("crm.opportunity.delete") as span:
            annotate_span(span, opportunity_id=opportunity_id, correlation_id=actor_user.correlation_id)
            try:
                with transaction(session):
                    opportunity = self._get_active_opportunity(session, opportunity_id)
                    opportunity.deleted_at = utcnow()
                    opportunity.row_version += 1
                    session.flush()
                    self.recorder.record(
                        session,
                        entity_type=self.entity_type,
                        entity_id=opportunity_id,
                        action=AuditAction.DELETE,
                        actor_user_id=actor_user.user_id,
                        opportunity_id=opportunity_id,
                        changes=RawChanges({}),
                        correlation_id=actor_user.correlation_id,
                    )
            except CRMError as exc:
                self._on_failure(span, exc, AuditAction.DELETE, opportunity_id)
                raise

        observe_opportunity_mutation(AuditAction.DELETE.value)
        logger.info("opportunity.deleted", extra={"opportunity_id": str(opportunity_id), "actor_user_id": actor_user.user_id})

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = self._load(session, opportunity_id)
        if opportunity is None or opportunity.deleted_at is not None:
            raise NotFoundError("opportunity", opportunity_id)
        return OpportunityRead.model_validate(opportunity)

    def list_opportunities(
        self,
        session: Session,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[OpportunityRead]:
        stmt: Select[tuple[CRMOpportunity]] = (
            select(CRMOpportunity)
            .join(CRMAccount, CRMAccount.id == CRMOpportunity.account_id)
            .where(CRMOpportunity.deleted_at.is_(None))
            .options(*self._read_options())
        )

        if filters.get("account_archived"):
            stmt = stmt.where(CRMAccount.deleted_at.is_not(None))
        else:
            stmt = stmt.where(CRMAccount.deleted_at.is_(None))
        if filters.get("status"):
            stmt = stmt.where(CRMOpportunity.status == OpportunityStatus(filters["status"]).value)
        if filters.get("stage_id"):
            stmt = stmt.where(CRMOpportunity.stage_id == filters["stage_id"])
        if filters.get("owner_user_id"):
            stmt = stmt.where(CRMOpportunity.owner_user_id == filters["owner_user_id"])
        if filters.get("account_id"):
            stmt = stmt.where(CRMOpportunity.account_id == filters["account_id"])
        if filters.get("search"):
            pattern = f"%{filters['search'].strip()}%"
            stmt = stmt.where(or_(CRMOpportunity.name.ilike(pattern), CRMAccount.name.ilike(pattern)))

        offset = _parse_cursor(cursor)
        opportunities = session.scalars(
            stmt.order_by(CRMOpportunity.created_at.desc(), CRMOpportunity.id).offset(offset).limit(limit)
        ).all()
        return [OpportunityRead.model_validate(opportunity) for opportunity in opportunities]

    def list_activities(self, session: Session, opportunity_id: uuid.UUID) -> list[ActivityRead]:
        self._require_opportunity_row(session, opportunity_id)
        activities = session.scalars(
            select(CRMActivity)
            .where(CRMActivity.opportunity_id == opportunity_id)
            .order_by(CRMActivity.occurred_at.desc(), CRMActivity.created_at.desc())
        ).all()
        return [ActivityRead.model_validate(activity) for activity in activities]

    def list_tasks(self, session: Session, opportunity_id: uuid.UUID) -> list[TaskRead]:
        self._require_opportunity_row(session, opportunity_id)
        tasks = session.scalars(
            select(CRMTask)
            .where(CRMTask.opportunity_id == opportunity_id)
            .order_by(CRMTask.due_date.asc(), CRMTask.created_at.asc())
        ).all()
        return [TaskRead.model_validate(task) for task in tasks]

    def _validate_changed_references(
        self,
        session: Session,
        opportunity: CRMOpportunity,
        payload: dict[str, Any],
    ) -> CRMPipelineStage | None:
        """Re-check only the references the payload actually changes; returns the new stage, if any."""
        if "account_id" in payload and payload["account_id"] != opportunity.account_id:
            self._require_account(session, payload["account_id"])
        if "owner_user_id" in payload and payload["owner_user_id"] != opportunity.owner_user_id:
            self._require_owner(session, payload["owner_user_id"])
        contact_id = payload.get("contact_id")
        if contact_id is not None and contact_id != opportunity.contact_id:
            self._require_contact(session, contact_id)
        if "stage_id" in payload and payload["stage_id"] != opportunity.stage_id:
            return self._require_stage(session, payload["stage_id"])
        return None

    def _require_account(self, session: Session, account_id: uuid.UUID) -> None:
        if self.repositories.accounts.find_active(session, account_id) is None:
            raise NotFoundError("account", account_id)

    def _require_owner(self, session: Session, user_id: uuid.UUID) -> None:
        if self.repositories.users.find_by_id(session, user_id) is None:
            raise NotFoundError("user", user_id)

    def _require_stage(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage:
        stage = self.repositories.stages.find_by_id(session, stage_id)
        if stage is None:
            raise NotFoundError("pipeline stage", stage_id)
        return stage

    def _require_contact(self, session: Session, contact_id: uuid.UUID) -> None:
        if self.repositories.contacts.find_active(session, contact_id) is None:
            raise NotFoundError("contact", contact_id)

    def _get_active_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> CRMOpportunity:
        opportunity = session.scalar(
            select(CRMOpportunity).where(and_(CRMOpportunity.id == opportunity_id, CRMOpportunity.deleted_at.is_(None)))
        )
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)
        return opportunity

    def _require_opportunity_row(self, session: Session, opportunity_id: uuid.UUID) -> None:
        # History stays readable after a soft delete, so deleted rows count here.
        if session.get(CRMOpportunity, opportunity_id) is None:
            raise NotFoundError("opportunity", opportunity_id)

    def _read_options(self) -> tuple[Any, ...]:
        return (
            selectinload(CRMOpportunity.account),
            selectinload(CRMOpportunity.owner),
            selectinload(CRMOpportunity.stage),
            selectinload(CRMOpportunity.contact),
        )

    def _load(self, session: Session, opportunity_id: uuid.UUID, refresh: bool = False) -> CRMOpportunity | None:
        stmt = select(CRMOpportunity).where(CRMOpportunity.id == opportunity_id).options(*self._read_options())
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return session.scalar(stmt)

    def _to_read_model(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = self._load(session, opportunity_id, refresh=True)
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)
        return OpportunityRead.model_validate(opportunity)

    def _on_failure(self, span: Span, exc: CRMError, action: AuditAction, opportunity_id: uuid.UUID | None) -> None:
        mark_span_failed(span, exc)
        observe_pipeline_failure(exc.code)
        logger.warning(
            "opportunity.mutation_failed",
            extra={
                "opportunity_id": str(opportunity_id) if opportunity_id else None,
                "action": action.value,
                "error_code": exc.code,
                "error": exc.message,
            },
        )


class PipelineStageService:
    entity_type = "PipelineStage"

    def __init__(self, repositories: CRMRepositories | None = None, recorder: AuditRecorder | None = None) -> None:
        self.repositories = repositories or CRMRepositories()
        self.recorder = recorder or AuditRecorder(self.repositories.audit)

    def list_stages(self, session: Session) -> list[PipelineStageRead]:
        stages = session.scalars(select(CRMPipelineStage).order_by(CRMPipelineStage.order, CRMPipelineStage.name)).all()
        return [PipelineStageRead.model_validate(stage) for stage in stages]

    def get_stage(self, session: Session, stage_id: uuid.UUID) -> PipelineStageRead:
        return PipelineStageRead.model_validate(self._require_stage(session, stage_id))

    def create_stage(self, session: Session, actor_user: ActorUser, dto: PipelineStageCreate) -> PipelineStageRead:
        self._validate_outcome_flags(dto.is_won, dto.is_lost)
        name = _clean_name(dto.name)
        with transaction(session):
            self._ensure_name_available(session, name, None)
            stage = CRMPipelineStage(
                name=name,
                order=dto.order,
                probability=dto.probability,
                is_won=dto.is_won,
                is_lost=dto.is_lost,
                description=dto.description,
            )
            session.add(stage)
            session.flush()
            self.recorder.record(
                session,
                entity_type=self.entity_type,
                entity_id=stage.id,
                action=AuditAction.CREATE,
                actor_user_id=actor_user.user_id,
                changes=RawChanges(dto.model_dump(mode="json", exclude_unset=True)),
                correlation_id=actor_user.correlation_id,
            )
            stage_id = stage.id
        return self.get_stage(session, stage_id)

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        stage_id: uuid.UUID,
        dto: PipelineStageUpdate,
    ) -> PipelineStageRead:
        payload = dto.model_dump(exclude_unset=True)
        for name in ("name", "order", "probability", "is_won", "is_lost"):
            if name in payload and payload[name] is None:
                raise ValidationFailedError(f"{name} cannot be cleared", details={"field": name})

        with transaction(session):
            stage = self._require_stage(session, stage_id)
            self._validate_outcome_flags(payload.get("is_won", stage.is_won), payload.get("is_lost", stage.is_lost))
            if "name" in payload:
                payload["name"] = _clean_name(payload["name"])
                if payload["name"] != stage.name:
                    self._ensure_name_available(session, payload["name"], stage.id)

            for name, value in payload.items():
                setattr(stage, name, value)
            stage.row_version += 1
            session.flush()
            self.recorder.record(
                session,
                entity_type=self.entity_type,
                entity_id=stage.id,
                action=AuditAction.UPDATE,
                actor_user_id=actor_user.user_id,
                changes=RawChanges(dto.model_dump(mode="json", exclude_unset=True)),
                correlation_id=actor_user.correlation_id,
            )
        return self.get_stage(session, stage_id)

    def delete_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> None:
        with transaction(session):
            stage = self._require_stage(session, stage_id)
            # Soft-deleted opportunities still hold the foreign key.
            referenced = session.scalar(
                select(func.count()).select_from(CRMOpportunity).where(CRMOpportunity.stage_id == stage.id)
            )
            if referenced:
                raise ConflictError(
                    "pipeline stage is referenced by opportunities",
                    details={"stage_id": str(stage.id), "opportunity_count": int(referenced)},
                )
            session.delete(stage)
            session.flush()
            self.recorder.record(
                session,
                entity_type=self.entity_type,
                entity_id=stage_id,
                action=AuditAction.DELETE,
                actor_user_id=actor_user.user_id,
                changes=None,
                correlation_id=actor_user.correlation_id,
            )
        logger.info("pipeline_stage.deleted", extra={"entity_id": str(stage_id), "actor_user_id": actor_user.user_id})

    def _require_stage(self, session: Session, stage_id: uuid.UUID) -> CRMPipelineStage:
        stage = self.repositories.stages.find_by_id(session, stage_id)
        if stage is None:
            raise NotFoundError("pipeline stage", stage_id)
        return stage

    def _ensure_name_available(self, session: Session, name: str, stage_id: uuid.UUID | None) -> None:
        stmt = select(CRMPipelineStage.id).where(func.lower(CRMPipelineStage.name) == name.lower())
        if stage_id is not None:
            stmt = stmt.where(CRMPipelineStage.id != stage_id)
        if session.scalar(stmt) is not None:
            raise ConflictError("pipeline stage name already exists", details={"name": name})

    def _validate_outcome_flags(self, is_won: bool, is_lost: bool) -> None:
        if is_won and is_lost:
            raise ValidationFailedError("a stage cannot be both won and lost", details={"is_won": True, "is_lost": True})


class AuditService:
    def list_audit_logs(
        self,
        session: Session,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[AuditLogRead]:
        stmt: Select[tuple[AuditLog]] = select(AuditLog)

        if filters.get("entity_type"):
            stmt = stmt.where(AuditLog.entity_type == filters["entity_type"])
        if filters.get("entity_id"):
            stmt = stmt.where(AuditLog.entity_id == str(filters["entity_id"]))
        if filters.get("actor_user_id"):
            stmt = stmt.where(AuditLog.actor_user_id == str(filters["actor_user_id"]))
        if filters.get("opportunity_id"):
            stmt = stmt.where(AuditLog.opportunity_id == filters["opportunity_id"])
        if filters.get("action"):
            stmt = stmt.where(AuditLog.action == AuditAction(filters["action"]).value)
        if filters.get("occurred_from"):
            stmt = stmt.where(AuditLog.created_at >= filters["occurred_from"])
        if filters.get("occurred_to"):
            stmt = stmt.where(AuditLog.created_at <= filters["occurred_to"])

        offset = _parse_cursor(cursor)
        entries = session.scalars(stmt.order_by(AuditLog.created_at.desc()).offset(offset).limit(limit)).all()
        return [AuditLogRead.model_validate(entry) for entry in entries]


class ReportService:
    def pipeline_summary(self, session: Session) -> list[PipelineStageSummaryRow]:
        rows = session.execute(
            select(
                CRMPipelineStage.id,
                CRMPipelineStage.name,
                CRMPipelineStage.order,
                func.count(CRMOpportunity.id),
                func.sum(CRMOpportunity.amount),
            )
            .outerjoin(
                CRMOpportunity,
                and_(CRMOpportunity.stage_id == CRMPipelineStage.id, CRMOpportunity.deleted_at.is_(None)),
            )
            .group_by(CRMPipelineStage.id, CRMPipelineStage.name, CRMPipelineStage.order)
            .order_by(CRMPipelineStage.order, CRMPipelineStage.name)
        ).all()
        return [
            PipelineStageSummaryRow(
                stage_id=stage_id,
                stage_name=name,
                order=order,
                opportunity_count=count,
                total_amount=Decimal(str(total)) if total is not None else Decimal("0"),
            )
            for stage_id, name, order, count, total in rows
        ]

    def owner_summary(self, session: Session) -> list[OwnerPipelineSummaryRow]:
        """Pipeline totals per owner; only owners holding at least one non-deleted opportunity appear."""
        rows = session.execute(
            select(
                CRMUser.id,
                CRMUser.first_name,
                CRMUser.last_name,
                CRMUser.email,
                func.count(CRMOpportunity.id),
                func.sum(CRMOpportunity.amount),
            )
            .join(CRMOpportunity, CRMOpportunity.owner_user_id == CRMUser.id)
            .where(CRMOpportunity.deleted_at.is_(None))
            .group_by(CRMUser.id, CRMUser.first_name, CRMUser.last_name, CRMUser.email)
            .order_by(CRMUser.last_name, CRMUser.first_name, CRMUser.email)
        ).all()
        return [
            OwnerPipelineSummaryRow(
                owner_user_id=owner_id,
                owner_name=f"{first_name} {last_name}",
                owner_email=email,
                opportunity_count=count,
                total_amount=Decimal(str(total)) if total is not None else Decimal("0"),
            )
            for owner_id, first_name, last_name, email, count, total in rows
        ]
