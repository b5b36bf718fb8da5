from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.enums import ActivityType, TaskPriority, TaskStatus
from app.crm.errors import AutomationFailedError
from app.crm.models import CRMActivity, CRMOpportunity, CRMTask
from app.crm.repositories import ActivityStore, TaskStore
from app.otel import annotate_span, get_tracer


logger = logging.getLogger("app.crm.pipeline")
tracer = get_tracer("app.crm.pipeline")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AutomationResult:
    activity: CRMActivity
    task: CRMTask


class StageChangeAutomation:
    """Creates the NOTE activity and follow-up task that accompany every stage transition.

    Runs inside the caller's transaction: a failure here raises ``AutomationFailedError`` and the
    caller's unit of work rolls back the stage change along with anything created so far.
    """

    def __init__(self, activities: ActivityStore, tasks: TaskStore, followup_due_days: int | None = None) -> None:
        self._activities = activities
        self._tasks = tasks
        self._followup_due_days = followup_due_days

    @property
    def followup_due_days(self) -> int:
        if self._followup_due_days is not None:
            return self._followup_due_days
        return get_settings().stage_followup_due_days

    def on_stage_changed(self, session: Session, opportunity: CRMOpportunity) -> AutomationResult:
        stage = opportunity.stage
        now = utcnow()
        links = {
            "account_id": opportunity.account_id,
            "opportunity_id": opportunity.id,
            "contact_id": opportunity.contact_id,
        }

        with tracer.start_as_current_span("crm.stage_change.automation") as span:
            annotate_span(span, opportunity_id=opportunity.id, stage_id=stage.id, account_id=opportunity.account_id)
            try:
                activity = self._activities.create(
                    session,
                    activity_type=ActivityType.NOTE.value,
                    subject=f"Stage changed to {stage.name}",
                    description=f"Opportunity {opportunity.name} moved to {stage.name}.",
                    occurred_at=now,
                    user_id=opportunity.owner_user_id,
                    **links,
                )
                task = self._tasks.create(
                    session,
                    title=f"Follow up ({stage.name})",
                    description=f'Plan next steps for "{opportunity.name}" in stage {stage.name}.',
                    status=TaskStatus.OPEN.value,
                    priority=TaskPriority.MEDIUM.value,
                    due_date=now + timedelta(days=self.followup_due_days),
                    owner_user_id=opportunity.owner_user_id,
                    **links,
                )
            except Exception as exc:
                span.record_exception(exc)
                raise AutomationFailedError(
                    "stage change automation failed",
                    details={"opportunity_id": str(opportunity.id), "stage_id": str(stage.id)},
                ) from exc

        logger.info(
            "opportunity.automation_created",
            extra={"opportunity_id": str(opportunity.id), "entity_id": str(task.id), "to_stage_id": str(stage.id)},
        )
        return AutomationResult(activity=activity, task=task)
