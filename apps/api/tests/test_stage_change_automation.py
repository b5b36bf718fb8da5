from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base
from app.crm.automation import StageChangeAutomation
from app.crm.errors import AutomationFailedError
from app.crm.models import CRMAccount, CRMActivity, CRMOpportunity, CRMPipelineStage, CRMTask, CRMUser
from app.crm.repositories import ActivityRepository, TaskRepository


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def opportunity(db_session: Session) -> CRMOpportunity:
    owner = CRMUser(email="owner@example.com", first_name="Olive", last_name="Owner")
    stage = CRMPipelineStage(name="Negotiation", order=40, probability=75)
    db_session.add_all([owner, stage])
    db_session.flush()
    account = CRMAccount(name="Umbrella", owner_user_id=owner.id)
    db_session.add(account)
    db_session.flush()
    opp = CRMOpportunity(
        name="Umbrella pilot",
        account_id=account.id,
        owner_user_id=owner.id,
        stage_id=stage.id,
        probability=75,
    )
    db_session.add(opp)
    db_session.flush()
    db_session.refresh(opp)
    return opp


class _BrokenActivityStore:
    def create(self, session: Session, **fields: Any) -> CRMActivity:
        raise RuntimeError("activity store down")


def test_follow_up_due_days_come_from_settings(
    db_session: Session, opportunity: CRMOpportunity, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("STAGE_FOLLOWUP_DUE_DAYS", "7")
    get_settings.cache_clear()
    automation = StageChangeAutomation(ActivityRepository(), TaskRepository())

    result = automation.on_stage_changed(db_session, opportunity)

    assert automation.followup_due_days == 7
    expected = datetime.now(timezone.utc) + timedelta(days=7)
    assert abs(result.task.due_date - expected) < timedelta(minutes=1)
    assert result.activity.occurred_at <= datetime.now(timezone.utc)


def test_contact_is_left_empty_when_opportunity_has_none(db_session: Session, opportunity: CRMOpportunity) -> None:
    result = StageChangeAutomation(ActivityRepository(), TaskRepository(), followup_due_days=3).on_stage_changed(
        db_session, opportunity
    )

    assert result.activity.contact_id is None
    assert result.task.contact_id is None
    assert result.activity.opportunity_id == opportunity.id
    assert result.task.opportunity_id == opportunity.id
    assert result.task.title == "Follow up (Negotiation)"


def test_store_failure_is_reported_as_automation_failure(db_session: Session, opportunity: CRMOpportunity) -> None:
    automation = StageChangeAutomation(_BrokenActivityStore(), TaskRepository(), followup_due_days=3)

    with pytest.raises(AutomationFailedError) as exc_info:
        automation.on_stage_changed(db_session, opportunity)

    assert exc_info.value.details["opportunity_id"] == str(opportunity.id)
    db_session.rollback()
    assert db_session.scalars(select(CRMTask)).all() == []
