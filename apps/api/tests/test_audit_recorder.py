from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.context import reset_correlation_id, set_correlation_id
from app.core.database import Base
from app.crm.enums import AuditAction, OpportunityStatus
from app.crm.errors import AuditWriteFailedError
from app.models.audit import AuditLog
from app.services.audit import AuditRecorder, RawChanges, StageTransition, to_storage_json


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


class _BrokenAuditStore:
    def append(self, session: Session, entry: AuditLog) -> None:
        raise RuntimeError("audit table unavailable")


def test_raw_changes_are_stored_as_plain_json(db_session: Session) -> None:
    stage_id = uuid.uuid4()
    recorder = AuditRecorder()
    recorder.record(
        db_session,
        entity_type="Opportunity",
        entity_id=uuid.uuid4(),
        action=AuditAction.UPDATE,
        actor_user_id="user-1",
        changes=RawChanges(
            {
                "stage_id": stage_id,
                "amount": Decimal("1250.50"),
                "expected_close_date": date(2026, 11, 30),
                "status": OpportunityStatus.WON,
            }
        ),
    )
    db_session.commit()

    entry = db_session.scalar(select(AuditLog))
    assert entry is not None
    assert entry.changes == {
        "stage_id": str(stage_id),
        "amount": "1250.50",
        "expected_close_date": "2026-11-30",
        "status": "WON",
    }


def test_stage_transition_serializes_from_and_to(db_session: Session) -> None:
    from_id, to_id = uuid.uuid4(), uuid.uuid4()
    entry = AuditRecorder().record(
        db_session,
        entity_type="Opportunity",
        entity_id=uuid.uuid4(),
        action=AuditAction.STAGE_CHANGE,
        changes=StageTransition(from_stage_id=from_id, to_stage_id=to_id),
    )
    db_session.commit()

    assert entry.changes == {"from": str(from_id), "to": str(to_id)}
    assert StageTransition.kind == "stageTransition"
    assert RawChanges.kind == "raw"


def test_missing_changes_are_recorded_as_json_null(db_session: Session) -> None:
    AuditRecorder().record(
        db_session,
        entity_type="Opportunity",
        entity_id=uuid.uuid4(),
        action=AuditAction.DELETE,
        changes=None,
    )
    db_session.commit()

    raw = db_session.execute(text("SELECT changes FROM audit_logs")).scalar_one()
    assert raw == "null"


def test_correlation_id_defaults_to_request_context(db_session: Session) -> None:
    token = set_correlation_id("corr-recorder-1")
    try:
        entry = AuditRecorder().record(
            db_session,
            entity_type="Opportunity",
            entity_id="opp-1",
            action=AuditAction.CREATE,
        )
    finally:
        reset_correlation_id(token)

    assert entry.correlation_id == "corr-recorder-1"


def test_store_failure_raises_audit_write_failed(db_session: Session) -> None:
    recorder = AuditRecorder(store=_BrokenAuditStore())
    with pytest.raises(AuditWriteFailedError) as exc_info:
        recorder.record(
            db_session,
            entity_type="Opportunity",
            entity_id="opp-1",
            action=AuditAction.UPDATE,
            changes=RawChanges({"name": "Renamed"}),
        )

    assert exc_info.value.status_code == 500
    assert exc_info.value.details["action"] == "UPDATE"
    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_cyclic_payload_does_not_raise() -> None:
    payload: dict[str, object] = {"name": "loop"}
    payload["self"] = payload

    stored = to_storage_json(payload)
    assert "unserializable" in stored
