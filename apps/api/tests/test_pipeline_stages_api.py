from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.models import CRMAccount, CRMOpportunity, CRMPipelineStage, CRMUser
from app.crm.seed import DEFAULT_PIPELINE_STAGES, seed_pipeline_stages
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(
            user_id="admin-1",
            permissions={"crm.pipelines.read", "crm.pipelines.manage", "crm.audit.read"},
            correlation_id="corr-stage",
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_seed_installs_default_catalog_once(db_session: Session) -> None:
    first = seed_pipeline_stages(db_session)
    second = seed_pipeline_stages(db_session)

    assert [stage.name for stage in first] == [dto.name for dto in DEFAULT_PIPELINE_STAGES]
    assert [stage.id for stage in second] == [stage.id for stage in first]
    assert db_session.scalar(select(func.count()).select_from(CRMPipelineStage)) == 6

    by_name = {stage.name: stage for stage in first}
    assert (by_name["Prospecting"].order, by_name["Prospecting"].probability) == (10, 10)
    assert by_name["Closed Won"].is_won and not by_name["Closed Won"].is_lost
    assert by_name["Closed Lost"].is_lost and by_name["Closed Lost"].probability == 0


def test_stages_are_listed_in_pipeline_order(client: TestClient) -> None:
    for name, order in [("Late", 90), ("Early", 5), ("Middle", 50)]:
        response = client.post("/api/crm/pipeline-stages", json={"name": name, "order": order, "probability": order})
        assert response.status_code == 201

    listed = client.get("/api/crm/pipeline-stages")
    assert listed.status_code == 200
    assert [stage["name"] for stage in listed.json()] == ["Early", "Middle", "Late"]


def test_stage_cannot_be_both_won_and_lost(client: TestClient) -> None:
    response = client.post(
        "/api/crm/pipeline-stages",
        json={"name": "Schrodinger", "order": 1, "is_won": True, "is_lost": True},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "validation_failed"

    created = client.post("/api/crm/pipeline-stages", json={"name": "Won", "order": 1, "is_won": True})
    assert created.status_code == 201
    flipped = client.patch(f"/api/crm/pipeline-stages/{created.json()['id']}", json={"is_lost": True})
    assert flipped.status_code == 422


def test_blank_stage_name_is_rejected(client: TestClient) -> None:
    blank = client.post("/api/crm/pipeline-stages", json={"name": "   ", "order": 1})
    assert blank.status_code == 422
    assert blank.json()["details"] == {"field": "name"}
    assert client.get("/api/crm/pipeline-stages").json() == []

    created = client.post("/api/crm/pipeline-stages", json={"name": " Discovery ", "order": 1})
    assert created.status_code == 201
    assert created.json()["name"] == "Discovery"

    renamed = client.patch(f"/api/crm/pipeline-stages/{created.json()['id']}", json={"name": "  "})
    assert renamed.status_code == 422
    assert client.get(f"/api/crm/pipeline-stages/{created.json()['id']}").json()["name"] == "Discovery"


def test_duplicate_stage_name_conflicts(client: TestClient) -> None:
    assert client.post("/api/crm/pipeline-stages", json={"name": "Demo", "order": 1}).status_code == 201
    other = client.post("/api/crm/pipeline-stages", json={"name": "Review", "order": 2})

    duplicate = client.post("/api/crm/pipeline-stages", json={"name": "demo", "order": 3})
    assert duplicate.status_code == 409

    renamed = client.patch(f"/api/crm/pipeline-stages/{other.json()['id']}", json={"name": "Demo"})
    assert renamed.status_code == 409


def test_update_stage_bumps_row_version_and_is_audited(client: TestClient) -> None:
    created = client.post("/api/crm/pipeline-stages", json={"name": "Proposal", "order": 30, "probability": 50})
    stage_id = created.json()["id"]

    updated = client.patch(f"/api/crm/pipeline-stages/{stage_id}", json={"probability": 60, "description": "Quote sent"})
    assert updated.status_code == 200
    assert updated.json()["probability"] == 60
    assert updated.json()["description"] == "Quote sent"
    assert updated.json()["row_version"] == 2

    audit = client.get("/api/crm/audit", params={"entity_type": "PipelineStage", "entity_id": stage_id})
    assert sorted(entry["action"] for entry in audit.json()) == ["CREATE", "UPDATE"]


def test_delete_stage_referenced_by_opportunity_is_rejected(client: TestClient, db_session: Session) -> None:
    created = client.post("/api/crm/pipeline-stages", json={"name": "Discovery", "order": 10})
    stage_id = uuid.UUID(created.json()["id"])

    owner = CRMUser(email="owner@example.com", first_name="Ola", last_name="Owner")
    db_session.add(owner)
    db_session.flush()
    account = CRMAccount(name="Hooli")
    db_session.add(account)
    db_session.flush()
    db_session.add(
        CRMOpportunity(
            name="Archived deal",
            account_id=account.id,
            owner_user_id=owner.id,
            stage_id=stage_id,
            deleted_at=datetime.now(timezone.utc),
        )
    )
    db_session.commit()

    blocked = client.delete(f"/api/crm/pipeline-stages/{stage_id}")
    assert blocked.status_code == 409
    assert blocked.json()["details"]["opportunity_count"] == 1
    assert client.get(f"/api/crm/pipeline-stages/{stage_id}").status_code == 200


def test_delete_unused_stage(client: TestClient) -> None:
    created = client.post("/api/crm/pipeline-stages", json={"name": "Temporary", "order": 99})
    stage_id = created.json()["id"]

    deleted = client.delete(f"/api/crm/pipeline-stages/{stage_id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}

    missing = client.get(f"/api/crm/pipeline-stages/{stage_id}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"
