from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMAccount, CRMUser
from app.crm.seed import seed_pipeline_stages
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.opportunities.create",
    "crm.opportunities.read",
    "crm.opportunities.update",
    "crm.pipelines.read",
}


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def records(db_session: Session) -> dict[str, str]:
    owner = CRMUser(email="otel@example.com", first_name="Otto", last_name="Tracer", role="SALES_REP")
    db_session.add(owner)
    db_session.flush()
    account = CRMAccount(name="OTel Account", owner_user_id=owner.id)
    db_session.add(account)
    db_session.commit()
    stages = {stage.name: str(stage.id) for stage in seed_pipeline_stages(db_session)}
    return {
        "owner": str(owner.id),
        "account": str(account.id),
        "prospecting": stages["Prospecting"],
        "negotiation": stages["Negotiation"],
    }


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_opportunity(client: TestClient, records: dict[str, str], correlation_id: str) -> dict:
    response = client.post(
        "/api/crm/opportunities",
        json={
            "name": "OTel Opportunity",
            "account_id": records["account"],
            "owner_user_id": records["owner"],
            "stage_id": records["prospecting"],
            "amount": 300,
        },
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/crm/pipeline-stages", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_stage_change_spans_carry_opportunity_and_correlation(
    client: TestClient,
    records: dict[str, str],
    span_exporter: InMemorySpanExporter,
) -> None:
    opportunity = _create_opportunity(client, records, "otel-stage-corr-1")

    moved = client.patch(
        f"/api/crm/opportunities/{opportunity['id']}",
        json={"stage_id": records["negotiation"]},
        headers={"X-Correlation-Id": "otel-stage-corr-1"},
    )
    assert moved.status_code == 200

    spans = span_exporter.get_finished_spans()
    update_spans = [span for span in spans if span.name == "crm.opportunity.update"]
    assert update_spans
    assert any(
        span.attributes.get("opportunity_id") == opportunity["id"]
        and span.attributes.get("correlation_id") == "otel-stage-corr-1"
        for span in update_spans
    )

    automation_spans = [span for span in spans if span.name == "crm.stage_change.automation"]
    assert len(automation_spans) == 1
    assert automation_spans[0].attributes.get("stage_id") == records["negotiation"]
    assert automation_spans[0].attributes.get("opportunity_id") == opportunity["id"]


def test_failed_update_span_is_marked(
    client: TestClient,
    records: dict[str, str],
    span_exporter: InMemorySpanExporter,
) -> None:
    opportunity = _create_opportunity(client, records, "otel-fail-corr-1")

    conflict = client.patch(
        f"/api/crm/opportunities/{opportunity['id']}",
        json={"name": "Stale", "row_version": 99},
    )
    assert conflict.status_code == 409

    update_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.opportunity.update"]
    assert update_spans
    assert not update_spans[-1].status.is_ok
