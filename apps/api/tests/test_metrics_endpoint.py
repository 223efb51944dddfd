from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.activity.api import get_current_user as activity_get_current_user
from app.activity.models import ActivityReminder, CRMLead
from app.activity.service import ActorUser
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
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

    def override_activity_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={"activities.read", "activities.complete"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[activity_get_current_user] = override_activity_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_activity_metrics(client: TestClient, db_session: Session) -> None:
    lead = CRMLead(company_name="Metrics Lead")
    db_session.add(lead)
    db_session.commit()
    db_session.add(
        ActivityReminder(
            lead_id=lead.id,
            remind_time=datetime.now(timezone.utc) + timedelta(days=1),
            message="Metrics reminder",
        )
    )
    db_session.commit()

    health = client.get("/health")
    assert health.status_code == 200

    done = client.post(
        "/api/activities/reminder-1/done",
        json={"outcome_notes": "Reached", "duration_minutes": 10},
    )
    assert done.status_code == 200

    rejected = client.post(
        "/api/activities/reminder-1/done",
        json={"outcome_notes": "Reached", "duration_minutes": 10},
    )
    assert rejected.status_code == 409

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "activity_transitions_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/activities/{id}/done"' in body
    assert 'transition="complete"' in body
    assert 'outcome="success"' in body
    assert 'outcome="conflict"' in body


def test_metrics_disabled_returns_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
