from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.activity.api import get_current_user as activity_get_current_user
from app.activity.models import CRMLead
from app.activity.service import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter, route_group_for


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_ACTIVITY_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def lead_id(db_session: Session) -> int:
    lead = CRMLead(company_name="Rate Limit Lead")
    db_session.add(lead)
    db_session.commit()
    return lead.id


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions={"activities.read", "activities.write"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[activity_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_mutating_activity_endpoints_are_rate_limited(client: TestClient, lead_id: int) -> None:
    responses = []
    for index in range(5):
        response = client.post(
            f"/api/leads/{lead_id}/activities",
            json={"details": f"Rate limited call {index}"},
        )
        responses.append(response)

    assert [response.status_code for response in responses[:3]] == [201, 201, 201]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert body["details"]["route_group"] == "leads"
    assert body["details"]["retry_after_seconds"] >= 1
    assert first_limited.headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient, lead_id: int) -> None:
    create = client.post(f"/api/leads/{lead_id}/activities", json={"details": "Readable call"})
    assert create.status_code == 201

    responses = [client.get("/api/activities") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_route_groups_have_separate_buckets(client: TestClient, lead_id: int) -> None:
    for index in range(3):
        assert client.post(f"/api/leads/{lead_id}/activities", json={"details": f"Call {index}"}).status_code == 201

    activity_mutation = client.patch("/api/activities/log-1", json={"details": "Still allowed"})

    assert activity_mutation.status_code != 429


def test_only_activity_mutations_have_a_route_group() -> None:
    assert route_group_for("POST", "/api/activities/meeting-1/done") == "activities"
    assert route_group_for("patch", "/api/activities/log-1") == "activities"
    assert route_group_for("POST", "/api/leads/7/restore") == "leads"
    assert route_group_for("GET", "/api/activities") is None
    assert route_group_for("POST", "/api/activitiesx") is None
    assert route_group_for("POST", "/health") is None
