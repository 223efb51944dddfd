from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.activity.errors import ValidationError
from app.activity.models import ActivityDemo, ActivityLog, ActivityMeeting, ActivityReminder, CRMLead
from app.activity.query import ActivityQueryService, page_count_for
from app.activity.schemas import ActivityFilter, RawActivityLog, RawActivityPage, SourceRecord, SourceType
from app.activity.sql_backend import SqlActivityBackend
from app.core.config import get_settings
from app.core.database import Base


class FakeListBackend:
    supports_concurrent_reads = False

    def __init__(self, total: int) -> None:
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.records = [
            SourceRecord(
                source_type=SourceType.LOG,
                record=RawActivityLog(id=index, lead_id=1, details=f"Call {index}", created_at=base),
            )
            for index in range(1, total + 1)
        ]
        self.calls: list[tuple[int, int, str, ActivityFilter]] = []

    def list_activities(
        self, page: int, page_size: int, search: str, filter_name: ActivityFilter
    ) -> RawActivityPage:
        self.calls.append((page, page_size, search, filter_name))
        offset = (page - 1) * page_size
        return RawActivityPage(items=self.records[offset : offset + page_size], total=len(self.records))


@pytest.fixture(autouse=True)
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


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


def test_last_page_holds_the_remainder() -> None:
    backend = FakeListBackend(total=57)
    service = ActivityQueryService(backend)

    page = service.query(page=6, page_size=10)

    assert page.total == 57
    assert page.page_count == 6
    assert len(page.data) == 7
    assert page.data[0].id == "log-51"


def test_total_does_not_depend_on_page_size() -> None:
    backend = FakeListBackend(total=57)
    service = ActivityQueryService(backend)

    assert service.query(page=1, page_size=10).total == 57
    assert service.query(page=1, page_size=30).total == 57
    assert service.query(page=1, page_size=30).page_count == 2


def test_query_passes_trimmed_search_and_filter() -> None:
    backend = FakeListBackend(total=3)
    service = ActivityQueryService(backend)

    service.query(page=1, page_size=10, search_term="  acme ", filter_name="Overdue")

    assert backend.calls == [(1, 10, "acme", ActivityFilter.OVERDUE)]


@pytest.mark.parametrize(
    ("page", "page_size", "filter_name"),
    [(0, 10, "all"), (-1, 10, "all"), (1, 0, "all"), (1, 25, "all"), (1, 10, "archived")],
)
def test_invalid_query_arguments_are_rejected(page: int, page_size: int, filter_name: str) -> None:
    service = ActivityQueryService(FakeListBackend(total=3))

    with pytest.raises(ValidationError):
        service.query(page=page, page_size=page_size, filter_name=filter_name)


def test_page_count_for_empty_feed() -> None:
    assert page_count_for(0, 10) == 0
    assert page_count_for(10, 10) == 1
    assert page_count_for(11, 10) == 2


def test_options_publish_client_behaviour() -> None:
    options = ActivityQueryService(FakeListBackend(total=0)).options()

    assert options.page_size_options == [10, 30, 100, 200]
    assert options.default_page_size == 10
    assert options.search_debounce_ms == 500
    assert ActivityFilter.CANCELED in options.filters


def _seed_lead(session: Session, company_name: str = "Acme Corp") -> CRMLead:
    lead = CRMLead(company_name=company_name)
    session.add(lead)
    session.commit()
    return lead


def test_past_scheduled_meeting_is_reported_overdue(db_session: Session) -> None:
    lead = _seed_lead(db_session)
    yesterday = datetime.now(timezone.utc) - timedelta(days=1)
    db_session.add(ActivityMeeting(lead_id=lead.id, event_time=yesterday, phase="Scheduled", remark="Kickoff"))
    db_session.commit()
    service = ActivityQueryService(SqlActivityBackend(db_session))

    overdue = service.query(page=1, page_size=10, filter_name="overdue")
    scheduled = service.query(page=1, page_size=10, filter_name="scheduled")

    assert overdue.total == 1
    assert overdue.data[0].status == "overdue"
    assert overdue.data[0].is_actionable is True
    assert overdue.data[0].company_name == "Acme Corp"
    assert scheduled.total == 0


def test_sql_feed_filters_search_and_hidden_items(db_session: Session) -> None:
    acme = _seed_lead(db_session, "Acme Corp")
    globex = _seed_lead(db_session, "Globex")
    now = datetime.now(timezone.utc)
    db_session.add_all(
        [
            ActivityLog(lead_id=acme.id, details="Intro call", created_at=now - timedelta(hours=3)),
            ActivityLog(lead_id=globex.id, details="Pricing call", created_at=now - timedelta(hours=2)),
            ActivityLog(
                lead_id=acme.id,
                details="Deleted log-1: duplicate",
                activity_type="system-delete",
                created_at=now - timedelta(hours=1),
            ),
            ActivityReminder(
                lead_id=acme.id,
                remind_time=now + timedelta(days=1),
                message="Hidden follow-up",
                visibility="hidden",
            ),
            ActivityReminder(
                lead_id=acme.id,
                remind_time=now + timedelta(days=2),
                message="Send proposal",
            ),
        ]
    )
    db_session.commit()
    service = ActivityQueryService(SqlActivityBackend(db_session))

    everything = service.query(page=1, page_size=10)
    acme_only = service.query(page=1, page_size=10, search_term="ACME")
    pricing = service.query(page=1, page_size=10, search_term="pricing")
    scheduled = service.query(page=1, page_size=10, filter_name="scheduled")

    assert [item.id for item in everything.data] == ["reminder-2", "log-2", "log-1"]
    assert {item.id for item in acme_only.data} == {"reminder-2", "log-1"}
    assert [item.id for item in pricing.data] == ["log-2"]
    assert [item.id for item in scheduled.data] == ["reminder-2"]
    assert scheduled.data[0].status == "pending"


def test_activities_of_deleted_leads_are_not_listed(db_session: Session) -> None:
    live = _seed_lead(db_session, "Live Co")
    gone = _seed_lead(db_session, "Gone Co")
    tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
    db_session.add_all(
        [
            ActivityMeeting(lead_id=gone.id, event_time=tomorrow, phase="Scheduled"),
            ActivityMeeting(lead_id=live.id, event_time=tomorrow, phase="Scheduled"),
        ]
    )
    gone.deleted_at = datetime.now(timezone.utc)
    db_session.commit()
    service = ActivityQueryService(SqlActivityBackend(db_session))

    page = service.query(page=1, page_size=10)

    assert page.total == 1
    assert [(item.id, item.company_name) for item in page.data] == [("meeting-2", "Live Co")]


def test_search_matches_wildcard_characters_literally(db_session: Session) -> None:
    lead = _seed_lead(db_session, "Widgets Ltd")
    now = datetime.now(timezone.utc)
    db_session.add_all(
        [
            ActivityLog(lead_id=lead.id, details="Offered 50 units", created_at=now - timedelta(hours=2)),
            ActivityLog(lead_id=lead.id, details="Offered 50% discount", created_at=now - timedelta(hours=1)),
        ]
    )
    db_session.commit()
    service = ActivityQueryService(SqlActivityBackend(db_session))

    percent = service.query(page=1, page_size=10, search_term="50%")
    underscore = service.query(page=1, page_size=10, search_term="50_")

    assert [item.details for item in percent.data] == ["Offered 50% discount"]
    assert underscore.data == []
    assert underscore.total == 0


def test_sql_feed_pages_inside_the_database(db_session: Session) -> None:
    lead = _seed_lead(db_session)
    base = datetime.now(timezone.utc) - timedelta(days=1)
    db_session.add_all(
        [
            ActivityLog(lead_id=lead.id, details=f"Call {index}", created_at=base + timedelta(minutes=index))
            for index in range(1, 31)
        ]
    )
    db_session.commit()
    statements: list[str] = []

    def capture(conn, cursor, statement, parameters, context, executemany) -> None:
        statements.append(statement)

    event.listen(db_session.get_bind(), "before_cursor_execute", capture)
    try:
        page = ActivityQueryService(SqlActivityBackend(db_session)).query(page=2, page_size=10)
    finally:
        event.remove(db_session.get_bind(), "before_cursor_execute", capture)

    assert page.total == 30
    assert page.page_count == 3
    assert [item.id for item in page.data] == [f"log-{index}" for index in range(20, 10, -1)]
    assert any("LIMIT" in statement for statement in statements)
    assert not any(
        statement.lstrip().startswith("SELECT activity_log.") and "WHERE activity_log.id IN" not in statement
        for statement in statements
    )


def test_sql_status_filters_follow_the_status_vocabulary(db_session: Session) -> None:
    lead = _seed_lead(db_session)
    now = datetime.now(timezone.utc)
    db_session.add_all(
        [
            ActivityMeeting(
                lead_id=lead.id,
                event_time=now - timedelta(days=3),
                phase="Completed",
                completed_at=now - timedelta(days=2),
                outcome_notes="Signed",
            ),
            ActivityMeeting(lead_id=lead.id, event_time=now + timedelta(days=3), phase="Cancelled"),
            ActivityDemo(lead_id=lead.id, start_time=now - timedelta(days=4), phase="DemoDone"),
            ActivityReminder(lead_id=lead.id, remind_time=now - timedelta(hours=1), message="Ping", status="Sent"),
            ActivityReminder(lead_id=lead.id, remind_time=now + timedelta(hours=1), message="Call back"),
        ]
    )
    db_session.commit()
    service = ActivityQueryService(SqlActivityBackend(db_session))

    completed = service.query(page=1, page_size=10, filter_name="completed")
    canceled = service.query(page=1, page_size=10, filter_name="canceled")
    overdue = service.query(page=1, page_size=10, filter_name="overdue")
    scheduled = service.query(page=1, page_size=10, filter_name="scheduled")

    assert [item.id for item in completed.data] == ["meeting-1", "demo-1"]
    assert [item.id for item in canceled.data] == ["meeting-2"]
    assert [(item.id, item.status) for item in overdue.data] == [("reminder-1", "overdue")]
    assert [item.id for item in scheduled.data] == ["reminder-2"]
