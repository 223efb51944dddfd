from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any

import pytest

from app.activity.errors import TransportError
from app.activity.schemas import RawActivityLog, RawDemo, RawMeeting, RawReminder, SourceType
from app.activity.timeline import TimelineService

TEN = datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc)
NINE = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)
ELEVEN = datetime(2026, 5, 4, 11, 0, tzinfo=timezone.utc)


class FakeTimelineBackend:
    def __init__(self, *, concurrent: bool = False, failing: set[SourceType] | None = None) -> None:
        self.supports_concurrent_reads = concurrent
        self.failing = failing or set()
        self.reader_threads: set[int] = set()
        self.logs = [RawActivityLog(id=1, lead_id=7, details="Intro call", created_at=TEN)]
        self.reminders = [
            RawReminder(id=1, lead_id=7, message="Send deck", remind_time=ELEVEN, visibility="hidden"),
        ]
        self.meetings = [RawMeeting(id=1, lead_id=7, event_time=TEN, phase="Scheduled")]
        self.demos = [RawDemo(id=1, lead_id=7, start_time=NINE, phase="Scheduled")]

    def _read(self, source_type: SourceType, records: list[Any]) -> list[Any]:
        self.reader_threads.add(threading.get_ident())
        if source_type in self.failing:
            raise TransportError(f"{source_type.value} source unavailable")
        return list(records)

    def get_activities_for_lead(self, lead_id: int) -> list[RawActivityLog]:
        return self._read(SourceType.LOG, self.logs)

    def get_reminders_for_lead(self, lead_id: int, include_hidden: bool = False) -> list[RawReminder]:
        # Returns hidden reminders regardless, so the timeline filter is exercised.
        return self._read(SourceType.REMINDER, self.reminders)

    def get_meetings_for_lead(self, lead_id: int) -> list[RawMeeting]:
        return self._read(SourceType.MEETING, self.meetings)

    def get_demos_for_lead(self, lead_id: int) -> list[RawDemo]:
        return self._read(SourceType.DEMO, self.demos)


def test_timeline_orders_by_date_then_source_and_hides_hidden_reminders() -> None:
    timeline = TimelineService(FakeTimelineBackend()).build_timeline(7)

    assert [item.id for item in timeline.items] == ["log-1", "meeting-1", "demo-1"]
    assert timeline.failed_sources == []
    assert timeline.lead_id == 7


def test_timeline_is_stable_across_calls() -> None:
    backend = FakeTimelineBackend()
    backend.logs.append(RawActivityLog(id=3, lead_id=7, details="Follow-up", created_at=TEN))
    backend.logs.append(RawActivityLog(id=2, lead_id=7, details="Voicemail", created_at=TEN))
    service = TimelineService(backend)

    first = [item.id for item in service.build_timeline(7).items]
    second = [item.id for item in service.build_timeline(7).items]

    assert first == second
    assert first[:4] == ["log-1", "log-2", "log-3", "meeting-1"]


def test_failed_source_is_reported_and_skipped(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR)
    backend = FakeTimelineBackend(failing={SourceType.MEETING})

    timeline = TimelineService(backend).build_timeline(7)

    assert [item.id for item in timeline.items] == ["log-1", "demo-1"]
    assert timeline.failed_sources == [SourceType.MEETING]
    records = [record for record in caplog.records if record.getMessage() == "timeline.source_failed"]
    assert records
    assert getattr(records[0], "source_type", None) == "Meeting"
    assert getattr(records[0], "lead_id", None) == 7


def test_all_sources_failing_yields_empty_timeline() -> None:
    backend = FakeTimelineBackend(failing=set(SourceType))

    timeline = TimelineService(backend).build_timeline(7)

    assert timeline.items == []
    assert timeline.failed_sources == list(SourceType)


def test_concurrent_backend_reads_off_the_request_thread() -> None:
    backend = FakeTimelineBackend(concurrent=True)

    timeline = TimelineService(backend, max_workers=4).build_timeline(7)

    assert [item.id for item in timeline.items] == ["log-1", "meeting-1", "demo-1"]
    assert threading.get_ident() not in backend.reader_threads


def test_sequential_backend_reads_on_the_request_thread() -> None:
    backend = FakeTimelineBackend(concurrent=False)

    TimelineService(backend).build_timeline(7)

    assert backend.reader_threads == {threading.get_ident()}


def test_failing_demo_source_keeps_other_sources_sorted() -> None:
    backend = FakeTimelineBackend(failing={SourceType.DEMO})
    backend.logs.append(RawActivityLog(id=2, lead_id=7, details="Voicemail", created_at=ELEVEN))
    backend.reminders.append(RawReminder(id=2, lead_id=7, message="Send deck", remind_time=NINE))

    timeline = TimelineService(backend).build_timeline(7)

    assert [item.id for item in timeline.items] == ["log-2", "log-1", "meeting-1", "reminder-2"]
    assert timeline.failed_sources == [SourceType.DEMO]
