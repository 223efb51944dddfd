from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from app.activity.dates import EPOCH
from app.activity.errors import ValidationError
from app.activity.mapper import (
    MISSING_LEAD_ID,
    MISSING_TIME,
    activity_id_for,
    map_record,
    parse_activity_id,
)
from app.activity.schemas import (
    MeetingDetail,
    RawReminder,
    ReminderDetail,
    ReminderVisibility,
    SourceType,
)


def test_meeting_without_lead_id_falls_back_and_reports_anomaly() -> None:
    start = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)

    activity = map_record(
        {"id": 11, "event_time": start.isoformat(), "phase": "Scheduled", "meeting_type": "Discovery"},
        SourceType.MEETING,
    )

    assert activity.id == "meeting-11"
    assert activity.lead_id == 0
    assert activity.anomalies == [MISSING_LEAD_ID]
    assert activity.date == start
    assert activity.activity_type == "Discovery"
    assert activity.logged_or_scheduled == "Scheduled"
    assert isinstance(activity.detail, MeetingDetail)
    assert activity.detail.start_time == start


@pytest.mark.parametrize("source_type", list(SourceType))
def test_every_source_maps_a_bare_record(source_type: SourceType) -> None:
    activity = map_record({"id": 3}, source_type)

    assert activity.id == f"{source_type.prefix}-3"
    assert activity.source_type == source_type
    assert activity.lead_id == 0
    assert activity.date == EPOCH
    assert MISSING_LEAD_ID in activity.anomalies
    assert MISSING_TIME in activity.anomalies


def test_log_parses_legacy_date_format() -> None:
    activity = map_record(
        {"id": 1, "lead_id": "7", "details": "Intro call", "created_at": "/Date(1767225600000)/"},
        SourceType.LOG,
    )

    assert activity.lead_id == 7
    assert activity.date == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert activity.status == "completed"
    assert activity.is_actionable is False
    assert activity.anomalies == []


def test_completed_reminder_is_mapped_as_merged_completion() -> None:
    remind_time = datetime(2026, 2, 10, 10, 0, tzinfo=timezone.utc)
    completed_at = datetime(2026, 2, 10, 11, 30, tzinfo=timezone.utc)

    activity = map_record(
        {
            "id": 4,
            "lead_id": 2,
            "remind_time": remind_time,
            "message": "Call back about renewal",
            "status": "Completed",
            "created_by": "alice",
            "completed_at": completed_at,
            "outcome_notes": "Renewal confirmed",
            "completed_by": "bob",
            "duration_minutes": 20,
        },
        SourceType.REMINDER,
    )

    assert activity.status == "completed"
    assert activity.is_actionable is False
    assert activity.details == "Renewal confirmed"
    assert activity.date == completed_at
    assert activity.duration_minutes == 20
    assert activity.original_details == "Call back about renewal"
    assert activity.original_scheduled_date == remind_time
    assert activity.original_created_by == "alice"
    assert isinstance(activity.detail, ReminderDetail)
    assert activity.detail.completed_by == "bob"


def test_hidden_flag_maps_to_visibility() -> None:
    hidden = RawReminder.model_validate({"id": 1, "is_hidden_from_activity_log": True})
    visible = RawReminder.model_validate({"id": 2, "is_hidden_from_activity_log": False})

    assert hidden.visibility == ReminderVisibility.HIDDEN
    assert visible.visibility == ReminderVisibility.VISIBLE


def test_wrongly_typed_scalars_are_coerced_instead_of_failing() -> None:
    activity = map_record(
        {"id": 3, "lead_id": 7, "details": 12345, "company_name": 404, "created_at": "2026-03-02T09:00:00Z"},
        SourceType.LOG,
    )

    assert activity.id == "log-3"
    assert activity.lead_id == 7
    assert activity.details == "12345"
    assert activity.company_name == "404"
    assert activity.anomalies == []


def test_unreadable_reminder_fields_fall_back_to_defaults() -> None:
    activity = map_record(
        {
            "id": 8,
            "lead_id": 7,
            "remind_time": "2026-03-02T09:00:00Z",
            "message": ["not", "text"],
            "visibility": "archived",
        },
        SourceType.REMINDER,
    )

    assert activity.details is None
    assert isinstance(activity.detail, ReminderDetail)
    assert activity.detail.visibility == ReminderVisibility.VISIBLE


def test_string_hidden_flag_is_read_as_boolean() -> None:
    hidden = RawReminder.model_validate({"id": 1, "is_hidden_from_activity_log": "true"})
    visible = RawReminder.model_validate({"id": 2, "is_hidden_from_activity_log": "false"})

    assert hidden.visibility == ReminderVisibility.HIDDEN
    assert visible.visibility == ReminderVisibility.VISIBLE


def test_system_delete_entry_maps_to_deleted_status() -> None:
    activity = map_record(
        {"id": 9, "lead_id": 1, "activity_type": "system-delete", "created_at": "2026-01-02 08:00:00"},
        SourceType.LOG,
    )

    assert activity.status == "deleted"
    assert activity.is_actionable is False


def test_mapping_anomalies_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)

    map_record({"id": 5}, SourceType.DEMO)

    records = [record for record in caplog.records if record.getMessage() == "activity.mapping_anomaly"]
    assert records
    assert getattr(records[0], "activity_id", None) == "demo-5"


def test_activity_ids_round_trip_through_parser() -> None:
    assert activity_id_for(SourceType.MEETING, 5) == "meeting-5"
    assert parse_activity_id("demo-7") == (SourceType.DEMO, 7)
    assert parse_activity_id("Reminder-12") == (SourceType.REMINDER, 12)


@pytest.mark.parametrize("activity_id", ["meeting", "task-4", "log-", "log-abc", ""])
def test_invalid_activity_ids_are_rejected(activity_id: str) -> None:
    with pytest.raises(ValidationError):
        parse_activity_id(activity_id)
