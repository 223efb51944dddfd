from __future__ import annotations

from typing import Protocol

from sqlalchemy.orm import Session

from app.activity.schemas import (
    ActivityFilter,
    DemoCreate,
    LogActivityCreate,
    MeetingCreate,
    RawActivityLog,
    RawActivityPage,
    RawDemo,
    RawMeeting,
    RawRecord,
    RawReminder,
    ReminderCreate,
    SourceType,
)
from app.core.config import get_settings


class ActivityBackend(Protocol):
    """Contract of the CRM backend of record for the four activity sources."""

    supports_concurrent_reads: bool

    def list_activities(
        self, page: int, page_size: int, search: str, filter_name: ActivityFilter
    ) -> RawActivityPage: ...

    def get_activities_for_lead(self, lead_id: int) -> list[RawActivityLog]: ...

    def get_meetings_for_lead(self, lead_id: int) -> list[RawMeeting]: ...

    def get_demos_for_lead(self, lead_id: int) -> list[RawDemo]: ...

    def get_reminders_for_lead(self, lead_id: int, include_hidden: bool = False) -> list[RawReminder]: ...

    def get_record(self, source_type: SourceType, record_id: int) -> RawRecord: ...

    def complete_reminder(
        self, reminder_id: int, outcome_notes: str, completed_by: str, duration_minutes: int
    ) -> None: ...

    def complete_meeting(self, meeting_id: int, outcome_notes: str, duration_minutes: int) -> None: ...

    def complete_demo(self, demo_id: int, outcome_notes: str, duration_minutes: int) -> None: ...

    def cancel_reminder(self, reminder_id: int) -> None: ...

    def cancel_event(
        self, source_type: SourceType, event_id: int, reason: str, updated_by: str, lead_id: int | None
    ) -> None: ...

    def update_logged_activity(self, activity_id: int, details: str) -> None: ...

    def delete_logged_activity(self, activity_id: int, reason: str, deleted_by: str) -> None: ...

    def restore_lead(self, lead_id: int) -> bool: ...

    def log_activity(self, lead_id: int, dto: LogActivityCreate, created_by: str) -> int | None: ...

    def schedule_reminder(self, lead_id: int, dto: ReminderCreate, created_by: str) -> int | None: ...

    def schedule_meeting(self, lead_id: int, dto: MeetingCreate, created_by: str) -> int | None: ...

    def schedule_demo(self, lead_id: int, dto: DemoCreate, created_by: str) -> int | None: ...


def build_activity_backend(session: Session) -> ActivityBackend:
    settings = get_settings()
    if settings.activity_backend.lower() == "http":
        from app.activity.http_backend import HttpActivityBackend

        return HttpActivityBackend(
            base_url=settings.activity_backend_url,
            timeout_seconds=settings.activity_backend_timeout_seconds,
        )

    from app.activity.sql_backend import SqlActivityBackend

    return SqlActivityBackend(session)
