from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import Integer, Select, and_, case, func, literal_column, or_, select, union_all
from sqlalchemy.orm import Session

from app.activity.classifier import (
    CANCELED,
    COMPLETED,
    COMPLETED_SUFFIX,
    OVERDUE,
    PENDING,
    SCHEDULED,
    normalize_status,
    raw_values_for,
    status_family,
)
from app.activity.dates import ensure_utc, utcnow
from app.activity.errors import NotFoundError, ValidationError
from app.activity.lifecycle import Transition, next_state
from app.activity.mapper import SYSTEM_DELETE_ACTIVITY_TYPE, activity_id_for
from app.activity.models import ActivityDemo, ActivityLog, ActivityMeeting, ActivityReminder, CRMLead
from app.activity.schemas import (
    RAW_MODELS,
    SOURCE_ORDER,
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
    ReminderVisibility,
    SourceRecord,
    SourceType,
)

_MODELS: dict[SourceType, type[Any]] = {
    SourceType.LOG: ActivityLog,
    SourceType.REMINDER: ActivityReminder,
    SourceType.MEETING: ActivityMeeting,
    SourceType.DEMO: ActivityDemo,
}

_OPEN_FAMILIES = frozenset({PENDING, SCHEDULED})

_SCHEDULED_COLUMNS: dict[SourceType, Any] = {
    SourceType.REMINDER: ActivityReminder.remind_time,
    SourceType.MEETING: ActivityMeeting.event_time,
    SourceType.DEMO: ActivityDemo.start_time,
}

_SOURCE_BY_RANK = {rank: source_type for source_type, rank in SOURCE_ORDER.items()}

# Logs are always completed, so only these filters can match them.
_LOG_FILTERS = frozenset({ActivityFilter.ALL, ActivityFilter.TODAY, ActivityFilter.COMPLETED})


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _scheduled_at(source_type: SourceType, row: Any) -> datetime | None:
    if source_type == SourceType.REMINDER:
        return row.remind_time
    if source_type == SourceType.MEETING:
        return row.event_time
    if source_type == SourceType.DEMO:
        return row.start_time
    return None


def _raw_status(source_type: SourceType, row: Any) -> str | None:
    if source_type == SourceType.REMINDER:
        return row.status
    if source_type in {SourceType.MEETING, SourceType.DEMO}:
        return row.phase
    return row.status


class SqlActivityBackend:
    """Backend of record over the local activity tables.

    Open reminders, meetings and demos whose scheduled time has passed are
    reported as ``Overdue`` at read time; nothing is stored for it.
    """

    supports_concurrent_reads = False

    def __init__(self, session: Session) -> None:
        self.session = session

    def _to_raw(self, source_type: SourceType, row: Any, now: datetime | None = None) -> RawRecord:
        raw = RAW_MODELS[source_type].model_validate(row)
        if source_type == SourceType.LOG:
            return raw
        status = _raw_status(source_type, row)
        scheduled_at = _scheduled_at(source_type, row)
        family = status_family(normalize_status(source_type, status))
        if family in _OPEN_FAMILIES and scheduled_at is not None and ensure_utc(scheduled_at) < (now or utcnow()):
            field_name = "status" if source_type == SourceType.REMINDER else "phase"
            raw = raw.model_copy(update={field_name: "Overdue"})
        return raw

    def _get_row(self, source_type: SourceType, record_id: int) -> Any:
        model = _MODELS[source_type]
        row = self.session.scalar(select(model).where(model.id == record_id))
        if row is None:
            raise NotFoundError(
                f"{source_type.value.lower()} not found",
                details={"activity_id": activity_id_for(source_type, record_id)},
            )
        return row

    def _get_live_lead(self, lead_id: int) -> CRMLead:
        lead = self.session.scalar(select(CRMLead).where(CRMLead.id == lead_id, CRMLead.deleted_at.is_(None)))
        if lead is None:
            raise NotFoundError("lead not found", details={"lead_id": lead_id})
        return lead

    def _search_columns(self, source_type: SourceType) -> list[Any]:
        columns: list[Any] = [CRMLead.company_name]
        if source_type == SourceType.LOG:
            columns += [ActivityLog.details, ActivityLog.activity_type]
        elif source_type == SourceType.REMINDER:
            columns += [ActivityReminder.message, ActivityReminder.activity_type, ActivityReminder.outcome_notes]
        elif source_type == SourceType.MEETING:
            columns += [
                ActivityMeeting.remark,
                ActivityMeeting.meeting_agenda,
                ActivityMeeting.meeting_type,
                ActivityMeeting.outcome_notes,
            ]
        else:
            columns += [ActivityDemo.remark, ActivityDemo.meeting_agenda, ActivityDemo.outcome_notes]
        return columns

    def _feed_select(
        self, source_type: SourceType, search: str, filter_name: ActivityFilter, now: datetime
    ) -> Select[Any] | None:
        """One source's slice of the feed as ``(source_rank, record_id, anchor)`` rows.

        Returns ``None`` when no record of this source can match the filter.
        """
        model = _MODELS[source_type]
        stmt: Select[Any]
        if source_type == SourceType.LOG:
            if filter_name not in _LOG_FILTERS:
                return None
            anchor: Any = ActivityLog.created_at
            stmt = select(
                literal_column(str(SOURCE_ORDER[source_type]), Integer).label("source_rank"),
                ActivityLog.id.label("record_id"),
                anchor.label("anchor"),
            ).where(
                ActivityLog.deleted_at.is_(None),
                ActivityLog.activity_type != SYSTEM_DELETE_ACTIVITY_TYPE,
            )
        else:
            status_column = ActivityReminder.status if source_type == SourceType.REMINDER else model.phase
            scheduled_column = _SCHEDULED_COLUMNS[source_type]
            status = func.lower(func.trim(func.coalesce(status_column, "")))
            is_open = status.in_(sorted(raw_values_for(source_type, PENDING) | raw_values_for(source_type, SCHEDULED)))
            is_completed = or_(
                status.in_(sorted(raw_values_for(source_type, COMPLETED))),
                status.like(f"%{COMPLETED_SUFFIX}"),
            )
            is_past = scheduled_column < now
            anchor = case(
                (and_(is_completed, model.completed_at.is_not(None)), model.completed_at),
                else_=scheduled_column,
            )
            stmt = select(
                literal_column(str(SOURCE_ORDER[source_type]), Integer).label("source_rank"),
                model.id.label("record_id"),
                anchor.label("anchor"),
            )
            if source_type == SourceType.REMINDER:
                stmt = stmt.where(ActivityReminder.visibility == ReminderVisibility.VISIBLE.value)
            if filter_name == ActivityFilter.SCHEDULED:
                stmt = stmt.where(is_open, ~is_past)
            elif filter_name == ActivityFilter.COMPLETED:
                stmt = stmt.where(is_completed)
            elif filter_name == ActivityFilter.OVERDUE:
                stmt = stmt.where(or_(status.in_(sorted(raw_values_for(source_type, OVERDUE))), and_(is_open, is_past)))
            elif filter_name == ActivityFilter.CANCELED:
                stmt = stmt.where(status.in_(sorted(raw_values_for(source_type, CANCELED))))

        stmt = stmt.join_from(model, CRMLead, CRMLead.id == model.lead_id).where(CRMLead.deleted_at.is_(None))
        if filter_name == ActivityFilter.TODAY:
            day_start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
            stmt = stmt.where(anchor >= day_start, anchor < day_start + timedelta(days=1))

        term = search.strip()
        if term:
            pattern = f"%{escape_like(term)}%"
            stmt = stmt.where(
                or_(*(column.ilike(pattern, escape="\\") for column in self._search_columns(source_type)))
            )
        return stmt

    def list_activities(
        self, page: int, page_size: int, search: str, filter_name: ActivityFilter
    ) -> RawActivityPage:
        now = utcnow()
        selects = [
            stmt
            for source_type in SourceType
            if (stmt := self._feed_select(source_type, search, filter_name, now)) is not None
        ]
        feed = union_all(*selects).subquery("feed")
        total = self.session.scalar(select(func.count()).select_from(feed)) or 0

        chronological = filter_name in {ActivityFilter.TODAY, ActivityFilter.SCHEDULED, ActivityFilter.OVERDUE}
        anchor_order = feed.c.anchor.asc() if chronological else feed.c.anchor.desc()
        keys = self.session.execute(
            select(feed.c.source_rank, feed.c.record_id)
            .order_by(anchor_order, feed.c.source_rank.asc(), feed.c.record_id.asc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        ).all()

        wanted: dict[SourceType, list[int]] = {}
        for source_rank, record_id in keys:
            wanted.setdefault(_SOURCE_BY_RANK[source_rank], []).append(record_id)
        loaded: dict[tuple[SourceType, int], RawRecord] = {}
        for source_type, ids in wanted.items():
            model = _MODELS[source_type]
            for row in self.session.scalars(select(model).where(model.id.in_(ids))).all():
                loaded[(source_type, row.id)] = self._to_raw(source_type, row, now)

        items = []
        for source_rank, record_id in keys:
            source_type = _SOURCE_BY_RANK[source_rank]
            record = loaded.get((source_type, record_id))
            if record is not None:
                items.append(SourceRecord(source_type=source_type, record=record))
        return RawActivityPage(items=items, total=total)

    def get_activities_for_lead(self, lead_id: int) -> list[RawActivityLog]:
        rows = self.session.scalars(
            select(ActivityLog).where(ActivityLog.lead_id == lead_id, ActivityLog.deleted_at.is_(None))
        ).all()
        return [self._to_raw(SourceType.LOG, row) for row in rows]

    def get_meetings_for_lead(self, lead_id: int) -> list[RawMeeting]:
        now = utcnow()
        rows = self.session.scalars(select(ActivityMeeting).where(ActivityMeeting.lead_id == lead_id)).all()
        return [self._to_raw(SourceType.MEETING, row, now) for row in rows]

    def get_demos_for_lead(self, lead_id: int) -> list[RawDemo]:
        now = utcnow()
        rows = self.session.scalars(select(ActivityDemo).where(ActivityDemo.lead_id == lead_id)).all()
        return [self._to_raw(SourceType.DEMO, row, now) for row in rows]

    def get_reminders_for_lead(self, lead_id: int, include_hidden: bool = False) -> list[RawReminder]:
        now = utcnow()
        stmt = select(ActivityReminder).where(ActivityReminder.lead_id == lead_id)
        if not include_hidden:
            stmt = stmt.where(ActivityReminder.visibility == ReminderVisibility.VISIBLE.value)
        return [self._to_raw(SourceType.REMINDER, row, now) for row in self.session.scalars(stmt).all()]

    def get_record(self, source_type: SourceType, record_id: int) -> RawRecord:
        return self._to_raw(source_type, self._get_row(source_type, record_id))

    def complete_reminder(
        self, reminder_id: int, outcome_notes: str, completed_by: str, duration_minutes: int
    ) -> None:
        row = self._get_row(SourceType.REMINDER, reminder_id)
        next_state(SourceType.REMINDER, row.status, Transition.COMPLETE)
        row.status = "Completed"
        row.completed_at = utcnow()
        row.outcome_notes = outcome_notes
        row.completed_by = completed_by
        row.duration_minutes = duration_minutes
        self.session.commit()

    def _complete_event(
        self, source_type: SourceType, event_id: int, outcome_notes: str, duration_minutes: int
    ) -> None:
        row = self._get_row(source_type, event_id)
        next_state(source_type, row.phase, Transition.COMPLETE)
        row.phase = "Completed"
        row.completed_at = utcnow()
        row.outcome_notes = outcome_notes
        row.duration_minutes = duration_minutes
        self.session.commit()

    def complete_meeting(self, meeting_id: int, outcome_notes: str, duration_minutes: int) -> None:
        self._complete_event(SourceType.MEETING, meeting_id, outcome_notes, duration_minutes)

    def complete_demo(self, demo_id: int, outcome_notes: str, duration_minutes: int) -> None:
        self._complete_event(SourceType.DEMO, demo_id, outcome_notes, duration_minutes)

    def cancel_reminder(self, reminder_id: int) -> None:
        row = self._get_row(SourceType.REMINDER, reminder_id)
        next_state(SourceType.REMINDER, row.status, Transition.CANCEL)
        row.status = "Canceled"
        self.session.commit()

    def cancel_event(
        self, source_type: SourceType, event_id: int, reason: str, updated_by: str, lead_id: int | None
    ) -> None:
        if source_type not in {SourceType.MEETING, SourceType.DEMO}:
            raise ValidationError(
                "only meetings and demos carry a cancellation reason",
                details={"source_type": source_type.value},
            )
        row = self._get_row(source_type, event_id)
        if lead_id is not None and row.lead_id != lead_id:
            raise ValidationError(
                "activity does not belong to lead",
                details={"activity_id": activity_id_for(source_type, event_id), "lead_id": lead_id},
            )
        next_state(source_type, row.phase, Transition.CANCEL)
        row.phase = "Canceled"
        row.cancel_reason = reason
        row.updated_by = updated_by
        self.session.commit()

    def update_logged_activity(self, activity_id: int, details: str) -> None:
        row = self._get_row(SourceType.LOG, activity_id)
        next_state(SourceType.LOG, row.status, Transition.EDIT)
        row.details = details
        self.session.commit()

    def delete_logged_activity(self, activity_id: int, reason: str, deleted_by: str) -> None:
        row = self._get_row(SourceType.LOG, activity_id)
        next_state(SourceType.LOG, row.status, Transition.DELETE)
        row.deleted_at = utcnow()
        row.deleted_by = deleted_by
        row.delete_reason = reason
        self.session.add(
            ActivityLog(
                lead_id=row.lead_id,
                details=f"Deleted {row.activity_type or 'activity'}: {reason}\n\nOriginal details: {row.details}",
                activity_type=SYSTEM_DELETE_ACTIVITY_TYPE,
                phase="Deleted",
                created_by=deleted_by,
                deleted_activity_id=row.id,
            )
        )
        self.session.commit()

    def restore_lead(self, lead_id: int) -> bool:
        lead = self.session.scalar(select(CRMLead).where(CRMLead.id == lead_id))
        if lead is None:
            raise NotFoundError("lead not found", details={"lead_id": lead_id})
        if lead.deleted_at is None:
            return False
        lead.deleted_at = None
        self.session.commit()
        return True

    def _insert(self, row: Any) -> int:
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row.id

    def log_activity(self, lead_id: int, dto: LogActivityCreate, created_by: str) -> int | None:
        self._get_live_lead(lead_id)
        return self._insert(
            ActivityLog(
                lead_id=lead_id,
                details=dto.details,
                activity_type=dto.activity_type,
                phase=dto.phase,
                attachment_path=dto.attachment_path,
                duration_minutes=dto.duration_minutes,
                created_by=created_by,
            )
        )

    def schedule_reminder(self, lead_id: int, dto: ReminderCreate, created_by: str) -> int | None:
        self._get_live_lead(lead_id)
        return self._insert(
            ActivityReminder(
                lead_id=lead_id,
                remind_time=dto.remind_time,
                message=dto.message,
                assigned_to=dto.assigned_to or created_by,
                activity_type=dto.activity_type,
                visibility=dto.visibility.value,
                created_by=created_by,
            )
        )

    def schedule_meeting(self, lead_id: int, dto: MeetingCreate, created_by: str) -> int | None:
        self._get_live_lead(lead_id)
        return self._insert(
            ActivityMeeting(
                lead_id=lead_id,
                event_time=dto.event_time,
                event_end_time=dto.event_end_time,
                assigned_to=dto.assigned_to or created_by,
                meeting_type=dto.meeting_type,
                meeting_agenda=dto.meeting_agenda,
                meeting_link=dto.meeting_link,
                location_text=dto.location_text,
                created_by=created_by,
            )
        )

    def schedule_demo(self, lead_id: int, dto: DemoCreate, created_by: str) -> int | None:
        self._get_live_lead(lead_id)
        return self._insert(
            ActivityDemo(
                lead_id=lead_id,
                start_time=dto.start_time,
                event_end_time=dto.event_end_time,
                assigned_to=dto.assigned_to or created_by,
                meeting_agenda=dto.meeting_agenda,
                meeting_link=dto.meeting_link,
                location_text=dto.location_text,
                scheduled_by=created_by,
            )
        )
