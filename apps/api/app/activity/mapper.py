from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from app.activity.classifier import COMPLETED, DELETED, classify, status_family
from app.activity.dates import EPOCH
from app.activity.errors import ValidationError
from app.activity.merger import merge, scheduled_by_of, scheduled_time_of
from app.activity.schemas import (
    RAW_MODELS,
    CompletionPayload,
    DemoDetail,
    LogDetail,
    MeetingDetail,
    RawActivityLog,
    RawDemo,
    RawMeeting,
    RawRecord,
    RawReminder,
    ReminderDetail,
    SourceRecord,
    SourceType,
    UnifiedActivity,
)
from app.metrics import observe_mapping_anomalies

logger = logging.getLogger("app.activity.mapper")

SYSTEM_DELETE_ACTIVITY_TYPE = "system-delete"
MISSING_LEAD_ID = "missing_lead_id"
MISSING_TIME = "missing_time"


def activity_id_for(source_type: SourceType, record_id: int) -> str:
    return f"{source_type.prefix}-{record_id}"


def parse_activity_id(activity_id: str) -> tuple[SourceType, int]:
    prefix, _, raw_id = activity_id.strip().partition("-")
    for source_type in SourceType:
        if source_type.prefix == prefix.lower() and raw_id.isdigit():
            return source_type, int(raw_id)
    raise ValidationError("invalid activity id", details={"activity_id": activity_id})


def _anchor(*candidates: datetime | None) -> datetime | None:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


def _lead_id(record: RawRecord, anomalies: list[str]) -> int:
    if record.lead_id is None:
        anomalies.append(MISSING_LEAD_ID)
        return 0
    return record.lead_id


def _scheduled_date(
    scheduled_at: datetime | None,
    completed_at: datetime | None,
    created_at: datetime | None,
    anomalies: list[str],
) -> datetime:
    if scheduled_at is None and completed_at is None:
        anomalies.append(MISSING_TIME)
    return _anchor(scheduled_at, completed_at, created_at) or EPOCH


def _apply_completion(
    base: UnifiedActivity,
    *,
    outcome_notes: str | None,
    completed_at: datetime | None,
    completed_by: str | None,
    duration_minutes: int | None,
) -> UnifiedActivity:
    notes = (outcome_notes or "").strip()
    if notes and duration_minutes:
        merged = merge(
            base,
            CompletionPayload(
                outcome_notes=notes,
                duration_minutes=duration_minutes,
                completed_at=completed_at or base.date,
                completed_by=completed_by,
            ),
        )
        return merged.model_copy(update={"status": base.status})

    update: dict[str, Any] = {"date": completed_at or base.date}
    if notes:
        update.update(
            {
                "details": notes,
                "original_details": base.details,
                "original_scheduled_date": scheduled_time_of(base),
                "original_created_at": base.creation_date,
                "original_created_by": scheduled_by_of(base),
            }
        )
    return base.model_copy(update=update)


def _map_log(record: RawActivityLog) -> UnifiedActivity:
    anomalies: list[str] = []
    lead_id = _lead_id(record, anomalies)
    is_delete_entry = (record.activity_type or "").lower() == SYSTEM_DELETE_ACTIVITY_TYPE
    classification = classify(SourceType.LOG, DELETED if is_delete_entry else record.status)
    if record.created_at is None:
        anomalies.append(MISSING_TIME)

    return UnifiedActivity(
        id=activity_id_for(SourceType.LOG, record.id),
        source_type=SourceType.LOG,
        lead_id=lead_id,
        company_name=record.company_name,
        activity_type=record.activity_type or record.phase,
        details=record.details,
        logged_or_scheduled="Logged",
        status=classification.effective_status,
        date=record.created_at or EPOCH,
        creation_date=record.created_at,
        is_actionable=classification.is_actionable,
        duration_minutes=record.duration_minutes,
        anomalies=anomalies,
        detail=LogDetail(
            record_id=record.id,
            created_by=record.created_by,
            phase=record.phase,
            attachment_path=record.attachment_path,
            deleted_activity_id=record.deleted_activity_id,
        ),
    )


def _map_reminder(record: RawReminder) -> UnifiedActivity:
    anomalies: list[str] = []
    lead_id = _lead_id(record, anomalies)
    classification = classify(SourceType.REMINDER, record.status)
    completed = status_family(classification.effective_status) == COMPLETED

    base = UnifiedActivity(
        id=activity_id_for(SourceType.REMINDER, record.id),
        source_type=SourceType.REMINDER,
        lead_id=lead_id,
        company_name=record.company_name,
        activity_type=record.activity_type or "Reminder",
        details=record.message,
        logged_or_scheduled="Scheduled",
        status=classification.effective_status,
        date=_scheduled_date(record.remind_time, record.completed_at, record.created_at, anomalies),
        creation_date=record.created_at,
        is_actionable=classification.is_actionable,
        anomalies=anomalies,
        detail=ReminderDetail(
            record_id=record.id,
            remind_time=record.remind_time,
            assigned_to=record.assigned_to,
            created_by=record.created_by or record.assigned_to,
            raw_status=record.status,
            visibility=record.visibility,
            completed_by=record.completed_by,
        ),
    )
    if not completed:
        return base
    return _apply_completion(
        base,
        outcome_notes=record.outcome_notes,
        completed_at=record.completed_at,
        completed_by=record.completed_by,
        duration_minutes=record.duration_minutes,
    )


def _map_meeting(record: RawMeeting) -> UnifiedActivity:
    anomalies: list[str] = []
    lead_id = _lead_id(record, anomalies)
    classification = classify(SourceType.MEETING, record.phase)
    completed = status_family(classification.effective_status) == COMPLETED

    base = UnifiedActivity(
        id=activity_id_for(SourceType.MEETING, record.id),
        source_type=SourceType.MEETING,
        lead_id=lead_id,
        company_name=record.company_name,
        activity_type=record.meeting_type or "Meeting",
        details=record.remark or record.meeting_agenda,
        logged_or_scheduled="Scheduled",
        status=classification.effective_status,
        date=_scheduled_date(record.event_time, record.completed_at, record.created_at, anomalies),
        creation_date=record.created_at,
        is_actionable=classification.is_actionable,
        anomalies=anomalies,
        detail=MeetingDetail(
            record_id=record.id,
            assigned_to=record.assigned_to,
            created_by=record.created_by,
            meeting_type=record.meeting_type,
            start_time=record.event_time,
            end_time=record.event_end_time,
            raw_status=record.phase,
            agenda=record.meeting_agenda,
            meeting_link=record.meeting_link,
            location_text=record.location_text,
            cancel_reason=record.cancel_reason,
            updated_by=record.updated_by,
        ),
    )
    if not completed:
        return base
    return _apply_completion(
        base,
        outcome_notes=record.outcome_notes,
        completed_at=record.completed_at,
        completed_by=None,
        duration_minutes=record.duration_minutes,
    )


def _map_demo(record: RawDemo) -> UnifiedActivity:
    anomalies: list[str] = []
    lead_id = _lead_id(record, anomalies)
    classification = classify(SourceType.DEMO, record.phase)
    completed = status_family(classification.effective_status) == COMPLETED

    base = UnifiedActivity(
        id=activity_id_for(SourceType.DEMO, record.id),
        source_type=SourceType.DEMO,
        lead_id=lead_id,
        company_name=record.company_name,
        activity_type="Demo",
        details=record.remark or record.meeting_agenda,
        logged_or_scheduled="Scheduled",
        status=classification.effective_status,
        date=_scheduled_date(record.start_time, record.completed_at, record.created_at, anomalies),
        creation_date=record.created_at,
        is_actionable=classification.is_actionable,
        anomalies=anomalies,
        detail=DemoDetail(
            record_id=record.id,
            assigned_to=record.assigned_to,
            scheduled_by=record.scheduled_by,
            start_time=record.start_time,
            end_time=record.event_end_time,
            raw_status=record.phase,
            agenda=record.meeting_agenda,
            meeting_link=record.meeting_link,
            location_text=record.location_text,
            cancel_reason=record.cancel_reason,
            updated_by=record.updated_by,
        ),
    )
    if not completed:
        return base
    return _apply_completion(
        base,
        outcome_notes=record.outcome_notes,
        completed_at=record.completed_at,
        completed_by=None,
        duration_minutes=record.duration_minutes,
    )


_MAPPERS: dict[SourceType, Callable[[Any], UnifiedActivity]] = {
    SourceType.LOG: _map_log,
    SourceType.REMINDER: _map_reminder,
    SourceType.MEETING: _map_meeting,
    SourceType.DEMO: _map_demo,
}


def map_record(raw: Any, source_type: SourceType) -> UnifiedActivity:
    """Project one raw source record onto the unified feed shape.

    Never raises for a record that carries an id: missing lead ids and times
    are replaced by fallbacks and reported through ``anomalies``.
    """
    model = RAW_MODELS[source_type]
    record = raw if isinstance(raw, model) else model.model_validate(raw)
    activity = _MAPPERS[source_type](record)
    if activity.anomalies:
        observe_mapping_anomalies(source_type.value, activity.anomalies)
        logger.warning(
            "activity.mapping_anomaly",
            extra={"activity_id": activity.id, "anomalies": list(activity.anomalies)},
        )
    return activity


def map_source_record(item: SourceRecord) -> UnifiedActivity:
    return map_record(item.record, item.source_type)
