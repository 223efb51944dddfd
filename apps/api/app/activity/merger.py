from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from app.activity.classifier import COMPLETED, classify
from app.activity.dates import ensure_utc, utcnow
from app.activity.errors import ValidationError
from app.activity.schemas import (
    SCHEDULED_SOURCES,
    CompletionPayload,
    DemoDetail,
    MeetingDetail,
    ReminderDetail,
    UnifiedActivity,
)


def validate_duration(value: Any) -> int:
    """Return ``value`` as a positive whole number of minutes or raise ``ValidationError``."""
    if value is None or isinstance(value, bool):
        raise ValidationError("duration_minutes is required", details={"field": "duration_minutes"})

    minutes: int | None = None
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            minutes = int(value)
    elif isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            minutes = int(stripped)

    if minutes is None:
        raise ValidationError("duration_minutes must be a whole number", details={"field": "duration_minutes"})
    if minutes <= 0:
        raise ValidationError("duration_minutes must be positive", details={"field": "duration_minutes"})
    return minutes


def validate_completion(outcome: CompletionPayload) -> CompletionPayload:
    notes = (outcome.outcome_notes or "").strip()
    if not notes:
        raise ValidationError("outcome_notes is required", details={"field": "outcome_notes"})
    return CompletionPayload(
        outcome_notes=notes,
        duration_minutes=validate_duration(outcome.duration_minutes),
        completed_at=ensure_utc(outcome.completed_at) if outcome.completed_at else None,
        completed_by=outcome.completed_by,
    )


def scheduled_time_of(activity: UnifiedActivity) -> datetime:
    detail = activity.detail
    if isinstance(detail, ReminderDetail) and detail.remind_time is not None:
        return detail.remind_time
    if isinstance(detail, (MeetingDetail, DemoDetail)) and detail.start_time is not None:
        return detail.start_time
    return activity.original_scheduled_date or activity.date


def scheduled_by_of(activity: UnifiedActivity) -> str | None:
    detail = activity.detail
    if isinstance(detail, DemoDetail):
        return detail.scheduled_by
    if isinstance(detail, (ReminderDetail, MeetingDetail)):
        return detail.created_by
    return None


def merge(original: UnifiedActivity, outcome: CompletionPayload) -> UnifiedActivity:
    """Combine a scheduled record with its completion outcome.

    ``details`` and ``date`` describe what happened; the ``original_*`` fields
    keep what was planned so both can be shown from one record.
    """
    if original.source_type not in SCHEDULED_SOURCES:
        raise ValidationError(
            f"{original.source_type.value} records cannot be completed",
            details={"activity_id": original.id},
        )
    validated = validate_completion(outcome)
    classification = classify(original.source_type, COMPLETED)

    detail = original.detail
    if isinstance(detail, ReminderDetail) and validated.completed_by:
        detail = detail.model_copy(update={"completed_by": validated.completed_by})

    return original.model_copy(
        update={
            "details": validated.outcome_notes,
            "date": validated.completed_at or utcnow(),
            "status": classification.effective_status,
            "is_actionable": classification.is_actionable,
            "duration_minutes": validated.duration_minutes,
            "original_scheduled_date": scheduled_time_of(original),
            "original_created_at": original.original_created_at or original.creation_date,
            "original_created_by": original.original_created_by or scheduled_by_of(original),
            "original_details": original.original_details if original.is_merged_completion else original.details,
            "detail": detail,
        }
    )
