from __future__ import annotations

import pytest

from app.activity.classifier import classify, is_terminal, normalize_status, status_family
from app.activity.schemas import SourceType


@pytest.mark.parametrize(
    ("source_type", "status", "expected_status", "expected_actionable"),
    [
        (SourceType.LOG, None, "completed", False),
        (SourceType.LOG, "Overdue", "overdue", False),
        (SourceType.REMINDER, "Pending", "pending", True),
        (SourceType.REMINDER, "", "pending", True),
        (SourceType.REMINDER, "Sent", "pending", True),
        (SourceType.REMINDER, "Completed", "completed", False),
        (SourceType.MEETING, "Scheduled", "scheduled", True),
        (SourceType.MEETING, "Rescheduled", "scheduled", True),
        (SourceType.MEETING, "Cancelled", "canceled", False),
        (SourceType.DEMO, "Overdue", "overdue", True),
        (SourceType.DEMO, "Done", "completed", False),
        (SourceType.MEETING, "No-Show", "No-Show", False),
    ],
)
def test_classify_marks_only_open_scheduled_items_actionable(
    source_type: SourceType,
    status: str | None,
    expected_status: str,
    expected_actionable: bool,
) -> None:
    classification = classify(source_type, status)

    assert classification.effective_status == expected_status
    assert classification.is_actionable is expected_actionable


def test_initial_status_depends_on_source() -> None:
    assert normalize_status(SourceType.LOG, None) == "completed"
    assert normalize_status(SourceType.REMINDER, None) == "pending"
    assert normalize_status(SourceType.MEETING, "  ") == "scheduled"
    assert normalize_status(SourceType.DEMO, None) == "scheduled"


def test_delivery_states_only_alias_for_reminders() -> None:
    assert normalize_status(SourceType.REMINDER, "Notified") == "pending"
    assert normalize_status(SourceType.MEETING, "Notified") == "Notified"


def test_extension_statuses_keep_their_family() -> None:
    assert status_family("DemoDone") == "completed"
    assert status_family("CANCELLED") == "canceled"
    assert is_terminal("Cancelled")
    assert is_terminal("deleted")
    assert not is_terminal("Overdue")
