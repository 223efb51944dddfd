from __future__ import annotations

import re
from enum import Enum

from app.activity.classifier import CANCELED, COMPLETED, DELETED, normalize_status, status_family
from app.activity.errors import ConflictError, ValidationError
from app.activity.schemas import SourceType


class LifecycleState(str, Enum):
    ACTIVE = "Active"
    DELETED = "Deleted"
    PENDING = "Pending"
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"
    CANCELED = "Canceled"


class Transition(str, Enum):
    EDIT = "edit"
    DELETE = "delete"
    COMPLETE = "complete"
    CANCEL = "cancel"


TERMINAL_STATES = frozenset({LifecycleState.DELETED, LifecycleState.COMPLETED, LifecycleState.CANCELED})

TRANSITIONS: dict[tuple[SourceType, LifecycleState, Transition], LifecycleState] = {
    (SourceType.LOG, LifecycleState.ACTIVE, Transition.EDIT): LifecycleState.ACTIVE,
    (SourceType.LOG, LifecycleState.ACTIVE, Transition.DELETE): LifecycleState.DELETED,
    (SourceType.REMINDER, LifecycleState.PENDING, Transition.COMPLETE): LifecycleState.COMPLETED,
    (SourceType.REMINDER, LifecycleState.PENDING, Transition.CANCEL): LifecycleState.CANCELED,
    (SourceType.MEETING, LifecycleState.SCHEDULED, Transition.COMPLETE): LifecycleState.COMPLETED,
    (SourceType.MEETING, LifecycleState.SCHEDULED, Transition.CANCEL): LifecycleState.CANCELED,
    (SourceType.DEMO, LifecycleState.SCHEDULED, Transition.COMPLETE): LifecycleState.COMPLETED,
    (SourceType.DEMO, LifecycleState.SCHEDULED, Transition.CANCEL): LifecycleState.CANCELED,
}

SUPPORTED_TRANSITIONS: dict[SourceType, frozenset[Transition]] = {
    source_type: frozenset(transition for (source, _, transition) in TRANSITIONS if source == source_type)
    for source_type in SourceType
}

DEFAULT_DELETE_REASON = "No reason provided"

_LEAD_TAG_RE = re.compile(r"^\[LEAD:(\d+):([^\]]*)\]\s?(.*)$", re.DOTALL)

_UNSUPPORTED_MESSAGES = {
    Transition.EDIT: "only logged activities can be edited; scheduled activities must be rescheduled or canceled",
    Transition.DELETE: "scheduled activities are canceled, not deleted",
    Transition.COMPLETE: "logged activities are already complete",
    Transition.CANCEL: "logged activities are deleted, not canceled",
}


def state_for(source_type: SourceType, status: str | None) -> LifecycleState:
    family = status_family(normalize_status(source_type, status))
    if source_type == SourceType.LOG:
        return LifecycleState.DELETED if family == DELETED else LifecycleState.ACTIVE
    if family == COMPLETED:
        return LifecycleState.COMPLETED
    if family in {CANCELED, DELETED}:
        return LifecycleState.CANCELED
    if source_type == SourceType.REMINDER:
        return LifecycleState.PENDING
    return LifecycleState.SCHEDULED


def require_supported(source_type: SourceType, transition: Transition) -> None:
    if transition not in SUPPORTED_TRANSITIONS[source_type]:
        raise ValidationError(
            _UNSUPPORTED_MESSAGES[transition],
            details={"source_type": source_type.value, "transition": transition.value},
        )


def next_state(source_type: SourceType, status: str | None, transition: Transition) -> LifecycleState:
    """Return the state ``transition`` leads to, or raise if it is not legal.

    Unsupported transitions for the source type are validation failures;
    transitions out of a terminal state are conflicts.
    """
    require_supported(source_type, transition)
    current = state_for(source_type, status)
    if current in TERMINAL_STATES:
        raise ConflictError(
            f"{source_type.value} is already {current.value.lower()}",
            details={"source_type": source_type.value, "state": current.value, "transition": transition.value},
        )
    return TRANSITIONS[(source_type, current, transition)]


def require_cancel_reason(reason: str | None) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("a cancellation reason is required", details={"field": "reason"})
    return cleaned


def tag_cancel_reason(reason: str | None, lead_id: int, company_name: str | None) -> str:
    cleaned = require_cancel_reason(reason)
    return f"[LEAD:{lead_id}:{company_name or ''}] {cleaned}"


def parse_lead_tag(stored_reason: str | None) -> tuple[int | None, str | None, str]:
    if not stored_reason:
        return None, None, ""
    match = _LEAD_TAG_RE.match(stored_reason)
    if match is None:
        return None, None, stored_reason
    return int(match.group(1)), match.group(2) or None, match.group(3)


def resolve_delete_reason(reason: str | None) -> str:
    cleaned = (reason or "").strip()
    return cleaned or DEFAULT_DELETE_REASON


def require_details(details: str | None) -> str:
    cleaned = (details or "").strip()
    if not cleaned:
        raise ValidationError("details cannot be empty", details={"field": "details"})
    return cleaned
