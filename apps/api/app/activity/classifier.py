from __future__ import annotations

from app.activity.schemas import Classification, SourceType

PENDING = "pending"
SCHEDULED = "scheduled"
COMPLETED = "completed"
CANCELED = "canceled"
OVERDUE = "overdue"
DELETED = "deleted"

CANONICAL_STATUSES = frozenset({PENDING, SCHEDULED, COMPLETED, CANCELED, OVERDUE, DELETED})
OPEN_STATUSES = frozenset({PENDING, SCHEDULED, OVERDUE})
TERMINAL_STATUSES = frozenset({COMPLETED, CANCELED, DELETED})

_ALIASES = {
    "cancelled": CANCELED,
    "rescheduled": SCHEDULED,
    "done": COMPLETED,
}

# Delivery states of a reminder notification; the reminder itself is still open.
_REMINDER_ALIASES = {
    "sent": PENDING,
    "notified": PENDING,
    "failed": PENDING,
}

_INITIAL_STATUS = {
    SourceType.LOG: COMPLETED,
    SourceType.REMINDER: PENDING,
    SourceType.MEETING: SCHEDULED,
    SourceType.DEMO: SCHEDULED,
}

# Source-specific extensions such as "DemoDone" belong to the completed family.
COMPLETED_SUFFIX = "done"


def normalize_status(source_type: SourceType, status: str | None) -> str:
    """Map a backend status string onto the shared vocabulary.

    Unknown values are source-specific extensions and are returned as given
    (stripped), so callers can still display them.
    """
    raw = (status or "").strip()
    if not raw:
        return _INITIAL_STATUS[source_type]

    lowered = raw.lower()
    if lowered in CANONICAL_STATUSES:
        return lowered
    if lowered in _ALIASES:
        return _ALIASES[lowered]
    if source_type == SourceType.REMINDER and lowered in _REMINDER_ALIASES:
        return _REMINDER_ALIASES[lowered]
    return raw


def status_family(status: str) -> str:
    lowered = status.strip().lower()
    if lowered in CANONICAL_STATUSES:
        return lowered
    if lowered in _ALIASES:
        return _ALIASES[lowered]
    if lowered.endswith(COMPLETED_SUFFIX):
        return COMPLETED
    return lowered


def is_terminal(status: str) -> bool:
    return status_family(status) in TERMINAL_STATUSES


def classify(source_type: SourceType, status: str | None) -> Classification:
    effective_status = normalize_status(source_type, status)
    family = status_family(effective_status)
    is_actionable = source_type != SourceType.LOG and family in OPEN_STATUSES
    return Classification(is_actionable=is_actionable, effective_status=effective_status)


def raw_values_for(source_type: SourceType, family: str) -> frozenset[str]:
    """Lowercased backend strings of ``source_type`` that fall into ``family``.

    Used to push status filters into SQL. Values matched only by
    ``COMPLETED_SUFFIX`` are not listed.
    """
    values = {family}
    values.update(alias for alias, target in _ALIASES.items() if target == family)
    if source_type == SourceType.REMINDER:
        values.update(alias for alias, target in _REMINDER_ALIASES.items() if target == family)
    if _INITIAL_STATUS[source_type] == family:
        values.add("")
    return frozenset(values)
