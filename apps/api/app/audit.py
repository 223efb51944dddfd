from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    """Snapshot keys whose values differ between ``before`` and ``after``."""
    old = before or {}
    new = after or {}
    return sorted(key for key in old.keys() | new.keys() if old.get(key) != new.get(key))


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    snapshot = after or before or {}
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor_user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "lead_id": snapshot.get("lead_id"),
            "action": action,
            "before": before,
            "after": after,
            "changes": changed_fields(before, after),
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id
    ]


def entries_for_lead(lead_id: int) -> list[dict[str, Any]]:
    """Activity history entries for one lead, oldest first."""
    return [entry for entry in audit_entries if entry["entity_type"] == "activity" and entry["lead_id"] == lead_id]
