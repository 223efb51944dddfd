from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Callable
from typing import Any

import requests
from opentelemetry import trace

from app.activity.errors import ActivityError, ConflictError, NotFoundError, TransportError, ValidationError
from app.activity.mapper import activity_id_for
from app.activity.schemas import (
    RAW_MODELS,
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
from app.context import get_correlation_id

logger = logging.getLogger("app.activity.http_backend")
tracer = trace.get_tracer("app.activity.http_backend")

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")

_CANCEL_ENDPOINTS = {SourceType.MEETING: "Meetings/Cancel", SourceType.DEMO: "Demos/Cancel"}
_CANCEL_ID_KEYS = {SourceType.MEETING: "MeetingId", SourceType.DEMO: "DemoId"}
_LIST_ENDPOINTS = {
    SourceType.LOG: ("Activity/GetAllActivities", "ActivityId"),
    SourceType.REMINDER: ("Reminders/GetAll", "ReminderId"),
    SourceType.MEETING: ("Meetings/GetAll", "MeetingId"),
    SourceType.DEMO: ("Demos/GetAll", "DemoId"),
}


def to_snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub("_", key).lower()


def to_pascal_case(key: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in key.split("_") if part)


def to_snake_case_keys(value: Any) -> Any:
    if isinstance(value, list):
        return [to_snake_case_keys(item) for item in value]
    if isinstance(value, dict):
        return {to_snake_case(str(key)): to_snake_case_keys(item) for key, item in value.items()}
    return value


def to_pascal_case_keys(value: Any) -> Any:
    if isinstance(value, list):
        return [to_pascal_case_keys(item) for item in value]
    if isinstance(value, dict):
        return {to_pascal_case(str(key)): to_pascal_case_keys(item) for key, item in value.items()}
    return value


def error_for_status(status_code: int, message: str, endpoint: str) -> ActivityError:
    details = {"endpoint": endpoint, "status_code": status_code}
    if status_code == 404:
        return NotFoundError(message or "record not found", details=details)
    if status_code == 409:
        return ConflictError(message or "record was changed by another request", details=details)
    if status_code in {400, 422}:
        return ValidationError(message or "backend rejected the request", details=details)
    return TransportError(message or "activity backend request failed", details=details)


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(payload, dict):
        for key in ("message", "Message", "title", "error"):
            if isinstance(payload.get(key), str):
                return payload[key]
    if isinstance(payload, str):
        return payload
    return response.text.strip()


def _record_id(item: dict[str, Any]) -> int | None:
    numeric = item.get("numeric_id")
    if isinstance(numeric, int) and not isinstance(numeric, bool):
        return numeric
    raw_id = item.get("id")
    if isinstance(raw_id, int) and not isinstance(raw_id, bool):
        return raw_id
    if isinstance(raw_id, str):
        _, _, tail = raw_id.rpartition("-")
        if tail.isdigit():
            return int(tail)
    return None


def _source_type_of(item: dict[str, Any]) -> SourceType | None:
    kind = str(item.get("type") or item.get("source_type") or "").strip().lower()
    if not kind and isinstance(item.get("id"), str):
        kind = item["id"].partition("-")[0].lower()
    for source_type in SourceType:
        if source_type.prefix == kind:
            return source_type
    return None


def feed_item_to_source_record(item: dict[str, Any]) -> SourceRecord | None:
    """Rebuild the per-source raw record behind one paginated feed row.

    Feed rows already carry completion data merged in; the ``original_*``
    fields are unfolded back onto the scheduled record so that mapping it
    yields the same merged view.
    """
    source_type = _source_type_of(item)
    record_id = _record_id(item)
    if source_type is None or record_id is None:
        return None

    date = item.get("date")
    details = item.get("details")
    merged = item.get("original_scheduled_date") is not None
    base: dict[str, Any] = {
        "id": record_id,
        "lead_id": item.get("lead_id"),
        "company_name": item.get("company_name"),
        "created_at": item.get("original_created_at") or item.get("creation_date") or item.get("created_at"),
        "duration_minutes": item.get("duration_minutes"),
    }

    if source_type == SourceType.LOG:
        base.update(
            {
                "created_at": item.get("creation_date") or item.get("created_at") or date,
                "details": details,
                "activity_type": item.get("activity_type"),
                "created_by": item.get("created_by"),
            }
        )
    else:
        scheduled_at = item.get("original_scheduled_date") if merged else None
        planned_details = item.get("original_details") if merged else details
        status = item.get("status") or item.get("phase")
        if merged:
            base.update({"completed_at": date, "outcome_notes": details})
        if source_type == SourceType.REMINDER:
            base.update(
                {
                    "remind_time": scheduled_at or item.get("remind_time") or date,
                    "message": planned_details,
                    "status": status,
                    "assigned_to": item.get("assigned_to"),
                    "created_by": item.get("original_created_by") or item.get("created_by"),
                    "activity_type": item.get("activity_type"),
                }
            )
        elif source_type == SourceType.MEETING:
            base.update(
                {
                    "event_time": scheduled_at or item.get("event_time") or date,
                    "event_end_time": item.get("event_end_time"),
                    "remark": planned_details,
                    "phase": status,
                    "meeting_type": item.get("meeting_type") or item.get("activity_type"),
                    "assigned_to": item.get("assigned_to"),
                    "created_by": item.get("original_created_by") or item.get("created_by"),
                }
            )
        else:
            base.update(
                {
                    "start_time": scheduled_at or item.get("start_time") or item.get("event_time") or date,
                    "event_end_time": item.get("event_end_time"),
                    "remark": planned_details,
                    "phase": status,
                    "assigned_to": item.get("assigned_to"),
                    "scheduled_by": item.get("original_created_by") or item.get("scheduled_by"),
                }
            )

    return SourceRecord(source_type=source_type, record=RAW_MODELS[source_type].model_validate(base))


_NOT_RESTORED_MARKERS = ("not deleted", "not in recycle bin", "already active", "already restored")


def restore_outcome(data: Any) -> bool:
    """Read whether ``Leads/Restore`` actually moved a lead out of the recycle bin.

    An empty 2xx body counts as restored; an explicit flag or a message saying
    the lead was not deleted does not.
    """
    if not isinstance(data, dict):
        return True
    for key in ("restored", "success", "is_success"):
        if isinstance(data.get(key), bool):
            return data[key]
    message = str(data.get("message") or "").lower()
    return not any(marker in message for marker in _NOT_RESTORED_MARKERS)


class HttpActivityBackend:
    """Backend of record reached over the CRM's JSON API.

    Every call is a POST to ``<base_url>/<Controller>/<Action>`` with a
    PascalCase body; responses are converted to snake_case before validation.

    Each thread gets its own ``requests.Session`` from ``session_factory``.
    Passing ``session`` pins one session for every call, which turns the
    concurrent timeline reads off.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
        headers: dict[str, str] | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = dict(headers or {})
        self.supports_concurrent_reads = session is None
        self._pinned_session = session
        self._session_factory = session_factory
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._pinned_session is not None:
            return self._pinned_session
        current = getattr(self._local, "session", None)
        if current is None:
            current = self._session_factory()
            self._local.session = current
        return current

    def _post(self, endpoint: str, payload: dict[str, Any] | None = None, *, pascal_case: bool = True) -> Any:
        body = to_pascal_case_keys(payload or {}) if pascal_case else (payload or {})
        headers = dict(self.headers)
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["x-correlation-id"] = correlation_id

        with tracer.start_as_current_span("activity_backend.request") as span:
            span.set_attribute("endpoint", endpoint)
            span.set_attribute("correlation_id", correlation_id or "")
            try:
                response = self.session.post(
                    f"{self.base_url}/{endpoint}",
                    json=body,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
            except requests.exceptions.Timeout as exc:
                logger.warning("backend.request_failed", extra={"endpoint": endpoint, "error": "timeout"})
                raise TransportError("activity backend timed out", details={"endpoint": endpoint}) from exc
            except requests.exceptions.RequestException as exc:
                logger.warning("backend.request_failed", extra={"endpoint": endpoint, "error": str(exc)})
                raise TransportError("activity backend is unreachable", details={"endpoint": endpoint}) from exc

            span.set_attribute("status_code", response.status_code)
            if not response.ok:
                logger.warning(
                    "backend.request_failed",
                    extra={"endpoint": endpoint, "status_code": response.status_code},
                )
                raise error_for_status(response.status_code, _error_message(response), endpoint)

            if not response.content:
                return None
            try:
                data = response.json()
            except ValueError:
                return {"message": response.text.strip()}
            if isinstance(data, str):
                try:
                    data = json.loads(data)
                except ValueError:
                    return {"message": data}
            return to_snake_case_keys(data)

    def _records(self, source_type: SourceType, data: Any) -> list[Any]:
        rows = data.get("data", []) if isinstance(data, dict) else data
        model = RAW_MODELS[source_type]
        records = []
        for row in rows or []:
            if not isinstance(row, dict) or _record_id(row) is None:
                logger.warning("backend.row_skipped", extra={"source_type": source_type.value})
                continue
            records.append(model.model_validate({**row, "id": _record_id(row)}))
        return records

    def list_activities(
        self, page: int, page_size: int, search: str, filter_name: ActivityFilter
    ) -> RawActivityPage:
        data = self._post(
            "Activity/GetPaginated",
            {"page": page, "pageSize": page_size, "searchTerm": search, "statusFilter": filter_name.value},
            pascal_case=False,
        )
        if not isinstance(data, dict):
            raise TransportError("unexpected paginated response", details={"endpoint": "Activity/GetPaginated"})

        items = []
        for row in data.get("data") or []:
            record = feed_item_to_source_record(row) if isinstance(row, dict) else None
            if record is None:
                logger.warning("backend.row_skipped", extra={"endpoint": "Activity/GetPaginated"})
                continue
            items.append(record)
        total = data.get("total")
        return RawActivityPage(items=items, total=total if isinstance(total, int) else len(items))

    def get_activities_for_lead(self, lead_id: int) -> list[RawActivityLog]:
        return self._records(SourceType.LOG, self._post("Activity/GetByLead", {"lead_id": lead_id}))

    def get_meetings_for_lead(self, lead_id: int) -> list[RawMeeting]:
        return self._records(SourceType.MEETING, self._post("Meetings/GetAll", {"lead_id": lead_id}))

    def get_demos_for_lead(self, lead_id: int) -> list[RawDemo]:
        return self._records(SourceType.DEMO, self._post("Demos/GetAll", {"lead_id": lead_id}))

    def get_reminders_for_lead(self, lead_id: int, include_hidden: bool = False) -> list[RawReminder]:
        reminders = self._records(SourceType.REMINDER, self._post("Reminders/GetAll", {"lead_id": lead_id}))
        if include_hidden:
            return reminders
        return [reminder for reminder in reminders if reminder.visibility != ReminderVisibility.HIDDEN]

    def get_record(self, source_type: SourceType, record_id: int) -> RawRecord:
        endpoint, id_key = _LIST_ENDPOINTS[source_type]
        for record in self._records(source_type, self._post(endpoint, {id_key: record_id})):
            if record.id == record_id:
                return record
        raise NotFoundError(
            f"{source_type.value.lower()} not found",
            details={"activity_id": activity_id_for(source_type, record_id)},
        )

    def complete_reminder(
        self, reminder_id: int, outcome_notes: str, completed_by: str, duration_minutes: int
    ) -> None:
        self._post(
            "Reminders/CompleteAndLog",
            {
                "reminder_id": reminder_id,
                "outcome_notes": outcome_notes,
                "completed_by": completed_by,
                "duration_minutes": duration_minutes,
            },
        )

    def complete_meeting(self, meeting_id: int, outcome_notes: str, duration_minutes: int) -> None:
        self._post(
            "Meetings/Complete",
            {"meeting_id": meeting_id, "remark": outcome_notes, "duration_minutes": duration_minutes},
        )

    def complete_demo(self, demo_id: int, outcome_notes: str, duration_minutes: int) -> None:
        self._post(
            "Demos/Complete",
            {"demo_id": demo_id, "remark": outcome_notes, "duration_minutes": duration_minutes},
        )

    def cancel_reminder(self, reminder_id: int) -> None:
        self._post("Reminders/Delete", {"reminder_id": reminder_id})

    def cancel_event(
        self, source_type: SourceType, event_id: int, reason: str, updated_by: str, lead_id: int | None
    ) -> None:
        if source_type not in _CANCEL_ENDPOINTS:
            raise ValidationError(
                "only meetings and demos carry a cancellation reason",
                details={"source_type": source_type.value},
            )
        self._post(
            _CANCEL_ENDPOINTS[source_type],
            {_CANCEL_ID_KEYS[source_type]: event_id, "Reason": reason, "UpdatedBy": updated_by, "LeadId": lead_id},
        )

    def update_logged_activity(self, activity_id: int, details: str) -> None:
        self._post("Activity/Update", {"activity_id": activity_id, "details": details})

    def delete_logged_activity(self, activity_id: int, reason: str, deleted_by: str) -> None:
        self._post("Activity/Delete", {"activity_id": activity_id, "reason": reason, "deleted_by": deleted_by})

    def restore_lead(self, lead_id: int) -> bool:
        return restore_outcome(self._post("Leads/Restore", {"LedgerID": lead_id}))

    @staticmethod
    def _created_id(data: Any) -> int | None:
        if isinstance(data, dict):
            return _record_id(data)
        return None

    def log_activity(self, lead_id: int, dto: LogActivityCreate, created_by: str) -> int | None:
        payload = {"lead_id": lead_id, "created_by": created_by, **dto.model_dump(exclude_none=True)}
        return self._created_id(self._post("Activity/AddManualActivity", payload))

    def schedule_reminder(self, lead_id: int, dto: ReminderCreate, created_by: str) -> int | None:
        payload = {
            "lead_id": lead_id,
            "created_by": created_by,
            "is_hidden_from_activity_log": dto.visibility == ReminderVisibility.HIDDEN,
            **dto.model_dump(mode="json", exclude_none=True, exclude={"visibility"}),
        }
        return self._created_id(self._post("Reminders/Create", payload))

    def schedule_meeting(self, lead_id: int, dto: MeetingCreate, created_by: str) -> int | None:
        payload = {"lead_id": lead_id, "created_by": created_by, **dto.model_dump(mode="json", exclude_none=True)}
        return self._created_id(self._post("Meetings/Create", payload))

    def schedule_demo(self, lead_id: int, dto: DemoCreate, created_by: str) -> int | None:
        payload = {"lead_id": lead_id, "scheduled_by": created_by, **dto.model_dump(mode="json", exclude_none=True)}
        return self._created_id(self._post("Demos/Create", payload))
