from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from app.activity.dates import parse_api_datetime


class SourceType(str, Enum):
    LOG = "Log"
    REMINDER = "Reminder"
    MEETING = "Meeting"
    DEMO = "Demo"

    @property
    def prefix(self) -> str:
        return self.value.lower()


SOURCE_ORDER: dict[SourceType, int] = {
    SourceType.LOG: 0,
    SourceType.REMINDER: 1,
    SourceType.MEETING: 2,
    SourceType.DEMO: 3,
}

SCHEDULED_SOURCES = frozenset({SourceType.REMINDER, SourceType.MEETING, SourceType.DEMO})


class ReminderVisibility(str, Enum):
    VISIBLE = "visible"
    HIDDEN = "hidden"


class ActivityFilter(str, Enum):
    ALL = "all"
    TODAY = "today"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    OVERDUE = "overdue"
    CANCELED = "canceled"


def _int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _positive_int_or_none(value: Any) -> int | None:
    parsed = _int_or_none(value)
    if parsed is None or parsed <= 0:
        return None
    return parsed


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, int, float)):
        return str(value)
    return None


def _visibility(value: Any) -> ReminderVisibility:
    if isinstance(value, ReminderVisibility):
        return value
    if isinstance(value, str) and value.strip().lower() == ReminderVisibility.HIDDEN.value:
        return ReminderVisibility.HIDDEN
    return ReminderVisibility.VISIBLE


def _hidden_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


ApiDateTime = Annotated[datetime | None, BeforeValidator(parse_api_datetime)]
LenientInt = Annotated[int | None, BeforeValidator(_int_or_none)]
Duration = Annotated[int | None, BeforeValidator(_positive_int_or_none)]
LenientStr = Annotated[str | None, BeforeValidator(_str_or_none)]


class RawRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: int
    lead_id: LenientInt = None
    company_name: LenientStr = None
    created_at: ApiDateTime = None


class RawActivityLog(RawRecord):
    details: LenientStr = None
    phase: LenientStr = None
    activity_type: LenientStr = None
    created_by: LenientStr = None
    attachment_path: LenientStr = None
    duration_minutes: Duration = None
    deleted_activity_id: LenientInt = None
    status: LenientStr = None


class RawReminder(RawRecord):
    remind_time: ApiDateTime = None
    message: LenientStr = None
    assigned_to: LenientStr = None
    status: LenientStr = None
    created_by: LenientStr = None
    activity_type: LenientStr = None
    visibility: Annotated[ReminderVisibility, BeforeValidator(_visibility)] = ReminderVisibility.VISIBLE
    completed_at: ApiDateTime = None
    outcome_notes: LenientStr = None
    completed_by: LenientStr = None
    duration_minutes: Duration = None

    @model_validator(mode="before")
    @classmethod
    def _map_hidden_flag(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("visibility") is None and "is_hidden_from_activity_log" in data:
            data = dict(data)
            hidden = _hidden_flag(data.pop("is_hidden_from_activity_log"))
            data["visibility"] = ReminderVisibility.HIDDEN if hidden else ReminderVisibility.VISIBLE
        return data


class RawMeeting(RawRecord):
    assigned_to: LenientStr = None
    meeting_type: LenientStr = None
    event_time: ApiDateTime = None
    event_end_time: ApiDateTime = None
    created_by: LenientStr = None
    phase: LenientStr = None
    remark: LenientStr = None
    meeting_agenda: LenientStr = None
    meeting_link: LenientStr = None
    location_text: LenientStr = None
    completed_at: ApiDateTime = None
    outcome_notes: LenientStr = None
    duration_minutes: Duration = None
    cancel_reason: LenientStr = None
    updated_by: LenientStr = None


class RawDemo(RawRecord):
    assigned_to: LenientStr = None
    scheduled_by: LenientStr = None
    start_time: ApiDateTime = None
    event_end_time: ApiDateTime = None
    phase: LenientStr = None
    remark: LenientStr = None
    meeting_agenda: LenientStr = None
    meeting_link: LenientStr = None
    location_text: LenientStr = None
    completed_at: ApiDateTime = None
    outcome_notes: LenientStr = None
    duration_minutes: Duration = None
    cancel_reason: LenientStr = None
    updated_by: LenientStr = None


RAW_MODELS: dict[SourceType, type[RawRecord]] = {
    SourceType.LOG: RawActivityLog,
    SourceType.REMINDER: RawReminder,
    SourceType.MEETING: RawMeeting,
    SourceType.DEMO: RawDemo,
}


@dataclass(frozen=True)
class SourceRecord:
    source_type: SourceType
    record: RawRecord


@dataclass
class RawActivityPage:
    items: list[SourceRecord]
    total: int


class LogDetail(BaseModel):
    source_type: Literal[SourceType.LOG] = SourceType.LOG
    record_id: int
    created_by: str | None = None
    phase: str | None = None
    attachment_path: str | None = None
    deleted_activity_id: int | None = None


class ReminderDetail(BaseModel):
    source_type: Literal[SourceType.REMINDER] = SourceType.REMINDER
    record_id: int
    remind_time: datetime | None = None
    assigned_to: str | None = None
    created_by: str | None = None
    raw_status: str | None = None
    visibility: ReminderVisibility = ReminderVisibility.VISIBLE
    completed_by: str | None = None


class MeetingDetail(BaseModel):
    source_type: Literal[SourceType.MEETING] = SourceType.MEETING
    record_id: int
    assigned_to: str | None = None
    created_by: str | None = None
    meeting_type: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    raw_status: str | None = None
    agenda: str | None = None
    meeting_link: str | None = None
    location_text: str | None = None
    cancel_reason: str | None = None
    updated_by: str | None = None


class DemoDetail(BaseModel):
    source_type: Literal[SourceType.DEMO] = SourceType.DEMO
    record_id: int
    assigned_to: str | None = None
    scheduled_by: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    raw_status: str | None = None
    agenda: str | None = None
    meeting_link: str | None = None
    location_text: str | None = None
    cancel_reason: str | None = None
    updated_by: str | None = None


ActivityDetail = Annotated[
    Union[LogDetail, ReminderDetail, MeetingDetail, DemoDetail],
    Field(discriminator="source_type"),
]


class UnifiedActivity(BaseModel):
    id: str
    source_type: SourceType
    lead_id: int
    company_name: str | None = None
    activity_type: str | None = None
    details: str | None = None
    logged_or_scheduled: Literal["Logged", "Scheduled"]
    status: str
    date: datetime
    creation_date: datetime | None = None
    is_actionable: bool = False
    duration_minutes: int | None = Field(default=None, gt=0)
    original_scheduled_date: datetime | None = None
    original_created_at: datetime | None = None
    original_created_by: str | None = None
    original_details: str | None = None
    anomalies: list[str] = Field(default_factory=list)
    detail: ActivityDetail

    @property
    def record_id(self) -> int:
        return self.detail.record_id

    @property
    def is_merged_completion(self) -> bool:
        return self.original_scheduled_date is not None


class ActivityPage(BaseModel):
    data: list[UnifiedActivity]
    total: int
    page: int
    page_size: int
    page_count: int


class Timeline(BaseModel):
    lead_id: int
    items: list[UnifiedActivity]
    failed_sources: list[SourceType] = Field(default_factory=list)


class ActivityListOptions(BaseModel):
    page_size_options: list[int]
    default_page_size: int
    search_debounce_ms: int
    filters: list[ActivityFilter]


@dataclass
class CompletionPayload:
    outcome_notes: str | None
    duration_minutes: Any
    completed_at: datetime | None = None
    completed_by: str | None = None


@dataclass(frozen=True)
class Classification:
    is_actionable: bool
    effective_status: str


class CompleteActivityRequest(BaseModel):
    outcome_notes: str | None = None
    duration_minutes: Any = None


class CancelActivityRequest(BaseModel):
    reason: str | None = None


class UpdateLoggedActivityRequest(BaseModel):
    details: str | None = None


class LogActivityCreate(BaseModel):
    details: str
    activity_type: str = "Call"
    phase: str | None = None
    attachment_path: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0)


class ReminderCreate(BaseModel):
    remind_time: datetime
    message: str
    assigned_to: str | None = None
    activity_type: str | None = None
    visibility: ReminderVisibility = ReminderVisibility.VISIBLE


class MeetingCreate(BaseModel):
    event_time: datetime
    event_end_time: datetime | None = None
    assigned_to: str | None = None
    meeting_type: str | None = None
    meeting_agenda: str | None = None
    meeting_link: str | None = None
    location_text: str | None = None


class DemoCreate(BaseModel):
    start_time: datetime
    event_end_time: datetime | None = None
    assigned_to: str | None = None
    meeting_agenda: str | None = None
    meeting_link: str | None = None
    location_text: str | None = None


class LeadRestoreRead(BaseModel):
    lead_id: int
    restored: bool


@dataclass
class TimelineSourceResult:
    source_type: SourceType
    records: list[RawRecord] = field(default_factory=list)
    error: Exception | None = None
