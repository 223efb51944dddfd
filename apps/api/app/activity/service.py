from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

from app import audit, events
from app.activity.backend import ActivityBackend
from app.activity.classifier import DELETED, classify
from app.activity.dates import utcnow
from app.activity.errors import ActivityError, ConflictError, NotFoundError, TransportError
from app.activity.lifecycle import (
    Transition,
    next_state,
    require_cancel_reason,
    require_details,
    require_supported,
    resolve_delete_reason,
    tag_cancel_reason,
)
from app.activity.mapper import activity_id_for, map_record, parse_activity_id
from app.activity.merger import validate_completion
from app.activity.query import ActivityQueryService
from app.activity.schemas import (
    ActivityFilter,
    ActivityListOptions,
    ActivityPage,
    CompletionPayload,
    DemoCreate,
    LeadRestoreRead,
    LogActivityCreate,
    MeetingCreate,
    ReminderCreate,
    SourceType,
    Timeline,
    UnifiedActivity,
)
from app.activity.timeline import TimelineService
from app.metrics import observe_activity_transition

logger = logging.getLogger("app.activity.service")
tracer = trace.get_tracer("app.activity.service")

_EVENT_TYPES = {
    Transition.COMPLETE: "activity.completed",
    Transition.CANCEL: "activity.canceled",
    Transition.DELETE: "activity.deleted",
    Transition.EDIT: "activity.updated",
}

_AUDIT_FIELDS = {
    "id",
    "source_type",
    "lead_id",
    "status",
    "details",
    "date",
    "duration_minutes",
    "original_scheduled_date",
    "original_details",
}


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    username: str | None = None
    correlation_id: str | None = None

    @property
    def display_name(self) -> str:
        return self.username or self.user_id


class InFlightGuard:
    """Rejects a second mutation of the same record while the first is running."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[tuple[SourceType, int]] = set()

    @contextmanager
    def hold(self, source_type: SourceType, record_id: int) -> Iterator[None]:
        key = (source_type, record_id)
        with self._lock:
            if key in self._active:
                raise ConflictError(
                    "request already in progress",
                    details={"activity_id": activity_id_for(source_type, record_id)},
                )
            self._active.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(key)

    def is_held(self, source_type: SourceType, record_id: int) -> bool:
        with self._lock:
            return (source_type, record_id) in self._active


in_flight_guard = InFlightGuard()


def _snapshot(activity: UnifiedActivity | None) -> dict[str, Any] | None:
    if activity is None:
        return None
    return activity.model_dump(mode="json", include=_AUDIT_FIELDS)


def _outcome_label(exc: ActivityError) -> str:
    return exc.code.removeprefix("activity_")


class ActivityService:
    entity_type = "activity"

    def __init__(
        self,
        backend: ActivityBackend,
        *,
        guard: InFlightGuard | None = None,
        timeline_max_workers: int = 4,
        query_service: ActivityQueryService | None = None,
    ) -> None:
        self.backend = backend
        self.guard = guard or in_flight_guard
        self.timeline = TimelineService(backend, max_workers=timeline_max_workers)
        self.query_service = query_service or ActivityQueryService(backend)

    # Reads

    def list_activities(
        self,
        page: int = 1,
        page_size: int | None = None,
        search_term: str | None = None,
        filter_name: ActivityFilter | str | None = ActivityFilter.ALL,
    ) -> ActivityPage:
        return self.query_service.query(page, page_size, search_term, filter_name)

    def list_options(self) -> ActivityListOptions:
        return self.query_service.options()

    def view_details(self, activity_id: str) -> UnifiedActivity:
        source_type, record_id = parse_activity_id(activity_id)
        return map_record(self.backend.get_record(source_type, record_id), source_type)

    def view_history(self, lead_id: int) -> Timeline:
        return self.timeline.build_timeline(lead_id)

    # Transitions

    def _run_transition(
        self,
        actor: ActorUser,
        activity_id: str,
        transition: Transition,
        mutate: Callable[[UnifiedActivity], None],
        *,
        reread: Callable[[UnifiedActivity], UnifiedActivity] | None = None,
    ) -> UnifiedActivity:
        source_type, record_id = parse_activity_id(activity_id)
        with self.guard.hold(source_type, record_id):
            with tracer.start_as_current_span(f"activity.{transition.value}") as span:
                span.set_attribute("activity_id", activity_id)
                span.set_attribute("correlation_id", actor.correlation_id or "")
                try:
                    before = self.view_details(activity_id)
                    next_state(source_type, before.status, transition)
                    mutate(before)
                    after = reread(before) if reread is not None else self.view_details(activity_id)
                except ActivityError as exc:
                    outcome = _outcome_label(exc)
                    observe_activity_transition(source_type.value, transition.value, outcome)
                    logger.warning(
                        "activity.transition",
                        extra={
                            "activity_id": activity_id,
                            "source_type": source_type.value,
                            "transition": transition.value,
                            "outcome": outcome,
                            "error": exc.message,
                        },
                    )
                    raise
                span.set_attribute("status", after.status)

        observe_activity_transition(source_type.value, transition.value, "success")
        logger.info(
            "activity.transition",
            extra={
                "activity_id": activity_id,
                "lead_id": after.lead_id,
                "source_type": source_type.value,
                "transition": transition.value,
                "outcome": "success",
            },
        )
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=self.entity_type,
            entity_id=activity_id,
            action=transition.value,
            before=_snapshot(before),
            after=_snapshot(after),
            correlation_id=actor.correlation_id,
        )
        self._publish(_EVENT_TYPES[transition], actor, after)
        return after

    def _publish(self, event_type: str, actor: ActorUser, activity: UnifiedActivity) -> None:
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": event_type,
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor.user_id,
                "correlation_id": actor.correlation_id,
                "payload": {
                    "activity_id": activity.id,
                    "lead_id": activity.lead_id,
                    "source_type": activity.source_type.value,
                    "status": activity.status,
                },
            }
        )

    def mark_as_done(
        self,
        actor: ActorUser,
        activity_id: str,
        outcome_notes: str | None,
        duration_minutes: Any,
    ) -> UnifiedActivity:
        """Complete a reminder, meeting or demo and return the merged record.

        The outcome is validated before the backend is contacted.
        """
        source_type, record_id = parse_activity_id(activity_id)
        require_supported(source_type, Transition.COMPLETE)
        outcome = validate_completion(
            CompletionPayload(
                outcome_notes=outcome_notes,
                duration_minutes=duration_minutes,
                completed_by=actor.display_name,
            )
        )
        notes = outcome.outcome_notes or ""
        minutes = int(outcome.duration_minutes)

        def complete(_: UnifiedActivity) -> None:
            if source_type == SourceType.REMINDER:
                self.backend.complete_reminder(record_id, notes, actor.display_name, minutes)
            elif source_type == SourceType.MEETING:
                self.backend.complete_meeting(record_id, notes, minutes)
            else:
                self.backend.complete_demo(record_id, notes, minutes)

        return self._run_transition(actor, activity_id, Transition.COMPLETE, complete)

    def edit(self, actor: ActorUser, activity_id: str, details: str | None) -> UnifiedActivity:
        source_type, record_id = parse_activity_id(activity_id)
        require_supported(source_type, Transition.EDIT)
        cleaned = require_details(details)
        return self._run_transition(
            actor,
            activity_id,
            Transition.EDIT,
            lambda _: self.backend.update_logged_activity(record_id, cleaned),
        )

    def cancel_or_delete(self, actor: ActorUser, activity_id: str, reason: str | None = None) -> UnifiedActivity:
        """Delete a logged activity or cancel a scheduled one.

        Logs fall back to a default delete reason; meetings and demos require a
        reason, which is stored tagged with the lead it belonged to.
        """
        source_type, record_id = parse_activity_id(activity_id)

        if source_type == SourceType.LOG:
            delete_reason = resolve_delete_reason(reason)
            return self._run_transition(
                actor,
                activity_id,
                Transition.DELETE,
                lambda _: self.backend.delete_logged_activity(record_id, delete_reason, actor.display_name),
                reread=self._reread_deleted,
            )

        if source_type == SourceType.REMINDER:
            return self._run_transition(
                actor,
                activity_id,
                Transition.CANCEL,
                lambda _: self.backend.cancel_reminder(record_id),
            )

        require_cancel_reason(reason)

        def cancel_event(before: UnifiedActivity) -> None:
            tagged = tag_cancel_reason(reason, before.lead_id, before.company_name)
            self.backend.cancel_event(source_type, record_id, tagged, actor.display_name, before.lead_id)

        return self._run_transition(actor, activity_id, Transition.CANCEL, cancel_event)

    def _reread_deleted(self, before: UnifiedActivity) -> UnifiedActivity:
        # Some backends stop returning a log once it is deleted.
        try:
            return self.view_details(before.id)
        except NotFoundError:
            classification = classify(SourceType.LOG, DELETED)
            return before.model_copy(
                update={"status": classification.effective_status, "is_actionable": classification.is_actionable}
            )

    # Creation and leads

    def _latest_record_id(self, source_type: SourceType, lead_id: int) -> int:
        if source_type == SourceType.LOG:
            records: list[Any] = self.backend.get_activities_for_lead(lead_id)
        elif source_type == SourceType.REMINDER:
            records = self.backend.get_reminders_for_lead(lead_id, include_hidden=True)
        elif source_type == SourceType.MEETING:
            records = self.backend.get_meetings_for_lead(lead_id)
        else:
            records = self.backend.get_demos_for_lead(lead_id)
        if not records:
            raise TransportError(
                "backend did not report the created record",
                details={"lead_id": lead_id, "source_type": source_type.value},
            )
        return max(record.id for record in records)

    def _create(
        self,
        actor: ActorUser,
        source_type: SourceType,
        lead_id: int,
        create: Callable[[], int | None],
    ) -> UnifiedActivity:
        with tracer.start_as_current_span("activity.create") as span:
            span.set_attribute("lead_id", lead_id)
            span.set_attribute("source_type", source_type.value)
            try:
                record_id = create()
                if record_id is None:
                    record_id = self._latest_record_id(source_type, lead_id)
                created = self.view_details(activity_id_for(source_type, record_id))
            except ActivityError as exc:
                observe_activity_transition(source_type.value, "create", _outcome_label(exc))
                raise
            span.set_attribute("activity_id", created.id)

        observe_activity_transition(source_type.value, "create", "success")
        logger.info(
            "activity.created",
            extra={"activity_id": created.id, "lead_id": lead_id, "source_type": source_type.value},
        )
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=self.entity_type,
            entity_id=created.id,
            action="create",
            before=None,
            after=_snapshot(created),
            correlation_id=actor.correlation_id,
        )
        self._publish("activity.created", actor, created)
        return created

    def log_activity(self, actor: ActorUser, lead_id: int, dto: LogActivityCreate) -> UnifiedActivity:
        dto = dto.model_copy(update={"details": require_details(dto.details)})
        return self._create(
            actor, SourceType.LOG, lead_id, lambda: self.backend.log_activity(lead_id, dto, actor.display_name)
        )

    def schedule_reminder(self, actor: ActorUser, lead_id: int, dto: ReminderCreate) -> UnifiedActivity:
        dto = dto.model_copy(update={"message": require_details(dto.message)})
        return self._create(
            actor,
            SourceType.REMINDER,
            lead_id,
            lambda: self.backend.schedule_reminder(lead_id, dto, actor.display_name),
        )

    def schedule_meeting(self, actor: ActorUser, lead_id: int, dto: MeetingCreate) -> UnifiedActivity:
        return self._create(
            actor,
            SourceType.MEETING,
            lead_id,
            lambda: self.backend.schedule_meeting(lead_id, dto, actor.display_name),
        )

    def schedule_demo(self, actor: ActorUser, lead_id: int, dto: DemoCreate) -> UnifiedActivity:
        return self._create(
            actor,
            SourceType.DEMO,
            lead_id,
            lambda: self.backend.schedule_demo(lead_id, dto, actor.display_name),
        )

    def restore_lead(self, actor: ActorUser, lead_id: int) -> LeadRestoreRead:
        restored = self.backend.restore_lead(lead_id)
        logger.info("lead.restored", extra={"lead_id": lead_id, "outcome": "restored" if restored else "noop"})
        if restored:
            audit.record(
                actor_user_id=actor.user_id,
                entity_type="lead",
                entity_id=str(lead_id),
                action="restore",
                before={"deleted": True},
                after={"deleted": False},
                correlation_id=actor.correlation_id,
            )
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": "lead.restored",
                    "occurred_at": utcnow().isoformat(),
                    "actor_user_id": actor.user_id,
                    "correlation_id": actor.correlation_id,
                    "payload": {"lead_id": lead_id},
                }
            )
        return LeadRestoreRead(lead_id=lead_id, restored=restored)
