from __future__ import annotations

import contextvars
import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from opentelemetry import trace

from app.activity.backend import ActivityBackend
from app.activity.mapper import map_record
from app.activity.schemas import (
    SOURCE_ORDER,
    RawReminder,
    ReminderVisibility,
    SourceType,
    Timeline,
    TimelineSourceResult,
    UnifiedActivity,
)
from app.metrics import observe_timeline_source_failure

logger = logging.getLogger("app.activity.timeline")
tracer = trace.get_tracer("app.activity.timeline")


def timeline_sort_key(activity: UnifiedActivity) -> tuple[float, int, int]:
    return (-activity.date.timestamp(), SOURCE_ORDER[activity.source_type], activity.record_id)


def sort_timeline(items: Iterable[UnifiedActivity]) -> list[UnifiedActivity]:
    """Newest first; equal dates fall back to Log, Reminder, Meeting, Demo and then id."""
    return sorted(items, key=timeline_sort_key)


def _is_visible(record: Any) -> bool:
    return not (isinstance(record, RawReminder) and record.visibility == ReminderVisibility.HIDDEN)


class TimelineService:
    def __init__(self, backend: ActivityBackend, max_workers: int = 4) -> None:
        self.backend = backend
        self.max_workers = max(1, max_workers)

    def _readers(self, lead_id: int) -> dict[SourceType, Callable[[], list[Any]]]:
        return {
            SourceType.LOG: lambda: self.backend.get_activities_for_lead(lead_id),
            SourceType.REMINDER: lambda: self.backend.get_reminders_for_lead(lead_id),
            SourceType.MEETING: lambda: self.backend.get_meetings_for_lead(lead_id),
            SourceType.DEMO: lambda: self.backend.get_demos_for_lead(lead_id),
        }

    def _read(self, lead_id: int, source_type: SourceType, reader: Callable[[], list[Any]]) -> TimelineSourceResult:
        try:
            records = reader()
        except Exception as exc:
            logger.exception(
                "timeline.source_failed",
                extra={"lead_id": lead_id, "source_type": source_type.value, "error": str(exc)},
            )
            observe_timeline_source_failure(source_type.value)
            return TimelineSourceResult(source_type=source_type, error=exc)
        return TimelineSourceResult(source_type=source_type, records=list(records))

    def _gather(self, lead_id: int) -> list[TimelineSourceResult]:
        readers = self._readers(lead_id)
        if not getattr(self.backend, "supports_concurrent_reads", False):
            return [self._read(lead_id, source_type, reader) for source_type, reader in readers.items()]

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(readers))) as executor:
            futures = [
                executor.submit(contextvars.copy_context().run, self._read, lead_id, source_type, reader)
                for source_type, reader in readers.items()
            ]
            return [future.result() for future in futures]

    def build_timeline(self, lead_id: int) -> Timeline:
        """Merge the four sources of one lead into a single newest-first history.

        A source that cannot be read is reported in ``failed_sources`` and the
        timeline is built from the others.
        """
        with tracer.start_as_current_span("activity.timeline.build") as span:
            span.set_attribute("lead_id", lead_id)
            results = self._gather(lead_id)

            items: list[UnifiedActivity] = []
            failed_sources: list[SourceType] = []
            for result in results:
                if result.error is not None:
                    failed_sources.append(result.source_type)
                    continue
                items.extend(
                    map_record(record, result.source_type) for record in result.records if _is_visible(record)
                )

            span.set_attribute("item_count", len(items))
            span.set_attribute("failed_source_count", len(failed_sources))
            return Timeline(lead_id=lead_id, items=sort_timeline(items), failed_sources=failed_sources)
