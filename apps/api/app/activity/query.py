from __future__ import annotations

import math

from opentelemetry import trace

from app.activity.backend import ActivityBackend
from app.activity.errors import ValidationError
from app.activity.mapper import map_source_record
from app.activity.schemas import ActivityFilter, ActivityListOptions, ActivityPage
from app.core.config import get_settings

tracer = trace.get_tracer("app.activity.query")


def page_count_for(total: int, page_size: int) -> int:
    return math.ceil(total / page_size) if total > 0 else 0


def parse_filter(value: ActivityFilter | str | None) -> ActivityFilter:
    if isinstance(value, ActivityFilter):
        return value
    try:
        return ActivityFilter((value or ActivityFilter.ALL.value).strip().lower())
    except ValueError as exc:
        raise ValidationError(
            "unknown activity filter",
            details={"filter": value, "allowed": [item.value for item in ActivityFilter]},
        ) from exc


class ActivityQueryService:
    def __init__(
        self,
        backend: ActivityBackend,
        page_size_options: list[int] | None = None,
        default_page_size: int | None = None,
        search_debounce_ms: int | None = None,
    ) -> None:
        settings = get_settings()
        self.backend = backend
        self.page_size_options = list(page_size_options or settings.activity_page_size_options)
        self.default_page_size = default_page_size or settings.activity_default_page_size
        self.search_debounce_ms = (
            search_debounce_ms if search_debounce_ms is not None else settings.activity_search_debounce_ms
        )

    def options(self) -> ActivityListOptions:
        return ActivityListOptions(
            page_size_options=self.page_size_options,
            default_page_size=self.default_page_size,
            search_debounce_ms=self.search_debounce_ms,
            filters=list(ActivityFilter),
        )

    def query(
        self,
        page: int = 1,
        page_size: int | None = None,
        search_term: str | None = None,
        filter_name: ActivityFilter | str | None = ActivityFilter.ALL,
    ) -> ActivityPage:
        """Return one page of the unified feed.

        ``total`` counts every matching record regardless of page size, so
        ``page_count`` stays stable while paging.
        """
        resolved_page_size = self.default_page_size if page_size is None else page_size
        if page < 1:
            raise ValidationError("page must be 1 or greater", details={"page": page})
        if resolved_page_size not in self.page_size_options:
            raise ValidationError(
                "unsupported page size",
                details={"page_size": resolved_page_size, "allowed": self.page_size_options},
            )
        resolved_filter = parse_filter(filter_name)
        search = (search_term or "").strip()

        with tracer.start_as_current_span("activity.query") as span:
            span.set_attribute("page", page)
            span.set_attribute("page_size", resolved_page_size)
            span.set_attribute("filter", resolved_filter.value)
            raw_page = self.backend.list_activities(page, resolved_page_size, search, resolved_filter)
            span.set_attribute("total", raw_page.total)

        return ActivityPage(
            data=[map_source_record(item) for item in raw_page.items],
            total=raw_page.total,
            page=page,
            page_size=resolved_page_size,
            page_count=page_count_for(raw_page.total, resolved_page_size),
        )
