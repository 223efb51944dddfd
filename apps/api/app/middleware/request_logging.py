from __future__ import annotations

import logging
import re
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

_ACTIVITY_PATH_RE = re.compile(r"^/api/activities/(?P<prefix>[a-z]+)-(?P<record_id>\d+)(?:/|$)")
_LEAD_PATH_RE = re.compile(r"^/api/leads/(?P<lead_id>\d+)(?:/|$)")


def activity_log_fields(raw_path: str) -> dict[str, Any]:
    """Pull the activity or lead a request targets out of its raw path."""
    activity_match = _ACTIVITY_PATH_RE.match(raw_path)
    if activity_match:
        prefix = activity_match.group("prefix")
        return {
            "activity_id": f"{prefix}-{activity_match.group('record_id')}",
            "source_type": prefix.capitalize(),
        }
    lead_match = _LEAD_PATH_RE.match(raw_path)
    if lead_match:
        return {"lead_id": int(lead_match.group("lead_id"))}
    return {}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        path = resolve_http_path_label(request)
        fields = activity_log_fields(request.url.path)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms, **fields},
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                **fields,
            },
        )
        return response
