from __future__ import annotations

import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from typing import NamedTuple

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import subject_of
from app.core.config import get_settings
from app.middleware.correlation_id import CORRELATION_HEADER, resolve_correlation_id

logger = logging.getLogger("app.rate_limit")

MUTATING_METHODS = frozenset({"POST", "PATCH", "PUT", "DELETE"})
WINDOW_SECONDS = 60

# Completing, cancelling and editing share the "activities" bucket; creation
# and restore under a lead share the "leads" bucket.
_ROUTE_GROUP_RE = re.compile(r"^/api/(?P<group>activities|leads)(?:/|$)")


class Admission(NamedTuple):
    allowed: bool
    retry_after: int


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


class MutationBuckets:
    """Token buckets keyed by ``(user, route group)``, refilled continuously."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def admit(self, user_id: str, route_group: str, per_minute: int) -> Admission:
        if per_minute <= 0:
            return Admission(False, WINDOW_SECONDS)

        now = time.monotonic()
        refill_rate = per_minute / float(WINDOW_SECONDS)
        with self._lock:
            bucket = self._buckets.setdefault((user_id, route_group), _Bucket(float(per_minute), now))
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(per_minute), bucket.tokens + elapsed * refill_rate)
            bucket.last_refill = now

            if bucket.tokens < 1.0:
                return Admission(False, max(1, math.ceil((1.0 - bucket.tokens) / refill_rate)))
            bucket.tokens -= 1.0
            return Admission(True, 0)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_buckets = MutationBuckets()


def route_group_for(method: str, path: str) -> str | None:
    if method.upper() not in MUTATING_METHODS:
        return None
    match = _ROUTE_GROUP_RE.match(path)
    return match.group("group") if match else None


class ActivityMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        route_group = None if settings.rate_limit_disabled else route_group_for(request.method, request.url.path)
        if route_group is None:
            return await call_next(request)

        admission = _buckets.admit(
            subject_of(request),
            route_group,
            settings.rate_limit_activity_mutations_per_minute,
        )
        if admission.allowed:
            return await call_next(request)

        correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
        if not correlation_id:
            correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        logger.warning(
            "activity.rate_limited",
            extra={"method": request.method, "endpoint": route_group, "status_code": 429},
        )
        response = JSONResponse(
            status_code=429,
            content={
                "code": "RATE_LIMITED",
                "message": "Too many requests",
                "details": {"route_group": route_group, "retry_after_seconds": admission.retry_after},
                "correlation_id": correlation_id,
            },
        )
        response.headers["Retry-After"] = str(admission.retry_after)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def reset_rate_limiter() -> None:
    _buckets.clear()
