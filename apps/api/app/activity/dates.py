from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

_MS_DATE_RE = re.compile(r"^/Date\((-?\d+)\)/$")
_NAIVE_DATETIME_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2}):(\d{2})(?:\.\d+)?$")

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_api_datetime(value: Any) -> datetime | None:
    """Parse a timestamp as the CRM backend emits it.

    Accepts ``datetime`` objects, ISO-8601 strings, naive ``YYYY-MM-DD HH:MM:SS``
    strings (UTC) and the legacy ``/Date(<ms>)/`` form. Anything else yields ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        return None

    raw = value.strip()
    if not raw:
        return None

    ms_match = _MS_DATE_RE.match(raw)
    if ms_match:
        try:
            return datetime.fromtimestamp(int(ms_match.group(1)) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    naive_match = _NAIVE_DATETIME_RE.match(raw)
    if naive_match:
        year, month, day, hour, minute, second = (int(part) for part in naive_match.groups())
        try:
            return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
        except ValueError:
            return None

    try:
        return ensure_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        return None
