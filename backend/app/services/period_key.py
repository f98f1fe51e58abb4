from __future__ import annotations

from datetime import datetime

from app.core.security import now_utc

CUMULATIVE_KEY = "__cumulative__"

_PERIOD_FORMATS = {
    "daily": "%Y-%m-%d",
    "weekly": "%G-W%V",
    "monthly": "%Y-%m",
}


def current_key(period: str | None, at: datetime | None = None) -> str:
    """Bucket key for a limit period.

    ``weekly`` uses ISO 8601 week numbering (Monday start, ISO year). Unknown or
    empty periods map to the cumulative bucket, which never resets.
    """
    fmt = _PERIOD_FORMATS.get(str(period)) if period else None
    if fmt is None:
        return CUMULATIVE_KEY
    return (at or now_utc()).strftime(fmt)
