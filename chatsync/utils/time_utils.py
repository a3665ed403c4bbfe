"""
Time helpers. Everything inside the package is epoch milliseconds.
"""
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def from_millis(ms: int) -> datetime:
    """Exact conversion of epoch milliseconds to an aware UTC datetime."""
    return EPOCH + timedelta(milliseconds=int(ms))


def to_millis(value: Any) -> Optional[int]:
    """
    Normalize a remote timestamp to epoch milliseconds.

    Accepts ints/floats (already ms), datetimes (naive ones are treated as UTC)
    and objects exposing ``to_millis()``/``timestamp()``. Anything else is None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return (value - EPOCH) // _ONE_MS
    to_ms = getattr(value, "to_millis", None)
    if callable(to_ms):
        return int(to_ms())
    ts = getattr(value, "timestamp", None)
    if callable(ts):
        return int(ts() * 1000)
    return None
