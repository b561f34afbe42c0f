from __future__ import annotations

import re
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone


_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Clock = Callable[[], int]


def sanitize_id(value: str) -> str:
    value = value.strip()
    if not value or not _ID_RE.match(value):
        raise ValueError("Invalid id format.")
    return value


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(value: int) -> str:
    stamp = _EPOCH + timedelta(milliseconds=value)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_ms(value: str | None) -> int | None:
    """Epoch milliseconds for an ISO-8601 string, or None when unparsable.

    A trailing ``Z`` is accepted and naive values are read as UTC.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    try:
        if text.endswith("Z"):
            parsed = datetime.fromisoformat(text[:-1] + "+00:00")
        else:
            parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (parsed - _EPOCH) // timedelta(milliseconds=1)
