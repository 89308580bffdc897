# timeutil.py
import math
from datetime import datetime
from typing import Any

import pendulum
from dateutil import parser as dparse

UTC = "UTC"


def parse_instant(value: Any) -> pendulum.DateTime:
    """
    Turn an input instant into a UTC pendulum.DateTime.

    Accepts ISO-8601 strings (naive strings are read as UTC), epoch
    milliseconds (int/float), and datetime / pendulum.DateTime objects.
    Raises ValueError or TypeError for anything that cannot be ordered as an
    absolute instant; callers wrap these into their own error type.
    """
    if isinstance(value, bool):
        raise TypeError("booleans are not timestamps")
    if isinstance(value, datetime):
        return pendulum.instance(value, tz=UTC).in_timezone(UTC)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"non-finite timestamp {value!r}")
        try:
            return pendulum.from_timestamp(value / 1000.0, tz=UTC)
        except (OverflowError, OSError) as e:
            raise ValueError(f"timestamp out of range: {value!r}") from e
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty timestamp string")
        dt = dparse.isoparse(text)
        return pendulum.instance(dt, tz=UTC).in_timezone(UTC)
    raise TypeError(f"unsupported timestamp type {type(value).__name__}")


def to_epoch_ms(dt: pendulum.DateTime) -> int:
    return int(round(dt.timestamp() * 1000))


def to_iso(dt: pendulum.DateTime) -> str:
    """RFC3339 in UTC with a trailing Z."""
    return dt.in_timezone(UTC).isoformat().replace("+00:00", "Z")
