from __future__ import annotations
import random, string, time
from datetime import datetime, timezone
from typing import Optional


def new_execution_id() -> str:
    suf = "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(9))
    return f"exec_{int(time.time() * 1000)}_{suf}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back naive
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_ms(start: Optional[datetime], end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    value = as_utc(value)
    return value.replace(tzinfo=None) if value is not None else None
