# civicboard/lifecycle.py
"""Lifecycle classification of listings against a reference civil day.

A listing is DUE_TODAY when it ends later today (reference timezone), FUTURE
when it ends after today, PERPETUAL when it has no end, and EXPIRED once its
end instant has passed. All day arithmetic happens in an explicitly supplied
timezone; the host timezone is never consulted.

`group_ranges` is the one definition of the rules. The Python classifier
below, the batch reclassification predicates and the query-time sort script
are all derived from it.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import IntEnum
from typing import Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .utils import logger

SORT_END_SENTINEL = 9223372036854775807
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_MS = timedelta(milliseconds=1)

_OFFSET_RE = re.compile(r"^(?:UTC|GMT)?\s*([+-])(\d{1,2})(?::?(\d{2}))?$", re.I)


class LifecycleGroup(IntEnum):
    DUE_TODAY = 0
    FUTURE = 1
    PERPETUAL = 2
    EXPIRED = 3


class DayBoundaryError(RuntimeError):
    """The reference day cannot be computed (unknown zone, missing tz data)."""


class MalformedInstantError(ValueError):
    pass


@dataclass(frozen=True)
class DayWindow:
    """`now` and the civil day containing it, as epoch milliseconds."""
    now_ms: int
    start_ms: int
    end_ms: int


@dataclass(frozen=True)
class Classification:
    group: LifecycleGroup
    sort_key: int


def resolve_timezone(value) -> tzinfo:
    """Turn `+09:00`, `UTC+9` or an IANA name into a tzinfo.

    Raises DayBoundaryError rather than ever falling back to local time.
    """
    if isinstance(value, tzinfo):
        return value
    if not value or not str(value).strip():
        raise DayBoundaryError("reference timezone is not configured")
    text = str(value).strip()
    if text.upper() in ("UTC", "Z", "GMT"):
        return timezone.utc
    m = _OFFSET_RE.match(text)
    if m:
        sign, hours, minutes = m.group(1), int(m.group(2)), int(m.group(3) or 0)
        if hours > 23 or minutes > 59:
            raise DayBoundaryError(f"invalid UTC offset {text!r}")
        delta = timedelta(hours=hours, minutes=minutes)
        return timezone(-delta if sign == "-" else delta)
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise DayBoundaryError(f"unknown reference timezone {text!r}: {e}") from e


def to_instant(value) -> Optional[datetime]:
    """Normalize a stored end/created value to an aware UTC datetime.

    Naive datetimes and offset-less strings are taken as UTC. Numbers are
    epoch milliseconds. Raises MalformedInstantError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, bool):
        raise MalformedInstantError(f"not an instant: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return EPOCH + timedelta(milliseconds=value)
        except (OverflowError, ValueError) as e:
            raise MalformedInstantError(f"epoch millis out of range: {value!r}") from e
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise MalformedInstantError(f"unparseable instant {value!r}") from e
        return to_instant(parsed)
    raise MalformedInstantError(f"unsupported instant type {type(value).__name__}")


def to_millis(dt: datetime) -> int:
    return (to_instant(dt) - EPOCH) // ONE_MS


def from_millis(ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


def to_es_date(value) -> Optional[str]:
    """ISO-8601 UTC with millisecond precision, the index's date format."""
    dt = to_instant(value)
    if dt is None:
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def day_window(now, tz: tzinfo) -> DayWindow:
    if tz is None:
        raise DayBoundaryError("reference timezone is required")
    now_utc = to_instant(now)
    try:
        local = now_utc.astimezone(tz)
    except Exception as e:
        raise DayBoundaryError(f"cannot convert {now_utc.isoformat()} to {tz}: {e}") from e
    start_local = local.replace(hour=0, minute=0, second=0, microsecond=0)
    # wall-clock midnight of the next day, so DST days come out as 23h or 25h
    next_local = datetime.combine(start_local.date() + timedelta(days=1), start_local.timetz())
    start_ms = to_millis(start_local)
    return DayWindow(
        now_ms=to_millis(now_utc),
        start_ms=start_ms,
        end_ms=to_millis(next_local) - 1,
    )


def group_ranges(window: DayWindow) -> Dict[LifecycleGroup, Optional[Dict[str, int]]]:
    """Range bounds over `end_date` millis for each group.

    PERPETUAL maps to None: it is the absence of an end date.
    """
    return {
        LifecycleGroup.EXPIRED: {"lt": window.now_ms},
        LifecycleGroup.DUE_TODAY: {"gte": window.now_ms, "lte": window.end_ms},
        LifecycleGroup.FUTURE: {"gt": window.end_ms},
        LifecycleGroup.PERPETUAL: None,
    }


_CHECKS = {
    "lt": lambda v, b: v < b,
    "lte": lambda v, b: v <= b,
    "gt": lambda v, b: v > b,
    "gte": lambda v, b: v >= b,
}


def in_range(value_ms: int, bounds: Dict[str, int]) -> bool:
    return all(_CHECKS[op](value_ms, bound) for op, bound in bounds.items())


def sort_key_for(end_instant) -> int:
    dt = to_instant(end_instant)
    return SORT_END_SENTINEL if dt is None else to_millis(dt)


def classify_in_window(end_instant, window: DayWindow) -> Classification:
    try:
        end = to_instant(end_instant)
    except MalformedInstantError as e:
        logger.warning("Treating malformed end instant as perpetual: %s", e)
        end = None
    if end is None:
        return Classification(LifecycleGroup.PERPETUAL, SORT_END_SENTINEL)

    end_ms = to_millis(end)
    for group, bounds in group_ranges(window).items():
        if bounds is not None and in_range(end_ms, bounds):
            return Classification(group, end_ms)
    # unreachable: the finite ranges cover every integer
    raise AssertionError(f"no lifecycle group for end={end_ms} window={window}")


def classify(end_instant, now, tz: tzinfo) -> Classification:
    return classify_in_window(end_instant, day_window(now, tz))
