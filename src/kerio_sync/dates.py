"""
Date/range normalisation between the server and the local store.

The server spells all-day spans as date-only values with an INCLUSIVE end
day; the local store wants instants with an EXCLUSIVE end (midnight of the
following day). Timed spans pass through unchanged. All local instants are
timezone-aware UTC datetimes.
"""

import re
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from kerio_sync.models import ParseFailure
from kerio_sync.models import RemoteRange

KERIO_UTC_FORMAT = "%Y%m%dT%H%M%SZ"
KERIO_DATE_FORMAT = "%Y%m%d"

# Default duration for timed items that arrive without an end.
DEFAULT_TIMED_DURATION = timedelta(minutes=30)

_DATE_ONLY_RE = re.compile(r"^\d{8}$")
_OFFSET_FORMATS = ("%Y%m%dT%H%M%S%z",)

ONE_DAY = timedelta(days=1)

# The server only filters ``end`` with LessThan, so windowed fetches widen by this much.
WINDOW_END_SLACK = timedelta(seconds=1)


def is_date_only(value: str | None) -> bool:
    """True for ``YYYYMMDD`` values (no time component)."""
    return isinstance(value, str) and bool(_DATE_ONLY_RE.match(value.strip()))


def parse_kerio_date(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), KERIO_DATE_FORMAT).date()
    except ValueError as e:
        raise ParseFailure(f"Invalid date-only value {value!r}") from e


def parse_kerio_datetime(value: str) -> datetime:
    """
    Parse a server date-time into an aware UTC datetime.

    Accepts, in order: date-only ``20251217`` (midnight UTC), UTC
    ``20251210T110355Z``, offsets ``20251210T120000+0100`` and
    ``20251210T120000+01:00``, then ISO-8601.
    """
    if not isinstance(value, str):
        raise ParseFailure(f"Date-time value is not a string: {value!r}")
    if not value.strip():
        raise ParseFailure("Empty date-time value")
    v = value.strip()

    if is_date_only(v):
        return start_of_day(parse_kerio_date(v))

    try:
        return datetime.strptime(v, KERIO_UTC_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass

    for fmt in _OFFSET_FORMATS:
        try:
            return datetime.strptime(v, fmt).astimezone(timezone.utc)
        except ValueError:
            pass

    try:
        parsed = datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError as e:
        raise ParseFailure(f"Unrecognised date-time value {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_kerio_utc(dt: datetime) -> str:
    return as_utc(dt).strftime(KERIO_UTC_FORMAT)


def format_kerio_date(d: date) -> str:
    return d.strftime(KERIO_DATE_FORMAT)


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def start_of_day(d: date) -> datetime:
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)


def to_millis(dt: datetime | None) -> int:
    """Epoch milliseconds, 0 for None."""
    if dt is None:
        return 0
    return int(as_utc(dt).timestamp() * 1000)


def from_millis(ms: int | None) -> datetime | None:
    """Inverse of to_millis(); 0/None map to None."""
    if not ms:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def to_remote_range(start: datetime, end: datetime | None, all_day: bool) -> RemoteRange:
    """
    Convert a local exclusive-end span into the server's representation.

    All-day: start date as-is, end moved back one day to make it inclusive
    (never earlier than the start day). A missing end means a single day.
    Timed: both instants formatted as UTC; a missing end gets the default
    duration.
    """
    start = as_utc(start)
    if all_day:
        start_day = start.date()
        if end is None:
            inclusive_end = start_day
        else:
            inclusive_end = as_utc(end).date() - ONE_DAY
            if inclusive_end < start_day:
                inclusive_end = start_day
        return RemoteRange(
            start=format_kerio_date(start_day),
            end=format_kerio_date(inclusive_end),
            all_day=True,
        )

    if end is None:
        end = start + DEFAULT_TIMED_DURATION
    return RemoteRange(start=format_kerio_utc(start), end=format_kerio_utc(end), all_day=False)


def to_local_range(remote: RemoteRange) -> tuple[datetime, datetime, bool]:
    """
    Convert a server span into local ``(start, end, all_day)``.

    A date-only end on an all-day span is inclusive, so one day is added.
    Date-only values are valid input, not errors.
    """
    start = parse_kerio_datetime(remote.start)

    if not remote.end or not remote.end.strip():
        end = start + (ONE_DAY if remote.all_day else DEFAULT_TIMED_DURATION)
    elif remote.all_day and is_date_only(remote.end):
        end = start_of_day(parse_kerio_date(remote.end) + ONE_DAY)
    else:
        end = parse_kerio_datetime(remote.end)

    return start, end, remote.all_day


def in_fetch_window(remote: RemoteRange, window_start: datetime, window_end: datetime) -> bool:
    """
    True when a windowed server fetch would return a span like ``remote``.

    Mirrors the server query: start at or after ``window_start`` and end
    strictly before ``window_end`` plus the slack. A missing end counts as
    the start.
    """
    start = parse_kerio_datetime(remote.start)
    end = parse_kerio_datetime(remote.end) if remote.end and remote.end.strip() else start
    return start >= as_utc(window_start) and end < as_utc(window_end) + WINDOW_END_SLACK
