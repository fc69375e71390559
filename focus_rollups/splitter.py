"""Split UTC instant ranges into civil-time hour, day and month buckets."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

Granularity = Literal["hour", "day", "month"]

GRANULARITIES: tuple[str, ...] = ("hour", "day", "month")

DEFAULT_TZ = "Europe/London"

ONE_SECOND = timedelta(seconds=1)


class RollupError(Exception):
    """Base exception for rollup errors."""

    pass


class InvalidTimezoneError(RollupError, ValueError):
    """Raised when a timezone name is not a known IANA zone."""

    def __init__(self, tz: str) -> None:
        super().__init__(f"Unknown timezone: {tz!r}")
        self.tz = tz


class InvalidIntervalError(RollupError, ValueError):
    """Raised when an interval is not strictly chronological."""

    pass


class UnsupportedGranularityError(RollupError, ValueError):
    """Raised for a granularity the caller cannot handle."""

    def __init__(self, granularity: str, allowed: Iterable[str] = GRANULARITIES) -> None:
        super().__init__(
            f"Unsupported granularity: {granularity!r}. Expected one of {', '.join(allowed)}"
        )
        self.granularity = granularity


@dataclass(frozen=True)
class BucketSlice:
    """One piece of an interval that falls inside a single bucket.

    Attributes:
        key: Civil period id ("2025-01-25T23", "2025-01-25" or "2025-01").
        seconds: Whole seconds inside the bucket (truncated).
        start: UTC instant the piece starts (inclusive).
        end: UTC instant the piece ends (exclusive).
    """

    key: str
    seconds: int
    start: datetime
    end: datetime


def normalize_tz(tz: str | None) -> str:
    """Return the trimmed timezone name, or the default for blank input."""
    trimmed = tz.strip() if isinstance(tz, str) else ""
    return trimmed or DEFAULT_TZ


def resolve_timezone(tz: str) -> ZoneInfo:
    """Look up an IANA timezone.

    Raises:
        InvalidTimezoneError: If the name does not resolve to a zone.
    """
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise InvalidTimezoneError(tz) from e


def to_utc(dt: datetime) -> datetime:
    """Convert an aware datetime to UTC.

    Raises:
        ValueError: If the datetime is naive.
    """
    if dt.tzinfo is None or dt.utcoffset() is None:
        raise ValueError(f"Expected a timezone-aware datetime, got {dt.isoformat()}")
    return dt.astimezone(timezone.utc)


def check_granularity(granularity: str, allowed: Iterable[str] = GRANULARITIES) -> None:
    allowed = tuple(allowed)
    if granularity not in allowed:
        raise UnsupportedGranularityError(granularity, allowed)


def _period_key(local: datetime, granularity: str) -> str:
    if granularity == "hour":
        return local.strftime("%Y-%m-%dT%H")
    if granularity == "day":
        return local.date().isoformat()
    return f"{local.year:04d}-{local.month:02d}"


def _next_boundary_wall(local: datetime, granularity: str) -> datetime:
    """Naive wall-clock time of the next hour/day/month boundary after `local`."""
    if granularity == "hour":
        floor = local.replace(tzinfo=None, minute=0, second=0, microsecond=0, fold=0)
        return floor + timedelta(hours=1)
    if granularity == "day":
        return datetime.combine(local.date() + timedelta(days=1), time())
    if local.month == 12:
        return datetime(local.year + 1, 1, 1)
    return datetime(local.year, local.month + 1, 1)


def _wall_to_instant(wall: datetime, zone: ZoneInfo) -> datetime:
    # Nonexistent wall times (DST gap) resolve to the transition instant with fold=0
    return wall.replace(tzinfo=zone).astimezone(timezone.utc)


def split_interval(
    start: datetime,
    end: datetime,
    tz: str,
    granularity: str,
) -> list[BucketSlice]:
    """Split [start, end) into maximal pieces aligned to civil boundaries.

    The range is reinterpreted in `tz` and walked forward one bucket at a time:
    each step ends at whichever comes first, `end` or the next hour/day/month
    boundary. Seconds are truncated per piece, so the pieces of an interval
    with sub-second endpoints can sum to up to one second less per boundary
    crossed than the true duration.

    Args:
        start: Aware instant (inclusive).
        end: Aware instant (exclusive).
        tz: IANA timezone name defining civil time.
        granularity: "hour", "day" or "month".

    Returns:
        Pieces in chronological order. Empty if end <= start.

    Raises:
        InvalidTimezoneError: If tz is unknown.
        UnsupportedGranularityError: If granularity is unknown.
        ValueError: If start or end is naive.
    """
    check_granularity(granularity)
    zone = resolve_timezone(tz)
    start = to_utc(start)
    end = to_utc(end)
    if end <= start:
        return []

    slices: list[BucketSlice] = []
    cursor = start
    while cursor < end:
        local = cursor.astimezone(zone)
        wall = _next_boundary_wall(local, granularity)
        boundary = _wall_to_instant(wall, zone)
        if boundary <= cursor:
            # Boundary repeats inside a DST fold; take its second occurrence
            boundary = _wall_to_instant(wall.replace(fold=1), zone)
        if boundary <= cursor:
            raise RollupError(f"No forward progress splitting at {cursor.isoformat()} in {tz}")

        chunk_end = min(boundary, end)
        slices.append(
            BucketSlice(
                key=_period_key(local, granularity),
                seconds=(chunk_end - cursor) // ONE_SECOND,
                start=cursor,
                end=chunk_end,
            )
        )
        cursor = chunk_end

    return slices


def seconds_by_key(slices: Iterable[BucketSlice]) -> dict[str, int]:
    """Sum slice seconds per bucket key."""
    totals: defaultdict[str, int] = defaultdict(int)
    for piece in slices:
        totals[piece.key] += piece.seconds
    return dict(totals)


def clamp_interval(
    start: datetime,
    end: datetime,
    window_start: datetime,
    window_end: datetime,
) -> tuple[datetime, datetime] | None:
    """Clamp [start, end) to [window_start, window_end).

    Returns None when nothing of the interval remains inside the window.
    """
    clamped_start = max(to_utc(start), to_utc(window_start))
    clamped_end = min(to_utc(end), to_utc(window_end))
    if clamped_end <= clamped_start:
        return None
    return clamped_start, clamped_end


def day_of(hour_key: str) -> str:
    """Day id of an hour key: "2025-01-25T23" -> "2025-01-25"."""
    return hour_key[:10]


def hour_of(hour_key: str) -> int:
    """Hour index of an hour key: "2025-01-25T23" -> 23."""
    return int(hour_key[11:13])


def month_start(d: date) -> date:
    return d.replace(day=1)


def add_months(d: date, months: int) -> date:
    """Shift the first-of-month of `d` by a number of months."""
    index = d.year * 12 + (d.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def period_id(granularity: str, d: date) -> str:
    """Canonical id of the day or month period containing a civil date."""
    if granularity == "day":
        return d.isoformat()
    if granularity == "month":
        return f"{d.year:04d}-{d.month:02d}"
    raise UnsupportedGranularityError(granularity, ("day", "month"))


def list_period_ids(granularity: str, start: date, end: date) -> list[str]:
    """List the day or month ids of the civil date range [start, end).

    Month granularity lists every month from the month of `start` up to, but
    excluding, the month of `end`.
    """
    ids: list[str] = []
    if granularity == "day":
        cursor = start
        while cursor < end:
            ids.append(cursor.isoformat())
            cursor += timedelta(days=1)
        return ids
    if granularity == "month":
        cursor = month_start(start)
        stop = month_start(end)
        while cursor < stop:
            ids.append(period_id("month", cursor))
            cursor = add_months(cursor, 1)
        return ids
    raise UnsupportedGranularityError(granularity, ("day", "month"))


def parse_period_id(granularity: str, pid: str) -> date:
    """Civil date a day or month period starts on."""
    if granularity == "day":
        return date.fromisoformat(pid)
    if granularity == "month":
        year, month = pid.split("-")
        return date(int(year), int(month), 1)
    raise UnsupportedGranularityError(granularity, ("day", "month"))


def civil_midnight(d: date, tz: str) -> datetime:
    """UTC instant at which civil date `d` begins in `tz`."""
    return _wall_to_instant(datetime.combine(d, time()), resolve_timezone(tz))


def period_start(granularity: str, pid: str, tz: str) -> datetime:
    """UTC instant at which a day or month period begins in `tz`."""
    return civil_midnight(parse_period_id(granularity, pid), tz)


def civil_today(tz: str, *, now: datetime | None = None) -> date:
    """Current civil date in `tz` (now defaults to the current UTC time)."""
    if now is None:
        now = datetime.now(timezone.utc)
    return to_utc(now).astimezone(resolve_timezone(tz)).date()
