"""Analytics views over rollup buckets.

Historical periods come from `ensure_buckets`; the current day or month is
read live, as the incremental updater leaves it.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta

from focus_rollups.backfill import ensure_buckets
from focus_rollups.db import HOURS_PER_DAY, Rollup, RollupGranularity, RollupStore
from focus_rollups.splitter import (
    add_months,
    civil_today,
    list_period_ids,
    month_start,
    normalize_tz,
    period_id,
    resolve_timezone,
)
from focus_rollups.tags import UNRESOLVED_TAG


def load_rollups(
    store: RollupStore,
    user_id: str,
    tz: str | None,
    granularity: RollupGranularity,
    range_start: date,
    range_end: date,
    *,
    now: datetime | None = None,
) -> dict[str, Rollup]:
    """Backfilled past buckets plus the live current bucket, if in range.

    Future periods have no rows and are omitted.
    """
    tz = normalize_tz(tz)
    resolve_timezone(tz)
    rows = ensure_buckets(store, user_id, tz, granularity, range_start, range_end, now=now)

    today = civil_today(tz, now=now)
    current = period_id(granularity, today)
    if current in list_period_ids(granularity, range_start, range_end):
        live = store.get_rollup(user_id, granularity, current)
        if live is not None:
            rows[current] = live
    return rows


def day_by_hour(
    store: RollupStore,
    user_id: str,
    tz: str | None,
    day: date,
    *,
    now: datetime | None = None,
) -> list[int]:
    """Seconds per civil hour (0-23) of one day."""
    rows = load_rollups(store, user_id, tz, "day", day, day + timedelta(days=1), now=now)
    rollup = rows.get(day.isoformat())
    if rollup is None or rollup.seconds_by_hour is None:
        return [0] * HOURS_PER_DAY
    return list(rollup.seconds_by_hour)


def month_by_day(
    store: RollupStore,
    user_id: str,
    tz: str | None,
    year: int,
    month: int,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Seconds per civil day of one month. Days without data are 0."""
    first = date(year, month, 1)
    stop = add_months(first, 1)
    rows = load_rollups(store, user_id, tz, "day", first, stop, now=now)
    return {
        pid: rows[pid].total_seconds if pid in rows else 0
        for pid in list_period_ids("day", first, stop)
    }


def year_by_month(
    store: RollupStore,
    user_id: str,
    tz: str | None,
    year: int,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Seconds per civil month of one year. Months without data are 0."""
    first = date(year, 1, 1)
    stop = date(year + 1, 1, 1)
    rows = load_rollups(store, user_id, tz, "month", first, stop, now=now)
    return {
        pid: rows[pid].total_seconds if pid in rows else 0
        for pid in list_period_ids("month", first, stop)
    }


def tag_distribution(
    store: RollupStore,
    user_id: str,
    tz: str | None,
    range_start: date,
    range_end: date,
    *,
    now: datetime | None = None,
) -> list[tuple[str, int]]:
    """Seconds per tag over [range_start, range_end), from day buckets.

    Returns:
        (tag_id, seconds) pairs sorted by seconds descending, unresolved last.
    """
    totals: defaultdict[str, int] = defaultdict(int)
    for rollup in load_rollups(store, user_id, tz, "day", range_start, range_end, now=now).values():
        for tag, seconds in rollup.seconds_by_tag.items():
            totals[tag] += seconds

    def sort_key(item: tuple[str, int]) -> tuple[int, int, str]:
        tag, seconds = item
        return (1 if tag == UNRESOLVED_TAG else 0, -seconds, tag)

    return sorted(((tag, sec) for tag, sec in totals.items() if sec), key=sort_key)


def month_range(d: date) -> tuple[date, date]:
    """First day of the month containing `d` and of the month after."""
    first = month_start(d)
    return first, add_months(first, 1)
