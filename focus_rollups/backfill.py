"""Lazy backfill of historical rollup buckets.

`ensure_buckets` guarantees that every day or month bucket in a requested
range exists, computing the missing ones from the session log. Buckets that
already exist are never recomputed: they may hold increments from sessions the
session-log read below cannot see yet, and overwriting them would lose those.
Missing buckets are written create-only, so when two readers race to backfill
the same bucket the loser's write is a no-op and its result is discarded.

The current day (or month) and everything after it are never backfilled. They
are live, maintained by the incremental updater.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum

from focus_rollups.db import HOURS_PER_DAY, Rollup, RollupGranularity, RollupStore, format_timestamp
from focus_rollups.splitter import (
    add_months,
    check_granularity,
    civil_today,
    clamp_interval,
    list_period_ids,
    month_start,
    normalize_tz,
    parse_period_id,
    period_id,
    period_start,
    resolve_timezone,
)
from focus_rollups.tags import build_label_table, resolve_tag
from focus_rollups.updater import BucketDelta, add_interval

logger = logging.getLogger(__name__)

BACKFILL_GRANULARITIES = ("day", "month")


class BucketState(Enum):
    """Whether a bucket id already has a persisted row."""

    PRESENT = "present"
    MISSING = "missing"


@dataclass(frozen=True)
class BackfillWindow:
    """Bucket-aligned range a backfill request covers after clamping.

    Attributes:
        granularity: "day" or "month".
        period_ids: Expected bucket ids, in order.
        start_id: First id (inclusive) for the existing-row range query.
        end_id: Id after the last one (exclusive).
        start: UTC instant the first bucket begins.
        end: UTC instant the last bucket ends.
    """

    granularity: RollupGranularity
    period_ids: tuple[str, ...]
    start_id: str
    end_id: str
    start: datetime
    end: datetime


def backfill_window(
    granularity: RollupGranularity,
    tz: str,
    range_start: date,
    range_end: date,
    *,
    now: datetime | None = None,
) -> BackfillWindow:
    """Clamp a civil date range to the backfillable past and align it to buckets.

    The upper bound is clamped to the start of the current civil day (day
    granularity) or month (month granularity) in `tz`.
    """
    today = civil_today(tz, now=now)
    if granularity == "day":
        first = range_start
        stop = min(range_end, today)
    else:
        first = month_start(range_start)
        stop = min(month_start(range_end), month_start(today))

    if stop < first:
        stop = first
    start_id = period_id(granularity, first)
    end_id = period_id(granularity, stop)
    return BackfillWindow(
        granularity=granularity,
        period_ids=tuple(list_period_ids(granularity, first, stop)),
        start_id=start_id,
        end_id=end_id,
        start=period_start(granularity, start_id, tz),
        end=period_start(granularity, end_id, tz),
    )


def classify_buckets(
    expected: tuple[str, ...] | list[str],
    existing: dict[str, Rollup],
) -> dict[str, BucketState]:
    """Mark each expected bucket id PRESENT or MISSING."""
    return {
        pid: BucketState.PRESENT if pid in existing else BucketState.MISSING
        for pid in expected
    }


def compute_buckets(
    store: RollupStore,
    user_id: str,
    tz: str,
    window: BackfillWindow,
) -> dict[str, BucketDelta]:
    """Recompute the buckets of a window from the session log.

    Reads every session overlapping the window, clamps each to the window and
    splits it in `tz`.
    """
    label_to_id = build_label_table(store.get_user_tags(user_id))
    buckets: dict[str, BucketDelta] = {}
    for session in store.get_sessions_overlapping(user_id, window.start, window.end):
        clamped = clamp_interval(session.start, session.end, window.start, window.end)
        if clamped is None:
            continue
        tag_id = resolve_tag(session.tag_id, session.activity, label_to_id)
        add_interval(buckets, window.granularity, clamped[0], clamped[1], tz, tag_id)
    return buckets


def _to_rollup(
    user_id: str,
    granularity: RollupGranularity,
    pid: str,
    tz: str,
    delta: BucketDelta | None,
) -> Rollup:
    delta = delta or BucketDelta(pid)
    by_hour = None
    if granularity == "day":
        by_hour = [delta.seconds_by_hour.get(hour, 0) for hour in range(HOURS_PER_DAY)]
    return Rollup(
        user_id=user_id,
        granularity=granularity,
        period_id=pid,
        tz=tz,
        total_seconds=delta.total_seconds,
        seconds_by_hour=by_hour,
        seconds_by_tag={tag: sec for tag, sec in delta.seconds_by_tag.items() if sec},
        source="backfill",
        computed_at=format_timestamp(datetime.now(timezone.utc)),
    )


def ensure_buckets(
    store: RollupStore,
    user_id: str,
    tz: str | None,
    granularity: RollupGranularity,
    range_start: date,
    range_end: date,
    *,
    now: datetime | None = None,
) -> dict[str, Rollup]:
    """Return every bucket in [range_start, range_end), computing missing ones.

    Args:
        store: Rollup store.
        user_id: Owner of the buckets.
        tz: Civil timezone buckets are computed in (blank: default).
        granularity: "day" or "month".
        range_start: First civil date (inclusive).
        range_end: Last civil date (exclusive). For months, the month
            containing range_end is excluded.
        now: Current time for the clamp (default: the current time).

    Returns:
        Dict mapping period id to Rollup, in period order. Ids at or after the
        current day/month are not included.

    Raises:
        InvalidTimezoneError: If tz is unknown.
        UnsupportedGranularityError: If granularity is not "day" or "month".
    """
    check_granularity(granularity, BACKFILL_GRANULARITIES)
    tz = normalize_tz(tz)
    resolve_timezone(tz)

    window = backfill_window(granularity, tz, range_start, range_end, now=now)
    if not window.period_ids:
        return {}

    existing = store.query_rollups(user_id, granularity, window.start_id, window.end_id)
    states = classify_buckets(window.period_ids, existing)
    missing = [pid for pid, state in states.items() if state is BucketState.MISSING]
    if not missing:
        return {pid: existing[pid] for pid in window.period_ids}

    computed = compute_buckets(store, user_id, tz, window)
    fresh = {pid: _to_rollup(user_id, granularity, pid, tz, computed.get(pid)) for pid in missing}

    with store.batch() as batch:
        for rollup in fresh.values():
            batch.create(rollup)

    lost = [pid for pid in missing if pid not in batch.created]
    if lost:
        # Another writer created these first; its rows win
        logger.debug("Backfill for %s lost create race on %s", user_id, ", ".join(lost))
        winners = store.query_rollups(user_id, granularity, lost[0], _next_id(granularity, lost[-1]))
        for pid in lost:
            fresh[pid] = winners[pid]

    logger.info(
        "Backfilled %d %s bucket(s) for %s in %s (%d already present)",
        len(batch.created),
        granularity,
        user_id,
        tz,
        len(window.period_ids) - len(missing),
    )

    result: dict[str, Rollup] = {}
    for pid in window.period_ids:
        result[pid] = existing[pid] if states[pid] is BucketState.PRESENT else fresh[pid]
    return result


def _next_id(granularity: RollupGranularity, pid: str) -> str:
    """Id of the period after `pid`."""
    first = parse_period_id(granularity, pid)
    if granularity == "day":
        return period_id("day", first + timedelta(days=1))
    return period_id("month", add_months(first, 1))
