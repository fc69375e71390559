"""Incremental rollup updates for completed sessions.

Each completed session is turned into a deterministic set of additive
increments on the day and month buckets it touches. Increments commute, so
sessions for the same user can be applied in any order, concurrently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping

from focus_rollups.db import FocusSession, RollupStore, SessionRecord
from focus_rollups.rewards import SessionReward, compute_reward, credit_reward
from focus_rollups.splitter import day_of, hour_of, split_interval
from focus_rollups.streaks import StreakState, record_streak_credit, utc_today
from focus_rollups.tags import build_label_table, resolve_tag

logger = logging.getLogger(__name__)


@dataclass
class BucketDelta:
    """Seconds to add to one bucket."""

    period_id: str
    total_seconds: int = 0
    seconds_by_hour: dict[int, int] = field(default_factory=dict)
    seconds_by_tag: dict[str, int] = field(default_factory=dict)


@dataclass
class SessionDeltas:
    """Day and month bucket deltas one session contributes in its timezone."""

    tz: str
    days: dict[str, BucketDelta] = field(default_factory=dict)
    months: dict[str, BucketDelta] = field(default_factory=dict)


@dataclass
class SessionOutcome:
    """What completing a session changed."""

    session: FocusSession
    streak: StreakState
    reward: SessionReward
    rollups_updated: bool


def add_interval(
    buckets: dict[str, BucketDelta],
    granularity: str,
    start: datetime,
    end: datetime,
    tz: str,
    tag_id: str,
) -> None:
    """Accumulate the seconds of [start, end) into day or month buckets.

    Day buckets also get the hour-of-day breakdown from a separate hour sweep.
    """
    for piece in split_interval(start, end, tz, granularity):
        if not piece.seconds:
            continue
        delta = buckets.setdefault(piece.key, BucketDelta(piece.key))
        delta.total_seconds += piece.seconds
        delta.seconds_by_tag[tag_id] = delta.seconds_by_tag.get(tag_id, 0) + piece.seconds

    if granularity != "day":
        return

    for piece in split_interval(start, end, tz, "hour"):
        if not piece.seconds:
            continue
        delta = buckets.setdefault(day_of(piece.key), BucketDelta(day_of(piece.key)))
        hour = hour_of(piece.key)
        delta.seconds_by_hour[hour] = delta.seconds_by_hour.get(hour, 0) + piece.seconds


def compute_session_deltas(session: FocusSession, tag_id: str) -> SessionDeltas:
    """Compute the per-bucket increments for one session in its own timezone."""
    deltas = SessionDeltas(tz=session.tz)
    add_interval(deltas.days, "day", session.start, session.end, session.tz, tag_id)
    add_interval(deltas.months, "month", session.start, session.end, session.tz, tag_id)
    return deltas


def apply_session_deltas(store: RollupStore, user_id: str, deltas: SessionDeltas) -> None:
    """Write all increments of one session as a single atomic batch."""
    with store.batch() as batch:
        for delta in deltas.days.values():
            batch.increment(
                user_id,
                "day",
                delta.period_id,
                tz=deltas.tz,
                total_seconds=delta.total_seconds,
                seconds_by_hour=delta.seconds_by_hour,
                seconds_by_tag=delta.seconds_by_tag,
            )
        for delta in deltas.months.values():
            batch.increment(
                user_id,
                "month",
                delta.period_id,
                tz=deltas.tz,
                total_seconds=delta.total_seconds,
                seconds_by_tag=delta.seconds_by_tag,
            )


def update_rollups_for_session(
    store: RollupStore,
    session: FocusSession,
    *,
    label_to_id: Mapping[str, str] | None = None,
) -> SessionDeltas | None:
    """Apply a stored session to its rollups, best effort.

    Failures are logged and swallowed: the session log stays the source of
    truth and absent buckets are rebuilt by backfill.

    Returns:
        The applied deltas, or None if the update failed.
    """
    try:
        if label_to_id is None:
            label_to_id = build_label_table(store.get_user_tags(session.user_id))
        tag_id = resolve_tag(session.tag_id, session.activity, label_to_id)
        deltas = compute_session_deltas(session, tag_id)
        apply_session_deltas(store, session.user_id, deltas)
    except Exception:
        logger.exception(
            "Rollup update failed for session %s (user %s)", session.id, session.user_id
        )
        return None
    return deltas


def record_session(
    store: RollupStore,
    record: SessionRecord,
    *,
    now: datetime | None = None,
) -> SessionOutcome:
    """Complete a session.

    Appends the session to the log and credits the streak and rewards in one
    transaction, then updates rollups best effort. `now` fixes the UTC day the
    streak is credited on (default: the current time).

    Raises:
        DuplicateSessionError: If the session id was already recorded.
    """
    session = record.to_session()
    today = utc_today(now)
    reward = compute_reward(session.duration_seconds)

    with store.transaction():
        store.insert_session(session)
        streak = record_streak_credit(store, session.user_id, today)
        credit_reward(store, session.user_id, reward)

    deltas = update_rollups_for_session(store, session)

    logger.info(
        "Recorded session %s for %s: %ds, streak %d",
        session.id,
        session.user_id,
        session.duration_seconds,
        streak.current_streak,
    )
    return SessionOutcome(
        session=session,
        streak=streak,
        reward=reward,
        rollups_updated=deltas is not None,
    )