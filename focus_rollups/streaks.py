"""Daily streak tracking.

A streak gains at most one credit per UTC calendar day, no matter how many
sessions complete that day. Breakage is detected separately, on demand: once a
full UTC day passes without a credit, the next check resets the current streak
while the highest streak is kept.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from pydantic import BaseModel, Field

from focus_rollups.db import RollupStore

logger = logging.getLogger(__name__)


class StreakState(BaseModel):
    current_streak: int = Field(default=0, ge=0)
    highest_streak: int = Field(default=0, ge=0)
    last_credited_day: date | None = None


class StreakCheck(BaseModel):
    """Result of an on-demand streak check."""

    current_streak: int
    highest_streak: int
    last_credited_day: date | None = None
    reset: bool = False


def utc_today(now: datetime | None = None) -> date:
    """UTC calendar day of `now` (default: the current time)."""
    if now is None:
        now = datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).date()


def credit_streak(state: StreakState, today: date) -> StreakState:
    """Apply one session-completion credit.

    Increments the streak if it has not been credited yet on `today`;
    otherwise returns the state unchanged apart from the highest-streak
    maximum.
    """
    current = state.current_streak
    last = state.last_credited_day
    if last is None or last < today:
        current += 1
        last = today
    return StreakState(
        current_streak=current,
        highest_streak=max(state.highest_streak, current),
        last_credited_day=last,
    )


def check_streak(state: StreakState, today: date) -> tuple[StreakState, bool]:
    """Detect a broken streak.

    A streak is broken when it was not credited yesterday or today, which
    includes a streak that was never credited and one already at 0.

    Returns:
        Tuple of (new state, whether the streak is broken).
    """
    yesterday = today - timedelta(days=1)
    last = state.last_credited_day
    if last is not None and last >= yesterday:
        return state, False
    reset = StreakState(
        current_streak=0,
        highest_streak=state.highest_streak,
        last_credited_day=last,
    )
    return reset, True


def load_streak(store: RollupStore, user_id: str) -> StreakState:
    stats = store.get_user_stats(user_id)
    if stats is None:
        return StreakState()
    return StreakState(
        current_streak=stats["current_streak"],
        highest_streak=stats["highest_streak"],
        last_credited_day=stats["last_credited_day"],
    )


def _save(store: RollupStore, user_id: str, state: StreakState) -> None:
    store.save_streak(
        user_id,
        current_streak=state.current_streak,
        highest_streak=state.highest_streak,
        last_credited_day=state.last_credited_day,
    )


def record_streak_credit(store: RollupStore, user_id: str, today: date) -> StreakState:
    """Credit the streak for a completed session inside a serialized transaction.

    Joins the caller's transaction when one is open.
    """
    with store.transaction():
        before = load_streak(store, user_id)
        after = credit_streak(before, today)
        if after != before:
            _save(store, user_id, after)
    if after.current_streak != before.current_streak:
        logger.debug("Streak for %s credited on %s: %d", user_id, today, after.current_streak)
    return after


def check_and_get_streak(
    store: RollupStore,
    user_id: str,
    *,
    now: datetime | None = None,
) -> StreakCheck:
    """Run the breakage check and return the resulting streak."""
    today = utc_today(now)
    with store.transaction():
        before = load_streak(store, user_id)
        after, reset = check_streak(before, today)
        if after != before:
            _save(store, user_id, after)

    if after.current_streak != before.current_streak:
        logger.info(
            "Streak for %s reset (last credited %s, checked %s)",
            user_id,
            before.last_credited_day,
            today,
        )
    return StreakCheck(
        current_streak=after.current_streak,
        highest_streak=after.highest_streak,
        last_credited_day=after.last_credited_day,
        reset=reset,
    )


def get_streak(store: RollupStore, user_id: str) -> dict[str, int]:
    """Get a user's streak counters without running the breakage check."""
    state = load_streak(store, user_id)
    return {
        "current_streak": state.current_streak,
        "highest_streak": state.highest_streak,
    }
