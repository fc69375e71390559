"""Coin and XP rewards for completed sessions."""

from __future__ import annotations

from dataclasses import dataclass

from focus_rollups.db import RollupStore

REWARD_INTERVAL_SECONDS = 10 * 60
COINS_PER_INTERVAL = 5
SECONDS_PER_XP = 60


@dataclass(frozen=True)
class SessionReward:
    focus_seconds: int
    coins: int
    xp: int


def compute_reward(duration_seconds: int) -> SessionReward:
    """5 coins per whole 10 minutes, 1 XP per whole minute."""
    duration_seconds = max(0, duration_seconds)
    return SessionReward(
        focus_seconds=duration_seconds,
        coins=(duration_seconds // REWARD_INTERVAL_SECONDS) * COINS_PER_INTERVAL,
        xp=duration_seconds // SECONDS_PER_XP,
    )


def credit_reward(store: RollupStore, user_id: str, reward: SessionReward) -> None:
    """Add a reward to the user's lifetime totals. Joins any open transaction."""
    store.add_user_totals(
        user_id,
        focus_seconds=reward.focus_seconds,
        coins=reward.coins,
        xp=reward.xp,
    )
