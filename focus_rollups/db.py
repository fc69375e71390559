"""SQLite rollup store for Focus Rollups."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Literal, Mapping

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator

from focus_rollups.splitter import (
    ONE_SECOND,
    InvalidIntervalError,
    RollupError,
    normalize_tz,
    resolve_timezone,
)
from focus_rollups.tags import UserTag

RollupGranularity = Literal["day", "month"]

HOURS_PER_DAY = 24


class DuplicateSessionError(RollupError):
    """Raised when a session id is already in the session log."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session already recorded: {session_id}")
        self.session_id = session_id


def format_timestamp(dt: datetime) -> str:
    """Format an aware datetime as a second-precision UTC ISO 8601 string."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(ts: str) -> datetime:
    """Parse ISO 8601 timestamp to datetime."""
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


class SessionRecord(BaseModel):
    """Completed session as delivered by the ingestion side.

    Instants are truncated to whole seconds. The id is generated when not
    provided.
    """

    user_id: str = Field(min_length=1)
    start: AwareDatetime
    end: AwareDatetime
    tz: str | None = None
    tag_id: str | None = None
    activity: str | None = None
    id: str | None = None

    @field_validator("tz", mode="after")
    @classmethod
    def _check_tz(cls, value: str | None) -> str:
        tz = normalize_tz(value)
        resolve_timezone(tz)
        return tz

    @field_validator("start", "end", mode="after")
    @classmethod
    def _truncate(cls, value: datetime) -> datetime:
        return value.astimezone(timezone.utc).replace(microsecond=0)

    @model_validator(mode="after")
    def _check_session(self) -> SessionRecord:
        if self.end <= self.start:
            raise InvalidIntervalError(
                f"end ({self.end.isoformat()}) must be after start ({self.start.isoformat()})"
            )
        if not (self.tag_id or "").strip() and not (self.activity or "").strip():
            raise ValueError("tag_id or activity is required")
        return self

    def to_session(self) -> FocusSession:
        return FocusSession(
            id=self.id or str(uuid.uuid4()),
            user_id=self.user_id,
            tag_id=self.tag_id,
            activity=self.activity,
            start=self.start,
            end=self.end,
            duration_seconds=(self.end - self.start) // ONE_SECOND,
            tz=self.tz or normalize_tz(None),
        )


class FocusSession(BaseModel):
    """Session as stored in the append-only session log."""

    id: str
    user_id: str
    tag_id: str | None = None
    activity: str | None = None
    start: datetime
    end: datetime
    duration_seconds: int
    tz: str


class Rollup(BaseModel):
    """Aggregate row for one (user, period) bucket.

    Day buckets carry a 24-slot `seconds_by_hour`; month buckets carry None.
    """

    user_id: str
    granularity: RollupGranularity
    period_id: str
    tz: str
    total_seconds: int = 0
    seconds_by_hour: list[int] | None = None
    seconds_by_tag: dict[str, int] = Field(default_factory=dict)
    version: int = 1
    source: Literal["incremental", "backfill"] = "backfill"
    computed_at: str | None = None


SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    tag_id TEXT,
    activity TEXT,
    start_ts TEXT NOT NULL,
    end_ts TEXT NOT NULL,
    duration_seconds INTEGER NOT NULL,
    tz TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rollups (
    user_id TEXT NOT NULL,
    granularity TEXT NOT NULL,
    period_id TEXT NOT NULL,
    tz TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    source TEXT NOT NULL,
    computed_at TEXT NOT NULL,
    PRIMARY KEY (user_id, granularity, period_id)
);

CREATE TABLE IF NOT EXISTS rollup_counters (
    user_id TEXT NOT NULL,
    granularity TEXT NOT NULL,
    period_id TEXT NOT NULL,
    dimension TEXT NOT NULL,
    key TEXT NOT NULL,
    seconds INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, granularity, period_id, dimension, key),
    FOREIGN KEY (user_id, granularity, period_id)
        REFERENCES rollups(user_id, granularity, period_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS user_tags (
    user_id TEXT NOT NULL,
    tag_id TEXT NOT NULL,
    label TEXT NOT NULL,
    color TEXT NOT NULL,
    activity TEXT NOT NULL,
    position INTEGER NOT NULL,
    PRIMARY KEY (user_id, tag_id)
);

CREATE TABLE IF NOT EXISTS user_stats (
    user_id TEXT PRIMARY KEY,
    current_streak INTEGER NOT NULL DEFAULT 0,
    highest_streak INTEGER NOT NULL DEFAULT 0,
    last_credited_day TEXT,
    total_focus_seconds INTEGER NOT NULL DEFAULT 0,
    coins INTEGER NOT NULL DEFAULT 0,
    total_xp INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_user_start ON sessions(user_id, start_ts);
CREATE INDEX IF NOT EXISTS idx_sessions_user_end ON sessions(user_id, end_ts);
"""

logger = logging.getLogger(__name__)

# Counter dimensions stored per bucket
TOTAL = "total"
HOUR = "hour"
TAG = "tag"


def _now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def _session_from_row(row: sqlite3.Row) -> FocusSession:
    return FocusSession(
        id=row["id"],
        user_id=row["user_id"],
        tag_id=row["tag_id"],
        activity=row["activity"],
        start=parse_timestamp(row["start_ts"]),
        end=parse_timestamp(row["end_ts"]),
        duration_seconds=row["duration_seconds"],
        tz=row["tz"],
    )


class RollupBatch:
    """Atomic multi-row write against the rollup tables.

    Operations are queued and applied in one transaction on commit, so a
    bucket is never left partially written. Use as a context manager: the
    batch commits when the block exits cleanly and is discarded otherwise.

    After commit, `created` holds the period ids whose `create` succeeded.
    """

    def __init__(self, store: RollupStore) -> None:
        self._store = store
        self._ops: list[tuple[str, Any]] = []
        self.created: set[str] = set()
        self.committed = False

    def __enter__(self) -> RollupBatch:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        if exc_type is None:
            self.commit()

    def increment(
        self,
        user_id: str,
        granularity: RollupGranularity,
        period_id: str,
        *,
        tz: str,
        total_seconds: int = 0,
        seconds_by_hour: Mapping[int, int] | None = None,
        seconds_by_tag: Mapping[str, int] | None = None,
    ) -> None:
        """Queue an additive increment, creating the bucket if absent."""
        self._ops.append((
            "increment",
            {
                "user_id": user_id,
                "granularity": granularity,
                "period_id": period_id,
                "tz": tz,
                "total_seconds": total_seconds,
                "seconds_by_hour": dict(seconds_by_hour or {}),
                "seconds_by_tag": dict(seconds_by_tag or {}),
            },
        ))

    def create(self, rollup: Rollup) -> None:
        """Queue a create-only write. A no-op if the bucket already exists."""
        self._ops.append(("create", rollup))

    def commit(self) -> set[str]:
        """Apply all queued operations in one transaction.

        Returns:
            Period ids created by `create` operations.
        """
        if self.committed:
            return self.created
        created: set[str] = set()
        with self._store.transaction():
            for kind, payload in self._ops:
                if kind == "increment":
                    self._store._apply_increment(**payload)
                elif self._store._apply_create(payload):
                    created.add(payload.period_id)
        self.created = created
        self.committed = True
        return created


class RollupStore:
    """SQLite-backed rollup store.

    Not thread-safe. Each thread should have its own RollupStore instance.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._tx_depth = 0
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def __enter__(self) -> RollupStore:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> RollupStore:
        """Open or create a database at the given path."""
        conn = sqlite3.connect(path, timeout=30)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> RollupStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @contextmanager
    def transaction(self) -> Iterator[RollupStore]:
        """Run a serialized transaction.

        Takes the database write lock up front (BEGIN IMMEDIATE) so
        read-modify-write sequences inside the block cannot lose updates.
        Nested calls join the outer transaction.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        if self._conn.in_transaction:
            self._conn.commit()
        self._conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()
        finally:
            self._tx_depth = 0

    # Session log

    def insert_session(self, session: FocusSession) -> FocusSession:
        """Append a session to the session log.

        Raises:
            DuplicateSessionError: If the session id already exists.
        """
        with self.transaction():
            try:
                self._conn.execute(
                    """
                    INSERT INTO sessions
                    (id, user_id, tag_id, activity, start_ts, end_ts, duration_seconds, tz, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.tag_id,
                        session.activity,
                        format_timestamp(session.start),
                        format_timestamp(session.end),
                        session.duration_seconds,
                        session.tz,
                        _now(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateSessionError(session.id) from e
        return session

    def get_sessions_overlapping(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> list[FocusSession]:
        """Get sessions whose [start, end) overlaps [start, end).

        Sessions straddling either edge are included unclamped; callers clamp.

        Returns:
            Sessions ordered by start ascending.
        """
        cursor = self._conn.execute(
            """
            SELECT * FROM sessions
            WHERE user_id = ? AND start_ts < ? AND end_ts > ?
            ORDER BY start_ts ASC, id ASC
            """,
            (user_id, format_timestamp(end), format_timestamp(start)),
        )
        return [_session_from_row(row) for row in cursor.fetchall()]

    def get_sessions(self, user_id: str, *, limit: int | None = None) -> list[FocusSession]:
        """Get a user's sessions ordered by start ascending."""
        query = "SELECT * FROM sessions WHERE user_id = ? ORDER BY start_ts ASC, id ASC"
        params: list[str | int] = [user_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = self._conn.execute(query, params)
        return [_session_from_row(row) for row in cursor.fetchall()]

    # Rollups

    def batch(self) -> RollupBatch:
        """Start an atomic rollup batch."""
        return RollupBatch(self)

    def get_rollup(
        self,
        user_id: str,
        granularity: RollupGranularity,
        period_id: str,
    ) -> Rollup | None:
        """Get one bucket, or None if it has not been created."""
        rows = self._load_rollups(
            "r.user_id = ? AND r.granularity = ? AND r.period_id = ?",
            (user_id, granularity, period_id),
        )
        return rows.get(period_id)

    def query_rollups(
        self,
        user_id: str,
        granularity: RollupGranularity,
        start_id: str,
        end_id: str,
    ) -> dict[str, Rollup]:
        """Get buckets with start_id <= period_id < end_id.

        Period ids sort chronologically, so this is a half-open time range.

        Returns:
            Dict mapping period_id to Rollup, in period order.
        """
        return self._load_rollups(
            "r.user_id = ? AND r.granularity = ? AND r.period_id >= ? AND r.period_id < ?",
            (user_id, granularity, start_id, end_id),
        )

    def _load_rollups(self, where: str, params: tuple[str, ...]) -> dict[str, Rollup]:
        cursor = self._conn.execute(
            f"""
            SELECT r.user_id, r.granularity, r.period_id, r.tz, r.version, r.source,
                   r.computed_at, c.dimension, c.key, c.seconds
            FROM rollups r
            LEFT JOIN rollup_counters c
                ON c.user_id = r.user_id
                AND c.granularity = r.granularity
                AND c.period_id = r.period_id
            WHERE {where}
            ORDER BY r.period_id ASC
            """,
            params,
        )

        result: dict[str, Rollup] = {}
        for row in cursor:
            rollup = result.get(row["period_id"])
            if rollup is None:
                is_day = row["granularity"] == "day"
                rollup = Rollup(
                    user_id=row["user_id"],
                    granularity=row["granularity"],
                    period_id=row["period_id"],
                    tz=row["tz"],
                    seconds_by_hour=[0] * HOURS_PER_DAY if is_day else None,
                    version=row["version"],
                    source=row["source"],
                    computed_at=row["computed_at"],
                )
                result[row["period_id"]] = rollup

            dimension = row["dimension"]
            if dimension == TOTAL:
                rollup.total_seconds = row["seconds"]
            elif dimension == HOUR and rollup.seconds_by_hour is not None:
                rollup.seconds_by_hour[int(row["key"])] = row["seconds"]
            elif dimension == TAG:
                rollup.seconds_by_tag[row["key"]] = row["seconds"]

        return result

    def _insert_rollup_row(
        self,
        user_id: str,
        granularity: str,
        period_id: str,
        tz: str,
        *,
        source: str,
        version: int = 1,
        computed_at: str | None = None,
    ) -> bool:
        cursor = self._conn.execute(
            """
            INSERT OR IGNORE INTO rollups
            (user_id, granularity, period_id, tz, version, source, computed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, granularity, period_id, tz, version, source, computed_at or _now()),
        )
        return cursor.rowcount > 0

    def _add_counters(
        self,
        user_id: str,
        granularity: str,
        period_id: str,
        counters: list[tuple[str, str, int]],
    ) -> None:
        """Add seconds to (dimension, key) counters, creating them at zero."""
        self._conn.executemany(
            """
            INSERT INTO rollup_counters
            (user_id, granularity, period_id, dimension, key, seconds)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id, granularity, period_id, dimension, key)
            DO UPDATE SET seconds = seconds + excluded.seconds
            """,
            [
                (user_id, granularity, period_id, dimension, key, seconds)
                for dimension, key, seconds in counters
            ],
        )

    def _apply_increment(
        self,
        *,
        user_id: str,
        granularity: str,
        period_id: str,
        tz: str,
        total_seconds: int,
        seconds_by_hour: dict[int, int],
        seconds_by_tag: dict[str, int],
    ) -> None:
        self._insert_rollup_row(user_id, granularity, period_id, tz, source="incremental")
        counters = [(TOTAL, "", total_seconds)]
        counters += [(HOUR, str(hour), sec) for hour, sec in seconds_by_hour.items() if sec]
        counters += [(TAG, tag, sec) for tag, sec in seconds_by_tag.items() if sec]
        self._add_counters(user_id, granularity, period_id, counters)

    def _apply_create(self, rollup: Rollup) -> bool:
        created = self._insert_rollup_row(
            rollup.user_id,
            rollup.granularity,
            rollup.period_id,
            rollup.tz,
            source=rollup.source,
            version=rollup.version,
            computed_at=rollup.computed_at,
        )
        if not created:
            return False
        counters = [(TOTAL, "", rollup.total_seconds)]
        for hour, sec in enumerate(rollup.seconds_by_hour or []):
            if sec:
                counters.append((HOUR, str(hour), sec))
        counters += [(TAG, tag, sec) for tag, sec in rollup.seconds_by_tag.items() if sec]
        self._add_counters(rollup.user_id, rollup.granularity, rollup.period_id, counters)
        return True

    def count_rollups(self, user_id: str, granularity: RollupGranularity) -> int:
        cursor = self._conn.execute(
            "SELECT COUNT(*) FROM rollups WHERE user_id = ? AND granularity = ?",
            (user_id, granularity),
        )
        return cursor.fetchone()[0]

    # User tags

    def get_user_tags(self, user_id: str) -> list[UserTag]:
        """Get a user's tag list in its configured order."""
        cursor = self._conn.execute(
            """
            SELECT tag_id, label, color, activity FROM user_tags
            WHERE user_id = ? ORDER BY position ASC
            """,
            (user_id,),
        )
        return [
            UserTag(id=row["tag_id"], label=row["label"], color=row["color"], activity=row["activity"])
            for row in cursor.fetchall()
        ]

    def set_user_tags(self, user_id: str, tags: list[UserTag]) -> None:
        """Replace a user's tag list.

        Raises:
            ValueError: If two tags share an id.
        """
        ids = [tag.id for tag in tags]
        if len(ids) != len(set(ids)):
            raise ValueError("Tag ids must be unique")
        with self.transaction():
            self._conn.execute("DELETE FROM user_tags WHERE user_id = ?", (user_id,))
            self._conn.executemany(
                """
                INSERT INTO user_tags (user_id, tag_id, label, color, activity, position)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (user_id, tag.id, tag.label, tag.color, tag.activity, position)
                    for position, tag in enumerate(tags)
                ],
            )

    # User stats (streak and lifetime totals)

    def get_user_stats(self, user_id: str) -> dict[str, Any] | None:
        """Get the stats row for a user, or None if the user has none yet."""
        cursor = self._conn.execute("SELECT * FROM user_stats WHERE user_id = ?", (user_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        stats = dict(row)
        if stats["last_credited_day"]:
            stats["last_credited_day"] = date.fromisoformat(stats["last_credited_day"])
        return stats

    def save_streak(
        self,
        user_id: str,
        *,
        current_streak: int,
        highest_streak: int,
        last_credited_day: date | None,
    ) -> None:
        """Upsert the streak columns of a user's stats row."""
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO user_stats
                (user_id, current_streak, highest_streak, last_credited_day, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    current_streak = excluded.current_streak,
                    highest_streak = excluded.highest_streak,
                    last_credited_day = excluded.last_credited_day,
                    updated_at = excluded.updated_at
                """,
                (
                    user_id,
                    current_streak,
                    highest_streak,
                    last_credited_day.isoformat() if last_credited_day else None,
                    _now(),
                ),
            )

    def add_user_totals(
        self,
        user_id: str,
        *,
        focus_seconds: int = 0,
        coins: int = 0,
        xp: int = 0,
    ) -> None:
        """Additively increment a user's lifetime totals."""
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO user_stats
                (user_id, total_focus_seconds, coins, total_xp, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    total_focus_seconds = total_focus_seconds + excluded.total_focus_seconds,
                    coins = coins + excluded.coins,
                    total_xp = total_xp + excluded.total_xp,
                    updated_at = excluded.updated_at
                """,
                (user_id, focus_seconds, coins, xp, _now()),
            )

