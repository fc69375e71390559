"""CLI entry point for Focus Rollups."""

from __future__ import annotations

import json
import logging
import sys
from datetime import date, datetime, timezone
from pathlib import Path

import click
from pydantic import TypeAdapter, ValidationError

from focus_rollups.db import DuplicateSessionError, RollupStore, SessionRecord
from focus_rollups.insights import day_by_hour, month_by_day, month_range, tag_distribution
from focus_rollups.splitter import DEFAULT_TZ, RollupError, civil_today, normalize_tz
from focus_rollups.streaks import check_and_get_streak
from focus_rollups.tags import UNRESOLVED_TAG, UserTag
from focus_rollups.updater import record_session

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "focus-rollups" / "rollups.db"

USER_TAGS_ADAPTER = TypeAdapter(list[UserTag])


def format_duration(seconds: int) -> str:
    """Format seconds as 'Xh Ym', 'Ym', or '<1m'.

    Args:
        seconds: Duration in seconds.

    Returns:
        Formatted duration string.
    """
    if seconds < 60:
        return "<1m" if seconds > 0 else "0m"
    total_minutes = seconds // 60
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def make_progress_bar(value: int, max_value: int, width: int = 16) -> str:
    """Create ASCII progress bar.

    Args:
        value: Current value.
        max_value: Maximum value (100%).
        width: Total width of bar (default: 16).

    Returns:
        Progress bar string like '████████░░░░░░░░'.
    """
    if max_value == 0 or value == 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def format_period(start: date, period: str) -> str:
    """Format a report period header: 'Jan 25, 2025' or 'January 2025'."""
    if period == "day":
        return start.strftime("%b %d, %Y")
    return start.strftime("%B %Y")


def db_option(func):
    return click.option(
        "--db",
        type=click.Path(path_type=Path),
        default=DEFAULT_DB_PATH,
        help="Path to SQLite database",
    )(func)


def user_option(func):
    return click.option("--user", "user_id", required=True, help="User ID")(func)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Focus Rollups CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command("record")
@db_option
def record_command(db: Path) -> None:
    """Record completed sessions from stdin (JSONL format).

    Each line is a session object with user_id, start, end, a tag_id or
    activity label, and optionally tz and id. Invalid lines are skipped
    with a warning.

    Example usage:
        cat sessions.jsonl | focus-rollups record
    """
    # Ensure database directory exists
    db.parent.mkdir(parents=True, exist_ok=True)

    recorded_count = 0
    valid_count = 0
    has_input = False

    with RollupStore.open(db) as store:
        for line_number, line in enumerate(sys.stdin, 1):
            stripped = line.strip()
            if not stripped:
                continue

            has_input = True

            try:
                data = json.loads(stripped)
                record = SessionRecord.model_validate(data)
                valid_count += 1
                record_session(store, record)
                recorded_count += 1
            except json.JSONDecodeError as e:
                click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
            except ValidationError as e:
                click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
            except DuplicateSessionError as e:
                click.echo(f"Warning: line {line_number}: {e}", err=True)

    click.echo(f"Recorded {recorded_count} sessions")

    # Exit code 1 if we had input but no valid sessions (all lines were errors)
    if has_input and valid_count == 0:
        sys.exit(1)


@main.command("report")
@db_option
@user_option
@click.option("--tz", default=DEFAULT_TZ, show_default=True, help="IANA timezone for civil days")
@click.option(
    "--day",
    "day_date",
    type=str,
    default=None,
    is_flag=False,
    flag_value="today",
    help="Daily report (YYYY-MM-DD, default: today)",
)
@click.option(
    "--month",
    "month_str",
    type=str,
    default=None,
    help="Monthly report (YYYY-MM, default: current month)",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output as JSON",
)
def report_command(
    db: Path,
    user_id: str,
    tz: str,
    day_date: str | None,
    month_str: str | None,
    output_json: bool,
) -> None:
    """Show focus time by hour or day, and by tag.

    By default shows the current month. Use --day for a single day report
    broken down by hour, optionally with a specific date in YYYY-MM-DD format.
    Past periods missing from the rollups are computed from the session log.
    """
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    tz = normalize_tz(tz)
    try:
        today = civil_today(tz)
    except RollupError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    # Parse period
    if day_date is not None:
        period = "day"
        if day_date == "today":
            start = today
        else:
            try:
                start = date.fromisoformat(day_date)
            except ValueError:
                click.echo(f"Invalid date format: {day_date}. Use YYYY-MM-DD.", err=True)
                sys.exit(1)
        end = date.fromordinal(start.toordinal() + 1)
    else:
        period = "month"
        if month_str is None:
            start, end = month_range(today)
        else:
            try:
                start, end = month_range(datetime.strptime(month_str, "%Y-%m").date())
            except ValueError:
                click.echo(f"Invalid month format: {month_str}. Use YYYY-MM.", err=True)
                sys.exit(1)

    with RollupStore.open(db) as store:
        if period == "day":
            breakdown = {f"{hour:02d}:00": sec for hour, sec in enumerate(day_by_hour(store, user_id, tz, start))}
        else:
            breakdown = month_by_day(store, user_id, tz, start.year, start.month)
        by_tag = tag_distribution(store, user_id, tz, start, end)

    total_seconds = sum(breakdown.values())

    if output_json:
        _output_json_report(period, tz, start, end, total_seconds, breakdown, by_tag)
    else:
        _output_human_report(period, start, total_seconds, breakdown, by_tag)


def _output_json_report(
    period: str,
    tz: str,
    start: date,
    end: date,
    total_seconds: int,
    breakdown: dict[str, int],
    by_tag: list[tuple[str, int]],
) -> None:
    """Output JSON report."""
    output = {
        "report_type": "daily" if period == "day" else "monthly",
        "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "tz": tz,
        "period": {
            "start": start.isoformat(),
            "end": date.fromordinal(end.toordinal() - 1).isoformat(),
        },
        "total_seconds": total_seconds,
        "by_hour" if period == "day" else "by_day": breakdown,
        "by_tag": [{"tag": tag, "total_seconds": seconds} for tag, seconds in by_tag],
    }
    click.echo(json.dumps(output, indent=2))


def _output_human_report(
    period: str,
    start: date,
    total_seconds: int,
    breakdown: dict[str, int],
    by_tag: list[tuple[str, int]],
) -> None:
    """Output human-readable report."""
    click.echo(f"Focus Report: {format_period(start, period)}")
    click.echo()

    if total_seconds == 0:
        click.echo("No focus time recorded for this period.")
        return

    click.echo(f"Total: {format_duration(total_seconds)}")
    click.echo()

    click.echo("By Hour:" if period == "day" else "By Day:")
    max_slot = max(breakdown.values(), default=0)
    for label, seconds in breakdown.items():
        if seconds == 0:
            continue
        click.echo(f"  {label:<12} {format_duration(seconds):>9}   {make_progress_bar(seconds, max_slot)}")
    click.echo()

    click.echo("By Tag:")
    max_tag = max((seconds for _, seconds in by_tag), default=0)
    for tag, seconds in by_tag:
        # Truncate long tags
        display_tag = "(untagged)" if tag == UNRESOLVED_TAG else tag
        if len(display_tag) > 20:
            display_tag = display_tag[:17] + "..."
        click.echo(f"  {display_tag:<20} {format_duration(seconds):>9}   {make_progress_bar(seconds, max_tag)}")


@main.command("streak")
@db_option
@user_option
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def streak_command(db: Path, user_id: str, output_json: bool) -> None:
    """Check a user's daily streak.

    A streak not credited yesterday or today is broken and reset to 0 by
    this check.
    """
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    with RollupStore.open(db) as store:
        result = check_and_get_streak(store, user_id)

    if output_json:
        click.echo(result.model_dump_json(indent=2))
        return

    click.echo(f"Current streak: {result.current_streak} day{'s' if result.current_streak != 1 else ''}")
    click.echo(f"Highest streak: {result.highest_streak} day{'s' if result.highest_streak != 1 else ''}")
    if result.reset:
        click.echo("Streak broken: no session yesterday or today.")


@main.group("tags")
def tags_group() -> None:
    """Manage a user's tag list."""


@tags_group.command("list")
@db_option
@user_option
def tags_list(db: Path, user_id: str) -> None:
    """List a user's tags as label -> id."""
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)

    with RollupStore.open(db) as store:
        tags = store.get_user_tags(user_id)

    if not tags:
        click.echo("No custom tags (default labels: Focus, Rest, Work, Study)")
        return

    for tag in tags:
        click.echo(f"  {tag.label:<20} {tag.id:<20} {tag.activity:<6} {tag.color}")


@tags_group.command("set")
@db_option
@user_option
def tags_set(db: Path, user_id: str) -> None:
    """Replace a user's tag list with a JSON array read from stdin.

    Each tag needs id, label, color, and activity ("Focus" or "Rest").

    Example:
        echo '[{"id": "deep", "label": "Deep Work", "color": "#f00", "activity": "Focus"}]' \\
            | focus-rollups tags set --user u1
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    try:
        tags = USER_TAGS_ADAPTER.validate_json(sys.stdin.read())
    except ValidationError as e:
        click.echo(f"Invalid tag list: {e}", err=True)
        sys.exit(1)

    with RollupStore.open(db) as store:
        try:
            store.set_user_tags(user_id, tags)
        except ValueError as e:
            click.echo(f"Invalid tag list: {e}", err=True)
            sys.exit(1)

    click.echo(f"Saved {len(tags)} tags for {user_id}")


if __name__ == "__main__":
    main()
