"""Frequency-gated recurrence arithmetic.

A rotation fires on its configured weekdays at its configured local time, but
only in weeks whose distance from the anchor week is a multiple of the
frequency interval (1, 2 or 4 weeks). Weeks run Monday to Sunday as in
ISO-8601 and are counted continuously, so the gate does not reset at the turn
of the year.

This is not the same as subtracting ISO week numbers. Week numbers restart at
1 each January, so across a year boundary the two disagree, most visibly
after a 53-week year such as 2026: week 1 of 2027 minus week 53 of 2026 is
-52, an even distance, although the two weeks are adjacent. Counting
continuously keeps a fortnightly rotation on a strict two-week cadence.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterable, Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from rotabot.errors import ScheduleComputationError
from rotabot.models import Schedule, Weekday


def zone_for(schedule: Schedule) -> ZoneInfo:
    if not schedule.timezone:
        raise ScheduleComputationError("Schedule has no timezone")
    try:
        return ZoneInfo(schedule.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleComputationError(f"Unknown timezone {schedule.timezone!r}") from exc


def week_index(day: date) -> int:
    """Number of whole Monday-started weeks since 0001-01-01 (itself a Monday)."""

    return (day.toordinal() - 1) // 7


def week_gate_open(schedule: Schedule, anchor: datetime, at: datetime) -> bool:
    """True when ``at`` falls in a week aligned with the anchor week for this frequency."""

    tz = zone_for(schedule)
    anchor_day = _aware(anchor).astimezone(tz).date()
    local_day = _aware(at).astimezone(tz).date()
    return (week_index(local_day) - week_index(anchor_day)) % schedule.frequency.interval == 0


def is_qualifying(schedule: Schedule, anchor: datetime, at: datetime | None = None) -> bool:
    """Whether a trigger firing at ``at`` (default: now) should actually run."""

    if not schedule.is_complete:
        return False
    at = _aware(at or datetime.now(timezone.utc))
    local = at.astimezone(zone_for(schedule))
    if Weekday(local.weekday()) not in schedule.weekdays:
        return False
    return week_gate_open(schedule, anchor, at)


def next_occurrences(
    schedule: Schedule,
    anchor: datetime,
    count: int,
    now: datetime | None = None,
) -> Iterator[datetime]:
    """Yield up to ``count`` qualifying local datetimes strictly after ``now``.

    Each call scans afresh from ``now``; nothing is cached between calls.
    """
    if count <= 0 or not schedule.is_complete:
        return
    tz = zone_for(schedule)
    local_now = _aware(now or datetime.now(timezone.utc)).astimezone(tz)
    anchor_week = week_index(_aware(anchor).astimezone(tz).date())
    interval = schedule.frequency.interval

    found = 0
    day = local_now.date()
    # Every run of 7 * interval days contains at least one open week.
    for _ in range(7 * interval * (count + 1)):
        if (
            Weekday(day.weekday()) in schedule.weekdays
            and (week_index(day) - anchor_week) % interval == 0
        ):
            candidate = datetime.combine(day, schedule.time_of_day, tzinfo=tz)
            if candidate > local_now:
                yield candidate
                found += 1
                if found >= count:
                    return
        day += timedelta(days=1)


def cron_expression(schedule: Schedule, weekdays: Iterable[Weekday] | None = None) -> str:
    """Five-field cron expression for the schedule's time on the given weekdays."""

    if schedule.time_of_day is None:
        raise ScheduleComputationError("Schedule has no time of day")
    days = sorted(set(weekdays if weekdays is not None else schedule.weekdays))
    if not days:
        raise ScheduleComputationError("Schedule has no weekdays")
    # cron counts Sunday as 0.
    dow = ",".join(str(value) for value in sorted((day + 1) % 7 for day in days))
    return f"{schedule.time_of_day.minute} {schedule.time_of_day.hour} * * {dow}"


def next_fire(cron_expr: str, tz: tzinfo, after: datetime) -> datetime:
    """Next local fire time of ``cron_expr`` strictly after ``after``."""

    local_after = _aware(after).astimezone(tz)
    try:
        iterator = croniter(cron_expr, local_after)
    except ValueError as exc:
        raise ScheduleComputationError(f"Invalid cron expression {cron_expr!r}: {exc}") from exc
    nxt = iterator.get_next(datetime)
    if nxt.tzinfo is None:
        return nxt.replace(tzinfo=tz)
    return nxt.astimezone(tz)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
