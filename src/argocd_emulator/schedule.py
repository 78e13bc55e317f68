# ABOUTME: Sync window schedule evaluator
# ABOUTME: Parses daily "HH:MM-HH:MM" ranges and 5-field cron expressions and answers "is T inside W"

"""
Schedule evaluation for sync windows.

Two dialects are understood:

DAILY RANGE ("09:00-17:00")
    Recurs every calendar day in the reference timezone. A range whose end
    is before its start wraps midnight ("22:00-02:00" is open from 22:00 to
    02:00 the next morning). The window is half-open: the start minute is
    inside, the end minute is not. A duration, if given, is ignored. A range
    whose start equals its end ("00:00-00:00") is rejected as malformed
    rather than read as empty or as a full day; a window that is always open
    is written as a cron window ("0 0 * * *", duration 1440).

CRON ("0 22 * * 1-5")
    Five fields, minute granularity, evaluated with croniter. The window
    opens at every match and stays open for ``duration`` minutes. Without a
    duration the window is an instantaneous point and nothing is inside it.

Malformed schedules are rejected by ``parse_schedule`` when a sync window is
configured. ``is_within`` is total: it never raises for a schedule that
parsed, and it has no side effects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo

from croniter import croniter

from argocd_emulator.errors import ValidationError

_DAILY_RANGE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")


@dataclass(frozen=True)
class DailyRange:
    start: time
    end: time

    def contains(self, local: datetime) -> bool:
        current = local.time().replace(second=0, microsecond=0)
        if self.start < self.end:
            return self.start <= current < self.end
        # wraps midnight
        return current >= self.start or current < self.end


@dataclass(frozen=True)
class CronSchedule:
    expression: str

    def contains(self, local: datetime, duration_minutes: int | None) -> bool:
        if not duration_minutes:
            return False
        minute = local.replace(second=0, microsecond=0)
        last_match = croniter(self.expression, minute + timedelta(minutes=1)).get_prev(datetime)
        return last_match <= local < last_match + timedelta(minutes=duration_minutes)


Schedule = DailyRange | CronSchedule


@lru_cache(maxsize=256)
def parse_schedule(schedule: str) -> Schedule:
    """
    Parse a schedule string into one of the two dialects.

    Raises:
        ValidationError: if the string is neither a valid daily range nor a
            valid five-field cron expression.
    """
    if not schedule or not schedule.strip():
        raise ValidationError("Schedule is empty")

    match = _DAILY_RANGE.match(schedule)
    if match:
        sh, sm, eh, em = (int(g) for g in match.groups())
        if sh > 23 or eh > 23 or sm > 59 or em > 59:
            raise ValidationError(f"Invalid daily range '{schedule}'", "hours 00-23, minutes 00-59")
        start, end = time(sh, sm), time(eh, em)
        if start == end:
            raise ValidationError(f"Invalid daily range '{schedule}'", "start and end are equal")
        return DailyRange(start=start, end=end)

    fields = schedule.split()
    if len(fields) != 5 or not croniter.is_valid(schedule):
        raise ValidationError(
            f"Invalid schedule '{schedule}'",
            "expected 'HH:MM-HH:MM' or a 5-field cron expression",
        )
    return CronSchedule(expression=" ".join(fields))


@lru_cache(maxsize=32)
def resolve_timezone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def is_within(
    schedule: str,
    duration: int | None,
    now: datetime,
    tz: tzinfo | str = "UTC",
) -> bool:
    """Return True if ``now`` falls inside the window described by ``schedule``."""
    if isinstance(tz, str):
        tz = resolve_timezone(tz)
    parsed = parse_schedule(schedule)
    local = now.astimezone(tz)
    if isinstance(parsed, DailyRange):
        return parsed.contains(local)
    return parsed.contains(local, duration)
