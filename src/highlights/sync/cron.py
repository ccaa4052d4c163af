"""Five-field cron expressions on top of APScheduler's CronTrigger.

Expressions use crontab syntax::

    minute  hour  day-of-month  month  day-of-week

Numbers, names (``jan``, ``mon``), lists, ranges and ``*/n`` steps are
accepted.  Day-of-week follows crontab numbering (0 or 7 = Sunday), which
differs from APScheduler's own numbering (0 = Monday), so that field is
expanded to explicit day names before the trigger is built.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from apscheduler.triggers.cron import CronTrigger

from src.highlights.errors import ConfigurationError

logger = logging.getLogger("marginalia.highlights.sync.cron")

_DOW_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


@dataclass(frozen=True)
class SchedulePreset:
    label: str
    value: str
    description: str


SCHEDULE_PRESETS: list[SchedulePreset] = [
    SchedulePreset("Every 15 minutes", "*/15 * * * *", "Runs at :00, :15, :30, :45"),
    SchedulePreset("Every 30 minutes", "*/30 * * * *", "Runs at :00, :30"),
    SchedulePreset("Every hour", "0 * * * *", "Runs at the top of every hour"),
    SchedulePreset("Every 6 hours", "0 */6 * * *", "Runs at midnight, 6am, noon, 6pm"),
    SchedulePreset("Daily at midnight", "0 0 * * *", "Runs once daily at 00:00"),
    SchedulePreset("Weekly on Sunday", "0 0 * * 0", "Runs every Sunday at midnight"),
]

_DESCRIPTIONS: dict[str, str] = {
    "0 * * * *": "Every hour at :00",
    "*/15 * * * *": "Every 15 minutes",
    "*/30 * * * *": "Every 30 minutes",
    "0 */6 * * *": "Every 6 hours",
    "0 0 * * *": "Daily at midnight",
    "0 0 * * 0": "Weekly on Sunday at midnight",
}


def _dow_value(token: str, expr: str) -> int:
    token = token.strip().lower()
    if token in _DOW_NAMES:
        return _DOW_NAMES.index(token)
    try:
        value = int(token)
    except ValueError:
        raise ConfigurationError(f"Invalid day-of-week {token!r} in {expr!r}") from None
    if not 0 <= value <= 7:
        raise ConfigurationError(f"Day-of-week {value} out of range 0-7 in {expr!r}")
    return value


def _expand_day_of_week(field: str, expr: str) -> str:
    """Translate a crontab day-of-week field into APScheduler day names.

    ``"0"`` → ``"sun"``, ``"1-5"`` → ``"mon,tue,wed,thu,fri"``, ``"*"`` → ``"*"``.
    """
    if field in ("*", "?"):
        return "*"

    days: set[int] = set()
    for item in field.split(","):
        if not item:
            raise ConfigurationError(f"Empty day-of-week list item in {expr!r}")
        base, _, step_text = item.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ConfigurationError(f"Invalid day-of-week step {step_text!r} in {expr!r}")
            step = int(step_text)

        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            low, _, high = base.partition("-")
            start, end = _dow_value(low, expr), _dow_value(high, expr)
            if start > end:
                raise ConfigurationError(f"Descending day-of-week range {base!r} in {expr!r}")
        else:
            start = _dow_value(base, expr)
            end = 6 if step_text else start

        for value in range(start, end + 1, step):
            days.add(value % 7)

    return ",".join(_DOW_NAMES[d] for d in sorted(days))


def parse_cron(expr: str, tz: str = "UTC") -> CronTrigger:
    """Build a CronTrigger from a 5-field crontab expression.

    Raises:
        ConfigurationError: If the expression is malformed or out of range.
    """
    if not isinstance(expr, str) or not expr.strip():
        raise ConfigurationError("Cron schedule must not be empty")

    fields = expr.split()
    if len(fields) != 5:
        raise ConfigurationError(
            f"Cron schedule must have 5 fields (minute hour day month weekday), "
            f"got {len(fields)}: {expr!r}"
        )

    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_expand_day_of_week(day_of_week.lower(), expr),
            second=0,
            timezone=tz,
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid cron schedule {expr!r}: {exc}") from exc


def validate_cron(expr: str) -> None:
    """Raise ConfigurationError if ``expr`` is not a valid 5-field schedule."""
    parse_cron(expr)


def next_fire_time(
    expr: str | CronTrigger, now: datetime | None = None, tz: str = "UTC"
) -> datetime | None:
    """Return the first fire time at or after ``now`` (naive ``now`` is treated as UTC)."""
    trigger = expr if isinstance(expr, CronTrigger) else parse_cron(expr, tz)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return trigger.get_next_fire_time(None, now)


def describe_schedule(expr: str) -> str:
    return _DESCRIPTIONS.get(expr.strip(), f"Custom schedule: {expr}")
