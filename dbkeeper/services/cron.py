from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from dbkeeper.core.errors import InvalidCronError


# Standard cron counts Sunday as 0 (and 7); APScheduler counts Monday as 0.
_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _weekday_name(token: str) -> str:
    if not token.isdigit():
        return token.lower()
    value = int(token)
    if value > 7:
        raise InvalidCronError(f"day-of-week value out of range: {token}")
    return _WEEKDAY_NAMES[value % 7]


def _translate_day_of_week(field: str) -> str:
    # Expand numeric ranges into explicit names so Sunday-based ranges never wrap.
    translated: list[str] = []
    for part in field.split(","):
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text.isdigit() else None
        if step_text and step is None:
            raise InvalidCronError(f"invalid day-of-week step: {part}")
        if base == "*" and step is None:
            translated.append("*")
            continue
        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            low, _, high = base.partition("-")
            if not (low.isdigit() and high.isdigit()):
                if step is not None:
                    raise InvalidCronError(f"step not supported for named range: {part}")
                translated.append(f"{_weekday_name(low)}-{_weekday_name(high)}")
                continue
            start, end = int(low), int(high)
        elif base.isdigit():
            start = end = int(base)
            if step is not None:
                end = 6
        else:
            translated.append(_weekday_name(base))
            continue
        if start > end or end > 7:
            raise InvalidCronError(f"invalid day-of-week range: {part}")
        names = {_weekday_name(str(value)) for value in range(start, end + 1, step or 1)}
        translated.extend(sorted(names, key=_WEEKDAY_NAMES.index))
    return ",".join(translated)


def _is_wildcard(field: str) -> bool:
    return field in ("*", "?")


def parse_cron(expression: str, tz: str = "UTC") -> list[CronTrigger]:
    """Build the triggers for a five-field cron expression.

    When both day-of-month and day-of-week are restricted, standard cron fires
    on either match, so each field gets its own trigger.
    """
    fields = expression.split()
    if len(fields) != 5:
        raise InvalidCronError(f"expected 5 fields, got {len(fields)}: {expression!r}")
    try:
        zone = ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidCronError(f"unknown timezone {tz!r}") from exc
    minute, hour, day, month, day_of_week = fields
    if _is_wildcard(day):
        day = "*"
    if _is_wildcard(day_of_week):
        day_of_week = "*"
    days = [(day, day_of_week)]
    if day != "*" and day_of_week != "*":
        days = [(day, "*"), ("*", day_of_week)]
    try:
        return [
            CronTrigger(
                minute=minute,
                hour=hour,
                day=day_field,
                month=month,
                day_of_week=_translate_day_of_week(weekday_field),
                timezone=zone,
            )
            for day_field, weekday_field in days
        ]
    except ValueError as exc:
        raise InvalidCronError(f"{expression!r}: {exc}") from exc


def next_run(expression: str, last_run: datetime, tz: str = "UTC") -> datetime:
    """Return the first fire time strictly after ``last_run``, in UTC."""
    triggers = parse_cron(expression, tz)
    if last_run.tzinfo is None:
        last_run = last_run.replace(tzinfo=timezone.utc)
    start = last_run + timedelta(microseconds=1)
    fire_times = [
        fire_time
        for fire_time in (trigger.get_next_fire_time(None, start) for trigger in triggers)
        if fire_time is not None
    ]
    if not fire_times:
        raise InvalidCronError(f"{expression!r} never fires")
    return min(fire_times).astimezone(timezone.utc)


def generate_backup_name(schedule_name: str, scheduled: datetime) -> str:
    # Deterministic per minute so concurrent evaluations collide on the same record name.
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=timezone.utc)
    return f"{schedule_name}-{scheduled.astimezone(timezone.utc).strftime('%Y%m%d-%H%M')}"
