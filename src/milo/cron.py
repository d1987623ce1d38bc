"""Schedule calculation for scheduled jobs (5-field cron and one-time runs)."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

logger = logging.getLogger("milo.cron")

# Give up looking for an occurrence after this much wall-clock time
SCAN_HORIZON = timedelta(days=366)

# Repeated local hours: start this far back so both passes are seen
_FOLD_SLACK = timedelta(hours=2)

SCHEDULE_TYPES = ("once", "cron")

_FIELD_NAMES = ("minute", "hour", "day-of-month", "month", "day-of-week")
_FIELD_MAX = (59, 23, 31, 12, 7)

# Numbers, ranges, wildcards and steps only: no names, L, W or #
_ITEM_RE = re.compile(r"^(\*|(\d+)(?:-(\d+))?)(?:/(\d+))?$")

_EVERY_HOUR = ("*", "*/1", "0-23")


class ScheduleParseError(ValueError):
    """Malformed schedule, or no occurrence reachable within the scan horizon."""


@dataclass(frozen=True)
class CronSchedule:
    """A validated cron expression, normalized for croniter."""
    expression: str
    every_hour: bool

    def matches(self, dt: datetime) -> bool:
        """True if the wall-clock time of ``dt`` matches every field."""
        return croniter.match(self.expression, dt.replace(tzinfo=None), day_or=False)


def _check_field(raw: str, index: int, expression: str) -> str:
    """Reject syntax croniter would accept but standard cron does not.

    Returns the field with ``n/step`` rewritten as ``n-max/step``.
    """
    name = _FIELD_NAMES[index]
    items = []
    for item in raw.split(","):
        m = _ITEM_RE.match(item)
        if not m:
            raise ScheduleParseError(
                f"Invalid item {item!r} in {name} field of cron expression {expression!r}"
            )
        _, start, end, step = m.groups()
        if step is not None and int(step) == 0:
            raise ScheduleParseError(
                f"Step must be positive in {name} field of cron expression {expression!r}"
            )
        if end is not None and int(start) > int(end):
            raise ScheduleParseError(
                f"Reversed range {item!r} in {name} field of cron expression {expression!r}"
            )
        if start is not None and end is None and step is not None:
            # "5/15" means every 15 starting at 5
            item = f"{start}-{_FIELD_MAX[index]}/{step}"
        items.append(item)
    return ",".join(items)


@lru_cache(maxsize=256)
def parse_cron_expression(expression: str) -> CronSchedule:
    """Parse a standard 5-field cron expression.

    Raises ScheduleParseError on a wrong field count or any malformed field.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ScheduleParseError("Cron expression is empty")

    parts = expression.split()
    if len(parts) != 5:
        raise ScheduleParseError(
            f"Cron expression must have exactly 5 fields, got {len(parts)}: {expression!r}"
        )

    fields = [_check_field(raw, i, expression) for i, raw in enumerate(parts)]
    normalized = " ".join(fields)
    try:
        croniter(normalized, datetime(2000, 1, 1), day_or=False)
    except (CroniterError, ValueError) as e:
        raise ScheduleParseError(f"Invalid cron expression {expression!r}: {e}") from e

    return CronSchedule(expression=normalized, every_hour=fields[1] in _EVERY_HOUR)


def validate_cron_expression(expression: str) -> None:
    """Raise ScheduleParseError unless the expression parses and fires within a year."""
    next_cron_run(parse_cron_expression(expression), datetime.now(timezone.utc), ZoneInfo("UTC"))


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleParseError(f"Unknown timezone: {name!r}") from e


def _to_wall(instant: datetime, tz: ZoneInfo | None) -> datetime:
    local = instant.astimezone(tz) if tz is not None else instant.astimezone()
    return local.replace(tzinfo=None)


def _to_utc(wall: datetime, tz: ZoneInfo | None, fold: int = 0) -> datetime:
    # Naive datetimes convert through the host's local time
    local = wall.replace(fold=fold) if tz is None else wall.replace(tzinfo=tz, fold=fold)
    return local.astimezone(timezone.utc)


def _wall_instants(wall: datetime, tz: ZoneInfo | None, every_hour: bool) -> list[datetime]:
    """UTC instants at which the local clock reads ``wall``.

    Empty for a time skipped by a DST jump. A time repeated when clocks go
    back yields its second instant only for schedules that run every hour.
    """
    first = _to_utc(wall, tz)
    if _to_wall(first, tz) != wall:
        return []
    second = _to_utc(wall, tz, fold=1)
    if second != first and every_hour:
        return sorted((first, second))
    return [first]


def next_cron_run(
    schedule: CronSchedule,
    from_time: datetime,
    tz: ZoneInfo | None = None,
) -> datetime:
    """
    Find the first minute strictly after ``from_time`` matching ``schedule``.

    Calendar fields are evaluated in ``tz``; ``None`` means the host's local
    timezone. The result is an aware UTC datetime.
    """
    if from_time.tzinfo is None:
        from_time = from_time.replace(tzinfo=timezone.utc)
    from_time = from_time.astimezone(timezone.utc)
    limit = from_time + SCAN_HORIZON

    # croniter walks local wall-clock times; each maps to zero, one or two instants
    walls = croniter(schedule.expression, _to_wall(from_time, tz) - _FOLD_SLACK, day_or=False)
    deferred: list[datetime] = []
    try:
        while True:
            wall = walls.get_next(datetime)
            instants = _wall_instants(wall, tz, schedule.every_hour)
            if not instants:
                continue
            if deferred and deferred[0] <= instants[0]:
                return deferred[0]
            if instants[0] > limit:
                break
            if instants[0] > from_time:
                return instants[0]
            deferred = sorted(deferred + [i for i in instants[1:] if i > from_time])
    except CroniterError as e:
        raise ScheduleParseError(
            f"Cron expression {schedule.expression!r} has no occurrence: {e}"
        ) from e

    raise ScheduleParseError(
        f"Cron expression {schedule.expression!r} has no occurrence within "
        f"{SCAN_HORIZON.days} days of {from_time.isoformat()}"
    )


def next_run(
    schedule_type: str,
    run_at: datetime | None = None,
    cron_expression: str | None = None,
    timezone_name: str | None = "UTC",
    from_time: datetime | None = None,
    use_job_timezone: bool = True,
) -> datetime:
    """
    Compute when a job should next fire.

    - ``once``: returns ``run_at`` unchanged, whatever ``from_time`` is.
    - ``cron``: first matching minute strictly after ``from_time`` (default now).

    Args:
        use_job_timezone: Evaluate cron fields in ``timezone_name``. When False
            they are evaluated in the host's local timezone.

    Raises:
        ScheduleParseError: unknown schedule type, missing fields, malformed
            expression, or no occurrence within the scan horizon.
    """
    if schedule_type == "once":
        if run_at is None:
            raise ScheduleParseError("One-time schedule requires run_at")
        return run_at

    if schedule_type == "cron":
        if not cron_expression:
            raise ScheduleParseError("Cron schedule requires cron_expression")
        schedule = parse_cron_expression(cron_expression)
        tz = resolve_timezone(timezone_name) if use_job_timezone else None
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        result = next_cron_run(schedule, from_time, tz)
        logger.debug(
            "next_run(%r, tz=%s) from %s -> %s",
            cron_expression, timezone_name if use_job_timezone else "host", from_time, result,
        )
        return result

    raise ScheduleParseError(f"Unknown schedule type: {schedule_type!r}")
