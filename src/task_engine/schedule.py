"""
Schedule calculation.

Pure functions: the caller always supplies the reference instant, nothing here
reads the clock. Recurring schedules are evaluated on local wall-clock time in
the schedule's own timezone and converted back to UTC. Wall-clock times that do
not exist (spring-forward gap) are skipped; wall-clock times that occur twice
(fall-back overlap) resolve to their first occurrence only.
"""
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter, CroniterBadCronError, CroniterBadDateError

from task_engine.domain.task import (
    OneTimeSchedule,
    RecurringSchedule,
    TriggerEvent,
    TriggerSchedule,
    ensure_utc,
)
from task_engine.errors import ScheduleParseError

ScheduleVariant = Union[OneTimeSchedule, RecurringSchedule, TriggerSchedule]

# Upper bound on consecutive cron matches rejected for falling in a DST gap,
# before start_time, or at/before the reference instant.
_MAX_CANDIDATES = 1000


def load_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleParseError(name, f"unknown timezone ({e})") from e


def validate_cron_expression(expression: str) -> None:
    """
    Reject anything but a five-field cron expression croniter understands.

    Raises:
        ScheduleParseError: If the expression is malformed.
    """
    fields = expression.split()
    if len(fields) == 6:
        raise ScheduleParseError(expression, "cron expressions with seconds are not supported")
    if len(fields) != 5:
        raise ScheduleParseError(expression, f"expected 5 fields, got {len(fields)}")
    if not croniter.is_valid(expression):
        raise ScheduleParseError(expression, "not a valid cron expression")


def validate_schedule(schedule: ScheduleVariant, reference_time: datetime) -> None:
    """
    Validate a schedule at task-creation time so evaluation never has to fail.

    Raises:
        ScheduleParseError: If the schedule can never be evaluated.
    """
    if isinstance(schedule, RecurringSchedule):
        validate_cron_expression(schedule.cron_expression)
        tz = load_timezone(schedule.timezone)
        if schedule.start_time and schedule.end_time and schedule.end_time <= schedule.start_time:
            raise ScheduleParseError(schedule.cron_expression, "end_time must be after start_time")
        try:
            croniter(schedule.cron_expression, reference_time.astimezone(tz).replace(tzinfo=None)).get_next(datetime)
        except (CroniterBadCronError, CroniterBadDateError) as e:
            raise ScheduleParseError(schedule.cron_expression, str(e)) from e
    elif isinstance(schedule, TriggerSchedule):
        if not schedule.source.strip():
            raise ScheduleParseError(schedule.source, "trigger source must not be empty")


def compute_next_run(
    schedule: ScheduleVariant,
    reference_time: datetime,
    timezone: Optional[str] = None,
) -> Optional[datetime]:
    """
    Compute the next due instant strictly after reference_time.

    Args:
        schedule: The task's schedule.
        reference_time: The instant to compute from.
        timezone: Overrides the schedule's own timezone for recurring schedules.

    Returns:
        Optional[datetime]: The next due instant in UTC, or None when the
        schedule has no future run (one-time at/before reference_time, recurring
        past its end_time, or any trigger schedule).
    """
    reference_time = ensure_utc(reference_time)

    if isinstance(schedule, OneTimeSchedule):
        return schedule.run_at if schedule.run_at > reference_time else None

    if isinstance(schedule, RecurringSchedule):
        return _next_recurring_run(schedule, reference_time, timezone or schedule.timezone)

    return None


def initial_next_run(schedule: ScheduleVariant, reference_time: datetime) -> Optional[datetime]:
    """
    The first nextRunAt of a freshly activated task. Unlike compute_next_run, an
    overdue one-time schedule is due immediately rather than never.
    """
    if isinstance(schedule, OneTimeSchedule):
        return schedule.run_at
    return compute_next_run(schedule, reference_time)


def matches_trigger(schedule: ScheduleVariant, event: TriggerEvent) -> bool:
    if not isinstance(schedule, TriggerSchedule):
        return False
    if schedule.source != event.source:
        return False
    return all(key in event.attributes and event.attributes[key] == value
               for key, value in schedule.match.items())


def _next_recurring_run(schedule: RecurringSchedule, reference_time: datetime, tz_name: str) -> Optional[datetime]:
    tz = ZoneInfo(tz_name)
    after = reference_time
    if schedule.start_time and schedule.start_time > after:
        # start_time itself may be a match
        after = schedule.start_time - timedelta(microseconds=1)

    try:
        itr = croniter(schedule.cron_expression, after.astimezone(tz).replace(tzinfo=None))
        for _ in range(_MAX_CANDIDATES):
            candidate = _resolve_wall_time(itr.get_next(datetime), tz)
            if candidate is None or candidate <= after:
                continue
            if schedule.end_time and candidate > schedule.end_time:
                return None
            return candidate
    except (CroniterBadCronError, CroniterBadDateError):
        return None
    return None


def _resolve_wall_time(wall: datetime, tz: ZoneInfo) -> Optional[datetime]:
    """
    Map a naive local wall time to a UTC instant, or None if it does not exist.
    """
    local = wall.replace(tzinfo=tz, fold=0)
    as_utc = local.astimezone(dt_timezone.utc)
    if as_utc.astimezone(tz).replace(tzinfo=None) != wall:
        return None
    return as_utc.astimezone(ZoneInfo("UTC"))