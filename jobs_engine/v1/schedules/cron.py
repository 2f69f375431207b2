"""
Cron evaluation for schedules.
"""

from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from jobs_engine.v1.core.exceptions import ValidationError


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(
            f"Unknown timezone: {name}", details={"timezone": name}
        ) from None


def validate_cron(expression: str) -> str:
    """Return the normalized expression or raise ValidationError."""
    normalized = " ".join(expression.split())
    if not croniter.is_valid(normalized):
        raise ValidationError(
            f"Invalid cron expression: {expression}",
            details={"cron_expression": expression},
        )
    return normalized


def next_fire_time(expression: str, timezone: str, after: datetime) -> datetime:
    """
    First instant strictly after ``after`` matching ``expression`` in ``timezone``.

    ``after`` is treated as UTC when naive; the result is UTC-aware.
    """
    expression = validate_cron(expression)
    tz = resolve_timezone(timezone)
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)

    try:
        nxt = croniter(expression, after.astimezone(tz)).get_next(datetime)
    except (CroniterBadCronError, CroniterBadDateError) as e:
        raise ValidationError(
            f"Cron expression never fires: {expression}",
            details={"cron_expression": expression, "error": str(e)},
        ) from e
    return nxt.astimezone(UTC)
