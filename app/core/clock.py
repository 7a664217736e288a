import os
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DAILY_LOG_USE_USER_TIMEZONE = os.getenv("DAILY_LOG_USE_USER_TIMEZONE", "false").strip().lower() in {
    "1",
    "true",
    "yes",
}


def utcnow() -> datetime:
    # SQLite drops tzinfo on write, so rows hold naive UTC timestamps.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def calendar_day(user_timezone: Optional[str] = None, now: Optional[datetime] = None) -> date:
    """Return the calendar day used to bucket a daily log.

    Without a timezone the day is taken in UTC. Unknown zone names fall back
    to UTC rather than failing the request.
    """
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    if not user_timezone:
        return current.astimezone(timezone.utc).date()
    try:
        zone = ZoneInfo(user_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        zone = timezone.utc
    return current.astimezone(zone).date()


def log_day(
    user_timezone: Optional[str],
    now: Optional[datetime] = None,
    use_user_timezone: Optional[bool] = None,
) -> date:
    # Writers and readers of daily logs must agree on which day "today" is.
    if use_user_timezone is None:
        use_user_timezone = DAILY_LOG_USE_USER_TIMEZONE
    return calendar_day(user_timezone if use_user_timezone else None, now)
