"""
Time utilities for the protocol scheduling engine

Scheduling works on calendar dates only. Timestamps (completed_at,
created_at, ...) are timezone-aware UTC datetimes. The one place a
timezone matters is deciding what "today" is for a patient.
"""
from datetime import date, datetime, timezone
from typing import Optional, Union
import logging

import pytz

logger = logging.getLogger("time-utils")

# Default timezone for the system (UTC)
SYSTEM_TIMEZONE = timezone.utc


def now_utc() -> datetime:
    """
    Get current time in UTC

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(SYSTEM_TIMEZONE)


def resolve_timezone(tz_name: Optional[str]):
    """Look up a pytz timezone by name, falling back to UTC for unknown names"""
    if not tz_name:
        return pytz.utc
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone '{tz_name}', using UTC")
        return pytz.utc


def today_in_timezone(tz_name: Optional[str] = None) -> date:
    """
    Calendar date it currently is in the given timezone

    Args:
        tz_name: IANA timezone name (e.g. 'US/Eastern'); UTC when empty

    Returns:
        The local calendar date
    """
    return now_utc().astimezone(resolve_timezone(tz_name)).date()


def parse_iso_to_utc(iso_string: str) -> datetime:
    """
    Parse ISO datetime string to UTC datetime

    Args:
        iso_string: ISO format datetime string

    Returns:
        datetime object in UTC timezone

    Raises:
        ValueError: If the ISO string is invalid
    """
    try:
        dt = datetime.fromisoformat(iso_string)
    except ValueError as e:
        logger.error(f"Failed to parse ISO datetime string '{iso_string}': {e}")
        raise

    if dt.tzinfo is None:
        # Naive datetime, assume UTC
        return dt.replace(tzinfo=SYSTEM_TIMEZONE)
    return dt.astimezone(SYSTEM_TIMEZONE)


def parse_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    """
    Coerce an ISO string, date or datetime into a calendar date.

    Empty strings (how Redis hands back missing fields) become None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value[:10])
    except ValueError as e:
        logger.error(f"Failed to parse ISO date string '{value}': {e}")
        raise


def parse_optional_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """ISO string or datetime to a UTC datetime; empty values become None"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=SYSTEM_TIMEZONE)
    return parse_iso_to_utc(value)
