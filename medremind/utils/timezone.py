from datetime import datetime, date, time, timezone as dt_timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

logger = logging.getLogger(__name__)

UTC = dt_timezone.utc


def get_zoneinfo(tz_name: Optional[str]) -> dt_timezone | ZoneInfo:
    """
    Resolve an IANA time zone name. Unknown or empty names fall back to UTC
    so a bad profile value never stops reminders from being computed.
    """
    if not tz_name or tz_name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r}, falling back to UTC")
        return UTC


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_utc_aware(dt: datetime | None) -> datetime | None:
    """
    Normalize any datetime to UTC-aware (tzinfo=UTC).
    - Aware datetimes are converted to UTC
    - Naive datetimes are assumed UTC and tz attached
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_local(dt: datetime, tz) -> datetime:
    """Convert a datetime (naive means UTC) to the given zone."""
    return to_utc_aware(dt).astimezone(tz)


def combine_local(day: date, hour: int, minute: int, tz) -> datetime:
    """Wall-clock time on a local calendar day, as a UTC-aware instant."""
    return datetime.combine(day, time(hour=hour, minute=minute), tzinfo=tz).astimezone(UTC)


def parse_instant(value: str | datetime) -> datetime:
    """Parse an ISO timestamp (accepts both Z and +00:00) into UTC-aware."""
    if isinstance(value, datetime):
        return to_utc_aware(value)
    return to_utc_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))


def instant_token(dt: datetime) -> str:
    """Compact UTC stamp used inside deterministic keys, e.g. 20250101T080000Z."""
    return to_utc_aware(dt).strftime("%Y%m%dT%H%M%SZ")
