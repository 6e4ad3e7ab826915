"""
Quiet hours policy: per-user do-not-disturb window evaluated in the recipient's timezone.

Window is [start, end) on a 24h "HH:MM" clock. start >= end wraps midnight
(e.g. 22:00-06:00). A missing or malformed boundary means the user never has
quiet hours.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytz

from models import HHMM_RE

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = os.getenv("NOTIFICATION_DEFAULT_TIMEZONE", "Asia/Ho_Chi_Minh")


def _resolve_tz(tz_name: Optional[str]):
    try:
        return pytz.timezone(tz_name or DEFAULT_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown timezone {tz_name!r}, using {DEFAULT_TIMEZONE}")
        return pytz.timezone(DEFAULT_TIMEZONE)


def local_hhmm(tz_name: Optional[str], now: Optional[datetime] = None) -> str:
    """Format now (UTC by default) as HH:MM in the given timezone."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(_resolve_tz(tz_name)).strftime("%H:%M")


def in_window(now_hhmm: str, start: Optional[str], end: Optional[str]) -> bool:
    if not start or not end:
        return False
    if start < end:
        return start <= now_hhmm < end
    return now_hhmm >= start or now_hhmm < end


def _boundaries(quiet_hours):
    """(start, end) with any value that is not a 24h HH:MM replaced by None."""
    if isinstance(quiet_hours, dict):
        start, end = quiet_hours.get("start"), quiet_hours.get("end")
    else:
        start, end = quiet_hours.start, quiet_hours.end
    return tuple(v if isinstance(v, str) and HHMM_RE.match(v) else None for v in (start, end))


def is_quiet_now(quiet_hours, tz_name: Optional[str], now: Optional[datetime] = None) -> bool:
    """True if now falls inside the user's quiet window. quiet_hours is a QuietHours model, dict or None."""
    if not quiet_hours:
        return False
    start, end = _boundaries(quiet_hours)
    return in_window(local_hhmm(tz_name, now), start, end)


def quiet_window_end(quiet_hours, tz_name: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Next UTC instant at which the window closes, or None when not currently quiet."""
    if not is_quiet_now(quiet_hours, tz_name, now):
        return None
    now = now or datetime.now(timezone.utc)
    tz = _resolve_tz(tz_name)
    _, end = _boundaries(quiet_hours)
    try:
        hour, minute = (int(p) for p in end.split(":"))
        local_now = now.astimezone(tz)
        naive_end = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0, tzinfo=None)
    except (AttributeError, TypeError, ValueError) as e:
        logger.warning(f"Cannot compute quiet window end from {end!r}: {e}")
        return None
    if naive_end <= local_now.replace(tzinfo=None):
        naive_end += timedelta(days=1)
    return tz.localize(naive_end).astimezone(timezone.utc)
