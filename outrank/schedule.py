"""
Weekly scan schedules.

A subscription's schedule is a (weekday, hour) pair in its own IANA timezone.
Weekdays are 0=Sunday .. 6=Saturday; hours 0..23. Unset fields fall back to
Monday 9am Australia/Sydney.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from . import config
from .errors import ScheduleValidationError
from .models import DomainSubscription

logger = logging.getLogger(__name__)


def _zone(tz: str) -> Optional[ZoneInfo]:
    if not tz or not isinstance(tz, str):
        return None
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def get_local_time(now_utc: datetime, tz: str) -> Tuple[int, int]:
    """(weekday 0=Sunday, hour) of `now_utc` in `tz`; an unknown tz gives Monday 9am."""
    zone = _zone(tz)
    if zone is None:
        logger.warning("Invalid timezone %r, using defaults", tz)
        return config.INVALID_TIMEZONE_FALLBACK

    if now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=timezone.utc)
    local = now_utc.astimezone(zone)
    return local.isoweekday() % 7, local.hour


def effective_schedule(sub: DomainSubscription) -> Tuple[int, int, str]:
    day = sub.scan_schedule_day if sub.scan_schedule_day is not None else config.DEFAULT_SCHEDULE_DAY
    hour = sub.scan_schedule_hour if sub.scan_schedule_hour is not None else config.DEFAULT_SCHEDULE_HOUR
    return day, hour, sub.scan_timezone or config.DEFAULT_SCAN_TIMEZONE


def is_due(sub: DomainSubscription, now_utc: datetime) -> bool:
    day, hour, tz = effective_schedule(sub)
    return get_local_time(now_utc, tz) == (day, hour)


def utc_hour_key(now_utc: datetime) -> str:
    """Dispatch idempotence key: the UTC hour, e.g. '2026-10-18T22:00Z'."""
    if now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=timezone.utc)
    return now_utc.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:00Z")


def validate_schedule(day: object, hour: object, tz: object) -> Tuple[int, int, str]:
    if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
        raise ScheduleValidationError(f"scan_schedule_day must be an integer 0..6 (0=Sunday), got {day!r}")
    if isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour <= 23:
        raise ScheduleValidationError(f"scan_schedule_hour must be an integer 0..23, got {hour!r}")
    if not isinstance(tz, str) or not tz.strip() or len(tz) > 100:
        raise ScheduleValidationError(f"scan_timezone must be a non-empty IANA name, got {tz!r}")
    if _zone(tz.strip()) is None:
        raise ScheduleValidationError(f"Invalid timezone: {tz}")
    return day, hour, tz.strip()


def update_scan_schedule(repo, subscription_id: str, day: object, hour: object, tz: object) -> Tuple[int, int, str]:
    """Validate first; nothing is written unless all three fields are good."""
    day, hour, tz = validate_schedule(day, hour, tz)
    repo.update_subscription_schedule(subscription_id, day, hour, tz)
    logger.info("Schedule for subscription %s set to day=%s hour=%s tz=%s", subscription_id, day, hour, tz)
    return day, hour, tz
