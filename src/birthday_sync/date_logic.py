from __future__ import annotations

import logging
import os
from datetime import date, datetime, time, timedelta, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

LOGGER = logging.getLogger(__name__)

ALLOWED_LEAP_DAY_RULES = {"feb28", "mar1"}
LOCALTIME_PATH = Path("/etc/localtime")


class InvalidBirthdayError(ValueError):
    pass


def is_leap_year(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def parse_birthday_date(value: str) -> tuple[int, int]:
    """Return (month, day) of an ISO ``YYYY-MM-DD`` birthday."""
    try:
        parsed = date.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidBirthdayError(f"Birthday must be a valid YYYY-MM-DD date: {value!r}") from exc
    return parsed.month, parsed.day


def parse_time_of_day(value: str) -> time:
    pieces = value.strip().split(":")
    if len(pieces) != 2:
        raise ValueError("time of day must be in HH:MM format")

    hour, minute = pieces
    if not hour.isdigit() or not minute.isdigit():
        raise ValueError("time of day must contain numeric hour/minute")

    hour_i = int(hour)
    minute_i = int(minute)
    if hour_i < 0 or hour_i > 23 or minute_i < 0 or minute_i > 59:
        raise ValueError("time of day must be a valid 24-hour time")

    return time(hour_i, minute_i)


def _zone_or_none(key: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def local_timezone(localtime_path: Path = LOCALTIME_PATH) -> tzinfo:
    """The host's IANA zone, read from ``TZ`` or the ``/etc/localtime`` link.

    Always a zone with full transition rules; UTC when nothing is configured.
    """
    tz_name = os.environ.get("TZ", "").lstrip(":").strip()
    if tz_name:
        zone = _zone_or_none(tz_name)
        if zone is not None:
            return zone
        LOGGER.warning("Ignoring unknown TZ value %r", tz_name)

    if localtime_path.exists():
        parts = localtime_path.resolve().parts
        if "zoneinfo" in parts:
            index = len(parts) - 1 - parts[::-1].index("zoneinfo")
            zone = _zone_or_none("/".join(parts[index + 1 :]))
            if zone is not None:
                return zone
        try:
            with localtime_path.open("rb") as file_obj:
                return ZoneInfo.from_file(file_obj, key="localtime")
        except (OSError, ValueError):
            LOGGER.warning("Could not read zone rules from %s", localtime_path)

    LOGGER.warning("No local time zone configured, using UTC")
    return ZoneInfo("UTC")


def resolve_timezone(name: str | None) -> tzinfo:
    """Zone for reminder arithmetic; the host's local zone when no name is given."""
    if name is None or not name.strip():
        return local_timezone()
    zone = _zone_or_none(name.strip())
    if zone is None:
        raise ValueError(f"Unknown timezone: {name}")
    return zone


def birthday_date_for_year(month: int, day: int, year: int, leap_day_rule: str) -> date:
    if month == 2 and day == 29 and not is_leap_year(year):
        if leap_day_rule == "feb28":
            return date(year, 2, 28)
        if leap_day_rule == "mar1":
            return date(year, 3, 1)
        raise InvalidBirthdayError(f"Unsupported leap day rule: {leap_day_rule}")
    return date(year, month, day)


def next_occurrence(birthday: str, today: date, leap_day_rule: str = "feb28") -> date:
    month, day = parse_birthday_date(birthday)
    this_year = birthday_date_for_year(month, day, today.year, leap_day_rule)
    if this_year >= today:
        return this_year
    return birthday_date_for_year(month, day, today.year + 1, leap_day_rule)


def days_until_birthday(birthday: str, today: date, leap_day_rule: str = "feb28") -> int:
    return (next_occurrence(birthday, today, leap_day_rule) - today).days


def local_instant(day: date, at: time, zone: tzinfo) -> datetime:
    """Wall-clock ``at`` on ``day`` in ``zone``, so DST never shifts the time of day."""
    return datetime.combine(day, at, tzinfo=zone)


def days_before(day: date, offset_days: int) -> date:
    return day - timedelta(days=offset_days)
