from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import time, timedelta
from pathlib import Path

from birthday_sync.date_logic import ALLOWED_LEAP_DAY_RULES, parse_time_of_day
from birthday_sync.scheduler import DEFAULT_REMINDER_TIMES


@dataclass(frozen=True)
class Settings:
    telegram_bot_token: str
    telegram_allowed_user_id: int
    telegram_allowed_chat_id: int
    local_storage_path: Path
    remote_store_path: Path
    timezone: str | None
    leap_day_rule: str
    cache_ttl: timedelta
    storage_quota_bytes: int | None
    reminder_times: dict[int, time]
    connectivity_check_seconds: int


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        raise ValueError(f"Missing required environment variable: {name}")
    return value.strip()


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def parse_reminder_times(value: str) -> dict[int, time]:
    """Parse ``7=09:00,1=18:00,0=08:00``; offsets left out keep their defaults."""
    times = dict(DEFAULT_REMINDER_TIMES)
    for token in value.split(","):
        cleaned = token.strip()
        if not cleaned:
            continue
        offset, _, at = cleaned.partition("=")
        if not offset.strip().isdigit() or int(offset) not in DEFAULT_REMINDER_TIMES:
            raise ValueError(f"REMINDER_TIMES offsets must be one of {sorted(DEFAULT_REMINDER_TIMES)}")
        times[int(offset)] = parse_time_of_day(at)
    return times


def load_settings() -> Settings:
    root = Path.cwd()

    token = _required_env("TELEGRAM_BOT_TOKEN")
    allowed_user_id = int(_required_env("TELEGRAM_ALLOWED_USER_ID"))
    allowed_chat_id = int(_required_env("TELEGRAM_ALLOWED_CHAT_ID"))

    leap_day_rule = (_optional_env("LEAP_DAY_RULE") or "feb28").lower()
    if leap_day_rule not in ALLOWED_LEAP_DAY_RULES:
        raise ValueError(f"LEAP_DAY_RULE must be one of {sorted(ALLOWED_LEAP_DAY_RULES)}")

    cache_ttl_hours = float(_optional_env("CACHE_TTL_HOURS") or 24)
    if cache_ttl_hours <= 0:
        raise ValueError("CACHE_TTL_HOURS must be positive")

    quota = _optional_env("STORAGE_QUOTA_BYTES")
    connectivity_check_seconds = int(_optional_env("CONNECTIVITY_CHECK_SECONDS") or 60)
    if connectivity_check_seconds <= 0:
        raise ValueError("CONNECTIVITY_CHECK_SECONDS must be positive")

    return Settings(
        telegram_bot_token=token,
        telegram_allowed_user_id=allowed_user_id,
        telegram_allowed_chat_id=allowed_chat_id,
        local_storage_path=Path(os.getenv("LOCAL_STORAGE_PATH", root / "data" / "local_storage.json")),
        remote_store_path=Path(os.getenv("REMOTE_STORE_PATH", root / "data" / "birthdays.json")),
        timezone=_optional_env("TIMEZONE"),
        leap_day_rule=leap_day_rule,
        cache_ttl=timedelta(hours=cache_ttl_hours),
        storage_quota_bytes=int(quota) if quota is not None else None,
        reminder_times=parse_reminder_times(_optional_env("REMINDER_TIMES") or ""),
        connectivity_check_seconds=connectivity_check_seconds,
    )
