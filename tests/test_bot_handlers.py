from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from birthday_sync.backup import StorageUsage
from birthday_sync.bot_handlers import (
    BirthdayListRow,
    _render_list_message,
    _render_status,
    build_rows,
    is_authorized,
    parse_add_arguments,
    parse_edit_arguments,
)
from birthday_sync.models import BirthdayRecord
from birthday_sync.scheduler import DEFAULT_REMINDER_TIMES
from birthday_sync.settings import Settings


def _settings() -> Settings:
    return Settings(
        telegram_bot_token="token",
        telegram_allowed_user_id=111,
        telegram_allowed_chat_id=222,
        local_storage_path=Path("data/local_storage.json"),
        remote_store_path=Path("data/birthdays.json"),
        timezone="UTC",
        leap_day_rule="feb28",
        cache_ttl=timedelta(hours=24),
        storage_quota_bytes=None,
        reminder_times=dict(DEFAULT_REMINDER_TIMES),
        connectivity_check_seconds=60,
    )


def test_parse_add_arguments_with_relation() -> None:
    assert parse_add_arguments("Nik Hold | 1990-05-14 | Colleague") == ("Nik Hold", "1990-05-14", "Colleague")


def test_parse_add_arguments_defaults_relation() -> None:
    assert parse_add_arguments("Dad | 1959-08-22") == ("Dad", "1959-08-22", "Friend")


def test_parse_add_arguments_rejects_missing_date() -> None:
    with pytest.raises(ValueError):
        parse_add_arguments("Dad")


def test_parse_edit_arguments() -> None:
    number, changes = parse_edit_arguments("2 name=Mum | Date=1961-01-30")

    assert number == 2
    assert changes == {"name": "Mum", "date": "1961-01-30"}


@pytest.mark.parametrize("raw", ["x name=Mum", "2 colour=blue", "2", "2 name"])
def test_parse_edit_arguments_rejects_bad_input(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_edit_arguments(raw)


def test_build_rows_sorts_by_soonest_and_skips_bad_dates() -> None:
    records = [
        BirthdayRecord(id="srv_1", owner_id="u1", name="Dad", date="1959-08-22", relation="Family", avatar="🎂"),
        BirthdayRecord(
            id="temp_1_abc",
            owner_id="u1",
            name="Nik Hold",
            date="1990-05-14",
            relation="Friend",
            avatar="🎂",
            optimistic=True,
        ),
        BirthdayRecord(id="srv_3", owner_id="u1", name="Broken", date="not-a-date", relation="Friend", avatar="🎂"),
    ]

    rows = build_rows(records, date(2026, 2, 22), "feb28")

    assert [row.name for row in rows] == ["Nik Hold", "Dad"]
    assert rows[0].days_until == 81
    assert rows[0].pending is True


def test_render_list_message_structured_output() -> None:
    message = _render_list_message(
        [
            BirthdayListRow(
                record_id="srv_2",
                name="Nik Hold",
                relation="Friend",
                days_until=0,
                next_date=date(2026, 5, 14),
                pending=True,
            ),
            BirthdayListRow(
                record_id="srv_1",
                name="Dad",
                relation="Family",
                days_until=100,
                next_date=date(2026, 8, 22),
                pending=False,
            ),
        ]
    )

    assert message == (
        "Tracked birthdays (2)\n"
        "Sorted by soonest:\n"
        "1. Nik Hold\n"
        "   Today | Next 2026-05-14 | Friend | Pending sync\n"
        "\n"
        "2. Dad\n"
        "   In 100d | Next 2026-08-22 | Family"
    )


@dataclass
class FakeUser:
    id: int


@dataclass
class FakeChat:
    id: int


@dataclass
class FakeUpdate:
    effective_user: FakeUser
    effective_chat: FakeChat


def test_is_authorized_true() -> None:
    update = FakeUpdate(effective_user=FakeUser(id=111), effective_chat=FakeChat(id=222))
    assert is_authorized(update, _settings()) is True


def test_is_authorized_false() -> None:
    update = FakeUpdate(effective_user=FakeUser(id=999), effective_chat=FakeChat(id=222))
    assert is_authorized(update, _settings()) is False


def test_render_status_shows_sync_time_and_storage() -> None:
    usage = StorageUsage(total_bytes=1536, breakdown={"sync_queue": 36, "cache": 1500}, quota_bytes=3072)

    message = _render_status(
        online=True,
        pending=2,
        last_synced=datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc),
        unread=4,
        usage=usage,
        zone=ZoneInfo("Europe/Berlin"),
    )

    assert message.splitlines() == [
        "Status: online",
        "Pending changes: 2",
        "Last sync: 2025-03-01 13:00",
        "Unread notifications: 4",
        "Local storage: 1.5 KB of 3.0 KB (50%)",
        "   cache: 1.5 KB",
        "   sync_queue: 36 B",
    ]


def test_render_status_before_first_sync() -> None:
    message = _render_status(
        online=False,
        pending=0,
        last_synced=None,
        unread=0,
        usage=StorageUsage(total_bytes=0, breakdown={}),
        zone=timezone.utc,
    )

    assert message == (
        "Status: offline\n"
        "Pending changes: 0\n"
        "Last sync: never\n"
        "Unread notifications: 0\n"
        "Local storage: 0 B"
    )
