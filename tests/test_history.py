from datetime import datetime, timedelta, timezone

from birthday_sync.cache_store import LocalCacheStore
from birthday_sync.history import (
    KIND_BIRTHDAY_ADDED,
    KIND_BIRTHDAY_TODAY,
    KIND_REMINDER_1D,
    KIND_REMINDER_7D,
    KIND_SYSTEM_INFO,
    HistoryEntry,
    NotificationHistory,
    format_age,
    format_history,
    split_correlation_id,
)
from birthday_sync.storage import JsonFileStorage


def _history(storage: JsonFileStorage, cache: LocalCacheStore, clock, limit: int = 100) -> NotificationHistory:
    return NotificationHistory(storage, cache, clock=clock, limit=limit)


def test_entries_are_listed_newest_first(storage, cache, clock) -> None:
    history = _history(storage, cache, clock)
    history.add("u1", KIND_BIRTHDAY_ADDED, "Sam was added", record_id="srv_1")
    clock.advance(timedelta(minutes=5))
    history.add("u1", KIND_REMINDER_7D, "Sam in a week", record_id="srv_1")

    entries = history.list_entries("u1")

    assert [entry.message for entry in entries] == ["Sam in a week", "Sam was added"]
    assert entries[0].id.startswith("notif_")
    assert entries[0].id != entries[1].id
    assert history.list_entries("u2") == []


def test_history_is_capped_at_limit(storage, cache, clock) -> None:
    history = _history(storage, cache, clock, limit=3)
    for index in range(5):
        history.add("u1", KIND_SYSTEM_INFO, f"message {index}")

    assert [entry.message for entry in history.list_entries("u1")] == ["message 4", "message 3", "message 2"]


def test_read_state_and_unread_count(storage, cache, clock) -> None:
    history = _history(storage, cache, clock)
    first = history.add("u1", KIND_BIRTHDAY_ADDED, "Sam was added")
    history.add("u1", KIND_BIRTHDAY_ADDED, "Ana was added")

    assert history.unread_count("u1") == 2
    assert history.mark_read("u1", first.id) is True
    assert history.mark_read("u1", "notif_missing") is False
    assert history.unread_count("u1") == 1

    assert history.mark_all_read("u1") == 1
    assert history.mark_all_read("u1") == 0
    assert history.unread_count("u1") == 0


def test_delete_and_clear(storage, cache, clock) -> None:
    history = _history(storage, cache, clock)
    entry = history.add("u1", KIND_BIRTHDAY_ADDED, "Sam was added")
    history.add("u1", KIND_BIRTHDAY_ADDED, "Ana was added")

    assert history.delete("u1", entry.id) is True
    assert history.delete("u1", entry.id) is False
    assert [item.message for item in history.list_entries("u1")] == ["Ana was added"]

    history.clear("u1")

    assert history.list_entries("u1") == []


def test_filter_by_kind_and_age(storage, cache, clock) -> None:
    history = _history(storage, cache, clock)
    history.add("u1", KIND_BIRTHDAY_TODAY, "Old birthday")
    clock.advance(timedelta(days=3))
    history.add("u1", KIND_REMINDER_1D, "Tomorrow")
    history.add("u1", KIND_BIRTHDAY_TODAY, "Today")

    assert [entry.message for entry in history.list_entries("u1", kind=KIND_BIRTHDAY_TODAY)] == [
        "Today",
        "Old birthday",
    ]
    assert [entry.message for entry in history.list_entries("u1", within=timedelta(days=1))] == [
        "Today",
        "Tomorrow",
    ]


def test_unreadable_history_reads_as_empty(storage, cache, clock) -> None:
    storage.write_key("notification_history:u1", "not json")
    history = _history(storage, cache, clock)

    assert history.list_entries("u1") == []
    assert history.unread_count("u1") == 0


def test_split_correlation_id_maps_offsets_to_kinds() -> None:
    assert split_correlation_id("srv_1:7d") == ("srv_1", KIND_REMINDER_7D)
    assert split_correlation_id("srv_1:1d") == ("srv_1", KIND_REMINDER_1D)
    assert split_correlation_id("temp_1:2:day-of") == ("temp_1:2", KIND_BIRTHDAY_TODAY)
    assert split_correlation_id("srv_1:weekly") == ("srv_1", KIND_SYSTEM_INFO)
    assert split_correlation_id("maintenance") == (None, KIND_SYSTEM_INFO)


def test_format_age() -> None:
    now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

    assert format_age(now - timedelta(seconds=30), now) == "Just now"
    assert format_age(now - timedelta(minutes=12), now) == "12m ago"
    assert format_age(now - timedelta(hours=5), now) == "5h ago"
    assert format_age(now - timedelta(days=2), now) == "2d ago"
    assert format_age(now - timedelta(days=9), now) == "2025-03-01"


def test_format_history_marks_unread_entries() -> None:
    now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
    entries = [
        HistoryEntry(id="a", kind=KIND_BIRTHDAY_TODAY, message="Sam turns 35 today", created_at=now),
        HistoryEntry(
            id="b",
            kind=KIND_BIRTHDAY_ADDED,
            message="Ana was added",
            created_at=now - timedelta(hours=2),
            read=True,
        ),
    ]

    assert format_history([], now) == "No notifications yet."
    assert format_history(entries, now) == (
        "Notifications (2)\n"
        "🎂 Just now (new): Sam turns 35 today\n"
        "🎉 2h ago: Ana was added"
    )
