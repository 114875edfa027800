from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Sequence

from birthday_sync.cache_store import LocalCacheStore
from birthday_sync.models import utc_now
from birthday_sync.scheduler import OFFSET_LABELS
from birthday_sync.storage import KeyValueStorage

LOGGER = logging.getLogger(__name__)

HISTORY_KEY_PREFIX = "notification_history:"
MAX_HISTORY_ENTRIES = 100

KIND_BIRTHDAY_ADDED = "birthday_added"
KIND_REMINDER_7D = "birthday_reminder_7d"
KIND_REMINDER_1D = "birthday_reminder_1d"
KIND_BIRTHDAY_TODAY = "birthday_today"
KIND_SYSTEM_INFO = "system_info"

KIND_BY_OFFSET = {
    7: KIND_REMINDER_7D,
    1: KIND_REMINDER_1D,
    0: KIND_BIRTHDAY_TODAY,
}

KIND_ICONS = {
    KIND_BIRTHDAY_ADDED: "🎉",
    KIND_REMINDER_7D: "📅",
    KIND_REMINDER_1D: "⏰",
    KIND_BIRTHDAY_TODAY: "🎂",
    KIND_SYSTEM_INFO: "ℹ️",
}


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    kind: str
    message: str
    created_at: datetime
    read: bool = False
    record_id: str | None = None


def history_key(owner_id: str) -> str:
    return f"{HISTORY_KEY_PREFIX}{owner_id}"


def split_correlation_id(correlation_id: str) -> tuple[str | None, str]:
    """Split ``<record id>:<offset label>`` into the record id and a history kind."""
    record_id, separator, label = correlation_id.rpartition(":")
    if not separator:
        return None, KIND_SYSTEM_INFO
    for offset, offset_label in OFFSET_LABELS.items():
        if offset_label == label:
            return record_id, KIND_BY_OFFSET[offset]
    return record_id, KIND_SYSTEM_INFO


class NotificationHistory:
    """Delivered notifications per owner, newest first, with read state."""

    def __init__(
        self,
        storage: KeyValueStorage,
        cache: LocalCacheStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        limit: int = MAX_HISTORY_ENTRIES,
    ) -> None:
        self._storage = storage
        self._cache = cache
        self._clock = clock
        self._limit = limit

    def add(self, owner_id: str, kind: str, message: str, *, record_id: str | None = None) -> HistoryEntry:
        now = self._clock()
        entry = HistoryEntry(
            id=f"notif_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}",
            kind=kind,
            message=message,
            created_at=now,
            record_id=record_id,
        )
        self._save(owner_id, [entry, *self.list_entries(owner_id)][: self._limit])
        LOGGER.debug("Recorded %s notification for %s", kind, owner_id)
        return entry

    def list_entries(
        self,
        owner_id: str,
        *,
        kind: str | None = None,
        within: timedelta | None = None,
    ) -> list[HistoryEntry]:
        try:
            raw = self._storage.read_key(history_key(owner_id))
            rows = json.loads(raw) if raw is not None else []
            entries = [
                HistoryEntry(
                    id=str(row["id"]),
                    kind=str(row["kind"]),
                    message=str(row["message"]),
                    created_at=datetime.fromisoformat(row["createdAt"]),
                    read=bool(row.get("read", False)),
                    record_id=row.get("recordId"),
                )
                for row in rows
            ]
        except (OSError, ValueError, KeyError, TypeError):
            LOGGER.warning("Notification history for %s is unreadable, treating it as empty", owner_id)
            return []

        if kind is not None:
            entries = [entry for entry in entries if entry.kind == kind]
        if within is not None:
            cutoff = self._clock() - within
            entries = [entry for entry in entries if entry.created_at > cutoff]
        return entries

    def unread_count(self, owner_id: str) -> int:
        return sum(1 for entry in self.list_entries(owner_id) if not entry.read)

    def mark_read(self, owner_id: str, entry_id: str) -> bool:
        entries = self.list_entries(owner_id)
        if not any(entry.id == entry_id for entry in entries):
            return False
        return self._save(
            owner_id,
            [replace(entry, read=True) if entry.id == entry_id else entry for entry in entries],
        )

    def mark_all_read(self, owner_id: str) -> int:
        entries = self.list_entries(owner_id)
        unread = sum(1 for entry in entries if not entry.read)
        if unread:
            self._save(owner_id, [replace(entry, read=True) for entry in entries])
        return unread

    def delete(self, owner_id: str, entry_id: str) -> bool:
        entries = self.list_entries(owner_id)
        remaining = [entry for entry in entries if entry.id != entry_id]
        if len(remaining) == len(entries):
            return False
        return self._save(owner_id, remaining)

    def clear(self, owner_id: str) -> None:
        try:
            self._storage.remove_key(history_key(owner_id))
        except OSError:
            LOGGER.exception("Could not clear notification history for %s", owner_id)

    def _save(self, owner_id: str, entries: Sequence[HistoryEntry]) -> bool:
        payload = json.dumps(
            [
                {
                    "id": entry.id,
                    "kind": entry.kind,
                    "message": entry.message,
                    "createdAt": entry.created_at.isoformat(),
                    "read": entry.read,
                    "recordId": entry.record_id,
                }
                for entry in entries
            ],
            ensure_ascii=False,
        )
        if not self._cache.write_or_evict(history_key(owner_id), payload):
            LOGGER.error("Could not persist notification history for %s", owner_id)
            return False
        return True


def format_history(entries: Sequence[HistoryEntry], now: datetime) -> str:
    if not entries:
        return "No notifications yet."

    lines = [f"Notifications ({len(entries)})"]
    for entry in entries:
        marker = "" if entry.read else " (new)"
        icon = KIND_ICONS.get(entry.kind, "🔔")
        lines.append(f"{icon} {format_age(entry.created_at, now)}{marker}: {entry.message}")
    return "\n".join(lines)


def format_age(created_at: datetime, now: datetime) -> str:
    elapsed = now - created_at
    minutes = int(elapsed.total_seconds() // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if minutes < 24 * 60:
        return f"{minutes // 60}h ago"
    if elapsed.days < 7:
        return f"{elapsed.days}d ago"
    return created_at.date().isoformat()
