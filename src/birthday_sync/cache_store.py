from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Sequence

from birthday_sync.models import BirthdayRecord, CacheEntry, record_from_dict, record_to_dict, utc_now
from birthday_sync.storage import KeyValueStorage

LOGGER = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "birthdays:"
LAST_SYNC_KEY_PREFIX = "last_sync:"
DEFAULT_CACHE_TTL = timedelta(hours=24)
DEFAULT_SYNC_THRESHOLD = timedelta(minutes=5)


def cache_key(owner_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{owner_id}"


class LocalCacheStore:
    """Per-owner birthday cache on top of the local key-value medium.

    Nothing here raises to the caller. Storage problems are logged and the
    cache behaves as if it were empty.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        ttl: timedelta = DEFAULT_CACHE_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._ttl = ttl
        self._clock = clock

    def get(self, owner_id: str) -> CacheEntry:
        loaded = self._read(cache_key(owner_id))
        if loaded is None:
            return CacheEntry(records=[], cached_at=None, is_stale=True)

        records, cached_at = loaded
        is_stale = self._clock() - cached_at > self._ttl
        return CacheEntry(records=records, cached_at=cached_at, is_stale=is_stale)

    def put(self, owner_id: str, records: Sequence[BirthdayRecord]) -> bool:
        payload = json.dumps(
            {
                "cachedAt": self._clock().isoformat(),
                "records": [record_to_dict(record) for record in records],
            },
            ensure_ascii=False,
        )
        if self.write_or_evict(cache_key(owner_id), payload):
            LOGGER.debug("Cached %s birthdays for %s", len(records), owner_id)
            return True

        LOGGER.error("Failed to cache birthdays for %s", owner_id)
        return False

    def write_or_evict(self, key: str, value: str) -> bool:
        """Write a local-storage key; when refused, evict expired cache entries and retry once."""
        if self._write(key, value):
            return True

        evicted = self.evict_expired()
        LOGGER.warning("Write of %s refused, evicted %s old cache entries and retrying", key, evicted)
        return self._write(key, value)

    def find(self, owner_id: str, record_id: str) -> BirthdayRecord | None:
        for record in self.get(owner_id).records:
            if record.id == record_id:
                return record
        return None

    def apply_optimistic(self, owner_id: str, record: BirthdayRecord) -> BirthdayRecord:
        records = self.get(owner_id).records
        existing = next((item for item in records if item.id == record.id), None)
        if existing is None:
            stored = replace(record, optimistic=True)
        else:
            stored = replace(record, optimistic=existing.optimistic or record.optimistic)

        remaining = [item for item in records if item.id != record.id]
        self.put(owner_id, [stored, *remaining])
        return stored

    def remove_optimistic(self, owner_id: str, record_id: str) -> BirthdayRecord | None:
        records = self.get(owner_id).records
        removed = next((item for item in records if item.id == record_id), None)
        if removed is None:
            return None

        self.put(owner_id, [item for item in records if item.id != record_id])
        return removed

    def reconcile(self, owner_id: str, temporary_id: str, real_id: str) -> bool:
        records = self.get(owner_id).records
        if not any(item.id == temporary_id for item in records):
            return False

        kept = next((item for item in records if item.id == real_id), None)
        if kept is not None:
            # The server copy arrived first; keep it and drop the local duplicate.
            temporary = next(item for item in records if item.id == temporary_id)
            merged = replace(kept, optimistic=False)
            if temporary.reminder_handles and kept.reminder_handles:
                # Both copies have live jobs; a cleared occurrence makes the next refresh cancel all of them.
                merged = replace(
                    merged,
                    reminder_handles=(*kept.reminder_handles, *temporary.reminder_handles),
                    reminders_for=None,
                )
            elif temporary.reminder_handles:
                merged = replace(
                    merged,
                    reminder_handles=temporary.reminder_handles,
                    reminders_for=temporary.reminders_for,
                )
            updated = [merged if item.id == real_id else item for item in records if item.id != temporary_id]
        else:
            updated = [
                replace(item, id=real_id, optimistic=False) if item.id == temporary_id else item
                for item in records
            ]

        LOGGER.info("Reconciled %s -> %s for %s", temporary_id, real_id, owner_id)
        return self.put(owner_id, updated)

    def set_reminders(
        self,
        owner_id: str,
        record_id: str,
        handles: Sequence[str],
        occurrence: str | None,
    ) -> bool:
        records = self.get(owner_id).records
        if not any(item.id == record_id for item in records):
            return False

        updated = [
            replace(item, reminder_handles=tuple(handles), reminders_for=occurrence)
            if item.id == record_id
            else item
            for item in records
        ]
        return self.put(owner_id, updated)

    def clear(self, owner_id: str | None = None) -> None:
        if owner_id is not None:
            self._remove(cache_key(owner_id))
            self._remove(f"{LAST_SYNC_KEY_PREFIX}{owner_id}")
            return

        for key in self._keys():
            if key.startswith((CACHE_KEY_PREFIX, LAST_SYNC_KEY_PREFIX)):
                self._remove(key)

    def evict_expired(self) -> int:
        cutoff = self._clock() - 2 * self._ttl
        evicted = 0
        for key in self._keys():
            if not key.startswith(CACHE_KEY_PREFIX):
                continue
            loaded = self._read(key)
            if loaded is None or loaded[1] < cutoff:
                self._remove(key)
                evicted += 1
        return evicted

    def mark_synced(self, owner_id: str) -> None:
        self._write(f"{LAST_SYNC_KEY_PREFIX}{owner_id}", self._clock().isoformat())

    def last_synced(self, owner_id: str) -> datetime | None:
        try:
            raw = self._storage.read_key(f"{LAST_SYNC_KEY_PREFIX}{owner_id}")
        except OSError:
            LOGGER.exception("Could not read last sync time for %s", owner_id)
            return None
        if raw is None:
            return None
        try:
            last = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return last if last.tzinfo is not None else None

    def should_sync(self, owner_id: str, threshold: timedelta = DEFAULT_SYNC_THRESHOLD) -> bool:
        last = self.last_synced(owner_id)
        return last is None or self._clock() - last > threshold

    def _read(self, key: str) -> tuple[list[BirthdayRecord], datetime] | None:
        try:
            raw = self._storage.read_key(key)
        except OSError:
            LOGGER.exception("Could not read cache key %s", key)
            return None
        if raw is None:
            return None

        try:
            data = json.loads(raw)
            cached_at = datetime.fromisoformat(data["cachedAt"])
            if cached_at.tzinfo is None:
                raise ValueError("cachedAt has no time zone")
            records = [record_from_dict(row) for row in data["records"]]
        except (ValueError, KeyError, TypeError):
            LOGGER.warning("Discarding unreadable cache entry %s", key)
            return None
        return records, cached_at

    def _write(self, key: str, value: str) -> bool:
        try:
            return self._storage.write_key(key, value)
        except OSError:
            LOGGER.exception("Could not write cache key %s", key)
            return False

    def _remove(self, key: str) -> None:
        try:
            self._storage.remove_key(key)
        except OSError:
            LOGGER.exception("Could not remove cache key %s", key)

    def _keys(self) -> list[str]:
        try:
            return self._storage.keys()
        except OSError:
            LOGGER.exception("Could not list local storage keys")
            return []
