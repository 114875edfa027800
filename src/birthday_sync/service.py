from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Mapping

from birthday_sync.cache_store import LocalCacheStore
from birthday_sync.connectivity import ConnectivityProbe
from birthday_sync.date_logic import InvalidBirthdayError, parse_birthday_date
from birthday_sync.history import KIND_BIRTHDAY_ADDED, NotificationHistory
from birthday_sync.models import (
    DEFAULT_AVATAR,
    DEFAULT_RELATION,
    PAYLOAD_FIELDS,
    BirthdayNotFoundError,
    BirthdayRecord,
    CreateOperation,
    DeleteOperation,
    DrainResult,
    UpdateOperation,
    is_temporary_id,
    new_temporary_id,
    operation_record_id,
    record_payload,
    utc_now,
)
from birthday_sync.notification_queue import NotificationQueue
from birthday_sync.remote import PermanentRemoteError, RecordNotFoundError, RemoteDatastore, build_remote_apply
from birthday_sync.scheduler import ReminderScheduler, ScheduleResult
from birthday_sync.sync_queue import SyncQueue

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadResult:
    records: list[BirthdayRecord]
    from_cache: bool
    error: str | None = None


@dataclass(frozen=True)
class MutationResult:
    record: BirthdayRecord
    synced: bool
    queued: bool
    rolled_back: bool = False
    reminders: ScheduleResult | None = None


@dataclass(frozen=True)
class SyncReport:
    birthdays: DrainResult
    notifications: DrainResult


@dataclass(frozen=True)
class ClearCacheResult:
    cleared: bool
    records: int = 0
    reason: str | None = None


def _validate_changes(changes: Mapping[str, str]) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for key, value in changes.items():
        if key not in PAYLOAD_FIELDS:
            raise InvalidBirthdayError(f"Unknown birthday field: {key}")
        cleaned[key] = str(value).strip()

    if "name" in cleaned and not cleaned["name"]:
        raise InvalidBirthdayError("Name must not be empty")
    if "date" in cleaned:
        parse_birthday_date(cleaned["date"])
    return cleaned


class BirthdayService:
    """Optimistic birthday mutations with offline queueing and reminder upkeep."""

    def __init__(
        self,
        *,
        cache: LocalCacheStore,
        queue: SyncQueue,
        notification_queue: NotificationQueue,
        scheduler: ReminderScheduler,
        datastore: RemoteDatastore,
        connectivity: ConnectivityProbe,
        history: NotificationHistory | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._cache = cache
        self._queue = queue
        self._notification_queue = notification_queue
        self._scheduler = scheduler
        self._datastore = datastore
        self._connectivity = connectivity
        self._history = history
        self._clock = clock

    def pending_sync_count(self, owner_id: str) -> int:
        return self._queue.pending_count(owner_id)

    def last_synced(self, owner_id: str) -> datetime | None:
        return self._cache.last_synced(owner_id)

    async def load_birthdays(self, owner_id: str, *, force_refresh: bool = False) -> LoadResult:
        cached = self._cache.get(owner_id)
        if not force_refresh and cached.records and not cached.is_stale:
            return LoadResult(records=cached.records, from_cache=True)

        if not self._connectivity.is_online():
            return LoadResult(records=cached.records, from_cache=True, error="offline")

        try:
            remote_records = await self._datastore.list_records(owner_id)
        except Exception as exc:
            LOGGER.warning("Falling back to cached birthdays for %s: %s", owner_id, exc)
            return LoadResult(records=cached.records, from_cache=True, error=str(exc))

        pending_ids = {operation_record_id(item.operation) for item in self._queue.list_items(owner_id)}
        merged = self._merge_with_local(cached.records, remote_records, pending_ids)
        self._cache.put(owner_id, merged)
        self._cache.mark_synced(owner_id)
        LOGGER.info("Fetched %s birthdays for %s", len(remote_records), owner_id)
        return LoadResult(records=merged, from_cache=False)

    async def add_birthday(
        self,
        owner_id: str,
        *,
        name: str,
        date: str,
        relation: str = DEFAULT_RELATION,
        avatar: str = DEFAULT_AVATAR,
    ) -> MutationResult:
        fields = _validate_changes({"name": name, "date": date, "relation": relation, "avatar": avatar})
        record = BirthdayRecord(
            id=new_temporary_id(self._clock()),
            owner_id=owner_id,
            optimistic=True,
            **fields,
        )
        record = self._cache.apply_optimistic(owner_id, record)

        synced = False
        if self._connectivity.is_online():
            try:
                real_id = await self._datastore.create_record(owner_id, record_payload(record))
            except Exception as exc:
                LOGGER.warning("Could not save %s remotely, queueing: %s", record.name, exc)
            else:
                self._cache.reconcile(owner_id, record.id, real_id)
                self._cache.mark_synced(owner_id)
                record = replace(record, id=real_id, optimistic=False)
                synced = True

        if not synced:
            self._queue.enqueue(owner_id, CreateOperation(payload=record_payload(record), optimistic_id=record.id))

        reminders = await self._schedule_reminders(owner_id, record, previous_handles=())
        if self._history is not None:
            self._history.add(
                owner_id,
                KIND_BIRTHDAY_ADDED,
                f"{record.name}'s birthday ({record.date}) was added.",
                record_id=record.id,
            )
        return MutationResult(record=record, synced=synced, queued=not synced, reminders=reminders)

    async def update_birthday(self, owner_id: str, record_id: str, changes: Mapping[str, str]) -> MutationResult:
        fields = _validate_changes(changes)
        existing = self._cache.find(owner_id, record_id)
        if existing is None:
            raise BirthdayNotFoundError(f"No birthday with id {record_id}")

        record = self._cache.apply_optimistic(owner_id, replace(existing, **fields))
        payload = {key: getattr(record, key) for key in fields}

        synced = False
        if self._connectivity.is_online() and not is_temporary_id(record_id):
            try:
                await self._datastore.update_record(owner_id, record_id, payload)
            except Exception as exc:
                LOGGER.warning("Could not update %s remotely, queueing: %s", record_id, exc)
            else:
                self._cache.mark_synced(owner_id)
                synced = True

        if not synced:
            self._queue.enqueue(owner_id, UpdateOperation(target_id=record_id, payload=payload))

        reminders = None
        if "date" in fields or "name" in fields:
            reminders = await self._schedule_reminders(owner_id, record, previous_handles=existing.reminder_handles)
        return MutationResult(record=record, synced=synced, queued=not synced, reminders=reminders)

    async def delete_birthday(self, owner_id: str, record_id: str) -> MutationResult:
        removed = self._cache.remove_optimistic(owner_id, record_id)
        if removed is None:
            raise BirthdayNotFoundError(f"No birthday with id {record_id}")

        if is_temporary_id(record_id):
            dropped = self._queue.discard_record(owner_id, record_id)
            LOGGER.info("Deleted unsynced birthday %s, dropped %s queued changes", record_id, dropped)
            await self._drop_reminders(owner_id, removed)
            return MutationResult(record=removed, synced=True, queued=False)

        if not self._connectivity.is_online():
            self._queue.enqueue(owner_id, DeleteOperation(target_id=record_id))
            await self._drop_reminders(owner_id, removed)
            return MutationResult(record=removed, synced=False, queued=True)

        try:
            await self._datastore.delete_record(owner_id, record_id)
        except RecordNotFoundError:
            LOGGER.info("Birthday %s was already gone remotely", record_id)
        except PermanentRemoteError as exc:
            LOGGER.error("Remote refused to delete %s, restoring it: %s", record_id, exc)
            self._cache.apply_optimistic(owner_id, removed)
            return MutationResult(record=removed, synced=False, queued=False, rolled_back=True)
        except Exception as exc:
            LOGGER.warning("Could not delete %s remotely, queueing: %s", record_id, exc)
            self._queue.enqueue(owner_id, DeleteOperation(target_id=record_id))
            await self._drop_reminders(owner_id, removed)
            return MutationResult(record=removed, synced=False, queued=True)

        self._cache.mark_synced(owner_id)
        await self._drop_reminders(owner_id, removed)
        return MutationResult(record=removed, synced=True, queued=False)

    async def sync_pending(self, owner_id: str) -> SyncReport:
        birthdays = await self._queue.drain(owner_id, build_remote_apply(self._datastore))
        for temporary_id, real_id in birthdays.reconciled.items():
            self._notification_queue.retarget(owner_id, temporary_id, real_id)
        if birthdays.synced:
            self._cache.mark_synced(owner_id)
        if birthdays.reconciled:
            await self.refresh_reminders(owner_id)

        notifications = await self._notification_queue.process(
            owner_id,
            lambda record_id: self._schedule_queued(owner_id, record_id),
        )
        return SyncReport(birthdays=birthdays, notifications=notifications)

    async def sync_if_due(self, owner_id: str) -> SyncReport | None:
        """Retry queued changes when any are pending and the last sync is older than the threshold."""
        if not self._connectivity.is_online() or not self._queue.pending_count(owner_id):
            return None
        if not self._cache.should_sync(owner_id):
            return None
        return await self.sync_pending(owner_id)

    async def clear_local_cache(self, owner_id: str) -> ClearCacheResult:
        pending = self._queue.pending_count(owner_id)
        if pending:
            return ClearCacheResult(cleared=False, reason=f"{pending} changes are still waiting to sync")
        if not self._connectivity.is_online():
            return ClearCacheResult(cleared=False, reason="offline")

        for record in self._cache.get(owner_id).records:
            await self._drop_reminders(owner_id, record)
        self._cache.clear(owner_id)
        LOGGER.info("Cleared local cache for %s", owner_id)

        loaded = await self.load_birthdays(owner_id, force_refresh=True)
        await self.refresh_reminders(owner_id, force=True)
        return ClearCacheResult(cleared=True, records=len(loaded.records), reason=loaded.error)

    async def refresh_reminders(self, owner_id: str, *, force: bool = False) -> int:
        """Reschedule reminders whose birthday occurrence has passed; returns how many were refreshed."""
        refreshed = 0
        for record in self._cache.get(owner_id).records:
            try:
                occurrence = self._scheduler.upcoming_occurrence(record).isoformat()
            except ValueError:
                LOGGER.warning("Skipping reminders for %s with unusable date %r", record.id, record.date)
                continue
            if not force and record.reminders_for == occurrence:
                continue
            await self._schedule_reminders(owner_id, record, previous_handles=record.reminder_handles)
            refreshed += 1
        return refreshed

    async def _schedule_reminders(
        self,
        owner_id: str,
        record: BirthdayRecord,
        *,
        previous_handles: tuple[str, ...],
    ) -> ScheduleResult:
        result = await self._scheduler.reschedule(record, previous_handles)
        occurrence = result.occurrence.isoformat() if result.occurrence else None
        self._cache.set_reminders(owner_id, record.id, result.handles, occurrence)
        if not result.ok:
            self._notification_queue.enqueue(owner_id, record.id)
        else:
            self._notification_queue.discard(owner_id, record.id)
        return result

    async def _schedule_queued(self, owner_id: str, record_id: str) -> bool:
        record = self._cache.find(owner_id, record_id)
        if record is None:
            return True
        result = await self._scheduler.reschedule(record, record.reminder_handles)
        occurrence = result.occurrence.isoformat() if result.occurrence else None
        self._cache.set_reminders(owner_id, record.id, result.handles, occurrence)
        return result.ok

    async def _drop_reminders(self, owner_id: str, record: BirthdayRecord) -> None:
        self._notification_queue.discard(owner_id, record.id)
        if record.reminder_handles:
            await self._scheduler.cancel(record.reminder_handles)

    @staticmethod
    def _merge_with_local(
        local: list[BirthdayRecord],
        remote: list[BirthdayRecord],
        pending_ids: set[str],
    ) -> list[BirthdayRecord]:
        by_id = {record.id: record for record in local}
        merged = [record for record in local if is_temporary_id(record.id)]
        for record in remote:
            cached = by_id.get(record.id)
            if record.id in pending_ids:
                # Local edits still waiting for sync win over the server copy.
                if cached is not None:
                    merged.append(cached)
                continue
            if cached is not None:
                record = replace(
                    record,
                    reminder_handles=cached.reminder_handles,
                    reminders_for=cached.reminders_for,
                )
            merged.append(record)
        return merged
