from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable, Sequence

from birthday_sync.cache_store import LocalCacheStore
from birthday_sync.connectivity import ConnectivityProbe
from birthday_sync.models import DrainResult, utc_now
from birthday_sync.storage import KeyValueStorage
from birthday_sync.sync_queue import RetryPolicy

LOGGER = logging.getLogger(__name__)

NOTIFICATION_QUEUE_KEY_PREFIX = "notification_queue:"
MAX_NOTIFICATION_RETRIES = 3

# Reminders are best-effort, unlike birthday data.
NOTIFICATION_RETRIES = RetryPolicy(max_retries=MAX_NOTIFICATION_RETRIES)

ScheduleCallback = Callable[[str], Awaitable[bool]]


@dataclass(frozen=True)
class PendingReminder:
    record_id: str
    queued_at: datetime
    retry_count: int = 0
    last_error: str | None = None


class NotificationQueue:
    """Records whose reminders still need scheduling, one entry per record."""

    def __init__(
        self,
        storage: KeyValueStorage,
        cache: LocalCacheStore,
        connectivity: ConnectivityProbe,
        *,
        policy: RetryPolicy = NOTIFICATION_RETRIES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._cache = cache
        self._connectivity = connectivity
        self._policy = policy
        self._clock = clock

    def enqueue(self, owner_id: str, record_id: str) -> None:
        items = [item for item in self.list_items(owner_id) if item.record_id != record_id]
        items.append(PendingReminder(record_id=record_id, queued_at=self._clock()))
        self._save(owner_id, items)
        LOGGER.info("Queued reminder scheduling for %s", record_id)

    def list_items(self, owner_id: str) -> list[PendingReminder]:
        try:
            raw = self._storage.read_key(f"{NOTIFICATION_QUEUE_KEY_PREFIX}{owner_id}")
            rows = json.loads(raw) if raw is not None else []
            return [
                PendingReminder(
                    record_id=str(row["recordId"]),
                    queued_at=datetime.fromisoformat(row["queuedAt"]),
                    retry_count=int(row.get("retryCount", 0)),
                    last_error=row.get("lastError"),
                )
                for row in rows
            ]
        except (OSError, ValueError, KeyError, TypeError):
            LOGGER.warning("Notification queue for %s is unreadable, treating it as empty", owner_id)
            return []

    def discard(self, owner_id: str, record_id: str) -> None:
        items = self.list_items(owner_id)
        remaining = [item for item in items if item.record_id != record_id]
        if len(remaining) != len(items):
            self._save(owner_id, remaining)

    def retarget(self, owner_id: str, temporary_id: str, real_id: str) -> None:
        items = self.list_items(owner_id)
        if any(item.record_id == temporary_id for item in items):
            self._save(
                owner_id,
                [replace(item, record_id=real_id) if item.record_id == temporary_id else item for item in items],
            )

    async def process(self, owner_id: str, schedule: ScheduleCallback) -> DrainResult:
        queue = self.list_items(owner_id)
        if not self._connectivity.is_online():
            return DrainResult(remaining=len(queue), skipped=True, reason="offline")

        processed = 0
        failed = 0
        dropped = 0
        remaining: list[PendingReminder] = []
        for item in queue:
            try:
                succeeded = await schedule(item.record_id)
                error = None if succeeded else "scheduling reported failures"
            except Exception as exc:
                succeeded = False
                error = str(exc)

            if succeeded:
                processed += 1
                continue

            failed += 1
            retry_count = item.retry_count + 1
            if self._policy.exhausted(retry_count):
                LOGGER.error("Giving up on reminders for %s after %s attempts", item.record_id, retry_count)
                dropped += 1
                continue
            remaining.append(replace(item, retry_count=retry_count, last_error=error))

        self._save(owner_id, remaining)
        return DrainResult(synced=processed, failed=failed, remaining=len(remaining), dropped=dropped)

    def _save(self, owner_id: str, items: Sequence[PendingReminder]) -> None:
        payload = json.dumps(
            [
                {
                    "recordId": item.record_id,
                    "queuedAt": item.queued_at.isoformat(),
                    "retryCount": item.retry_count,
                    "lastError": item.last_error,
                }
                for item in items
            ]
        )
        if not self._cache.write_or_evict(f"{NOTIFICATION_QUEUE_KEY_PREFIX}{owner_id}", payload):
            LOGGER.error("Could not persist notification queue for %s", owner_id)
