from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence

from birthday_sync.cache_store import LocalCacheStore
from birthday_sync.connectivity import ConnectivityProbe
from birthday_sync.models import (
    CreateOperation,
    DeleteOperation,
    DrainResult,
    SyncOperation,
    SyncQueueItem,
    UpdateOperation,
    operation_from_dict,
    operation_kind,
    operation_record_id,
    operation_to_dict,
    utc_now,
)
from birthday_sync.storage import KeyValueStorage

LOGGER = logging.getLogger(__name__)

QUEUE_KEY_PREFIX = "sync_queue:"

RemoteApply = Callable[[str, SyncOperation], Awaitable[Optional[str]]]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int | None = None

    def exhausted(self, retry_count: int) -> bool:
        return self.max_retries is not None and retry_count >= self.max_retries


# Birthday mutations are never given up on.
UNBOUNDED_RETRIES = RetryPolicy()


def queue_key(owner_id: str) -> str:
    return f"{QUEUE_KEY_PREFIX}{owner_id}"


def _retarget(operation: SyncOperation, id_map: dict[str, str]) -> SyncOperation:
    if isinstance(operation, (UpdateOperation, DeleteOperation)) and operation.target_id in id_map:
        return replace(operation, target_id=id_map[operation.target_id])
    return operation


class SyncQueue:
    """FIFO queue of birthday mutations waiting to reach the remote datastore."""

    def __init__(
        self,
        storage: KeyValueStorage,
        cache: LocalCacheStore,
        connectivity: ConnectivityProbe,
        *,
        policy: RetryPolicy = UNBOUNDED_RETRIES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._cache = cache
        self._connectivity = connectivity
        self._policy = policy
        self._clock = clock

    def enqueue(self, owner_id: str, operation: SyncOperation) -> str:
        item = SyncQueueItem(
            id=f"{operation_kind(operation)}_{uuid.uuid4().hex[:12]}",
            owner_id=owner_id,
            operation=operation,
            enqueued_at=self._clock(),
        )
        if not self._save(owner_id, [*self.list_items(owner_id), item]):
            LOGGER.error("Could not persist queued %s for %s", operation_kind(operation), owner_id)
        else:
            LOGGER.info("Queued %s %s for %s", operation_kind(operation), item.id, owner_id)
        return item.id

    def list_items(self, owner_id: str) -> list[SyncQueueItem]:
        try:
            raw = self._storage.read_key(queue_key(owner_id))
        except OSError:
            LOGGER.exception("Could not read sync queue for %s", owner_id)
            return []
        if raw is None:
            return []

        try:
            rows = json.loads(raw)
        except ValueError:
            LOGGER.warning("Sync queue for %s is unreadable, treating it as empty", owner_id)
            return []

        items: list[SyncQueueItem] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                items.append(
                    SyncQueueItem(
                        id=str(row["id"]),
                        owner_id=str(row["ownerId"]),
                        operation=operation_from_dict(row["operation"]),
                        enqueued_at=datetime.fromisoformat(row["enqueuedAt"]),
                        retry_count=int(row.get("retryCount", 0)),
                        last_error=row.get("lastError"),
                    )
                )
            except (KeyError, TypeError, ValueError):
                LOGGER.warning("Skipping malformed sync queue entry for %s", owner_id)
        return items

    def pending_count(self, owner_id: str) -> int:
        return len(self.list_items(owner_id))

    def remove(self, owner_id: str, queue_item_id: str) -> bool:
        items = self.list_items(owner_id)
        remaining = [item for item in items if item.id != queue_item_id]
        if len(remaining) == len(items):
            return False
        return self._save(owner_id, remaining)

    def discard_record(self, owner_id: str, record_id: str) -> int:
        """Drop every queued operation for a record, returning how many were dropped."""
        items = self.list_items(owner_id)
        remaining = [item for item in items if operation_record_id(item.operation) != record_id]
        dropped = len(items) - len(remaining)
        if dropped:
            self._save(owner_id, remaining)
        return dropped

    def clear(self, owner_id: str) -> None:
        try:
            self._storage.remove_key(queue_key(owner_id))
        except OSError:
            LOGGER.exception("Could not clear sync queue for %s", owner_id)

    async def drain(self, owner_id: str, remote_apply: RemoteApply) -> DrainResult:
        snapshot = self.list_items(owner_id)
        if not self._connectivity.is_online():
            LOGGER.info("Offline, skipping sync of %s queued changes for %s", len(snapshot), owner_id)
            return DrainResult(remaining=len(snapshot), skipped=True, reason="offline")

        if not snapshot:
            return DrainResult()

        LOGGER.info("Syncing %s queued changes for %s", len(snapshot), owner_id)
        synced = 0
        failed = 0
        dropped = 0
        reconciled: dict[str, str] = {}
        unresolved: set[str] = set()

        for item in snapshot:
            operation = _retarget(item.operation, reconciled)
            if not isinstance(operation, CreateOperation) and operation.target_id in unresolved:
                LOGGER.debug("Deferring %s until %s is created", item.id, operation.target_id)
                continue

            try:
                real_id = await remote_apply(owner_id, operation)
            except Exception as exc:
                failed += 1
                if isinstance(operation, CreateOperation):
                    unresolved.add(operation.optimistic_id)
                LOGGER.warning("Failed to sync %s for %s: %s", item.id, owner_id, exc)
                if self._record_failure(owner_id, item.id, str(exc)):
                    dropped += 1
                continue

            self.remove(owner_id, item.id)
            synced += 1
            if isinstance(operation, CreateOperation) and real_id:
                reconciled[operation.optimistic_id] = real_id
                self._cache.reconcile(owner_id, operation.optimistic_id, real_id)
                self._retarget_queued(owner_id, operation.optimistic_id, real_id)

        remaining = self.pending_count(owner_id)
        LOGGER.info("Sync for %s done: %s synced, %s failed, %s remaining", owner_id, synced, failed, remaining)
        return DrainResult(
            synced=synced,
            failed=failed,
            remaining=remaining,
            dropped=dropped,
            reconciled=reconciled,
        )

    def _record_failure(self, owner_id: str, queue_item_id: str, error: str) -> bool:
        """Bump the retry count; returns True when the policy dropped the item."""
        items = self.list_items(owner_id)
        updated: list[SyncQueueItem] = []
        dropped = False
        for item in items:
            if item.id != queue_item_id:
                updated.append(item)
                continue
            retry_count = item.retry_count + 1
            if self._policy.exhausted(retry_count):
                LOGGER.error("Giving up on %s after %s attempts", item.id, retry_count)
                dropped = True
                continue
            updated.append(replace(item, retry_count=retry_count, last_error=error))
        self._save(owner_id, updated)
        return dropped

    def _retarget_queued(self, owner_id: str, temporary_id: str, real_id: str) -> None:
        items = self.list_items(owner_id)
        updated = [replace(item, operation=_retarget(item.operation, {temporary_id: real_id})) for item in items]
        if updated != items:
            self._save(owner_id, updated)

    def _save(self, owner_id: str, items: Sequence[SyncQueueItem]) -> bool:
        payload = json.dumps(
            [
                {
                    "id": item.id,
                    "ownerId": item.owner_id,
                    "operation": operation_to_dict(item.operation),
                    "enqueuedAt": item.enqueued_at.isoformat(),
                    "retryCount": item.retry_count,
                    "lastError": item.last_error,
                }
                for item in items
            ],
            ensure_ascii=False,
        )
        return self._cache.write_or_evict(queue_key(owner_id), payload)
