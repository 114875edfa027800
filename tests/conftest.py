from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Mapping

import pytest

from birthday_sync.cache_store import LocalCacheStore
from birthday_sync.connectivity import ConnectivityMonitor
from birthday_sync.models import BirthdayRecord
from birthday_sync.storage import JsonFileStorage


@dataclass
class FrozenClock:
    now: datetime

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@dataclass
class FakeDatastore:
    """In-memory remote datastore handing out predictable ids."""

    records: dict[str, dict[str, str]] = field(default_factory=dict)
    next_ids: list[str] = field(default_factory=list)
    fail_creates: int = 0
    fail_all: bool = False
    calls: list[tuple[str, str]] = field(default_factory=list)

    async def create_record(self, owner_id: str, payload: Mapping[str, str]) -> str:
        self.calls.append(("create", payload["name"]))
        if self.fail_all or self.fail_creates > 0:
            self.fail_creates = max(0, self.fail_creates - 1)
            raise ConnectionError("network unreachable")
        record_id = self.next_ids.pop(0) if self.next_ids else f"srv_{len(self.records) + 1}"
        self.records[record_id] = {**payload, "ownerId": owner_id}
        return record_id

    async def update_record(self, owner_id: str, record_id: str, payload: Mapping[str, str]) -> None:
        self.calls.append(("update", record_id))
        if self.fail_all:
            raise ConnectionError("network unreachable")
        if record_id not in self.records:
            raise KeyError(record_id)
        self.records[record_id].update(payload)

    async def delete_record(self, owner_id: str, record_id: str) -> None:
        self.calls.append(("delete", record_id))
        if self.fail_all:
            raise ConnectionError("network unreachable")
        self.records.pop(record_id, None)

    async def list_records(self, owner_id: str) -> list[BirthdayRecord]:
        if self.fail_all:
            raise ConnectionError("network unreachable")
        return [
            BirthdayRecord(
                id=record_id,
                owner_id=owner_id,
                name=row["name"],
                date=row["date"],
                relation=row.get("relation", "Friend"),
                avatar=row.get("avatar", "🎂"),
            )
            for record_id, row in self.records.items()
            if row["ownerId"] == owner_id
        ]


@dataclass
class FakeDelivery:
    scheduled: list[tuple[datetime, str, str]] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    fail_schedule_for: set[str] = field(default_factory=set)
    fail_cancel: bool = False

    async def schedule_at(self, fire_at: datetime, message: str, correlation_id: str) -> str:
        if any(correlation_id.endswith(suffix) for suffix in self.fail_schedule_for):
            raise RuntimeError("notification service unreachable")
        self.scheduled.append((fire_at, message, correlation_id))
        return f"handle-{len(self.scheduled)}"

    async def cancel(self, handle: str) -> None:
        if self.fail_cancel:
            raise RuntimeError("cannot cancel")
        self.cancelled.append(handle)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def storage(tmp_path: Path) -> JsonFileStorage:
    return JsonFileStorage(tmp_path / "local_storage.json")


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def cache(storage: JsonFileStorage, clock: FrozenClock) -> LocalCacheStore:
    return LocalCacheStore(storage, ttl=timedelta(hours=24), clock=clock)


@pytest.fixture
def datastore() -> FakeDatastore:
    return FakeDatastore()


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()
