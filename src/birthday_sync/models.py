from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Union

TEMP_ID_PREFIX = "temp_"
REMINDER_OFFSETS = (7, 1, 0)
DEFAULT_RELATION = "Friend"
DEFAULT_AVATAR = "🎂"

PAYLOAD_FIELDS = ("name", "date", "relation", "avatar")


class BirthdayNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class BirthdayRecord:
    id: str
    owner_id: str
    name: str
    date: str
    relation: str = DEFAULT_RELATION
    avatar: str = DEFAULT_AVATAR
    optimistic: bool = False
    reminder_handles: tuple[str, ...] = ()
    reminders_for: str | None = None


@dataclass(frozen=True)
class CacheEntry:
    records: list[BirthdayRecord]
    cached_at: datetime | None
    is_stale: bool


@dataclass(frozen=True)
class CreateOperation:
    payload: Mapping[str, str]
    optimistic_id: str


@dataclass(frozen=True)
class UpdateOperation:
    target_id: str
    payload: Mapping[str, str]


@dataclass(frozen=True)
class DeleteOperation:
    target_id: str


SyncOperation = Union[CreateOperation, UpdateOperation, DeleteOperation]


@dataclass(frozen=True)
class SyncQueueItem:
    id: str
    owner_id: str
    operation: SyncOperation
    enqueued_at: datetime
    retry_count: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class DrainResult:
    synced: int = 0
    failed: int = 0
    remaining: int = 0
    dropped: int = 0
    skipped: bool = False
    reason: str | None = None
    reconciled: dict[str, str] = field(default_factory=dict)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_temporary_id(now: datetime) -> str:
    millis = int(now.timestamp() * 1000)
    return f"{TEMP_ID_PREFIX}{millis}_{uuid.uuid4().hex[:9]}"


def is_temporary_id(record_id: str) -> bool:
    return record_id.startswith(TEMP_ID_PREFIX)


def record_payload(record: BirthdayRecord) -> dict[str, str]:
    """Fields that are written to the remote datastore."""
    return {name: getattr(record, name) for name in PAYLOAD_FIELDS}


def record_to_dict(record: BirthdayRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "ownerId": record.owner_id,
        "name": record.name,
        "date": record.date,
        "relation": record.relation,
        "avatar": record.avatar,
        "_optimistic": record.optimistic,
        "reminderHandles": list(record.reminder_handles),
        "remindersFor": record.reminders_for,
    }


def record_from_dict(data: Mapping[str, Any]) -> BirthdayRecord:
    handles = data.get("reminderHandles") or []
    reminders_for = data.get("remindersFor")
    return BirthdayRecord(
        id=str(data["id"]),
        owner_id=str(data["ownerId"]),
        name=str(data["name"]),
        date=str(data["date"]),
        relation=str(data.get("relation") or DEFAULT_RELATION),
        avatar=str(data.get("avatar") or DEFAULT_AVATAR),
        optimistic=bool(data.get("_optimistic", False)),
        reminder_handles=tuple(str(handle) for handle in handles),
        reminders_for=str(reminders_for) if reminders_for else None,
    )


def operation_to_dict(operation: SyncOperation) -> dict[str, Any]:
    if isinstance(operation, CreateOperation):
        return {
            "type": "create",
            "payload": dict(operation.payload),
            "optimisticId": operation.optimistic_id,
        }
    if isinstance(operation, UpdateOperation):
        return {"type": "update", "targetId": operation.target_id, "payload": dict(operation.payload)}
    return {"type": "delete", "targetId": operation.target_id}


def operation_from_dict(data: Mapping[str, Any]) -> SyncOperation:
    kind = data.get("type")
    if kind == "create":
        return CreateOperation(payload=dict(data["payload"]), optimistic_id=str(data["optimisticId"]))
    if kind == "update":
        return UpdateOperation(target_id=str(data["targetId"]), payload=dict(data["payload"]))
    if kind == "delete":
        return DeleteOperation(target_id=str(data["targetId"]))
    raise ValueError(f"Unknown sync operation type: {kind!r}")


def operation_kind(operation: SyncOperation) -> str:
    if isinstance(operation, CreateOperation):
        return "create"
    if isinstance(operation, UpdateOperation):
        return "update"
    return "delete"


def operation_record_id(operation: SyncOperation) -> str:
    """Id of the record an operation acts on (the optimistic id for creates)."""
    if isinstance(operation, CreateOperation):
        return operation.optimistic_id
    return operation.target_id
