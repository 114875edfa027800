from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from birthday_sync.models import (
    PAYLOAD_FIELDS,
    BirthdayRecord,
    CreateOperation,
    DeleteOperation,
    SyncOperation,
    UpdateOperation,
    record_from_dict,
    utc_now,
)
from birthday_sync.sync_queue import RemoteApply

LOGGER = logging.getLogger(__name__)


class PermanentRemoteError(Exception):
    """A remote failure that retrying will not fix."""


class RecordNotFoundError(PermanentRemoteError, LookupError):
    pass


class PermissionDeniedError(PermanentRemoteError):
    pass


class RemoteDatastore(Protocol):
    async def create_record(self, owner_id: str, payload: Mapping[str, str]) -> str: ...

    async def update_record(self, owner_id: str, record_id: str, payload: Mapping[str, str]) -> None: ...

    async def delete_record(self, owner_id: str, record_id: str) -> None: ...

    async def list_records(self, owner_id: str) -> list[BirthdayRecord]: ...


class JsonFileDatastore:
    """Shared birthday datastore kept in a JSON file, e.g. on a synced or mounted drive."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._path = path
        self._clock = clock

    async def create_record(self, owner_id: str, payload: Mapping[str, str]) -> str:
        data = self._load()
        record_id = f"srv_{uuid.uuid4().hex[:12]}"
        now = self._clock().isoformat()
        owner_records = data.setdefault(owner_id, {})
        owner_records[record_id] = {
            **_clean_payload(payload),
            "createdAt": now,
            "updatedAt": now,
        }
        self._save(data)
        LOGGER.info("Created remote birthday %s for %s", record_id, owner_id)
        return record_id

    async def update_record(self, owner_id: str, record_id: str, payload: Mapping[str, str]) -> None:
        data = self._load()
        existing = data.get(owner_id, {}).get(record_id)
        if existing is None:
            raise RecordNotFoundError(f"Birthday {record_id} does not exist")
        existing.update(_clean_payload(payload))
        existing["updatedAt"] = self._clock().isoformat()
        self._save(data)

    async def delete_record(self, owner_id: str, record_id: str) -> None:
        data = self._load()
        if record_id not in data.get(owner_id, {}):
            raise RecordNotFoundError(f"Birthday {record_id} does not exist")
        del data[owner_id][record_id]
        self._save(data)

    async def list_records(self, owner_id: str) -> list[BirthdayRecord]:
        rows = self._load().get(owner_id, {})
        ordered = sorted(rows.items(), key=lambda item: str(item[1].get("createdAt", "")), reverse=True)
        return [record_from_dict({**row, "id": record_id, "ownerId": owner_id}) for record_id, row in ordered]

    def _load(self) -> dict[str, dict[str, dict[str, Any]]]:
        if not self._path.exists():
            return {}

        with self._path.open("r", encoding="utf-8") as file_obj:
            data = json.load(file_obj)

        owners = data.get("owners", {})
        if not isinstance(owners, dict):
            return {}
        return owners

    def _save(self, owners: dict[str, dict[str, dict[str, Any]]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": 1, "owners": owners}

        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            delete=False,
        ) as temp_file:
            json.dump(payload, temp_file, indent=2, sort_keys=True, ensure_ascii=False)
            temp_file.write("\n")
            temp_name = temp_file.name

        os.replace(temp_name, self._path)


def _clean_payload(payload: Mapping[str, str]) -> dict[str, str]:
    return {key: str(value) for key, value in payload.items() if key in PAYLOAD_FIELDS}


def build_remote_apply(datastore: RemoteDatastore) -> RemoteApply:
    """Adapt a datastore to the queue's replay callback."""

    async def remote_apply(owner_id: str, operation: SyncOperation) -> str | None:
        if isinstance(operation, CreateOperation):
            return await datastore.create_record(owner_id, operation.payload)
        if isinstance(operation, UpdateOperation):
            await datastore.update_record(owner_id, operation.target_id, operation.payload)
            return None
        if isinstance(operation, DeleteOperation):
            try:
                await datastore.delete_record(owner_id, operation.target_id)
            except RecordNotFoundError:
                LOGGER.info("Birthday %s was already deleted remotely", operation.target_id)
            return None
        raise TypeError(f"Unsupported sync operation: {operation!r}")

    return remote_apply
