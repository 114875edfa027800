import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from birthday_sync.models import CreateOperation, DeleteOperation, UpdateOperation
from birthday_sync.remote import JsonFileDatastore, RecordNotFoundError, build_remote_apply


def _payload(name: str) -> dict[str, str]:
    return {"name": name, "date": "1990-03-14", "relation": "Friend", "avatar": "🎂"}


def test_create_and_list_newest_first(tmp_path: Path, clock) -> None:
    datastore = JsonFileDatastore(tmp_path / "birthdays.json", clock=clock)

    first = asyncio.run(datastore.create_record("u1", _payload("Old")))
    clock.advance(timedelta(minutes=1))
    second = asyncio.run(datastore.create_record("u1", {**_payload("New"), "_optimistic": True}))

    records = asyncio.run(datastore.list_records("u1"))
    stored = json.loads((tmp_path / "birthdays.json").read_text(encoding="utf-8"))

    assert first.startswith("srv_")
    assert [record.id for record in records] == [second, first]
    assert records[0].owner_id == "u1"
    assert "_optimistic" not in stored["owners"]["u1"][second]
    assert asyncio.run(datastore.list_records("u2")) == []


def test_update_and_delete_missing_record_raise(tmp_path: Path, clock) -> None:
    datastore = JsonFileDatastore(tmp_path / "birthdays.json", clock=clock)

    with pytest.raises(RecordNotFoundError):
        asyncio.run(datastore.update_record("u1", "srv_missing", {"name": "X"}))
    with pytest.raises(RecordNotFoundError):
        asyncio.run(datastore.delete_record("u1", "srv_missing"))


def test_update_changes_only_given_fields(tmp_path: Path, clock) -> None:
    datastore = JsonFileDatastore(tmp_path / "birthdays.json", clock=clock)
    record_id = asyncio.run(datastore.create_record("u1", _payload("Sam")))

    asyncio.run(datastore.update_record("u1", record_id, {"name": "Samuel"}))

    record = asyncio.run(datastore.list_records("u1"))[0]
    assert (record.name, record.date) == ("Samuel", "1990-03-14")


def test_remote_apply_maps_operations(tmp_path: Path, clock) -> None:
    datastore = JsonFileDatastore(tmp_path / "birthdays.json", clock=clock)
    remote_apply = build_remote_apply(datastore)

    record_id = asyncio.run(remote_apply("u1", CreateOperation(payload=_payload("Sam"), optimistic_id="temp_1_a")))
    assert asyncio.run(remote_apply("u1", UpdateOperation(target_id=record_id, payload={"name": "Al"}))) is None
    assert asyncio.run(datastore.list_records("u1"))[0].name == "Al"

    asyncio.run(remote_apply("u1", DeleteOperation(target_id=record_id)))
    # A second delete of the same record is already satisfied.
    asyncio.run(remote_apply("u1", DeleteOperation(target_id=record_id)))

    assert asyncio.run(datastore.list_records("u1")) == []
