from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

from birthday_sync.cache_store import CACHE_KEY_PREFIX, LAST_SYNC_KEY_PREFIX
from birthday_sync.history import HISTORY_KEY_PREFIX
from birthday_sync.models import utc_now
from birthday_sync.notification_queue import NOTIFICATION_QUEUE_KEY_PREFIX
from birthday_sync.storage import KeyValueStorage
from birthday_sync.sync_queue import QUEUE_KEY_PREFIX

LOGGER = logging.getLogger(__name__)

BACKUP_VERSION = 1
BACKUP_PREFIXES = (
    CACHE_KEY_PREFIX,
    LAST_SYNC_KEY_PREFIX,
    QUEUE_KEY_PREFIX,
    NOTIFICATION_QUEUE_KEY_PREFIX,
    HISTORY_KEY_PREFIX,
)


class BackupFormatError(ValueError):
    pass


@dataclass(frozen=True)
class StorageUsage:
    total_bytes: int
    breakdown: dict[str, int]
    quota_bytes: int | None = None

    @property
    def usage_percent(self) -> float | None:
        if not self.quota_bytes:
            return None
        return self.total_bytes / self.quota_bytes * 100


@dataclass(frozen=True)
class ImportResult:
    imported: int
    skipped: list[str] = field(default_factory=list)


def _section(key: str) -> str | None:
    for prefix in BACKUP_PREFIXES:
        if key.startswith(prefix):
            return prefix.rstrip(":")
    return None


def storage_usage(storage: KeyValueStorage, quota_bytes: int | None = None) -> StorageUsage:
    """Bytes held per section of local storage."""
    breakdown: dict[str, int] = {}
    for key in storage.keys():
        value = storage.read_key(key)
        if value is None:
            continue
        section = _section(key) or "other"
        breakdown[section] = breakdown.get(section, 0) + len(value.encode("utf-8"))
    return StorageUsage(total_bytes=sum(breakdown.values()), breakdown=breakdown, quota_bytes=quota_bytes)


def export_local_data(storage: KeyValueStorage, *, clock: Callable[[], datetime] = utc_now) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key in storage.keys():
        if _section(key) is None:
            continue
        value = storage.read_key(key)
        if value is None:
            continue
        try:
            data[key] = json.loads(value)
        except ValueError:
            data[key] = value
    return {"exportDate": clock().isoformat(), "version": BACKUP_VERSION, "data": data}


def render_backup(document: Mapping[str, Any]) -> bytes:
    return (json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False) + "\n").encode("utf-8")


def parse_backup(raw: bytes) -> dict[str, Any]:
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise BackupFormatError("Backup is not valid JSON") from exc

    if not isinstance(document, dict) or not isinstance(document.get("data"), dict):
        raise BackupFormatError("Backup must be an object with a data section")
    version = document.get("version")
    if not isinstance(version, int) or version > BACKUP_VERSION:
        raise BackupFormatError(f"Unsupported backup version: {version!r}")
    return document


def import_local_data(storage: KeyValueStorage, document: Mapping[str, Any]) -> ImportResult:
    """Write every known key of a parsed backup back into local storage."""
    imported = 0
    skipped: list[str] = []
    for key, value in document["data"].items():
        if _section(key) is None or value is None:
            skipped.append(key)
            continue
        raw = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        try:
            written = storage.write_key(key, raw)
        except OSError:
            LOGGER.exception("Could not restore %s", key)
            written = False
        if not written:
            skipped.append(key)
            continue
        imported += 1

    LOGGER.info("Restored %s keys from backup, skipped %s", imported, len(skipped))
    return ImportResult(imported=imported, skipped=skipped)
