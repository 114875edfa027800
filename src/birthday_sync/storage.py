from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    def read_key(self, key: str) -> str | None: ...

    def write_key(self, key: str, value: str) -> bool: ...

    def remove_key(self, key: str) -> bool: ...

    def keys(self) -> list[str]: ...


class JsonFileStorage:
    """Local key-value medium kept as a single JSON document on disk.

    Every write rewrites the whole document atomically. When ``quota_bytes`` is
    set, a write that would grow the document past it is refused the same way a
    full browser storage refuses one, by returning ``False``.
    """

    def __init__(self, path: Path, *, quota_bytes: int | None = None) -> None:
        self._path = path
        self._quota_bytes = quota_bytes

    @property
    def path(self) -> Path:
        return self._path

    def read_key(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def write_key(self, key: str, value: str) -> bool:
        data = self._load()
        data[key] = value
        return self._save(data)

    def remove_key(self, key: str) -> bool:
        data = self._load()
        if key not in data:
            return True
        del data[key]
        return self._save(data)

    def keys(self) -> list[str]:
        return sorted(self._load())

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}

        try:
            with self._path.open("r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except OSError:
            LOGGER.exception("Could not read local storage at %s", self._path)
            return {}
        except ValueError:
            LOGGER.warning("Local storage at %s is corrupt, treating it as empty", self._path)
            return {}

        if not isinstance(data, dict):
            return {}
        return {str(key): value for key, value in data.items() if isinstance(value, str)}

    def _save(self, data: dict[str, str]) -> bool:
        rendered = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
        if self._quota_bytes is not None and len(rendered.encode("utf-8")) > self._quota_bytes:
            LOGGER.warning("Local storage quota of %s bytes exceeded", self._quota_bytes)
            return False

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self._path.parent,
                prefix=f".{self._path.name}.",
                delete=False,
            ) as temp_file:
                temp_file.write(rendered)
                temp_name = temp_file.name
            os.replace(temp_name, self._path)
        except OSError:
            LOGGER.exception("Could not write local storage at %s", self._path)
            return False
        return True
