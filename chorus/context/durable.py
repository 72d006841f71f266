"""
Durable Store
=============
Process-wide key/value namespaces that outlive a single run (``store:<name>``).

The store talks to an external backend through two calls, ``load(name)`` and
``save(name, payload)``, where the payload is the whole namespace. The default
backend keeps one JSON file per namespace and guards every write with a file
lock.

Layout (JsonFileBackend):
    {directory}/
        ├── drafts.json
        ├── drafts.json.lock
        └── glossary.json

Each namespace file maps key -> record:
    {"value": ..., "written_at": ISO-8601, "writer": "run-id/action-id"}

Concurrent writes from different runs are serialized; last writer wins per key.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from filelock import FileLock, Timeout
from loguru import logger

from chorus.config import STORE

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


def _validate_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_PATTERN.match(name) or ".." in name:
        raise ValueError(f"Invalid store name: {name!r}")
    return name


@dataclass(frozen=True)
class StoreRecord:
    """One durable value with its provenance."""
    value: Any
    written_at: str
    writer: str

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "written_at": self.written_at, "writer": self.writer}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoreRecord":
        return cls(
            value=data.get("value"),
            written_at=data.get("written_at", ""),
            writer=data.get("writer", ""),
        )


class KeyValueBackend(ABC):
    """External persistence used by the durable store."""

    @abstractmethod
    def load(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored namespace payload, or None when absent."""

    @abstractmethod
    def save(self, key: str, value: Dict[str, Any]) -> None:
        """Persist the namespace payload, replacing the previous one."""

    def names(self) -> List[str]:
        return []


class MemoryBackend(KeyValueBackend):
    """In-process backend; survives runs but not the process."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        payload = self._data.get(key)
        return json.loads(json.dumps(payload)) if payload is not None else None

    def save(self, key: str, value: Dict[str, Any]) -> None:
        self._data[key] = json.loads(json.dumps(value, default=str))

    def names(self) -> List[str]:
        return sorted(self._data)


class JsonFileBackend(KeyValueBackend):
    """One JSON file per namespace, written under a file lock."""

    def __init__(self, directory: Optional[str] = None, lock_timeout: int = STORE.LOCK_TIMEOUT):
        self.directory = Path(directory or STORE.DIRECTORY)
        self.lock_timeout = lock_timeout
        self.directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Durable store directory: {self.directory}")

    def _path(self, key: str) -> Path:
        return self.directory / f"{_validate_name(key)}.json"

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable durable store file {path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def save(self, key: str, value: Dict[str, Any]) -> None:
        path = self._path(key)
        lock_path = path.with_suffix(".json.lock")
        tmp_path = path.with_suffix(".json.tmp")
        try:
            with FileLock(lock_path, timeout=self.lock_timeout):
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(value, f, indent=2, default=str)
                os.replace(tmp_path, path)
        except Timeout as e:
            raise TimeoutError(
                f"Timed out acquiring durable store lock {lock_path} after {self.lock_timeout}s"
            ) from e

    def names(self) -> List[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))


class DurableStore:
    """
    Named key/value namespaces shared by every run in the process.

    Usage:
        store = DurableStore(JsonFileBackend("/var/lib/chorus"))
        store.set("glossary", "terms", ["a", "b"], writer="run-1/define")
        store.get("glossary", "terms")
    """

    def __init__(self, backend: Optional[KeyValueBackend] = None):
        self.backend = backend or MemoryBackend()
        self._lock = threading.Lock()

    def _load(self, name: str) -> Dict[str, Any]:
        return self.backend.load(_validate_name(name)) or {}

    def get_record(self, name: str, key: str) -> Optional[StoreRecord]:
        raw = self._load(name).get(key)
        return StoreRecord.from_dict(raw) if isinstance(raw, dict) else None

    def get(self, name: str, key: str, default: Any = None) -> Any:
        record = self.get_record(name, key)
        return default if record is None else record.value

    def get_all(self, name: str) -> Dict[str, Any]:
        return {
            key: raw.get("value")
            for key, raw in self._load(name).items()
            if isinstance(raw, dict)
        }

    def set(self, name: str, key: str, value: Any, writer: str = "") -> StoreRecord:
        """Write one key; reload-modify-save under the process lock."""
        record = StoreRecord(
            value=value,
            written_at=datetime.now(timezone.utc).isoformat(),
            writer=writer,
        )
        with self._lock:
            payload = self._load(name)
            previous = payload.get(key)
            payload[key] = record.to_dict()
            self.backend.save(name, payload)

        if isinstance(previous, dict) and previous.get("writer") and previous.get("writer") != writer:
            logger.debug(
                f"store:{name}.{key} overwritten by {writer or 'unknown'} "
                f"(previous writer {previous.get('writer')})"
            )
        return record

    async def aset(self, name: str, key: str, value: Any, writer: str = "") -> StoreRecord:
        """Run ``set`` on a worker thread."""
        return await asyncio.to_thread(self.set, name, key, value, writer)

    def names(self) -> List[str]:
        return self.backend.names()
