"""
kv.py

Key-value persistence used by the session store.
Every backend stores plain strings under stable string keys, mirroring
the device key-value storage the mobile client writes to.
Part of Chatflow — Business Messaging Client.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional

import config

_log = logging.getLogger("chatflow.storage")
if not _log.handlers:
    _handler = logging.FileHandler(config.LOGS_DIR / "storage.log", encoding="utf-8")
    _handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s"))
    _log.addHandler(_handler)
    _log.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))


class KeyValueStore(ABC):
    """
    Abstract base class for string key-value backends.

    Example:
        store = MemoryStore()
        store.set("token", "eyJ...")
        store.get("token")
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored under key, or None if absent."""
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value."""
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove key. Removing an absent key is not an error."""
        ...

    def multi_remove(self, keys: Iterable[str]) -> None:
        """
        Remove several keys, continuing past individual failures.

        Args:
            keys: Keys to remove.
        """
        for key in keys:
            try:
                self.remove(key)
            except Exception as exc:
                _log.warning("REMOVE FAILED | key=%s | error=%s", key, exc)


class MemoryStore(KeyValueStore):
    """Volatile store, used by tests and for throwaway sessions."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """
    Store persisted as a single JSON object on disk.

    Every write rewrites the file through a temporary file and an atomic
    replace, so a crash mid-write never leaves a truncated file behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            _log.error("READ FAILED | path=%s | error=%s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".kv-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def multi_remove(self, keys: Iterable[str]) -> None:
        with self._lock:
            data = self._read()
            removed = [key for key in keys if data.pop(key, None) is not None]
            if removed:
                self._write(data)


def open_store(backend: Optional[str] = None) -> KeyValueStore:
    """
    Build the configured key-value backend.

    Args:
        backend: "file", "database" or "memory". Defaults to config.STORAGE_BACKEND.

    Returns:
        A ready-to-use KeyValueStore.

    Example:
        store = open_store("file")
    """
    name = (backend or config.STORAGE_BACKEND).lower().strip()

    if name == "memory":
        return MemoryStore()

    if name == "database":
        from storage.models import DatabaseStore

        return DatabaseStore(config.DATABASE_URL)

    if name != "file":
        _log.warning("Unknown storage backend '%s', falling back to file", name)

    return JsonFileStore(config.STATE_DIR / "session.json")
