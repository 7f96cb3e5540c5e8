from __future__ import annotations

import json
import os
import threading
from typing import Dict, Optional


class StorageUnavailable(Exception):
    pass


class MemoryStorage:
    """Key/value store that lives as long as the object (sessionStorage-like)."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value


class JsonFileStorage:
    """Durable key/value store backed by one JSON file (localStorage-like)."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageUnavailable(str(e)) from e
        return data if isinstance(data, dict) else {}

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            parent = os.path.dirname(os.path.abspath(self.path))
            try:
                os.makedirs(parent, exist_ok=True)
                tmp = f"{self.path}.tmp"
                with open(tmp, "w", encoding="utf-8") as f:
                    json.dump(data, f)
                os.replace(tmp, self.path)
            except OSError as e:
                raise StorageUnavailable(str(e)) from e


class UnavailableStorage:
    """Stands in for storage the page is not allowed to use (privacy mode, sandboxed frames)."""

    def get_item(self, key: str) -> Optional[str]:
        raise StorageUnavailable("storage disabled")

    def set_item(self, key: str, value: str) -> None:
        raise StorageUnavailable("storage disabled")
