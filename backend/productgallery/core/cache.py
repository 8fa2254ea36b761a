"""
TTL cache over a pluggable string key-value store.

Entries are stored as JSON records:
    {"value": <json>, "expiresAtEpochMs": <int>}

The cache is an optimization, never a source of truth:
  - reads fail soft (any storage/parse error => miss)
  - writes fail soft (quota, disk, serialization errors are ignored)
"""

from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

CACHE_PREFIX = "ean_lookup_v1:"
DEFAULT_TTL_MS = 1000 * 60 * 60 * 24 * 30  # 30 days


def _now_ms() -> int:
    return int(time.time() * 1000)


class KeyValueStore(Protocol):
    """String-keyed storage the cache persists into."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryStore:
    """Process-local store. Also the test fake."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class JsonFileStore:
    """
    Store backed by a single JSON object on disk.
    Every write rewrites the file through a temp file + os.replace.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            return {}
        return data

    def _dump(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)


class TTLCache:
    def __init__(
        self,
        store: KeyValueStore,
        prefix: str = CACHE_PREFIX,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        """
        Returns the cached value, or None when missing, expired or unreadable.
        Expired entries are purged on read.
        """
        try:
            raw = self.store.get(self._key(key))
            if not raw:
                return None
            entry = json.loads(raw)
            if self._clock() > int(entry["expiresAtEpochMs"]):
                self.delete(key)
                return None
            return entry["value"]
        except Exception as e:
            logger.debug("cache get failed for %s: %s", key, e)
            return None

    def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        try:
            entry = {"value": value, "expiresAtEpochMs": self._clock() + ttl}
            self.store.set(self._key(key), json.dumps(entry, ensure_ascii=False))
        except Exception as e:
            logger.debug("cache set failed for %s: %s", key, e)

    def delete(self, key: str) -> None:
        try:
            self.store.delete(self._key(key))
        except Exception as e:
            logger.debug("cache delete failed for %s: %s", key, e)


def build_cache(cache_path: str = "", ttl_days: int = 30) -> TTLCache:
    """
    In-memory cache unless a CACHE_PATH is configured.
    """
    store: KeyValueStore
    if cache_path:
        store = JsonFileStore(Path(cache_path))
    else:
        store = InMemoryStore()
    return TTLCache(store, default_ttl_ms=ttl_days * 24 * 60 * 60 * 1000)
