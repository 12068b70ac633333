from __future__ import annotations

import hashlib
import json
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from ..errors import CacheCorruption

Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    created_at: float
    expires_at: float
    layer: str
    user_id: str | None = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def _expiry(now: float, layer_ttl: float, ttl: float | None) -> float:
    return now + (min(ttl, layer_ttl) if ttl is not None else layer_ttl)


class MemoryLayer:
    """Bounded in-process LRU with a short TTL."""

    name = "memory"

    def __init__(self, capacity: int, ttl_seconds: float, clock: Clock = time.time) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def set(
        self, key: str, payload: Any, ttl: float | None = None, user_id: str | None = None,
    ) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(key, payload, now, _expiry(now, self.ttl_seconds, ttl), self.name, user_id)
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)
                self.evictions += 1
        return entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class PersistentLayer:
    """One JSON file per key under *directory*. Survives restarts."""

    name = "persistent"

    def __init__(self, directory: Path, ttl_seconds: float, clock: Clock = time.time) -> None:
        self.directory = Path(directory)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode()).hexdigest()[:32]
        return self.directory / f"{digest}.json"

    def get(self, key: str) -> CacheEntry | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            entry = CacheEntry(
                key=raw["key"],
                payload=raw["payload"],
                created_at=float(raw["created_at"]),
                expires_at=float(raw["expires_at"]),
                layer=self.name,
                user_id=raw.get("user_id"),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise CacheCorruption(key, f"Unreadable cache file {path.name}: {exc}") from exc

        if entry.key != key:
            raise CacheCorruption(key, f"Cache file {path.name} holds key {entry.key!r}")
        if entry.is_expired(self._clock()):
            path.unlink(missing_ok=True)
            return None
        return entry

    def set(
        self, key: str, payload: Any, ttl: float | None = None, user_id: str | None = None,
    ) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(key, payload, now, _expiry(now, self.ttl_seconds, ttl), self.name, user_id)
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(
            json.dumps({
                "key": key,
                "payload": payload,
                "created_at": entry.created_at,
                "expires_at": entry.expires_at,
                "user_id": user_id,
            }),
            encoding="utf-8",
        )
        os.replace(tmp, path)
        return entry

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def clear(self) -> None:
        for path in self.directory.glob("*.json"):
            path.unlink(missing_ok=True)

    def __len__(self) -> int:
        return sum(1 for _ in self.directory.glob("*.json"))


class PredictiveLayer:
    """Precomputed results for popular keys, refreshed while the engine is idle."""

    name = "predictive"

    def __init__(self, ttl_seconds: float, clock: Clock = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry

    def set(
        self, key: str, payload: Any, ttl: float | None = None, user_id: str | None = None,
    ) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(key, payload, now, _expiry(now, self.ttl_seconds, ttl), self.name, user_id)
        with self._lock:
            self._entries[key] = entry
        return entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.user_id == user_id]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
