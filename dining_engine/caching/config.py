from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _cache_dir() -> Path | None:
    raw = os.getenv("DINING_CACHE_DIR", "")
    return Path(raw) if raw else None


@dataclass(frozen=True)
class CacheConfig:
    memory_capacity: int = 256
    memory_ttl_seconds: float = 300.0
    persistent_ttl_seconds: float = 24 * 3600.0
    predictive_ttl_seconds: float = 24 * 3600.0
    persistent_dir: Path | None = _cache_dir()
    predictive_top_n: int = 20
    tracked_keys_limit: int = 500
    warm_interval_seconds: float = 300.0
    idle_after_seconds: float = 60.0
    location_precision: int = 3  # decimal places, about 110 m of latitude


DEFAULT_CACHE_CONFIG = CacheConfig()
