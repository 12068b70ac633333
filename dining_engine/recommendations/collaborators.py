"""
Collaborator interfaces and in-process implementations.

The engine reads profiles from a Preference Store and candidates from a
Restaurant Catalog. Anything arriving from either is validated here, at the
boundary, so the rest of the pipeline can trust the closed enumerations.
"""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

import numpy as np
import pandas as pd
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from .geo import haversine_km
from .models import GeoPoint, RestaurantRecord, UserPreferenceProfile

logger = logging.getLogger(__name__)

ProfileListener = Callable[[str], None]

_JSON_COLUMNS = ("dietary_compatibility", "allergen_safety", "verification_counts")
_LIST_COLUMNS = ("cuisines", "tags", "meal_times")


class PreferenceStore(Protocol):
    def get_profile(self, user_id: str) -> UserPreferenceProfile: ...


class RestaurantCatalog(Protocol):
    async def search(
        self, location: GeoPoint, radius_m: int, keyword: str | None = None,
    ) -> list[RestaurantRecord]: ...

    async def details(self, restaurant_id: str) -> RestaurantRecord | None: ...


# ── Boundary validation ──────────────────────────────────────────────────


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ()))
    return f"{where}: {first.get('msg')}" if where else str(first.get("msg"))


def parse_profile(data: UserPreferenceProfile | dict[str, Any]) -> UserPreferenceProfile:
    if isinstance(data, UserPreferenceProfile):
        return data
    try:
        return UserPreferenceProfile.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid preference profile ({_describe(exc)})") from exc


def parse_restaurants(items: Iterable[RestaurantRecord | dict[str, Any]]) -> list[RestaurantRecord]:
    """Validate candidate records, dropping repeated ids (first one wins)."""
    records: list[RestaurantRecord] = []
    seen: set[str] = set()
    for i, item in enumerate(items):
        if isinstance(item, RestaurantRecord):
            record = item
        else:
            try:
                record = RestaurantRecord.model_validate(item)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid restaurant at index {i} ({_describe(exc)})") from exc
        if record.id in seen:
            logger.debug("Dropping duplicate restaurant %s", record.id)
            continue
        seen.add(record.id)
        records.append(record)
    return records


# ── Preference store ─────────────────────────────────────────────────────


class InMemoryPreferenceStore:
    """Profiles keyed by user id. Unknown users get a neutral default profile."""

    def __init__(self, profiles: Iterable[UserPreferenceProfile | dict] = ()) -> None:
        self._lock = threading.Lock()
        self._profiles: dict[str, UserPreferenceProfile] = {}
        self._listeners: list[ProfileListener] = []
        for p in profiles:
            profile = parse_profile(p)
            self._profiles[profile.user_id] = profile

    def add_listener(self, listener: ProfileListener) -> None:
        self._listeners.append(listener)

    def get_profile(self, user_id: str) -> UserPreferenceProfile:
        with self._lock:
            profile = self._profiles.get(user_id)
        return profile or UserPreferenceProfile(user_id=user_id)

    def put_profile(self, data: UserPreferenceProfile | dict[str, Any]) -> UserPreferenceProfile:
        profile = parse_profile(data)
        with self._lock:
            self._profiles[profile.user_id] = profile
        for listener in self._listeners:
            listener(profile.user_id)
        return profile


# ── Restaurant catalog ───────────────────────────────────────────────────


def _cell(value: Any) -> Any:
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and np.isnan(value):
        return None
    return value


def _row_to_record(row: dict[str, Any]) -> dict[str, Any]:
    data = {k: _cell(v) for k, v in row.items()}
    data["location"] = {"lat": data.pop("lat"), "lng": data.pop("lng")}
    for col in _JSON_COLUMNS:
        raw = data.get(col)
        data[col] = json.loads(raw) if raw else {}
    for col in _LIST_COLUMNS:
        raw = data.get(col)
        data[col] = [v.strip() for v in str(raw).split(",") if v.strip()] if raw else []
    return {k: v for k, v in data.items() if v is not None}


class InMemoryRestaurantCatalog:
    """Radius search over a fixed set of records."""

    def __init__(self, records: Iterable[RestaurantRecord | dict[str, Any]]) -> None:
        self._records = parse_restaurants(records)
        self._by_id = {r.id: r for r in self._records}
        self._lats = np.array([r.location.lat for r in self._records], dtype=float)
        self._lngs = np.array([r.location.lng for r in self._records], dtype=float)

    @classmethod
    def from_csv(cls, path: str | Path) -> InMemoryRestaurantCatalog:
        """Load a catalog CSV.

        Expects ``lat``/``lng`` columns, comma-separated ``cuisines``,
        ``tags`` and ``meal_times``, and JSON objects in the
        ``dietary_compatibility``, ``allergen_safety`` and
        ``verification_counts`` columns.
        """
        df = pd.read_csv(path, dtype={"id": str})
        try:
            rows = [_row_to_record(row) for row in df.to_dict(orient="records")]
        except (KeyError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Malformed catalog file {path}: {exc}") from exc
        logger.info("Loaded %d restaurants from %s", len(rows), path)
        return cls(rows)

    def __len__(self) -> int:
        return len(self._records)

    async def search(
        self, location: GeoPoint, radius_m: int, keyword: str | None = None,
    ) -> list[RestaurantRecord]:
        if not self._records:
            return []
        distances = haversine_km(location, self._lats, self._lngs)
        within = np.flatnonzero(distances <= radius_m / 1000.0)
        order = within[np.argsort(distances[within], kind="stable")]

        results = [self._records[i] for i in order]
        if keyword:
            kw = keyword.strip().lower()
            results = [
                r for r in results
                if kw in r.name.lower() or any(kw in c for c in r.cuisines + r.tags)
            ]
        return results

    async def details(self, restaurant_id: str) -> RestaurantRecord | None:
        return self._by_id.get(restaurant_id)
