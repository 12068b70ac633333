from __future__ import annotations

import numpy as np

from .models import GeoPoint

EARTH_RADIUS_KM = 6371.0088


def haversine_km(origin: GeoPoint, lats: np.ndarray, lngs: np.ndarray) -> np.ndarray:
    """Great-circle distance in km from *origin* to every (lat, lng) pair."""
    lat1 = np.radians(origin.lat)
    lng1 = np.radians(origin.lng)
    lat2 = np.radians(np.asarray(lats, dtype=float))
    lng2 = np.radians(np.asarray(lngs, dtype=float))

    a = (
        np.sin((lat2 - lat1) / 2.0) ** 2
        + np.cos(lat1) * np.cos(lat2) * np.sin((lng2 - lng1) / 2.0) ** 2
    )
    return 2.0 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def distances_from(origin: GeoPoint | None, points: list[GeoPoint]) -> list[float | None]:
    if origin is None or not points:
        return [None] * len(points)
    lats = np.array([p.lat for p in points])
    lngs = np.array([p.lng for p in points])
    return [float(d) for d in haversine_km(origin, lats, lngs)]
