"""
Geographic helpers: great-circle distance and distance-based scores.

All functions are pure. Distances are approximations on a spherical Earth,
travel durations are for display only.
"""

from typing import Optional
from dataclasses import dataclass
import math
import re
import unicodedata

EARTH_RADIUS_KM = 6371.0
DEFAULT_AVERAGE_SPEED_KMH = 40.0


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float

    def __repr__(self):
        return f"GeoPoint({self.lat:.5f}, {self.lon:.5f})"


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in kilometers between two points given in degrees."""
    if a == b:
        return 0.0
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.lon - a.lon)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    # Rounding can push h slightly outside [0, 1] near antipodes
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_to_score(distance_km: float, max_distance_km: float = 25.0) -> float:
    """Map a distance to [0, 100]: 100 at 0 km, 0 at or beyond the cutoff, linear in between."""
    if distance_km <= 0:
        return 100.0
    if max_distance_km <= 0 or distance_km >= max_distance_km:
        return 0.0
    return round(100.0 * (1.0 - distance_km / max_distance_km), 2)


def estimate_duration_min(
    distance_km: float, average_speed_kmh: float = DEFAULT_AVERAGE_SPEED_KMH
) -> int:
    if average_speed_kmh <= 0:
        return 0
    return int(round(distance_km / average_speed_kmh * 60))


def _normalize_commune(name: str) -> str:
    stripped = unicodedata.normalize("NFD", name.lower())
    stripped = "".join(ch for ch in stripped if not unicodedata.combining(ch))
    stripped = re.sub(r"\b\d{5}\b", "", stripped)
    stripped = re.sub(r"^(le|la|les|l')\s*", "", stripped.strip())
    return re.sub(r"[^a-z0-9]", "", stripped)


def _department(name: str) -> Optional[str]:
    match = re.search(r"\b(\d{2})\d{3}\b", name)
    return match.group(1) if match else None


def commune_proximity_score(first: Optional[str], second: Optional[str]) -> float:
    """Coarse proximity when coordinates are missing.

    Same commune scores 100, same department (postcode prefix) 70, anything
    else 30; 50 when either side is unknown.
    """
    if not first or not second:
        return 50.0
    if _normalize_commune(first) and _normalize_commune(first) == _normalize_commune(second):
        return 100.0
    dept_first, dept_second = _department(first), _department(second)
    if dept_first and dept_first == dept_second:
        return 70.0
    return 30.0
