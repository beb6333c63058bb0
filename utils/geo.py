import math
from config import (
    MAX_VALID_LATITUDE,
    MAX_VALID_LONGITUDE,
    MIN_VALID_LATITUDE,
    MIN_VALID_LONGITUDE,
)
from geopy.distance import great_circle

E7_SCALE = 1e7


def validate_coordinates(lat, lon) -> bool:
    """Check coordinate ranges and reject the (0, 0) placeholder"""
    if isinstance(lat, bool) or isinstance(lon, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    if lat == 0 and lon == 0:
        return False
    return MIN_VALID_LATITUDE <= lat <= MAX_VALID_LATITUDE and MIN_VALID_LONGITUDE <= lon <= MAX_VALID_LONGITUDE


def normalize_location(raw: dict | None) -> tuple[float, float] | None:
    """Read decimal degrees from an E7 or decimal location dict"""
    if not isinstance(raw, dict):
        return None

    for lat_key, lon_key, scale in (
        ('latE7', 'lngE7', E7_SCALE),
        ('latitudeE7', 'longitudeE7', E7_SCALE),
        ('latitude', 'longitude', 1),
        ('lat', 'lng', 1),
    ):
        lat = raw.get(lat_key)
        lon = raw.get(lon_key)
        if lat is None or lon is None:
            continue
        try:
            return float(lat) / scale, float(lon) / scale
        except (TypeError, ValueError):
            return None

    return None


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters"""
    return great_circle((lat1, lon1), (lat2, lon2)).meters


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometers"""
    return great_circle((lat1, lon1), (lat2, lon2)).kilometers
