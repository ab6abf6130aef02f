# 📦 engine/distance.py
# ─────────────────────────────
# Great-circle distance used for ranking therapists

from math import radians, sin, cos, sqrt, atan2, isfinite

from engine.errors import ValidationError

EARTH_RADIUS_KM = 6371.0


def validate_point(lat: float, lon: float) -> None:
    """Reject NaN, infinite and out-of-range coordinates."""
    if not (isfinite(lat) and isfinite(lon)):
        raise ValidationError(f"Coordinates must be finite numbers, got ({lat}, {lon})")
    if not -90.0 <= lat <= 90.0:
        raise ValidationError(f"Latitude {lat} outside [-90, 90]")
    if not -180.0 <= lon <= 180.0:
        raise ValidationError(f"Longitude {lon} outside [-180, 180]")


def haversine_km(a_lat: float, a_lon: float, b_lat: float, b_lon: float) -> float:
    """Calculate haversine distance between two lat/lon points.

    Malformed input is rejected with ValidationError, never propagated as NaN.
    """
    validate_point(a_lat, a_lon)
    validate_point(b_lat, b_lon)

    φ1, φ2 = map(radians, (a_lat, b_lat))
    dφ, dλ = radians(b_lat - a_lat), radians(b_lon - a_lon)
    a = sin(dφ / 2)**2 + cos(φ1) * cos(φ2) * sin(dλ / 2)**2
    # rounding can push antipodal points marginally past 1
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_KM * 2 * atan2(sqrt(a), sqrt(1 - a))


def distance_km(a, b) -> float:
    """Distance in km between two Coordinates."""
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)
