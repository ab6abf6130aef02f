# engine/__init__.py
# ─────────────────────────────
# Init file for OpenFielder engine package
# Exposes core components

from .distance import distance_km, haversine_km
from .geocoder import Geocoder
from .pairing import PairingEngine

__all__ = [
    "distance_km",
    "haversine_km",
    "Geocoder",
    "PairingEngine",
]
