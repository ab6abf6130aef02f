# 📦 /services/geocoding_service.py

import hashlib
import random

import structlog
from prometheus_client import Counter

from engine.errors import GeocodingError
from engine.geocoder import Geocoder, normalize_address, parse_address_string
from engine.pairing import CoordinateResolver
from schemas.schemas import Address, Coordinates

log = structlog.get_logger()

GEOCODE_REQUESTS_COUNTER = Counter("openfielder_geocode_requests_total", "Total geocode requests")
GEOCODE_FAILURES_COUNTER = Counter("openfielder_geocode_failures_total", "Geocode requests that failed", ["reason"])
GEOCODE_MOCK_COUNTER = Counter("openfielder_geocode_mock_fallbacks_total", "Failed geocodes answered with mock coordinates")

# Used only when mock fallback is switched on (demos, local development)
MOCK_CITY_COORDINATES = {
    "seattle_wa": (47.6062, -122.3321),
    "portland_or": (45.5152, -122.6784),
    "san francisco_ca": (37.7749, -122.4194),
    "los angeles_ca": (34.0522, -118.2437),
    "denver_co": (39.7392, -104.9903),
    "chicago_il": (41.8781, -87.6298),
    "new york_ny": (40.7128, -74.0060),
    "boston_ma": (42.3601, -71.0589),
    "miami_fl": (25.7617, -80.1918),
    "atlanta_ga": (33.7490, -84.3880),
}
US_CENTER = (39.8283, -98.5795)


def mock_coordinates(address: Address) -> Coordinates:
    """Known city centre, else a stable point near the US centre seeded by the address."""
    key = f"{address.city.lower()}_{address.state.lower()}"
    if key in MOCK_CITY_COORDINATES:
        lat, lon = MOCK_CITY_COORDINATES[key]
        return Coordinates(latitude=lat, longitude=lon)

    seed = int(hashlib.sha256(normalize_address(address).encode("utf-8")).hexdigest()[:16], 16)
    rng = random.Random(seed)
    return Coordinates(
        latitude=US_CENTER[0] + (rng.random() - 0.5) * 10,
        longitude=US_CENTER[1] + (rng.random() - 0.5) * 20,
    )


class GeocodingService(CoordinateResolver):
    def __init__(self, geocoder: Geocoder, fallback_to_mock: bool = False):
        self.geocoder = geocoder
        self.fallback_to_mock = fallback_to_mock

    async def geocode(self, address: Address) -> Coordinates:
        GEOCODE_REQUESTS_COUNTER.inc()
        try:
            return await self.geocoder.geocode(address)
        except GeocodingError as e:
            GEOCODE_FAILURES_COUNTER.labels(e.reason).inc()
            if not self.fallback_to_mock:
                raise
            GEOCODE_MOCK_COUNTER.inc()
            log.warning("Geocoding failed, using mock coordinates", reason=e.reason, city=address.city, state=address.state)
            return mock_coordinates(address)

    async def resolve(self, address: Address) -> Coordinates:
        return await self.geocode(address)

    async def geocode_any(self, address: Address | str) -> tuple[Address, Coordinates]:
        """Geocode an Address or a "street, city, ST 12345" string."""
        if isinstance(address, str):
            address = parse_address_string(address)
        return address, await self.geocode(address)

    def cache_stats(self) -> dict:
        return self.geocoder.cache_stats()

    def clear_cache(self) -> None:
        self.geocoder.clear_cache()
