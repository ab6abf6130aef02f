import httpx

from engine.errors import GeocodingError
from engine.pairing import CoordinateResolver
from schemas.schemas import Address, Client, Coordinates, Therapist
from utils.memory_store import CLIENT, THERAPIST
from utils.records import to_row

# 1 degree of longitude on the equator, in km, for the 6371 km sphere
KM_PER_DEG_EQUATOR = 111.19492664455873


def make_address(street="1 Main St", city="Seattle", state="WA", zip_code="98101"):
    return Address(street1=street, city=city, state=state, zip_code=zip_code)


def equator_point(km_east: float) -> tuple:
    return (0.0, km_east / KM_PER_DEG_EQUATOR)


class StubResolver(CoordinateResolver):
    """Resolves addresses by street line; unknown streets fail like the geocoder would."""

    def __init__(self, points=None):
        self.points = dict(points or {})
        self.calls = []

    async def resolve(self, address):
        self.calls.append(address.street1)
        if address.street1 not in self.points:
            raise GeocodingError(GeocodingError.NOT_FOUND, address, "No geocoding results found")
        lat, lon = self.points[address.street1]
        return Coordinates(latitude=lat, longitude=lon)


class StubGeocoder:
    """Stands in for engine.geocoder.Geocoder behind GeocodingService."""

    def __init__(self, points=None):
        self.resolver = StubResolver(points)
        self.cleared = False

    async def geocode(self, address):
        return await self.resolver.resolve(address)

    def cache_stats(self):
        return {"size": len(self.resolver.calls), "keys": list(self.resolver.calls)}

    def clear_cache(self):
        self.cleared = True


async def add_therapist(store, therapist_id, street, name=None, **extra) -> Therapist:
    therapist = Therapist(
        id=therapist_id,
        name=name or f"Therapist {therapist_id}",
        address=make_address(street),
        availability="weekdays",
        **extra,
    )
    await store.insert(THERAPIST, to_row(therapist))
    return therapist


async def add_client(store, client_id, street, name=None, **extra) -> Client:
    client = Client(id=client_id, name=name or f"Client {client_id}", address=make_address(street), **extra)
    await store.insert(CLIENT, to_row(client))
    return client


# ─────────────────────────────
# Geocoder doubles

def feature_collection(lat, lon):
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [lon, lat]},
                "properties": {"confidence": "High", "address": {"formattedAddress": "1 Main St"}},
            }
        ],
    }


class ScriptedTransport:
    """httpx.MockTransport handler replaying a fixed list of responses/exceptions."""

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return httpx.Response(item, text="error")
        return httpx.Response(200, json=item)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class FakeToken:
    def __init__(self, token, expires_on):
        self.token = token
        self.expires_on = expires_on


class FakeCredential:
    """get_token(scope) with per-scope failures and a rotating token."""

    def __init__(self, failing_scopes=(), tokens=("t1", "t2", "t3")):
        self.failing_scopes = set(failing_scopes)
        self.tokens = list(tokens)
        self.calls = []

    def get_token(self, scope):
        self.calls.append(scope)
        if scope in self.failing_scopes:
            raise RuntimeError(f"scope {scope} not allowed")
        return FakeToken(self.tokens.pop(0), expires_on=4102444800)
