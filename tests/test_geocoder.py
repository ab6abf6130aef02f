# 📦 /tests/test_geocoder.py

import httpx
import pytest
from pydantic import ValidationError as PydanticValidationError

from engine.errors import GeocodingError, ValidationError
from engine.geocoder import (
    CredentialTokenProvider,
    Geocoder,
    StaticTokenProvider,
    TokenAcquisitionError,
    parse_address_string,
)
from schemas.schemas import Address
from tests.utils.dummies import (
    FakeCredential,
    RecordingSleep,
    ScriptedTransport,
    feature_collection,
    make_address,
)

pytest_plugins = ("pytest_asyncio",)

BASE_DELAY_MS = 1000


def make_geocoder(transport, sleep=None, token_provider=None, client_id="maps-client", **kwargs):
    return Geocoder(
        token_provider or StaticTokenProvider("token-abc"),
        client_id,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(transport)),
        sleep=sleep or RecordingSleep(),
        base_delay_ms=BASE_DELAY_MS,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_geocode_swaps_geojson_order_and_sends_structured_query():
    transport = ScriptedTransport(feature_collection(47.61, -122.33))
    geocoder = make_geocoder(transport)

    address = Address(street1="400 Broad St", street2="Suite 5", city="Seattle", state="WA", zip_code="98109")
    coords = await geocoder.geocode(address)

    assert coords.latitude == 47.61
    assert coords.longitude == -122.33

    request = transport.requests[0]
    params = request.url.params
    assert params["addressLine"] == "400 Broad St Suite 5"
    assert params["locality"] == "Seattle"
    assert params["adminDistrict"] == "WA"
    assert params["postalCode"] == "98109"
    assert params["countryRegion"] == "US"
    assert params["top"] == "1"
    assert request.headers["Authorization"] == "Bearer token-abc"
    assert request.headers["x-ms-client-id"] == "maps-client"


@pytest.mark.asyncio
async def test_two_503s_then_success_backs_off_twice():
    transport = ScriptedTransport(503, 503, feature_collection(10.0, 20.0))
    sleep = RecordingSleep()
    geocoder = make_geocoder(transport, sleep=sleep)

    coords = await geocoder.geocode(make_address())

    assert (coords.latitude, coords.longitude) == (10.0, 20.0)
    assert len(transport.requests) == 3
    assert len(sleep.delays) == 2
    for attempt, delay in enumerate(sleep.delays):
        minimum = BASE_DELAY_MS * 2 ** attempt / 1000
        assert minimum <= delay <= minimum + 1.0


@pytest.mark.asyncio
@pytest.mark.parametrize("status, reason", [
    (404, GeocodingError.NOT_FOUND),
    (400, GeocodingError.BAD_REQUEST),
    (403, GeocodingError.FORBIDDEN),
])
async def test_terminal_status_fails_after_one_attempt(status, reason):
    transport = ScriptedTransport(status)
    sleep = RecordingSleep()
    geocoder = make_geocoder(transport, sleep=sleep)

    with pytest.raises(GeocodingError) as exc_info:
        await geocoder.geocode(make_address())

    assert exc_info.value.reason == reason
    assert exc_info.value.retryable is False
    assert exc_info.value.address == make_address()
    assert len(transport.requests) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_no_features_is_terminal_not_found():
    transport = ScriptedTransport({"type": "FeatureCollection", "features": []})
    geocoder = make_geocoder(transport)

    with pytest.raises(GeocodingError) as exc_info:
        await geocoder.geocode(make_address())

    assert exc_info.value.reason == GeocodingError.NOT_FOUND
    assert "No geocoding results" in exc_info.value.details
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_raise_after_four_attempts():
    transport = ScriptedTransport(500, 502, 429, 504)
    sleep = RecordingSleep()
    geocoder = make_geocoder(transport, sleep=sleep)

    with pytest.raises(GeocodingError) as exc_info:
        await geocoder.geocode(make_address())

    assert exc_info.value.retryable is True
    assert exc_info.value.reason == GeocodingError.UPSTREAM_ERROR
    assert "after 3 retries" in exc_info.value.details
    assert len(transport.requests) == 4
    # no sleep after the final attempt
    assert len(sleep.delays) == 3


@pytest.mark.asyncio
async def test_network_errors_are_retried():
    transport = ScriptedTransport(
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("timed out"),
        feature_collection(1.0, 2.0),
    )
    geocoder = make_geocoder(transport)

    coords = await geocoder.geocode(make_address())

    assert (coords.latitude, coords.longitude) == (1.0, 2.0)
    assert len(transport.requests) == 3


@pytest.mark.asyncio
async def test_401_reacquires_token_once():
    credential = FakeCredential(tokens=("stale", "fresh"))
    transport = ScriptedTransport(401, feature_collection(5.0, 6.0))
    geocoder = make_geocoder(transport, token_provider=CredentialTokenProvider(credential))

    coords = await geocoder.geocode(make_address())

    assert (coords.latitude, coords.longitude) == (5.0, 6.0)
    assert transport.requests[0].headers["Authorization"] == "Bearer stale"
    assert transport.requests[1].headers["Authorization"] == "Bearer fresh"


@pytest.mark.asyncio
async def test_second_401_after_reauth_is_terminal():
    credential = FakeCredential(tokens=("t1", "t2", "t3"))
    transport = ScriptedTransport(401, 401, feature_collection(5.0, 6.0))
    geocoder = make_geocoder(transport, token_provider=CredentialTokenProvider(credential))

    with pytest.raises(GeocodingError) as exc_info:
        await geocoder.geocode(make_address())

    assert exc_info.value.reason == GeocodingError.AUTH_FAILED
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_cache_hit_avoids_second_upstream_call():
    transport = ScriptedTransport(feature_collection(47.0, -122.0))
    geocoder = make_geocoder(transport)

    first = await geocoder.geocode(make_address(street="1 Main St", city="Seattle"))
    second = await geocoder.geocode(make_address(street="1  MAIN st", city="SEATTLE"))

    assert first == second
    assert len(transport.requests) == 1
    assert geocoder.cache_stats()["size"] == 1

    geocoder.clear_cache()
    assert geocoder.cache_stats() == {"size": 0, "keys": []}


@pytest.mark.asyncio
async def test_failed_lookup_is_not_cached():
    transport = ScriptedTransport(404, feature_collection(1.0, 1.0))
    geocoder = make_geocoder(transport)

    with pytest.raises(GeocodingError):
        await geocoder.geocode(make_address())
    coords = await geocoder.geocode(make_address())

    assert coords.latitude == 1.0
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_out_of_range_coordinates_are_rejected():
    transport = ScriptedTransport(feature_collection(123.0, 10.0))
    geocoder = make_geocoder(transport)

    with pytest.raises(GeocodingError) as exc_info:
        await geocoder.geocode(make_address())

    assert exc_info.value.reason == GeocodingError.UPSTREAM_ERROR
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_incomplete_address_never_reaches_upstream():
    transport = ScriptedTransport()
    geocoder = make_geocoder(transport)

    # bypasses model validation, like a row loaded without it
    address = Address.model_construct(street1="1 Main St", street2=None, city="Seattle", state="", zip_code="")

    with pytest.raises(ValidationError):
        await geocoder.geocode(address)

    assert transport.requests == []


@pytest.mark.parametrize("missing", ["city", "state", "zip_code"])
def test_address_model_requires_every_locality_field(missing):
    fields = {"street1": "1 Main St", "city": "Seattle", "state": "WA", "zip_code": "98101"}
    fields[missing] = "  "

    with pytest.raises(PydanticValidationError):
        Address(**fields)


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    [1, 2],
    {"type": "FeatureCollection", "features": {"0": "not a list"}},
    {"type": "FeatureCollection", "features": ["not a feature"]},
])
async def test_malformed_body_is_terminal_upstream_error(body):
    transport = ScriptedTransport(body)
    sleep = RecordingSleep()
    geocoder = make_geocoder(transport, sleep=sleep)

    with pytest.raises(GeocodingError) as exc_info:
        await geocoder.geocode(make_address())

    assert exc_info.value.reason == GeocodingError.UPSTREAM_ERROR
    assert exc_info.value.retryable is False
    assert len(transport.requests) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_missing_client_id_fails_fast():
    transport = ScriptedTransport()
    geocoder = make_geocoder(transport, client_id="")

    with pytest.raises(GeocodingError) as exc_info:
        await geocoder.geocode(make_address())

    assert exc_info.value.reason == GeocodingError.AUTH_FAILED
    assert transport.requests == []


@pytest.mark.asyncio
async def test_token_failure_is_terminal():
    transport = ScriptedTransport()
    geocoder = make_geocoder(transport, token_provider=StaticTokenProvider(""))

    with pytest.raises(GeocodingError) as exc_info:
        await geocoder.geocode(make_address())

    assert exc_info.value.reason == GeocodingError.AUTH_FAILED
    assert transport.requests == []


@pytest.mark.asyncio
async def test_credential_falls_back_to_next_scope():
    credential = FakeCredential(failing_scopes={"maps"}, tokens=("mgmt-token",))
    provider = CredentialTokenProvider(credential, scopes=["maps", "management"])

    assert await provider.get_token() == "mgmt-token"
    # cached until expiry
    assert await provider.get_token() == "mgmt-token"
    assert credential.calls == ["maps", "management"]


@pytest.mark.asyncio
async def test_credential_with_no_usable_scope_raises():
    provider = CredentialTokenProvider(FakeCredential(failing_scopes={"a", "b"}), scopes=["a", "b"])

    with pytest.raises(TokenAcquisitionError):
        await provider.get_token()


def test_parse_address_string():
    address = parse_address_string("12 Pine St, Apt 4, Portland, OR 97205")

    assert address.street1 == "12 Pine St, Apt 4"
    assert address.city == "Portland"
    assert address.state == "OR"
    assert address.zip_code == "97205"


@pytest.mark.parametrize("value", ["12 Pine St, Portland", "12 Pine St, Portland, Oregon"])
def test_parse_address_string_rejects_malformed(value):
    with pytest.raises(ValidationError):
        parse_address_string(value)
