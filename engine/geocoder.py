# 📦 engine/geocoder.py
# ─────────────────────────────
# Address → coordinates with bounded retry, re-auth and a process-local cache

from __future__ import annotations

import asyncio
import inspect
import random
import re
import threading
import time
from typing import Awaitable, Callable, Dict, Optional, Sequence

import httpx
import structlog
from prometheus_client import Counter

from engine.errors import GeocodingError, OpenFielderError, ValidationError
from schemas.schemas import Address, Coordinates

log = structlog.get_logger()

GEOCODE_UPSTREAM_CALLS = Counter("openfielder_geocode_upstream_calls_total", "HTTP calls made to the geocoding provider")
GEOCODE_CACHE_HITS = Counter("openfielder_geocode_cache_hits_total", "Geocode lookups answered from the cache")
GEOCODE_RETRIES = Counter("openfielder_geocode_retries_total", "Geocode attempts retried after a transient failure")

DEFAULT_SCOPES = [
    "https://atlas.microsoft.com/.default",
    "https://atlas.microsoft.com/user_impersonation",
    "https://management.azure.com/.default",
]

# Refresh tokens this many seconds before they expire
TOKEN_EXPIRY_MARGIN_S = 60


# ─────────────────────────────
# Identity providers

class TokenAcquisitionError(OpenFielderError):
    pass


class TokenProvider:
    """Supplies bearer tokens for the geocoding provider."""

    async def get_token(self) -> str:
        raise NotImplementedError

    def invalidate(self) -> None:
        """Drop any cached token so the next call re-acquires one."""


class StaticTokenProvider(TokenProvider):
    def __init__(self, token: str):
        self.token = token

    async def get_token(self) -> str:
        if not self.token:
            raise TokenAcquisitionError("No static maps token configured")
        return self.token


class CredentialTokenProvider(TokenProvider):
    """Wraps any credential exposing get_token(scope) -> {token, expires_on}.

    Scopes are tried in order and the first that yields a token wins. The
    credential may be sync or async (azure-identity offers both flavours).
    """

    def __init__(self, credential, scopes: Sequence[str] = DEFAULT_SCOPES, clock: Callable[[], float] = time.time):
        self.credential = credential
        self.scopes = list(scopes)
        self.clock = clock
        self._token: Optional[str] = None
        self._expires_on: float = 0.0

    async def get_token(self) -> str:
        if self._token and self.clock() < self._expires_on - TOKEN_EXPIRY_MARGIN_S:
            return self._token

        for scope in self.scopes:
            try:
                result = self.credential.get_token(scope)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                log.info("Token scope failed", scope=scope, error=str(e))
                continue

            token = getattr(result, "token", None)
            if token is None and isinstance(result, dict):
                token = result.get("token")
            if not token:
                log.info("Token scope returned no token", scope=scope)
                continue

            expires_on = getattr(result, "expires_on", None)
            if expires_on is None and isinstance(result, dict):
                expires_on = result.get("expires_on") or result.get("expiry")
            self._token = token
            self._expires_on = float(expires_on) if expires_on else self.clock() + 3600
            log.info("Obtained maps access token", scope=scope)
            return token

        raise TokenAcquisitionError("Failed to get access token with any scope")

    def invalidate(self) -> None:
        self._token = None
        self._expires_on = 0.0


# ─────────────────────────────
# Address helpers

_WS = re.compile(r"\s+")
_STATE_ZIP = re.compile(r"^(.+?)\s+(\d{5}(?:-\d{4})?)$")


def normalize_address(address: Address) -> str:
    """Cache key: comma-joined address parts, whitespace collapsed, lower-cased."""
    return _WS.sub(" ", address.query_string()).lower()


def redact(address: Address) -> str:
    return f"[REDACTED], {address.city}, {address.state} {address.zip_code}"


def validate_address(address: Address) -> None:
    missing = [name for name in ("street1", "city", "state", "zip_code") if not (getattr(address, name) or "").strip()]
    if missing:
        raise ValidationError(f"Complete address is required; missing {', '.join(missing)}")


def parse_address_string(value: str) -> Address:
    """Parse "street, city, ST 12345" into an Address."""
    parts = [p.strip() for p in value.split(",")]
    if len(parts) < 3:
        raise ValidationError('Address string must be in format: "street, city, state zipcode"')

    match = _STATE_ZIP.match(parts[-1])
    if not match:
        raise ValidationError("Invalid state and zip code format")

    return Address(
        street1=", ".join(parts[:-2]),
        city=parts[-2],
        state=match.group(1),
        zip_code=match.group(2),
    )


# ─────────────────────────────
# Attempt outcome

class _AttemptFailed(Exception):
    def __init__(self, reason: str, details: str, retryable: bool, status: Optional[int] = None):
        super().__init__(details)
        self.reason = reason
        self.details = details
        self.retryable = retryable
        self.status = status


def classify_status(status: int) -> tuple[str, bool]:
    """Map an HTTP status to (reason, retryable)."""
    if status == 401:
        return GeocodingError.AUTH_FAILED, True
    if status == 429:
        return GeocodingError.RATE_LIMITED, True
    if status >= 500:
        return GeocodingError.UPSTREAM_ERROR, True
    if status == 403:
        return GeocodingError.FORBIDDEN, False
    if status == 404:
        return GeocodingError.NOT_FOUND, False
    return GeocodingError.BAD_REQUEST, False


# ─────────────────────────────
# Geocoder

class Geocoder:
    def __init__(
        self,
        token_provider: TokenProvider,
        client_id: str,
        *,
        endpoint: str = "https://atlas.microsoft.com/geocode",
        api_version: str = "2025-01-01",
        country: str = "US",
        timeout_s: float = 8.0,
        max_retries: int = 3,
        base_delay_ms: float = 1000,
        jitter_ms: float = 1000,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        self.token_provider = token_provider
        self.client_id = client_id
        self.endpoint = endpoint
        self.api_version = api_version
        self.country = country
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.jitter_ms = jitter_ms
        self.http_client = http_client
        self._sleep = sleep
        self._jitter = jitter
        self._cache: Dict[str, Coordinates] = {}
        self._cache_lock = threading.Lock()

    # ─────────────────────────────
    # Cache

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
        log.info("Geocoding cache cleared")

    def cache_stats(self) -> dict:
        with self._cache_lock:
            return {"size": len(self._cache), "keys": list(self._cache.keys())}

    # ─────────────────────────────
    # Public API

    async def geocode(self, address: Address) -> Coordinates:
        validate_address(address)
        if not self.client_id:
            raise GeocodingError(GeocodingError.AUTH_FAILED, address, "Maps client id not configured (set AZURE_MAPS_CLIENT_ID)")
        key = normalize_address(address)

        with self._cache_lock:
            hit = self._cache.get(key)
        if hit is not None:
            GEOCODE_CACHE_HITS.inc()
            log.debug("Using cached coordinates", address=redact(address))
            return hit

        coordinates = await self._geocode_with_retry(address)

        with self._cache_lock:
            self._cache[key] = coordinates
        log.info("Geocoded address", address=redact(address), lat=coordinates.latitude, lon=coordinates.longitude)
        return coordinates

    def backoff_ms(self, attempt: int) -> float:
        return self.base_delay_ms * (2 ** attempt) + self._jitter(0, self.jitter_ms)

    async def _geocode_with_retry(self, address: Address) -> Coordinates:
        reauthenticated = False
        last: Optional[_AttemptFailed] = None

        for attempt in range(self.max_retries + 1):
            try:
                return await self._attempt(address)
            except _AttemptFailed as e:
                last = e

            if not last.retryable:
                log.error("Non-retryable geocoding error", address=redact(address), reason=last.reason, details=last.details)
                raise GeocodingError(last.reason, address, last.details, retryable=False)

            if last.status == 401:
                if reauthenticated:
                    log.error("Geocoding authentication failed after token refresh", address=redact(address))
                    raise GeocodingError(GeocodingError.AUTH_FAILED, address, last.details, retryable=False)
                reauthenticated = True
                self.token_provider.invalidate()

            if attempt == self.max_retries:
                break

            delay_ms = self.backoff_ms(attempt)
            GEOCODE_RETRIES.inc()
            log.warning(
                "Geocoding attempt failed, retrying",
                attempt=attempt + 1,
                delay_ms=round(delay_ms),
                reason=last.reason,
                details=last.details,
            )
            await self._sleep(delay_ms / 1000.0)

        log.error("Geocoding failed after retries", retries=self.max_retries, reason=last.reason)
        raise GeocodingError(
            last.reason,
            address,
            f"Operation failed after {self.max_retries} retries: {last.details}",
            retryable=True,
        )

    def _params(self, address: Address) -> dict:
        return {
            "api-version": self.api_version,
            "addressLine": address.street_line(),
            "locality": address.city,
            "adminDistrict": address.state,
            "postalCode": address.zip_code,
            "countryRegion": self.country,
            "top": "1",
        }

    async def _attempt(self, address: Address) -> Coordinates:
        try:
            token = await self.token_provider.get_token()
        except TokenAcquisitionError as e:
            raise _AttemptFailed(GeocodingError.AUTH_FAILED, f"Authentication failed: {e.message}", retryable=False)

        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/geo+json",
            "x-ms-client-id": self.client_id,
        }

        GEOCODE_UPSTREAM_CALLS.inc()
        try:
            if self.http_client is not None:
                response = await self.http_client.get(
                    self.endpoint, params=self._params(address), headers=headers, timeout=self.timeout_s
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await client.get(self.endpoint, params=self._params(address), headers=headers)
        except httpx.TimeoutException as e:
            raise _AttemptFailed(GeocodingError.NETWORK_ERROR, f"Request timeout: {e}", retryable=True)
        except httpx.TransportError as e:
            raise _AttemptFailed(GeocodingError.NETWORK_ERROR, f"Network connection error: {e}", retryable=True)

        if response.status_code != 200:
            reason, retryable = classify_status(response.status_code)
            raise _AttemptFailed(
                reason,
                f"Geocoding API error: {response.status_code} {response.reason_phrase} - {response.text[:200]}",
                retryable=retryable,
                status=response.status_code,
            )

        return self._parse(response, address)

    def _parse(self, response: httpx.Response, address: Address) -> Coordinates:
        try:
            data = response.json()
        except ValueError:
            raise _AttemptFailed(GeocodingError.UPSTREAM_ERROR, "Geocoding API returned invalid JSON", retryable=False)

        if not isinstance(data, dict):
            raise _AttemptFailed(
                GeocodingError.UPSTREAM_ERROR, "Geocoding API returned a non-object body", retryable=False
            )

        features = data.get("features") or []
        if not isinstance(features, list):
            raise _AttemptFailed(
                GeocodingError.UPSTREAM_ERROR, "Geocoding API returned malformed features", retryable=False
            )
        if not features:
            raise _AttemptFailed(
                GeocodingError.NOT_FOUND,
                f"No geocoding results found for address: {address.query_string()}",
                retryable=False,
            )

        feature = features[0]
        try:
            # GeoJSON order is [longitude, latitude]
            longitude, latitude = feature["geometry"]["coordinates"][:2]
            coordinates = Coordinates(latitude=latitude, longitude=longitude)
        except (KeyError, TypeError, ValueError) as e:
            raise _AttemptFailed(
                GeocodingError.UPSTREAM_ERROR, f"Malformed geocoding feature: {e}", retryable=False
            )

        properties = feature.get("properties") if isinstance(feature, dict) else None
        if isinstance(properties, dict):
            matched = properties.get("address")
            log.info(
                "Geocoding match",
                confidence=properties.get("confidence"),
                matched=isinstance(matched, dict) and matched.get("formattedAddress") is not None,
            )
        return coordinates
