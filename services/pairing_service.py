# 📦 /services/pairing_service.py

import uuid
from typing import List, Optional

import structlog
from prometheus_client import Counter

from engine.errors import ConflictError, ValidationError
from engine.pairing import PairingEngine
from schemas.schemas import (
    Client,
    ClientCreate,
    ClientStatus,
    ClientUpdate,
    NearestTherapist,
    Therapist,
    TherapistCreate,
    TherapistUpdate,
    utcnow,
)
from services.geocoding_service import GeocodingService
from utils.memory_store import CLIENT, THERAPIST
from utils.records import client_from_row, therapist_from_row, to_row

log = structlog.get_logger()

NEAREST_REQUESTS_COUNTER = Counter("openfielder_nearest_requests_total", "Total nearest-therapist requests")
PAIRINGS_COUNTER = Counter("openfielder_pairings_total", "Successful pairings")
UNPAIRINGS_COUNTER = Counter("openfielder_unpairings_total", "Unpair requests handled")
CONFLICTS_COUNTER = Counter("openfielder_pairing_conflicts_total", "Pairing attempts rejected by a precondition", ["reason"])


class PairingService:
    """Entity lifecycle around the pairing engine."""

    def __init__(self, engine: PairingEngine, geocoding: GeocodingService, geocode_on_create: bool = True):
        self.engine = engine
        self.store = engine.store
        self.geocoding = geocoding
        self.geocode_on_create = geocode_on_create

    async def _check_address(self, address) -> None:
        # Validates the address and warms the cache; failure aborts the write
        if self.geocode_on_create:
            await self.geocoding.geocode(address)

    # ─────────────────────────────
    # Therapists

    async def create_therapist(self, request: TherapistCreate) -> Therapist:
        await self._check_address(request.address)
        now = utcnow()
        therapist = Therapist(
            id=str(uuid.uuid4()),
            date_created=now,
            date_modified=now,
            **request.model_dump(),
        )
        await self.store.insert(THERAPIST, to_row(therapist))
        log.info("Created therapist", therapist_id=therapist.id)
        return therapist

    async def list_therapists(self) -> List[Therapist]:
        return [therapist_from_row(row) for row in await self.store.list(THERAPIST)]

    async def get_therapist(self, therapist_id: str) -> Therapist:
        return await self.engine.get_therapist(therapist_id)

    async def update_therapist(self, therapist_id: str, request: TherapistUpdate) -> Therapist:
        await self.engine.get_therapist(therapist_id)
        fields = request.model_dump(exclude_unset=True, exclude_none=True, mode="json")
        if request.address is not None:
            await self._check_address(request.address)
        fields["date_modified"] = utcnow().isoformat()
        row = await self.store.update(THERAPIST, therapist_id, fields)
        return therapist_from_row(row) if row else await self.engine.get_therapist(therapist_id)

    async def delete_therapist(self, therapist_id: str) -> None:
        await self.engine.delete_therapist(therapist_id)

    # ─────────────────────────────
    # Clients

    async def create_client(self, request: ClientCreate) -> Client:
        await self._check_address(request.address)
        now = utcnow()
        client = Client(
            id=str(uuid.uuid4()),
            status=ClientStatus.active,
            date_created=now,
            date_modified=now,
            **request.model_dump(),
        )
        await self.store.insert(CLIENT, to_row(client))
        log.info("Created client", client_id=client.id)
        return client

    async def list_clients(self) -> List[Client]:
        return [client_from_row(row) for row in await self.store.list(CLIENT)]

    async def get_client(self, client_id: str) -> Client:
        return await self.engine.get_client(client_id)

    async def update_client(self, client_id: str, request: ClientUpdate) -> Client:
        current = await self.engine.get_client(client_id)
        fields = request.model_dump(exclude_unset=True, exclude_none=True, mode="json")

        status = fields.get("status")
        if status == ClientStatus.paired.value:
            raise ValidationError("Client status 'paired' is set by pairing, not by update")
        if status is not None and current.status == ClientStatus.paired:
            raise ConflictError(
                f"Client {client_id} is paired; unpair before changing its status",
                reason="client_paired",
                therapist_id=current.therapist_id,
                client_id=client_id,
            )

        if request.address is not None:
            await self._check_address(request.address)
        fields["date_modified"] = utcnow().isoformat()
        row = await self.store.update(CLIENT, client_id, fields)
        return client_from_row(row) if row else await self.engine.get_client(client_id)

    async def delete_client(self, client_id: str) -> None:
        await self.engine.delete_client(client_id)

    # ─────────────────────────────
    # Pairing

    async def find_nearest(self, client_id: str, limit: Optional[int] = None) -> List[NearestTherapist]:
        NEAREST_REQUESTS_COUNTER.inc()
        return await self.engine.find_nearest_therapists(client_id, limit)

    async def pair(self, therapist_id: str, client_id: str) -> None:
        try:
            await self.engine.pair_therapist_with_client(therapist_id, client_id)
        except ConflictError as e:
            CONFLICTS_COUNTER.labels(e.reason).inc()
            log.info("Pairing rejected", therapist_id=therapist_id, client_id=client_id, reason=e.reason)
            raise
        PAIRINGS_COUNTER.inc()

    async def unpair(self, therapist_id: Optional[str] = None, client_id: Optional[str] = None) -> None:
        UNPAIRINGS_COUNTER.inc()
        if therapist_id:
            await self.engine.unpair_therapist(therapist_id)
        elif client_id:
            await self.engine.unpair_client(client_id)
        else:
            raise ValidationError("therapist_id or client_id is required")

    async def consistency(self, therapist_id: str) -> List[str]:
        return await self.engine.check_pair_consistency(therapist_id)
