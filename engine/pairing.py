# 📦 engine/pairing.py
# ─────────────────────────────
# Nearest-first ranking and pair/unpair state transitions

import asyncio
from typing import List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from engine.distance import distance_km
from engine.errors import ConflictError, GeocodingError, NotFoundError, ValidationError
from schemas.schemas import Address, Client, ClientStatus, Coordinates, NearestTherapist, Therapist, utcnow
from utils.memory_store import CLIENT, THERAPIST, EntityStore
from utils.records import client_from_row, therapist_from_row

log = structlog.get_logger()

DEFAULT_LIMIT = 10


class CoordinateResolver:
    """Anything that turns an Address into Coordinates (usually the geocoder)."""

    async def resolve(self, address: Address) -> Coordinates:
        raise NotImplementedError


class PairingEngine:
    def __init__(self, store: EntityStore, resolver: CoordinateResolver, default_limit: int = DEFAULT_LIMIT, max_limit: int = 100):
        self.store = store
        self.resolver = resolver
        self.default_limit = default_limit
        self.max_limit = max_limit

    # ─────────────────────────────
    # Lookups

    async def get_therapist(self, therapist_id: str) -> Therapist:
        row = await self.store.get(THERAPIST, therapist_id)
        if row is None:
            raise NotFoundError("therapist", therapist_id)
        return therapist_from_row(row)

    async def get_client(self, client_id: str) -> Client:
        row = await self.store.get(CLIENT, client_id)
        if row is None:
            raise NotFoundError("client", client_id)
        return client_from_row(row)

    # ─────────────────────────────
    # Ranking

    async def _load_therapists(self) -> List[Therapist]:
        """Stored therapists; rows that no longer validate (e.g. incomplete address) are skipped."""
        therapists = []
        for row in await self.store.list(THERAPIST):
            try:
                therapists.append(therapist_from_row(row))
            except PydanticValidationError as e:
                log.warning("Skipping invalid therapist row", therapist_id=row.get("id"), errors=e.error_count())
        return therapists

    def _resolve_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_limit
        if limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {limit}")
        return min(limit, self.max_limit)

    async def find_nearest_therapists(self, client_id: str, limit: Optional[int] = None) -> List[NearestTherapist]:
        """Unpaired therapists ordered by distance to the client, closest first.

        Ties keep store order (stable sort); client priority is not a key.
        Therapists whose address cannot be geocoded are skipped.
        """
        limit = self._resolve_limit(limit)
        client = await self.get_client(client_id)

        candidates = [th for th in await self._load_therapists() if not th.is_paired]

        if not candidates:
            log.info("No unpaired therapists available", client_id=client_id)
            return []

        client_coords = await self.resolver.resolve(client.address)

        resolved = await asyncio.gather(
            *(self.resolver.resolve(th.address) for th in candidates),
            return_exceptions=True,
        )

        scored = []
        for th, coords in zip(candidates, resolved):
            if isinstance(coords, (GeocodingError, ValidationError)):
                log.warning(
                    "Skipping therapist with unresolvable address",
                    therapist_id=th.id,
                    reason=getattr(coords, "reason", "invalid_address"),
                )
                continue
            if isinstance(coords, BaseException):
                raise coords
            scored.append((th, distance_km(client_coords, coords)))

        scored.sort(key=lambda x: x[1])

        results = [
            NearestTherapist(
                therapist_id=th.id,
                distance_km=dist,
                therapist_name=th.name,
                client_name=client.name,
            )
            for th, dist in scored[:limit]
        ]
        log.info("Nearest therapists ranked", client_id=client_id, candidates=len(scored), returned=len(results))
        return results

    # ─────────────────────────────
    # State transitions

    async def pair_therapist_with_client(self, therapist_id: str, client_id: str) -> None:
        therapist = await self.get_therapist(therapist_id)
        client = await self.get_client(client_id)

        if therapist.is_paired:
            raise ConflictError(
                f"Therapist {therapist_id} is already paired with client {therapist.client_id}",
                reason="therapist_already_paired",
                therapist_id=therapist_id,
                client_id=therapist.client_id,
            )
        if client.status == ClientStatus.paired or client.therapist_id:
            raise ConflictError(
                f"Client {client_id} is already paired with therapist {client.therapist_id}",
                reason="client_already_paired",
                therapist_id=client.therapist_id,
                client_id=client_id,
            )

        now = utcnow().isoformat()

        # Step 1: claim the therapist, conditional on it still being free
        claimed = await self.store.update_if(
            THERAPIST,
            therapist_id,
            {"is_paired": False},
            {"is_paired": True, "client_id": client_id, "date_modified": now},
        )
        if claimed is None:
            await self.get_therapist(therapist_id)
            raise ConflictError(
                f"Therapist {therapist_id} was paired by a concurrent request",
                reason="therapist_already_paired",
                therapist_id=therapist_id,
            )

        # Step 2: claim the client; undo step 1 if that fails
        try:
            linked = await self.store.update_if(
                CLIENT,
                client_id,
                {"therapist_id": None, "status": client.status.value},
                {"status": ClientStatus.paired.value, "therapist_id": therapist_id, "date_modified": now},
            )
        except Exception:
            await self._release_therapist(therapist_id, client_id)
            raise

        if linked is None:
            await self._release_therapist(therapist_id, client_id)
            await self.get_client(client_id)
            raise ConflictError(
                f"Client {client_id} was paired by a concurrent request",
                reason="client_already_paired",
                client_id=client_id,
            )

        log.info("Paired therapist with client", therapist_id=therapist_id, client_id=client_id)

    async def _release_therapist(self, therapist_id: str, client_id: str) -> None:
        """Compensating write for a half-finished pairing."""
        try:
            await self.store.update_if(
                THERAPIST,
                therapist_id,
                {"is_paired": True, "client_id": client_id},
                {"is_paired": False, "client_id": None, "date_modified": utcnow().isoformat()},
            )
            log.warning("Rolled back therapist claim", therapist_id=therapist_id, client_id=client_id)
        except Exception as e:
            log.error(
                "Rollback of therapist claim failed; pairing left inconsistent",
                therapist_id=therapist_id,
                client_id=client_id,
                error=str(e),
            )

    async def unpair_therapist(self, therapist_id: str) -> None:
        therapist = await self.get_therapist(therapist_id)

        if not therapist.is_paired and not therapist.client_id:
            log.info("Therapist already unpaired", therapist_id=therapist_id)
            return

        now = utcnow().isoformat()

        if therapist.client_id:
            client_row = await self.store.get(CLIENT, therapist.client_id)
            if client_row is None:
                log.warning("Linked client missing during unpair", therapist_id=therapist_id, client_id=therapist.client_id)
            elif client_row.get("therapist_id") not in (None, therapist_id):
                log.warning(
                    "Linked client points at another therapist; leaving it untouched",
                    therapist_id=therapist_id,
                    client_id=therapist.client_id,
                    client_therapist_id=client_row.get("therapist_id"),
                )
            else:
                await self.store.update(
                    CLIENT,
                    therapist.client_id,
                    {"status": ClientStatus.active.value, "therapist_id": None, "date_modified": now},
                )

        await self.store.update(
            THERAPIST,
            therapist_id,
            {"is_paired": False, "client_id": None, "date_modified": now},
        )
        log.info("Unpaired therapist", therapist_id=therapist_id, client_id=therapist.client_id)

    async def unpair_client(self, client_id: str) -> None:
        client = await self.get_client(client_id)

        if client.therapist_id:
            therapist_row = await self.store.get(THERAPIST, client.therapist_id)
            if therapist_row is not None and therapist_row.get("client_id") == client_id:
                await self.unpair_therapist(client.therapist_id)
                return
            log.warning("Client linked to a therapist that does not link back", client_id=client_id, therapist_id=client.therapist_id)
        elif client.status != ClientStatus.paired:
            log.info("Client already unpaired", client_id=client_id)
            return

        await self.store.update(
            CLIENT,
            client_id,
            {"status": ClientStatus.active.value, "therapist_id": None, "date_modified": utcnow().isoformat()},
        )

    # ─────────────────────────────
    # Ownership cascade

    async def delete_client(self, client_id: str) -> None:
        client = await self.get_client(client_id)
        if client.therapist_id or client.status == ClientStatus.paired:
            await self.unpair_client(client_id)
        await self.store.delete(CLIENT, client_id)
        log.info("Deleted client", client_id=client_id)

    async def delete_therapist(self, therapist_id: str) -> None:
        therapist = await self.get_therapist(therapist_id)
        if therapist.is_paired or therapist.client_id:
            await self.unpair_therapist(therapist_id)
        await self.store.delete(THERAPIST, therapist_id)
        log.info("Deleted therapist", therapist_id=therapist_id)

    # ─────────────────────────────
    # Diagnostics

    async def check_pair_consistency(self, therapist_id: str) -> List[str]:
        """Return the symmetry violations for a therapist's pairing (empty if consistent)."""
        therapist = await self.get_therapist(therapist_id)
        violations = []

        if therapist.is_paired != bool(therapist.client_id):
            violations.append(f"is_paired={therapist.is_paired} but client_id={therapist.client_id!r}")

        if therapist.client_id:
            row = await self.store.get(CLIENT, therapist.client_id)
            if row is None:
                violations.append(f"linked client {therapist.client_id} does not exist")
            else:
                client = client_from_row(row)
                if client.therapist_id != therapist_id:
                    violations.append(f"client {client.id} links to therapist {client.therapist_id!r}")
                if client.status != ClientStatus.paired:
                    violations.append(f"client {client.id} has status {client.status.value}")

        return violations
