# 📦 utils/supabase_utils.py
# ─────────────────────────────
# Supabase-backed entity store

import asyncio
from typing import Callable, Dict, Optional

import httpx
import structlog

from engine.errors import TransientInfrastructureError
from utils.memory_store import CLIENT, THERAPIST, EntityStore

log = structlog.get_logger()


async def execute_with_retry(build_query: Callable, retries: int = 3, delay: float = 1.0):
    """Run a query, retrying transport failures with exponential backoff."""
    for attempt in range(retries):
        try:
            return build_query().execute()
        except httpx.TransportError as e:
            log.warning("Supabase request failed", attempt=attempt + 1, error=str(e))
            if attempt < retries - 1:
                await asyncio.sleep(delay * (2 ** attempt))  # Exponential backoff
    raise TransientInfrastructureError(f"Supabase request failed after {retries} attempts")


def _match(query, expected: dict):
    for field, value in expected.items():
        query = query.is_(field, "null") if value is None else query.eq(field, value)
    return query


class SupabaseStore(EntityStore):
    """One table per entity kind; rows carry the nested address as jsonb."""

    def __init__(self, supabase, tables: Optional[Dict[str, str]] = None, retries: int = 3, delay: float = 1.0):
        self.supabase = supabase
        self.tables = tables or {THERAPIST: "therapists", CLIENT: "clients"}
        self.retries = retries
        self.delay = delay

    def _table(self, kind: str):
        if kind not in self.tables:
            raise ValueError(f"Unknown entity kind: {kind}")
        return self.supabase.table(self.tables[kind])

    async def _run(self, build_query: Callable):
        return await execute_with_retry(build_query, retries=self.retries, delay=self.delay)

    async def get(self, kind, entity_id):
        response = await self._run(lambda: self._table(kind).select("*").eq("id", entity_id).limit(1))
        return response.data[0] if response.data else None

    async def list(self, kind, filters=None):
        response = await self._run(
            lambda: _match(self._table(kind).select("*"), filters or {}).order("date_created")
        )
        return response.data or []

    async def insert(self, kind, record):
        response = await self._run(lambda: self._table(kind).insert(record))
        return response.data[0] if response.data else record

    async def update(self, kind, entity_id, fields):
        response = await self._run(lambda: self._table(kind).update(fields).eq("id", entity_id))
        return response.data[0] if response.data else None

    async def update_if(self, kind, entity_id, expected, fields):
        # The filter is evaluated by Postgres inside the UPDATE, so the
        # precondition and the write happen atomically.
        response = await self._run(
            lambda: _match(self._table(kind).update(fields).eq("id", entity_id), expected)
        )
        if not response.data:
            log.info("Conditional update matched no rows", kind=kind, entity_id=entity_id, expected=expected)
            return None
        return response.data[0]

    async def delete(self, kind, entity_id):
        await self._run(lambda: self._table(kind).delete().eq("id", entity_id))
