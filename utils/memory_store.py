# 📦 utils/memory_store.py
# ─────────────────────────────
# Entity store contract + in-process implementation

import asyncio
import copy
from typing import Dict, List, Optional

import structlog

log = structlog.get_logger()

THERAPIST = "therapist"
CLIENT = "client"
KINDS = (THERAPIST, CLIENT)


class EntityStore:
    """Durable storage for therapist and client rows keyed by id.

    update() merges only the given fields; update_if() additionally requires
    every `expected` field to hold its expected value at write time, so stores
    that support conditional writes can close read-then-write races.
    """

    async def get(self, kind: str, entity_id: str) -> Optional[dict]:
        raise NotImplementedError

    async def list(self, kind: str, filters: Optional[dict] = None) -> List[dict]:
        raise NotImplementedError

    async def insert(self, kind: str, record: dict) -> dict:
        raise NotImplementedError

    async def update(self, kind: str, entity_id: str, fields: dict) -> Optional[dict]:
        raise NotImplementedError

    async def update_if(self, kind: str, entity_id: str, expected: dict, fields: dict) -> Optional[dict]:
        raise NotImplementedError

    async def delete(self, kind: str, entity_id: str) -> None:
        raise NotImplementedError


def _check_kind(kind: str) -> None:
    if kind not in KINDS:
        raise ValueError(f"Unknown entity kind: {kind}")


class InMemoryStore(EntityStore):
    """Dict-backed store; rows are copied in and out."""

    def __init__(self):
        self._rows: Dict[str, Dict[str, dict]] = {kind: {} for kind in KINDS}
        self._lock = asyncio.Lock()

    async def get(self, kind, entity_id):
        _check_kind(kind)
        row = self._rows[kind].get(entity_id)
        return copy.deepcopy(row) if row is not None else None

    async def list(self, kind, filters=None):
        _check_kind(kind)
        filters = filters or {}
        # dicts keep insertion order, which ranking relies on for ties
        return [
            copy.deepcopy(row)
            for row in self._rows[kind].values()
            if all(row.get(k) == v for k, v in filters.items())
        ]

    async def insert(self, kind, record):
        _check_kind(kind)
        async with self._lock:
            if record["id"] in self._rows[kind]:
                raise ValueError(f"{kind} {record['id']} already exists")
            self._rows[kind][record["id"]] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def update(self, kind, entity_id, fields):
        return await self.update_if(kind, entity_id, {}, fields)

    async def update_if(self, kind, entity_id, expected, fields):
        _check_kind(kind)
        async with self._lock:
            row = self._rows[kind].get(entity_id)
            if row is None:
                return None
            if any(row.get(k) != v for k, v in expected.items()):
                log.info("Conditional update rejected", kind=kind, entity_id=entity_id, expected=expected)
                return None
            row.update(copy.deepcopy(fields))
            return copy.deepcopy(row)

    async def delete(self, kind, entity_id):
        _check_kind(kind)
        async with self._lock:
            self._rows[kind].pop(entity_id, None)
