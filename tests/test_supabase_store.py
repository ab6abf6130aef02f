# 📦 /tests/test_supabase_store.py

from unittest.mock import MagicMock

import httpx
import pytest

from engine.errors import TransientInfrastructureError
from utils.supabase_utils import SupabaseStore

pytest_plugins = ("pytest_asyncio",)


def make_supabase(data):
    supabase = MagicMock()
    query = supabase.table.return_value
    # every builder call returns the same chainable mock
    for name in ("select", "update", "insert", "delete", "eq", "is_", "limit", "order"):
        getattr(query, name).return_value = query
    query.execute.return_value = MagicMock(data=data)
    return supabase, query


@pytest.mark.asyncio
async def test_get_returns_none_when_no_rows():
    supabase, _ = make_supabase([])
    store = SupabaseStore(supabase)

    assert await store.get("therapist", "t1") is None
    supabase.table.assert_called_with("therapists")


@pytest.mark.asyncio
async def test_update_if_filters_on_expected_fields():
    supabase, query = make_supabase([{"id": "c1", "status": "paired"}])
    store = SupabaseStore(supabase)

    row = await store.update_if("client", "c1", {"therapist_id": None, "status": "active"}, {"status": "paired"})

    assert row == {"id": "c1", "status": "paired"}
    query.update.assert_called_with({"status": "paired"})
    query.is_.assert_called_with("therapist_id", "null")
    query.eq.assert_any_call("id", "c1")
    query.eq.assert_any_call("status", "active")


@pytest.mark.asyncio
async def test_update_if_without_match_returns_none():
    supabase, _ = make_supabase([])
    store = SupabaseStore(supabase)

    assert await store.update_if("therapist", "t1", {"is_paired": False}, {"is_paired": True}) is None


@pytest.mark.asyncio
async def test_transport_failures_become_transient_errors():
    supabase, query = make_supabase([])
    query.execute.side_effect = httpx.ConnectError("down")
    store = SupabaseStore(supabase, retries=2, delay=0)

    with pytest.raises(TransientInfrastructureError):
        await store.list("client")

    assert query.execute.call_count == 2
