"""
SupabaseGateway against a recording stand-in for the supabase-py client.

The stand-in records every builder call so tests assert on the PostgREST
query that would be sent.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from tablesync.config import Settings
from tablesync.kernel.predicate import decode_filter
from tablesync.kernel.types import ChangeType, GatewayError, OrderEntry
from tablesync.services.supabase_gateway import (
    SupabaseGateway,
    create_supabase_gateway,
    search_rpc_name,
)


class RecordingQuery:
    def __init__(self, response=None):
        self.calls = []
        self.response = response if response is not None else SimpleNamespace(data=[], count=0)

    @property
    def not_(self):
        self.calls.append(("not_",))
        return self

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)

        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return method

    async def execute(self):
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class RecordingClient:
    def __init__(self, response=None):
        self.query = RecordingQuery(response)
        self.tables = []
        self.rpcs = []
        self.channels = {}
        self.remove_channel = AsyncMock()

    def table(self, name):
        self.tables.append(name)
        return self.query

    def rpc(self, name, params):
        self.rpcs.append((name, params))
        return self.query

    def channel(self, name):
        channel = MagicMock()
        channel.subscribe = AsyncMock()
        self.channels[name] = channel
        return channel


def gateway_with(response=None):
    client = RecordingClient(response)
    return SupabaseGateway(client, schema="app"), client


class TestSelect:
    @pytest.mark.asyncio
    async def test_filters_order_and_range(self):
        gateway, client = gateway_with(SimpleNamespace(data=[{"id": 1}]))
        predicate = decode_filter({"status": "open", "age": {"gte": 18}, "deletedAt": {"equals": None}})

        rows = await gateway.select("Thing", predicate, (OrderEntry(field="age", direction="desc"),), 5, 10)

        assert rows == [{"id": 1}]
        assert client.tables == ["Thing"]
        assert client.query.calls == [
            ("select", ("*",), {}),
            ("eq", ("status", "open"), {}),
            ("gte", ("age", 18), {}),
            ("is_", ("deletedAt", "null"), {}),
            ("order", ("age",), {"desc": True}),
            ("range", (10, 14), {}),
        ]

    @pytest.mark.asyncio
    async def test_offset_without_limit_uses_page_of_ten(self):
        gateway, client = gateway_with()
        await gateway.select("Thing", None, None, None, 10)
        assert client.query.calls[-1] == ("range", (10, 19), {})

    @pytest.mark.asyncio
    async def test_limit_only(self):
        gateway, client = gateway_with()
        await gateway.select("Thing", None, None, 5, None)
        assert client.query.calls[-1] == ("limit", (5,), {})

    @pytest.mark.asyncio
    async def test_operator_translation(self):
        gateway, client = gateway_with()
        predicate = decode_filter({
            "name": {"contains": "bo", "startsWith": "b"},
            "id": {"notIn": [1, 2]},
            "tags": {"hasSome": ["x"], "isEmpty": False},
            "owner": {"not": None},
        })

        await gateway.select("Thing", predicate)

        assert client.query.calls[1:] == [
            ("ilike", ("name", "%bo%"), {}),
            ("ilike", ("name", "b%"), {}),
            ("not_",),
            ("in_", ("id", [1, 2]), {}),
            ("overlaps", ("tags", ["x"]), {}),
            ("neq", ("tags", "{}"), {}),
            ("not_",),
            ("is_", ("owner", "null"), {}),
        ]

    @pytest.mark.asyncio
    async def test_client_error_becomes_gateway_error(self):
        boom = RuntimeError("connection reset")
        gateway, _ = gateway_with(boom)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.select("Thing")
        assert exc_info.value.__cause__ is boom


class TestCountAndMutations:
    @pytest.mark.asyncio
    async def test_count_uses_exact_head_query(self):
        gateway, client = gateway_with(SimpleNamespace(data=[], count=42))
        total = await gateway.count("Thing", decode_filter({"status": "open"}))

        assert total == 42
        assert client.query.calls[0] == ("select", ("*",), {"count": "exact", "head": True})

    @pytest.mark.asyncio
    async def test_insert_returns_stored_row(self):
        gateway, client = gateway_with(SimpleNamespace(data=[{"id": 1, "name": "x"}]))
        row = await gateway.insert("Thing", {"name": "x"})

        assert row == {"id": 1, "name": "x"}
        assert client.query.calls == [("insert", ({"name": "x"},), {})]

    @pytest.mark.asyncio
    async def test_insert_without_returned_row_fails(self):
        gateway, _ = gateway_with(SimpleNamespace(data=[]))
        with pytest.raises(GatewayError):
            await gateway.insert("Thing", {"name": "x"})

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self):
        gateway, client = gateway_with(SimpleNamespace(data=[]))
        assert await gateway.update_one("Thing", {"id": 9}, {"name": "y"}) is None
        assert client.query.calls == [("update", ({"name": "y"},), {}), ("eq", ("id", 9), {})]

    @pytest.mark.asyncio
    async def test_delete_one_returns_deleted_row(self):
        gateway, client = gateway_with(SimpleNamespace(data=[{"id": 9}]))
        assert await gateway.delete_one("Thing", {"id": 9}) == {"id": 9}
        assert client.query.calls == [("delete", (), {}), ("eq", ("id", 9), {})]

    @pytest.mark.asyncio
    async def test_delete_many_without_filter_targets_all_rows(self):
        gateway, client = gateway_with(SimpleNamespace(data=[{"id": 1}, {"id": 2}]))
        assert await gateway.delete_many("Thing") == 2
        assert client.query.calls == [("delete", (), {}), ("not_",), ("is_", ("id", "null"), {})]


class TestRealtime:
    @pytest.mark.asyncio
    async def test_subscribe_registers_postgres_changes(self):
        gateway, client = gateway_with()
        received = []

        handle = await gateway.subscribe_changes("Thing", "status=eq.open", received.append, channel="feed")

        channel = client.channels["feed"]
        assert handle is channel
        channel.subscribe.assert_awaited_once()
        args, kwargs = channel.on_postgres_changes.call_args
        assert args == ("*",)
        assert kwargs["schema"] == "app"
        assert kwargs["table"] == "Thing"
        assert kwargs["filter"] == "status=eq.open"

        callback = kwargs["callback"]
        callback({"data": {"type": "INSERT", "record": {"id": 1}, "old_record": None}})
        callback({"data": {"type": "TRUNCATE"}})
        assert len(received) == 1
        assert received[0].event_type is ChangeType.INSERT
        assert received[0].new_row == {"id": 1}

    @pytest.mark.asyncio
    async def test_subscribe_without_filter(self):
        gateway, client = gateway_with()
        await gateway.subscribe_changes("Thing", None, lambda event: None, channel="feed")
        _, kwargs = client.channels["feed"].on_postgres_changes.call_args
        assert "filter" not in kwargs

    @pytest.mark.asyncio
    async def test_unsubscribe_removes_channel(self):
        gateway, client = gateway_with()
        handle = await gateway.subscribe_changes("Thing", None, lambda event: None, channel="feed")
        await gateway.unsubscribe_changes(handle)
        client.remove_channel.assert_awaited_once_with(handle)


class TestSearch:
    def test_rpc_name(self):
        assert search_rpc_name("Thing", "name") == "search_Thing_by_name_prefix"

    @pytest.mark.asyncio
    async def test_search_calls_rpc(self):
        gateway, client = gateway_with(SimpleNamespace(data=[{"id": 1}]))
        rows = await gateway.search_by_field_prefix("Thing", "name", "al")

        assert rows == [{"id": 1}]
        assert client.rpcs == [("search_Thing_by_name_prefix", {"prefix": "al"})]


class TestFactory:
    @pytest.mark.asyncio
    async def test_missing_credentials(self, monkeypatch):
        for name in ("SUPABASE_URL", "SUPABASE_KEY", "SUPABASE_ANON_KEY"):
            monkeypatch.delenv(name, raising=False)
            monkeypatch.delenv(f"TABLESYNC_{name}", raising=False)

        with pytest.raises(RuntimeError, match="SUPABASE_URL"):
            await create_supabase_gateway(Settings())
