"""
Supabase gateway — the Gateway contract on supabase-py's async client.

  select/count/insert/update/delete  -> PostgREST query builder
  subscribe_changes                  -> realtime postgres_changes channel
  search_by_field_prefix             -> RPC search_<table>_by_<field>_prefix(prefix)

Every failure surfaces as GatewayError with the client exception chained.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from tablesync.config import Settings
from tablesync.kernel.gateway import Gateway
from tablesync.kernel.predicate import FieldCondition, Operator, Predicate
from tablesync.kernel.types import (
    DEFAULT_PRIMARY_KEY,
    ChangeEvent,
    ChangeHandler,
    GatewayError,
    InvalidFilterError,
    OrderEntry,
    Row,
)

logger = logging.getLogger(__name__)

# Page size used when an offset is given without a limit.
DEFAULT_PAGE_SIZE = 10


def search_rpc_name(table: str, field: str) -> str:
    return f"search_{table}_by_{field}_prefix"


def _apply_condition(query: Any, c: FieldCondition) -> Any:
    op, col, value = c.op, c.field, c.operand
    if op is Operator.EQUALS:
        return query.is_(col, "null") if value is None else query.eq(col, value)
    if op is Operator.NOT:
        return query.not_.is_(col, "null") if value is None else query.neq(col, value)
    if op is Operator.IN:
        return query.in_(col, list(value))
    if op is Operator.NOT_IN:
        return query.not_.in_(col, list(value))
    if op is Operator.LT:
        return query.lt(col, value)
    if op is Operator.LTE:
        return query.lte(col, value)
    if op is Operator.GT:
        return query.gt(col, value)
    if op is Operator.GTE:
        return query.gte(col, value)
    if op is Operator.CONTAINS:
        return query.ilike(col, f"%{value}%")
    if op is Operator.STARTS_WITH:
        return query.ilike(col, f"{value}%")
    if op is Operator.ENDS_WITH:
        return query.ilike(col, f"%{value}")
    if op is Operator.HAS:
        return query.contains(col, [value])
    if op is Operator.HAS_EVERY:
        return query.contains(col, list(value))
    if op is Operator.HAS_SOME:
        return query.overlaps(col, list(value))
    if op is Operator.IS_EMPTY:
        return query.eq(col, "{}") if value else query.neq(col, "{}")
    raise InvalidFilterError(f"unsupported operator: {op}")


def apply_predicate(query: Any, predicate: Predicate | None) -> Any:
    """Chain one PostgREST filter per condition; conditions are AND-ed."""
    if predicate is None:
        return query
    for condition in predicate.conditions:
        query = _apply_condition(query, condition)
    return query


def apply_window(
    query: Any,
    order: Sequence[OrderEntry] | None,
    limit: int | None,
    offset: int | None,
) -> Any:
    for entry in order or ():
        query = query.order(entry.field, desc=entry.direction == "desc")
    if offset:
        # Ranges are inclusive.
        return query.range(offset, offset + (limit or DEFAULT_PAGE_SIZE) - 1)
    if limit:
        return query.limit(limit)
    return query


class SupabaseGateway(Gateway):
    """Gateway over a supabase-py AsyncClient."""

    def __init__(self, client: Any, schema: str = "public", primary_key: str = DEFAULT_PRIMARY_KEY) -> None:
        self.client = client
        self.schema = schema
        self.primary_key = primary_key

    async def _execute(self, operation: str, table: str, query: Any) -> Any:
        try:
            return await query.execute()
        except Exception as e:
            logger.warning("SupabaseGateway: %s on %s failed: %s", operation, table, e)
            raise GatewayError(f"{operation} on {table} failed: {e}") from e

    async def select(self, table, predicate=None, order=None, limit=None, offset=None):
        query = apply_predicate(self.client.table(table).select("*"), predicate)
        query = apply_window(query, order, limit, offset)
        response = await self._execute("select", table, query)
        return list(response.data or [])

    async def count(self, table, predicate=None):
        query = apply_predicate(self.client.table(table).select("*", count="exact", head=True), predicate)
        response = await self._execute("count", table, query)
        return int(response.count or 0)

    async def insert(self, table, row):
        response = await self._execute("insert", table, self.client.table(table).insert(row))
        if not response.data:
            raise GatewayError(f"insert on {table} returned no row")
        return response.data[0]

    async def update_one(self, table, key, fields):
        query = self.client.table(table).update(fields)
        for col, value in key.items():
            query = query.eq(col, value)
        response = await self._execute("update", table, query)
        return response.data[0] if response.data else None

    async def delete_one(self, table, key):
        query = self.client.table(table).delete()
        for col, value in key.items():
            query = query.eq(col, value)
        response = await self._execute("delete", table, query)
        return response.data[0] if response.data else None

    async def delete_many(self, table, predicate=None):
        query = self.client.table(table).delete()
        if predicate:
            query = apply_predicate(query, predicate)
        else:
            # PostgREST refuses an unfiltered delete.
            query = query.not_.is_(self.primary_key, "null")
        response = await self._execute("delete_many", table, query)
        return len(response.data or [])

    async def subscribe_changes(self, table, filter_string, handler: ChangeHandler, *, channel):
        def on_change(payload: dict[str, Any]) -> None:
            try:
                event = ChangeEvent.from_payload(payload)
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning("SupabaseGateway: dropped malformed change payload on %s: %s", table, e)
                return
            handler(event)

        params: dict[str, Any] = {"schema": self.schema, "table": table, "callback": on_change}
        if filter_string:
            params["filter"] = filter_string
        try:
            realtime = self.client.channel(channel)
            realtime.on_postgres_changes("*", **params)
            await realtime.subscribe()
        except Exception as e:
            raise GatewayError(f"subscribe on {table} failed: {e}") from e
        return realtime

    async def unsubscribe_changes(self, handle):
        try:
            await self.client.remove_channel(handle)
        except Exception as e:
            raise GatewayError(f"unsubscribe failed: {e}") from e

    async def search_by_field_prefix(self, table, field, prefix) -> list[Row]:
        query = self.client.rpc(search_rpc_name(table, field), {"prefix": prefix})
        response = await self._execute("search", table, query)
        return list(response.data or [])


async def create_supabase_gateway(settings: Settings | None = None) -> SupabaseGateway:
    """Build a SupabaseGateway from environment settings."""
    settings = settings or Settings()
    settings.require_supabase()

    from supabase import AsyncClientOptions, acreate_client

    client = await acreate_client(
        settings.SUPABASE_URL,
        settings.SUPABASE_KEY,
        options=AsyncClientOptions(schema=settings.SUPABASE_SCHEMA),
    )
    return SupabaseGateway(client, schema=settings.SUPABASE_SCHEMA)
