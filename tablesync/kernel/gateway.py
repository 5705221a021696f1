"""
tablesync Kernel — Remote Data Gateway

The narrow contract the engine consumes from a data-access SDK:
fetch, count, mutate, subscribe to changes, prefix search.
Implement against a real backend for production
(see tablesync.services.supabase_gateway), or use MemoryGateway in tests.

This is where IO happens. The predicate compiler and comparator are pure.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from collections.abc import Sequence
from typing import Any

from tablesync.kernel.predicate import MATCH_ALL, Predicate, sort_rows
from tablesync.kernel.types import (
    ChangeEvent,
    ChangeHandler,
    ChangeType,
    GatewayError,
    OrderEntry,
    Row,
)

# ---------------------------------------------------------------------------
# Gateway protocol
# ---------------------------------------------------------------------------


class Gateway:
    """
    Abstract gateway over named tables.

    `predicate` arguments are compiled Predicate objects; `key` arguments are
    single-entry mappings {primary_key: value}. Implementations raise on IO
    failure; the view wraps whatever they raise into GatewayError.
    """

    async def select(
        self,
        table: str,
        predicate: Predicate | None = None,
        order: Sequence[OrderEntry] | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Row]:
        """Fetch rows matching `predicate`, ordered, windowed by offset/limit."""
        raise NotImplementedError

    async def count(self, table: str, predicate: Predicate | None = None) -> int:
        """Count rows matching `predicate`."""
        raise NotImplementedError

    async def insert(self, table: str, row: Row) -> Row:
        """Insert one row, return it as stored."""
        raise NotImplementedError

    async def update_one(self, table: str, key: Row, fields: Row) -> Row | None:
        """Update the row identified by `key`. Returns None if it does not exist."""
        raise NotImplementedError

    async def delete_one(self, table: str, key: Row) -> Row | None:
        """Delete the row identified by `key`. Returns None if it does not exist."""
        raise NotImplementedError

    async def delete_many(self, table: str, predicate: Predicate | None = None) -> int:
        """Delete every row matching `predicate`. Returns the number deleted."""
        raise NotImplementedError

    async def subscribe_changes(
        self,
        table: str,
        filter_string: str | None,
        handler: ChangeHandler,
        *,
        channel: str,
    ) -> Any:
        """Register `handler` for row changes on `table`. Returns an opaque handle."""
        raise NotImplementedError

    async def unsubscribe_changes(self, handle: Any) -> None:
        """Tear down a registration returned by subscribe_changes."""
        raise NotImplementedError

    async def search_by_field_prefix(self, table: str, field: str, prefix: str) -> list[Row]:
        """Rows whose `field` starts with `prefix` (case-insensitive)."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class MemoryGateway(Gateway):
    """
    In-memory gateway for testing and local use.

    Mutations emit change events to subscribers of the table through
    loop.call_soon, so they arrive after the mutating call returns and in
    mutation order, like a real push channel. Every call is recorded in
    `calls` as (operation, table, details).
    """

    def __init__(self, primary_key: str = "id") -> None:
        self.primary_key = primary_key
        self.tables: dict[str, list[Row]] = {}
        self.calls: list[tuple[str, str | None, dict[str, Any]]] = []
        self.subscriptions: dict[int, dict[str, Any]] = {}
        self._failures: dict[str, list[BaseException]] = {}
        self._ids = itertools.count(1)

    # -- test helpers --

    def seed(self, table: str, rows: Sequence[Row]) -> None:
        """Load rows without emitting change events."""
        self.tables.setdefault(table, []).extend(copy.deepcopy(list(rows)))

    def rows(self, table: str) -> list[Row]:
        return copy.deepcopy(self.tables.get(table, []))

    def fail_next(self, operation: str, exc: BaseException | None = None) -> None:
        """Make the next call of `operation` raise `exc` (GatewayError by default)."""
        self._failures.setdefault(operation, []).append(exc or GatewayError(f"{operation} failed"))

    def calls_to(self, operation: str) -> list[tuple[str, str | None, dict[str, Any]]]:
        return [c for c in self.calls if c[0] == operation]

    def emit(self, table: str, event: ChangeEvent | dict[str, Any]) -> None:
        """Deliver a change event (or a raw payload) to subscribers of `table`."""
        loop = asyncio.get_running_loop()
        for sub in list(self.subscriptions.values()):
            if sub["table"] == table:
                loop.call_soon(sub["handler"], event)

    # -- internals --

    def _record(self, operation: str, table: str | None, **details: Any) -> None:
        self.calls.append((operation, table, details))
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _table(self, table: str) -> list[Row]:
        return self.tables.setdefault(table, [])

    def _find(self, table: str, key: Row) -> int | None:
        for i, row in enumerate(self._table(table)):
            if all(k in row and row[k] == v for k, v in key.items()):
                return i
        return None

    # -- Gateway --

    async def select(self, table, predicate=None, order=None, limit=None, offset=None):
        self._record("select", table, predicate=predicate, order=order, limit=limit, offset=offset)
        predicate = predicate or MATCH_ALL
        matched = [row for row in self._table(table) if predicate.matches(row)]
        matched = sort_rows(matched, tuple(order) if order else None)
        start = offset or 0
        end = start + limit if limit else None
        return copy.deepcopy(matched[start:end])

    async def count(self, table, predicate=None):
        self._record("count", table, predicate=predicate)
        predicate = predicate or MATCH_ALL
        return sum(1 for row in self._table(table) if predicate.matches(row))

    async def insert(self, table, row):
        self._record("insert", table, row=row)
        stored = copy.deepcopy(row)
        pk = stored.get(self.primary_key)
        if pk is not None and self._find(table, {self.primary_key: pk}) is not None:
            raise GatewayError(f"duplicate key value for {table}.{self.primary_key}: {pk}")
        self._table(table).append(stored)
        self.emit(table, ChangeEvent(ChangeType.INSERT, new_row=copy.deepcopy(stored)))
        return copy.deepcopy(stored)

    async def update_one(self, table, key, fields):
        self._record("update_one", table, key=key, fields=fields)
        index = self._find(table, key)
        if index is None:
            return None
        old = self._table(table)[index]
        new = {**old, **copy.deepcopy(fields)}
        self._table(table)[index] = new
        self.emit(table, ChangeEvent(ChangeType.UPDATE, new_row=copy.deepcopy(new), old_row=copy.deepcopy(old)))
        return copy.deepcopy(new)

    async def delete_one(self, table, key):
        self._record("delete_one", table, key=key)
        index = self._find(table, key)
        if index is None:
            return None
        old = self._table(table).pop(index)
        self.emit(table, ChangeEvent(ChangeType.DELETE, old_row=copy.deepcopy(old)))
        return old

    async def delete_many(self, table, predicate=None):
        self._record("delete_many", table, predicate=predicate)
        predicate = predicate or MATCH_ALL
        kept: list[Row] = []
        removed: list[Row] = []
        for row in self._table(table):
            (removed if predicate.matches(row) else kept).append(row)
        self.tables[table] = kept
        for old in removed:
            self.emit(table, ChangeEvent(ChangeType.DELETE, old_row=copy.deepcopy(old)))
        return len(removed)

    async def subscribe_changes(self, table, filter_string, handler, *, channel):
        self._record("subscribe_changes", table, filter_string=filter_string, channel=channel)
        handle = next(self._ids)
        self.subscriptions[handle] = {
            "table": table,
            "filter_string": filter_string,
            "handler": handler,
            "channel": channel,
        }
        return handle

    async def unsubscribe_changes(self, handle):
        self._record("unsubscribe_changes", None, handle=handle)
        self.subscriptions.pop(handle, None)

    async def search_by_field_prefix(self, table, field, prefix):
        self._record("search_by_field_prefix", table, field=field, prefix=prefix)
        needle = prefix.casefold()
        return copy.deepcopy([
            row for row in self._table(table)
            if row.get(field) is not None and str(row[field]).casefold().startswith(needle)
        ])
