"""
tablesync Kernel — Table View

A client-side synchronized window over one remote table: a bounded,
ordered, filtered list of rows kept consistent with
  - full fetches through the gateway,
  - mutations issued through this view,
  - change events pushed by the data source, in arrival order,
with an optional search overlay that can temporarily replace the rows.

Lifecycle:
  view = TableView(gateway, TableConfig("Thing"), ViewOptions(limit=10))
  await view.start()        # subscribe (if enabled), fetch, count
  ...
  await view.close()        # tear the subscription down exactly once

or `async with TableView(...) as view:`.

Status: IDLE -> LOADING -> READY, and any -> ERROR on a failed gateway call.
Errors are not terminal; the next fetch goes back to LOADING. On failure
the previous rows and total stay visible with `error` set alongside.

Every public operation returns a Result (or DeleteManyResult); nothing
raises past the view.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from tablesync.kernel.counter import CountTracker
from tablesync.kernel.defaults import prepare_create, prepare_update
from tablesync.kernel.gateway import Gateway
from tablesync.kernel.predicate import Predicate, build_filter_string, decode_filter, sort_rows
from tablesync.kernel.search import SearchOverlay
from tablesync.kernel.subscription import SubscriptionManager
from tablesync.kernel.types import (
    ChangeEvent,
    ChangeType,
    DeleteManyResult,
    GatewayError,
    MissingIdentifierError,
    NotFoundError,
    Result,
    Row,
    SearchState,
    TableConfig,
    TableSyncError,
    ViewOptions,
    ViewState,
    ViewStatus,
    normalize_order,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[ViewState], None]

# Operations whose failure moves the view into the ERROR status even when
# the cause is not a gateway failure (an invalid filter).
_FETCH_KINDS = {"find_many", "start"}


def _coerce_options(options: ViewOptions | dict[str, Any] | None) -> ViewOptions:
    if options is None:
        return ViewOptions()
    if isinstance(options, ViewOptions):
        return options
    return ViewOptions(**options)


def as_table_error(exc: BaseException) -> TableSyncError:
    """Caller bugs keep their type; anything else from the gateway becomes GatewayError."""
    if isinstance(exc, TableSyncError):
        return exc
    error = GatewayError(f"{type(exc).__name__}: {exc}")
    error.__cause__ = exc
    return error


class TableView:
    """The synchronized row-set engine for one table and one set of options."""

    def __init__(
        self,
        gateway: Gateway,
        config: TableConfig,
        options: ViewOptions | dict[str, Any] | None = None,
    ) -> None:
        self._gateway = gateway
        self._config = config
        self._table = config.table_name
        self._options = _coerce_options(options)

        self._rows: list[Row] = []
        self._total = 0
        self._error: TableSyncError | None = None
        self._error_kind: str | None = None
        self._status = ViewStatus.IDLE
        self._in_flight = 0

        self._fetch_ticket = 0
        self._last_fetch_filter: Any = _NEVER_FETCHED
        self._predicate_options: ViewOptions | None = None
        self._predicate_cache: Predicate | None = None

        self._mounted = False
        self._closed = False
        self._tasks: set[asyncio.Task] = set()
        self._listeners: list[StateListener] = []

        self.counter = CountTracker(
            gateway, self._table, self._set_total, is_suspended=lambda: self.overlay_active
        )
        self.subscriptions = SubscriptionManager(gateway, self._table)
        self.search: SearchOverlay | None = None
        if config.search_fields:
            self.search = SearchOverlay(
                gateway,
                config,
                get_options=lambda: self._options,
                on_results=self._apply_search_results,
                on_error=self._apply_search_error,
                on_deactivate=self._restore_after_search,
                on_change=self._notify,
            )

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def config(self) -> TableConfig:
        return self._config

    @property
    def options(self) -> ViewOptions:
        return self._options

    @property
    def rows(self) -> list[Row]:
        return list(self._rows)

    @property
    def total_count(self) -> int:
        return self._total

    @property
    def loading(self) -> bool:
        return self._in_flight > 0

    @property
    def error(self) -> TableSyncError | None:
        return self._error

    @property
    def status(self) -> ViewStatus:
        return self._status

    @property
    def overlay_active(self) -> bool:
        return self.search is not None and self.search.active

    @property
    def search_state(self) -> SearchState | None:
        return self.search.state if self.search is not None else None

    @property
    def state(self) -> ViewState:
        return ViewState(
            rows=tuple(self._rows),
            loading=self.loading,
            error=self._error,
            total_count=self._total,
            status=self._status,
        )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call `listener` with the new ViewState after every committed change."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("view[%s]: state listener failed", self._table)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self) -> Result:
        """Mount: open the push subscription (if enabled), then fetch and count."""
        if self._mounted:
            return Result(data=list(self._rows))
        self._mounted = True

        options = self._options
        if options.enable_push:
            try:
                await self._open_subscription(options)
            except Exception as e:
                self._record_error("start", e)
                self._notify()
        return await self.find_many(**options.query_params())

    async def close(self) -> None:
        """Dispose: stop background work and close the subscription."""
        if self._closed:
            return
        self._closed = True
        if self.search is not None:
            self.search.cancel()
        self.counter.cancel()
        for task in list(self._tasks):
            task.cancel()
        try:
            await self.subscriptions.close()
        except Exception as e:
            logger.warning("view[%s]: failed to close subscription: %s", self._table, e)

    async def __aenter__(self) -> TableView:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def set_options(self, options: ViewOptions | dict[str, Any]) -> Result | None:
        """
        Replace the view options (the re-render step).

        Re-fetches when filter/order/limit/offset changed in value. Re-opens or
        closes the subscription when enable_push/subscription_name changed.
        A filter change does not re-scope an open subscription.
        Returns the fetch result when a fetch happened.
        """
        new = _coerce_options(options)
        old = self._options
        self._options = new
        if new == old or not self._mounted or self._closed:
            return None

        if new.enable_push != old.enable_push or new.subscription_name != old.subscription_name:
            try:
                if new.enable_push:
                    await self._open_subscription(new)
                else:
                    await self.subscriptions.close()
            except Exception as e:
                self._record_error("subscribe", e)
                self._notify()

        if new.query_params() == old.query_params():
            return None
        if self.overlay_active:
            logger.debug("view[%s]: options changed during search, fetch deferred", self._table)
            return None

        logger.info("view[%s]: options changed, reloading", self._table)
        self._schedule_count(new)
        return await self.find_many(**new.query_params())

    async def _open_subscription(self, options: ViewOptions) -> None:
        filter_string = build_filter_string(options.filter) if options.filter else options.push_filter
        await self.subscriptions.open(filter_string, self._handle_change, name=options.subscription_name)

    # -----------------------------------------------------------------------
    # Bookkeeping
    # -----------------------------------------------------------------------

    def _predicate(self, options: ViewOptions) -> Predicate:
        if options is not self._predicate_options:
            self._predicate_cache = decode_filter(options.filter)
            self._predicate_options = options
        return self._predicate_cache

    @property
    def _push_live(self) -> bool:
        return self._options.enable_push and self.subscriptions.is_open

    def _begin(self) -> None:
        self._in_flight += 1
        self._notify()

    def _record_error(self, kind: str, exc: BaseException) -> TableSyncError:
        error = as_table_error(exc)
        logger.warning("view[%s]: %s failed: %s", self._table, kind, error)
        self._error = error
        self._error_kind = kind
        if kind in _FETCH_KINDS or isinstance(error, GatewayError):
            self._status = ViewStatus.ERROR
        return error

    def _succeed(self, kind: str) -> None:
        if self._error_kind == kind:
            self._error = None
            self._error_kind = None

    def _end(self) -> None:
        self._in_flight -= 1
        self._notify()

    def _fail(self, kind: str, exc: BaseException) -> Result:
        return Result(error=self._record_error(kind, exc))

    def _schedule_count(self, options: ViewOptions) -> None:
        try:
            predicate = self._predicate(options)
        except TableSyncError as e:
            logger.warning("view[%s]: count not refreshed: %s", self._table, e)
            return
        self.counter.schedule(predicate)

    def _set_total(self, total: int) -> None:
        self._total = total
        self._notify()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _key(self, key: Row | None) -> tuple[str, Any]:
        if not key:
            raise MissingIdentifierError("A unique identifier is required")
        field = next(iter(key))
        value = key[field]
        if value is None:
            raise MissingIdentifierError(f"A unique identifier is required: '{field}' is empty")
        return field, value

    def _identity(self, row: Any) -> Any:
        if not isinstance(row, dict):
            raise ValueError(f"row payload must be a mapping, got {type(row).__name__}")
        value = row.get(self._config.primary_key)
        if value is None:
            raise ValueError(f"row payload has no '{self._config.primary_key}'")
        return value

    async def wait_idle(self) -> None:
        """
        Wait until all background work has settled: deferred counts,
        refill fetches, a pending search debounce and running searches.
        """
        while True:
            await asyncio.sleep(0)
            tasks = set(self._tasks) | self.counter.tasks
            if self.search is not None:
                tasks |= self.search.tasks
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
                continue
            remaining = self.search.timer_remaining() if self.search is not None else None
            if remaining is not None:
                await asyncio.sleep(remaining + 0.001)
                continue
            if self.counter.pending:
                continue
            await asyncio.sleep(0)
            if not (self._tasks or self.counter.pending or self._search_pending()):
                return

    def _search_pending(self) -> bool:
        if self.search is None:
            return False
        return bool(self.search.tasks) or self.search.timer_remaining() is not None

    # -----------------------------------------------------------------------
    # Finders
    # -----------------------------------------------------------------------

    async def find_many(
        self,
        filter: dict[str, Any] | None = None,
        order: Any = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> Result:
        """
        Fetch rows and replace the view's rows with them.

        While the search overlay is active the result is returned but not
        applied. The total is refreshed when the filter differs from the one
        of the last successful fetch.
        """
        self._status = ViewStatus.LOADING
        self._begin()
        self._fetch_ticket += 1
        ticket = self._fetch_ticket
        try:
            predicate = decode_filter(filter)
            order = self._config.effective_order(normalize_order(order))
            rows = await self._gateway.select(self._table, predicate, order, limit, offset)
        except Exception as e:
            result = self._fail("find_many", e)
            self._end()
            return result

        rows = list(rows or [])
        if self.overlay_active:
            logger.debug("view[%s]: fetch result discarded, search overlay active", self._table)
        elif ticket != self._fetch_ticket:
            logger.debug("view[%s]: fetch result superseded by a newer fetch", self._table)
        else:
            self._rows = rows
            if filter != self._last_fetch_filter:
                self._last_fetch_filter = filter
                self._schedule_count(self._options)
        if ticket == self._fetch_ticket:
            self._status = ViewStatus.READY
        self._succeed("find_many")
        self._end()
        return Result(data=rows)

    async def find_unique(self, key: Row) -> Result:
        """Fetch one row by a unique field. `data` is None when nothing matches."""
        self._begin()
        try:
            field, value = self._key(key)
            rows = await self._gateway.select(self._table, decode_filter({field: value}), None, 1, None)
        except Exception as e:
            result = self._fail("find_unique", e)
            self._end()
            return result
        self._succeed("find_unique")
        self._end()
        return Result(data=rows[0] if rows else None)

    async def find_first(self, filter: dict[str, Any] | None = None, order: Any = None) -> Result:
        """First row matching `filter` in `order`. Does not touch the view's rows."""
        self._begin()
        try:
            predicate = decode_filter(filter)
            order = self._config.effective_order(normalize_order(order))
            rows = await self._gateway.select(self._table, predicate, order, 1, None)
            if not rows:
                raise NotFoundError("No records found")
        except Exception as e:
            result = self._fail("find_first", e)
            self._end()
            return result
        self._succeed("find_first")
        self._end()
        return Result(data=rows[0])

    async def count(self, filter: dict[str, Any] | None = None) -> Result:
        """Count rows matching `filter`, or the view's own filter when omitted."""
        self._begin()
        try:
            predicate = decode_filter(filter if filter is not None else self._options.filter)
            total = await self._gateway.count(self._table, predicate)
        except Exception as e:
            result = self._fail("count", e)
            self._end()
            return result
        self._succeed("count")
        self._end()
        return Result(data=total)

    async def refresh(
        self,
        filter: dict[str, Any] | None = None,
        order: Any = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> Result:
        """
        Re-run the fetch with the view's options, each overridable for this call.
        While searching, re-runs the search with the current queries instead.
        """
        if self.search is not None and self.overlay_active:
            await self.search.run_now()
            return Result(data=list(self._rows), error=self._error if self._error_kind == "search" else None)

        options = self._options
        return await self.find_many(
            filter=filter if filter is not None else options.filter,
            order=order if order is not None else options.order,
            limit=limit if limit is not None else options.limit,
            offset=offset if offset is not None else options.offset,
        )

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------

    async def create(self, data: Row) -> Result:
        """
        Insert a row (schema defaults and timestamps filled in).

        With push enabled the row reaches `rows` through its insert event;
        otherwise it is reconciled into `rows` directly.
        """
        self._begin()
        try:
            created = await self._gateway.insert(self._table, prepare_create(self._config, data))
        except Exception as e:
            result = self._fail("create", e)
            self._end()
            return result

        self._schedule_count(self._options)
        if not self._push_live:
            self._reconcile(ChangeType.INSERT, [created], self._options)
        self._succeed("create")
        self._end()
        return Result(data=created)

    async def update(self, key: Row, data: Row) -> Result:
        """Update the row identified by `key`. NotFoundError when it does not exist."""
        self._begin()
        try:
            field, value = self._key(key)
            updated = await self._gateway.update_one(
                self._table, {field: value}, prepare_update(self._config, data)
            )
            if updated is None:
                raise NotFoundError(f"Record not found: {field}={value!r}")
        except Exception as e:
            result = self._fail("update", e)
            self._end()
            return result

        self._schedule_count(self._options)
        if not self._push_live:
            self._reconcile(ChangeType.UPDATE, [updated], self._options)
        self._succeed("update")
        self._end()
        return Result(data=updated)

    async def delete(self, key: Row) -> Result:
        """Delete the row identified by `key` and return it."""
        self._begin()
        try:
            field, value = self._key(key)
            deleted = await self._gateway.delete_one(self._table, {field: value})
            if deleted is None:
                raise NotFoundError(f"Record not found: {field}={value!r}")
        except Exception as e:
            result = self._fail("delete", e)
            self._end()
            return result

        self._schedule_count(self._options)
        if not self._push_live:
            self._reconcile(ChangeType.DELETE, [deleted], self._options)
        self._succeed("delete")
        self._end()
        return Result(data=deleted)

    async def delete_many(self, filter: dict[str, Any] | None = None) -> DeleteManyResult:
        """
        Delete every row matching `filter` and report how many matched.

        The matching set is read first, then deleted. The two steps are not
        atomic: a matching row inserted in between may be deleted without
        being counted.
        """
        self._begin()
        try:
            predicate = decode_filter(filter)
            matched = await self._gateway.select(self._table, predicate)
            if matched:
                await self._gateway.delete_many(self._table, predicate)
        except Exception as e:
            error = self._record_error("delete_many", e)
            self._end()
            return DeleteManyResult(error=error)

        if matched:
            self._schedule_count(self._options)
            if not self._push_live:
                self._reconcile(ChangeType.DELETE, matched, self._options)
        self._succeed("delete_many")
        self._end()
        return DeleteManyResult(count=len(matched))

    async def upsert(self, key: Row, update: Row, create: Row) -> Result:
        """
        Update the row at `key` if it exists, otherwise create `create`.

        Lookup and write are separate calls: another writer creating the row in
        between makes the create fail (duplicate key) rather than update.
        """
        found = await self.find_unique(key)
        if not found.ok:
            return found
        if found.data is not None:
            return await self.update(key, update)
        return await self.create(create)

    # -----------------------------------------------------------------------
    # Reconciliation
    # -----------------------------------------------------------------------

    def _handle_change(self, event: ChangeEvent | dict[str, Any]) -> None:
        """Push-channel callback. Runs on the loop, one event at a time."""
        options = self._options
        if self._closed:
            return
        try:
            if not isinstance(event, ChangeEvent):
                event = ChangeEvent.from_payload(event)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("view[%s]: dropped malformed change event: %s", self._table, e)
            return

        row = event.old_row if event.event_type is ChangeType.DELETE else event.new_row
        self._reconcile(event.event_type, [row], options)

    def _reconcile(self, change: ChangeType, rows: list[Any], options: ViewOptions) -> None:
        """Apply pushed or locally made changes. The search overlay owns the rows while active."""
        if self.overlay_active:
            logger.debug("view[%s]: %s ignored, search overlay active", self._table, change.value)
            return
        try:
            if change is ChangeType.INSERT:
                changed = any([self._apply_insert(row, options) for row in rows])
            elif change is ChangeType.UPDATE:
                changed = any([self._apply_update(row, options) for row in rows])
            else:
                changed = self._remove_many(rows, options)
        except (TableSyncError, ValueError, TypeError) as e:
            logger.warning("view[%s]: dropped %s event: %s", self._table, change.value, e)
            return
        if changed:
            self._notify()

    def _window(self, rows: list[Row], options: ViewOptions) -> list[Row]:
        rows = sort_rows(rows, self._config.effective_order(options.order))
        if options.limit:
            rows = rows[: options.limit]
        return rows

    def _apply_insert(self, row: Any, options: ViewOptions) -> bool:
        key = self._identity(row)
        predicate = self._predicate(options)
        if not predicate.matches(row):
            logger.debug("view[%s]: insert %r does not match filter, skipped", self._table, key)
            return False
        pk = self._config.primary_key
        if any(r.get(pk) == key for r in self._rows):
            logger.debug("view[%s]: insert %r already present, skipped", self._table, key)
            return False
        self._rows = self._window(self._rows + [row], options)
        self.counter.schedule(predicate)
        return True

    def _apply_update(self, row: Any, options: ViewOptions) -> bool:
        # The filter is not re-evaluated: a row updated out of the filter
        # stays until the next full fetch.
        key = self._identity(row)
        pk = self._config.primary_key
        present = any(r.get(pk) == key for r in self._rows)
        self.counter.schedule(self._predicate(options))
        if not present:
            return False
        replaced = [row if r.get(pk) == key else r for r in self._rows]
        self._rows = sort_rows(replaced, self._config.effective_order(options.order))
        return True

    def _remove_many(self, removed: list[Any], options: ViewOptions) -> bool:
        pk = self._config.primary_key
        keys = [self._identity(row) for row in removed]
        before = len(self._rows)
        remaining = [r for r in self._rows if r.get(pk) not in keys]
        self.counter.schedule(self._predicate(options))
        if len(remaining) == before:
            return False

        if options.limit and before == options.limit:
            # Only the server knows which row moves into the freed slot.
            self._rows = remaining
            logger.debug("view[%s]: window at limit %d lost rows, refilling", self._table, options.limit)
            self._spawn(self.find_many(**options.query_params()))
            return True

        self._rows = sort_rows(remaining, self._config.effective_order(options.order))
        return True

    # -----------------------------------------------------------------------
    # Search overlay hooks
    # -----------------------------------------------------------------------

    def _apply_search_results(self, rows: list[Row], total: int) -> None:
        self._rows = list(rows)
        self._total = total
        self._succeed("search")

    def _apply_search_error(self, exc: Exception) -> None:
        self._record_error("search", exc)

    def _restore_after_search(self) -> None:
        if self._closed:
            return
        options = self._options
        self._schedule_count(options)
        self._spawn(self.find_many(**options.query_params()))


class _NeverFetched:
    def __repr__(self) -> str:
        return "<never fetched>"


_NEVER_FETCHED = _NeverFetched()
