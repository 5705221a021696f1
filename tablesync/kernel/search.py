"""
tablesync Kernel — Search Overlay

Debounced multi-field prefix search that temporarily replaces a view's rows.

Phases:
  INACTIVE -> DEBOUNCING -> SEARCHING -> ACTIVE
  ACTIVE/SEARCHING -> DEBOUNCING     on any query change
  any -> INACTIVE                    when the query set becomes empty

The overlay is "active" exactly while its query set is non-empty; the view
checks that flag synchronously at the top of every push handler and fetch
commit. Query changes inside the debounce window coalesce into a single
execution with the last query set. A timer that has not fired yet is
cancelled; a search already in flight is not, and its result is dropped when it
lands for a query set that is no longer current.

Execution, per query set:
  1. one field-scoped prefix search per query, run concurrently
  2. union by primary key (later hits replace earlier ones)
  3. literal (non-operator) filter fields applied client-side
  4. sort by the first entry of the effective order only
  5. offset, then limit, applied client-side
The total reported is the merged size before pagination.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Iterable
from typing import Any

from tablesync.kernel.gateway import Gateway
from tablesync.kernel.predicate import decode_filter, sort_rows
from tablesync.kernel.types import (
    GatewayError,
    Row,
    SearchQuery,
    SearchState,
    TableConfig,
    ViewOptions,
)

logger = logging.getLogger(__name__)


class SearchPhase(enum.Enum):
    INACTIVE = "inactive"
    DEBOUNCING = "debouncing"
    SEARCHING = "searching"
    ACTIVE = "active"


def _coerce_query(query: SearchQuery | dict[str, Any] | tuple[str, str]) -> SearchQuery:
    if isinstance(query, SearchQuery):
        return query
    if isinstance(query, dict):
        return SearchQuery(**query)
    field, value = query
    return SearchQuery(field=field, value=value)


class SearchOverlay:
    """Search state and execution for one view."""

    def __init__(
        self,
        gateway: Gateway,
        config: TableConfig,
        *,
        get_options: Callable[[], ViewOptions],
        on_results: Callable[[list[Row], int], None],
        on_error: Callable[[Exception], None],
        on_deactivate: Callable[[], None],
        on_change: Callable[[], None] = lambda: None,
    ) -> None:
        """
        Args:
            gateway: Data source providing field-prefix search
            config: Table configuration (searchable fields, primary key, debounce)
            get_options: Returns the view's current options; read once per execution
            on_results: Receives (rows, total) for the current query set
            on_error: Receives a failure of the current query set
            on_deactivate: Called when the query set becomes empty
            on_change: Called whenever the visible SearchState changes
        """
        self._gateway = gateway
        self._config = config
        self._get_options = get_options
        self._on_results = on_results
        self._on_error = on_error
        self._on_deactivate = on_deactivate
        self._on_change = on_change

        self._queries: tuple[SearchQuery, ...] = ()
        self._phase = SearchPhase.INACTIVE
        self._generation = 0
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    # -- state --

    @property
    def active(self) -> bool:
        return bool(self._queries)

    @property
    def phase(self) -> SearchPhase:
        return self._phase

    @property
    def queries(self) -> tuple[SearchQuery, ...]:
        return self._queries

    @property
    def loading(self) -> bool:
        return self._phase in (SearchPhase.DEBOUNCING, SearchPhase.SEARCHING)

    @property
    def state(self) -> SearchState:
        return SearchState(queries=self._queries, loading=self.loading)

    @property
    def tasks(self) -> set[asyncio.Task]:
        return set(self._tasks)

    def timer_remaining(self) -> float | None:
        """Seconds until the pending debounce fires, or None if nothing is pending."""
        if self._timer is None:
            return None
        return max(0.0, self._timer.when() - asyncio.get_running_loop().time())

    # -- query mutations --

    def is_valid(self, query: SearchQuery) -> bool:
        return query.field in self._config.search_fields and query.value.strip() != ""

    def add_query(self, field: str, value: str) -> None:
        """Add a query, replacing any existing query on the same field."""
        query = SearchQuery(field=field, value=value)
        if not self.is_valid(query):
            logger.debug("search[%s]: rejected query on '%s'", self._config.table_name, field)
            return
        if any(q.field == field for q in self._queries):
            queries = tuple(query if q.field == field else q for q in self._queries)
        else:
            queries = self._queries + (query,)
        self._replace(queries)

    def set_queries(self, queries: Iterable[SearchQuery | dict[str, Any] | tuple[str, str]]) -> None:
        """Replace the whole query set. Invalid queries are dropped."""
        valid = tuple(q for q in map(_coerce_query, queries) if self.is_valid(q))
        self._replace(valid)

    def remove_query(self, field: str) -> None:
        if not any(q.field == field for q in self._queries):
            return
        self._replace(tuple(q for q in self._queries if q.field != field))

    def clear_queries(self) -> None:
        if self._queries:
            self._replace(())

    def _replace(self, queries: tuple[SearchQuery, ...]) -> None:
        self._generation += 1
        self._cancel_timer()
        if not queries:
            self._deactivate()
            return

        self._queries = queries
        self._phase = SearchPhase.DEBOUNCING
        delay = self._config.search_debounce_ms / 1000.0
        self._timer = asyncio.get_running_loop().call_later(delay, self._fire)
        self._on_change()

    def _deactivate(self) -> None:
        was_active = bool(self._queries)
        self._queries = ()
        self._phase = SearchPhase.INACTIVE
        self._on_change()
        if was_active:
            logger.debug("search[%s]: deactivated, restoring view", self._config.table_name)
            self._on_deactivate()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # -- execution --

    def _fire(self) -> None:
        self._timer = None
        self._phase = SearchPhase.SEARCHING
        task = asyncio.get_running_loop().create_task(
            self._run(self._queries, self._get_options(), self._generation)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run_now(self) -> list[Row]:
        """
        Execute the current query set immediately, skipping the debounce.
        Returns the rows applied (empty when inactive or superseded).
        """
        if not self._queries:
            return []
        self._cancel_timer()
        self._phase = SearchPhase.SEARCHING
        self._on_change()
        return await self._run(self._queries, self._get_options(), self._generation)

    async def _run(self, queries: tuple[SearchQuery, ...], options: ViewOptions, generation: int) -> list[Row]:
        try:
            rows, total = await self.execute(queries, options)
        except Exception as e:
            if generation != self._generation:
                logger.debug("search[%s]: dropped stale failure: %s", self._config.table_name, e)
                return []
            logger.warning("search[%s]: search failed: %s", self._config.table_name, e)
            self._phase = SearchPhase.ACTIVE
            self._on_error(e)
            self._on_change()
            return []

        if generation != self._generation or not self._queries:
            logger.debug("search[%s]: dropped results for a superseded query set", self._config.table_name)
            return []

        self._phase = SearchPhase.ACTIVE
        self._on_results(rows, total)
        self._on_change()
        return rows

    async def execute(self, queries: tuple[SearchQuery, ...], options: ViewOptions) -> tuple[list[Row], int]:
        """Run one search execution. Pure with respect to overlay state."""
        table = self._config.table_name
        pk = self._config.primary_key

        results = await asyncio.gather(
            *(self._gateway.search_by_field_prefix(table, q.field, q.value.strip()) for q in queries),
            return_exceptions=True,
        )

        merged: dict[Any, Row] = {}
        failures: list[BaseException] = []
        for query, result in zip(queries, results):
            if isinstance(result, BaseException):
                logger.warning("search[%s]: search on '%s' failed: %s", table, query.field, result)
                failures.append(result)
                continue
            for row in result:
                key = row.get(pk)
                if key is not None:
                    merged[key] = row

        if failures and len(failures) == len(queries):
            first = failures[0]
            if isinstance(first, GatewayError):
                raise first
            raise GatewayError(f"search failed: {first}") from first

        literal = decode_filter(options.filter).literal_only()
        rows = [row for row in merged.values() if literal.matches(row)]

        order = self._config.effective_order(options.order)
        if order:
            rows = sort_rows(rows, order[:1])

        total = len(rows)
        start = options.offset or 0
        end = start + options.limit if options.limit else None
        return rows[start:end], total

    def cancel(self) -> None:
        """Stop pending work (view disposal). Queries are kept."""
        self._generation += 1
        self._cancel_timer()
        for task in list(self._tasks):
            task.cancel()
