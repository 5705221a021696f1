"""
tablesync Kernel — Count Tracker

Keeps the total number of rows matching the view's filter, independent of
the bounded page window.

Refreshes are deferred with loop.call_soon so they run after the state
update that asked for them has committed. Several requests in the same
tick coalesce into one count query using the latest filter. When count
queries overlap, only the most recently issued one may update the total.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from tablesync.kernel.gateway import Gateway
from tablesync.kernel.predicate import Predicate

logger = logging.getLogger(__name__)


class CountTracker:
    """Deferred, coalescing count refresher for one table."""

    def __init__(
        self,
        gateway: Gateway,
        table: str,
        on_count: Callable[[int], None],
        *,
        is_suspended: Callable[[], bool] = lambda: False,
    ) -> None:
        """
        Args:
            gateway: Data source to count against
            table: Table name
            on_count: Receives each accepted total
            is_suspended: While it returns True (search overlay active),
                refreshes are skipped and late results are dropped
        """
        self._gateway = gateway
        self._table = table
        self._on_count = on_count
        self._is_suspended = is_suspended
        self._handle: asyncio.Handle | None = None
        self._next_predicate: Predicate | None = None
        self._issued = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        """True while a deferred refresh is scheduled or running."""
        return self._handle is not None or bool(self._tasks)

    @property
    def tasks(self) -> set[asyncio.Task]:
        return set(self._tasks)

    def schedule(self, predicate: Predicate | None) -> None:
        """Request a count refresh on the next loop iteration."""
        self._next_predicate = predicate
        if self._handle is None:
            self._handle = asyncio.get_running_loop().call_soon(self._fire)

    def _fire(self) -> None:
        self._handle = None
        predicate, self._next_predicate = self._next_predicate, None
        if self._is_suspended():
            logger.debug("count[%s]: skipped while search overlay is active", self._table)
            return
        task = asyncio.get_running_loop().create_task(self._refresh_logged(predicate))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def refresh(self, predicate: Predicate | None) -> int:
        """
        Count now and publish the total if this is still the latest request.
        Raises whatever the gateway raises.
        """
        self._issued += 1
        ticket = self._issued
        total = await self._gateway.count(self._table, predicate)
        if ticket == self._issued and not self._is_suspended():
            self._on_count(total)
        else:
            logger.debug("count[%s]: dropped stale total %d", self._table, total)
        return total

    async def _refresh_logged(self, predicate: Predicate | None) -> None:
        try:
            await self.refresh(predicate)
        except Exception as e:
            logger.warning("count[%s]: refresh failed: %s", self._table, e)

    def cancel(self) -> None:
        """Drop any scheduled refresh and cancel running ones."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        for task in list(self._tasks):
            task.cancel()
