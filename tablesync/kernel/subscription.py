"""
tablesync Kernel — Subscription Lifecycle Manager

Owns the single push-change registration of one view. At most one
subscription is live at a time; opening again closes the previous one
first, and closing is idempotent. Open/close are serialized with an
asyncio lock so overlapping option changes cannot leak a registration.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string

from tablesync.kernel.gateway import Gateway
from tablesync.kernel.types import ChangeHandler, Subscription, now_iso

logger = logging.getLogger(__name__)

_NAME_ALPHABET = string.digits + string.ascii_lowercase


def generate_subscription_name(table: str) -> str:
    """changes_to_<table>_<13 random base-36 chars>"""
    suffix = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(13))
    return f"changes_to_{table}_{suffix}"


class SubscriptionManager:
    """Opens and closes the push subscription for one (gateway, table)."""

    def __init__(self, gateway: Gateway, table: str) -> None:
        self._gateway = gateway
        self._table = table
        self._lock = asyncio.Lock()
        self._current: Subscription | None = None
        self.opened = 0
        self.closed = 0

    @property
    def current(self) -> Subscription | None:
        return self._current

    @property
    def is_open(self) -> bool:
        return self._current is not None

    async def open(
        self,
        filter_string: str | None,
        handler: ChangeHandler,
        name: str | None = None,
    ) -> Subscription:
        """
        Register `handler` for changes on the table, scoped by `filter_string`.
        The filter is fixed for the subscription's lifetime.
        """
        async with self._lock:
            if self._current is not None:
                await self._close_locked()

            channel = name or generate_subscription_name(self._table)
            handle = await self._gateway.subscribe_changes(
                self._table, filter_string, handler, channel=channel
            )
            self._current = Subscription(
                table=self._table,
                name=channel,
                filter_string=filter_string,
                handle=handle,
                opened_at=now_iso(),
            )
            self.opened += 1
            logger.info(
                "subscription[%s]: opened %s with filter %s",
                self._table, channel, filter_string,
            )
            return self._current

    async def close(self) -> None:
        """Tear down the live subscription, if any."""
        async with self._lock:
            await self._close_locked()

    async def _close_locked(self) -> None:
        subscription, self._current = self._current, None
        if subscription is None or subscription.closed:
            return
        subscription.closed = True
        self.closed += 1
        logger.info("subscription[%s]: closing %s", self._table, subscription.name)
        await self._gateway.unsubscribe_changes(subscription.handle)
