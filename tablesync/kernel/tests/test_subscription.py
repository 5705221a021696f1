"""
SubscriptionManager: at most one live registration, idempotent teardown.
"""

import asyncio
import re

import pytest

from tablesync.kernel.subscription import SubscriptionManager, generate_subscription_name

TABLE = "Thing"


def noop(event):
    pass


class TestNames:
    def test_generated_name_shape(self):
        assert re.fullmatch(r"changes_to_Thing_[0-9a-z]{13}", generate_subscription_name(TABLE))

    def test_generated_names_differ(self):
        assert generate_subscription_name(TABLE) != generate_subscription_name(TABLE)


class TestLifecycle:
    @pytest.fixture
    def manager(self, gateway):
        return SubscriptionManager(gateway, TABLE)

    @pytest.mark.asyncio
    async def test_open_registers_with_filter_and_name(self, manager, gateway):
        subscription = await manager.open("status=eq.open", noop, name="things_feed")

        assert manager.is_open
        assert subscription.name == "things_feed"
        (call,) = gateway.calls_to("subscribe_changes")
        assert call[2] == {"filter_string": "status=eq.open", "channel": "things_feed"}

    @pytest.mark.asyncio
    async def test_open_without_name_generates_one(self, manager):
        subscription = await manager.open(None, noop)
        assert subscription.name.startswith("changes_to_Thing_")

    @pytest.mark.asyncio
    async def test_reopen_closes_previous(self, manager, gateway):
        await manager.open(None, noop)
        await manager.open(None, noop)

        assert len(gateway.subscriptions) == 1
        assert manager.opened == 2
        assert manager.closed == 1

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, manager, gateway):
        await manager.open(None, noop)
        await manager.close()
        await manager.close()

        assert not manager.is_open
        assert len(gateway.calls_to("unsubscribe_changes")) == 1
        assert gateway.subscriptions == {}

    @pytest.mark.asyncio
    async def test_close_without_open(self, manager, gateway):
        await manager.close()
        assert gateway.calls_to("unsubscribe_changes") == []

    @pytest.mark.asyncio
    async def test_concurrent_opens_leave_one_live(self, manager, gateway):
        await asyncio.gather(manager.open(None, noop), manager.open(None, noop), manager.open(None, noop))
        assert len(gateway.subscriptions) == 1
        assert manager.opened - manager.closed == 1
