"""
CountTracker: deferred, coalescing, last-issued-wins count refreshes.
"""

import asyncio

import pytest

from tablesync.kernel.counter import CountTracker
from tablesync.kernel.gateway import MemoryGateway
from tablesync.kernel.predicate import decode_filter
from tablesync.kernel.types import GatewayError

TABLE = "Thing"


class GatedCountGateway(MemoryGateway):
    """count() blocks until the test resolves its future."""

    def __init__(self):
        super().__init__()
        self.gates = []

    async def count(self, table, predicate=None):
        gate = asyncio.get_running_loop().create_future()
        self.gates.append(gate)
        return await gate


async def settle(tracker):
    await asyncio.sleep(0)
    await asyncio.gather(*tracker.tasks)


class TestSchedule:
    @pytest.fixture
    def published(self):
        return []

    @pytest.fixture
    def tracker(self, gateway, published):
        return CountTracker(gateway, TABLE, published.append)

    @pytest.mark.asyncio
    async def test_deferred_until_next_tick(self, tracker, gateway, published):
        tracker.schedule(None)
        assert tracker.pending
        assert gateway.calls_to("count") == []

        await settle(tracker)
        assert published == [3]
        assert not tracker.pending

    @pytest.mark.asyncio
    async def test_same_tick_requests_coalesce_with_latest_filter(self, tracker, gateway, published):
        tracker.schedule(None)
        tracker.schedule(decode_filter({"status": "closed"}))
        tracker.schedule(decode_filter({"status": "open"}))

        await settle(tracker)
        assert len(gateway.calls_to("count")) == 1
        assert published == [2]

    @pytest.mark.asyncio
    async def test_suspended_skips_refresh(self, gateway, published):
        tracker = CountTracker(gateway, TABLE, published.append, is_suspended=lambda: True)
        tracker.schedule(None)
        await settle(tracker)
        assert gateway.calls_to("count") == []
        assert published == []

    @pytest.mark.asyncio
    async def test_background_failure_is_logged_not_raised(self, tracker, gateway, published, caplog):
        gateway.fail_next("count")
        tracker.schedule(None)
        await settle(tracker)
        assert published == []
        assert "refresh failed" in caplog.text

    @pytest.mark.asyncio
    async def test_cancel_drops_scheduled_refresh(self, tracker, gateway, published):
        tracker.schedule(None)
        tracker.cancel()
        await asyncio.sleep(0)
        assert gateway.calls_to("count") == []
        assert not tracker.pending


class TestRefresh:
    @pytest.mark.asyncio
    async def test_only_latest_issued_publishes(self):
        gateway = GatedCountGateway()
        published = []
        tracker = CountTracker(gateway, TABLE, published.append)

        first = asyncio.ensure_future(tracker.refresh(None))
        second = asyncio.ensure_future(tracker.refresh(None))
        await asyncio.sleep(0)
        assert len(gateway.gates) == 2

        gateway.gates[1].set_result(7)
        assert await second == 7
        gateway.gates[0].set_result(4)
        assert await first == 4

        assert published == [7]

    @pytest.mark.asyncio
    async def test_refresh_raises_gateway_errors(self, gateway):
        tracker = CountTracker(gateway, TABLE, lambda total: None)
        gateway.fail_next("count")
        with pytest.raises(GatewayError):
            await tracker.refresh(None)
