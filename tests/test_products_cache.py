"""SingleFlightCache / ProductService"""

import asyncio
from decimal import Decimal

import pytest

from orderflow.gateway.products import ProductService, SingleFlightCache


class CountingLoader:
    """refresh_all の呼び出し回数を数える。gate が開くまで完了しない。"""

    def __init__(self, data=None):
        self.calls = 0
        self.data = data if data is not None else {1: "one", 2: "two"}
        self.gate = asyncio.Event()
        self.gate.set()
        self.error: Exception | None = None

    async def __call__(self):
        self.calls += 1
        await self.gate.wait()
        if self.error:
            raise self.error
        return dict(self.data)


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_misses_trigger_one_refresh(self, clock):
        loader = CountingLoader()
        loader.gate.clear()
        cache = SingleFlightCache(loader, ttl=60, clock=clock)

        waiters = [asyncio.create_task(cache.get(1)) for _ in range(20)]
        await asyncio.sleep(0)
        loader.gate.set()
        results = await asyncio.gather(*waiters)

        assert loader.calls == 1
        assert results == ["one"] * 20

    @pytest.mark.asyncio
    async def test_hit_within_ttl_does_not_reload(self, clock):
        loader = CountingLoader()
        cache = SingleFlightCache(loader, ttl=60, clock=clock)

        await cache.get(1)
        clock.advance(59)
        await cache.get(2)

        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_expiry_reloads_whole_map(self, clock):
        loader = CountingLoader()
        cache = SingleFlightCache(loader, ttl=60, clock=clock)
        await cache.get(1)

        loader.data = {3: "three"}
        clock.advance(61)

        assert await cache.get(3) == "three"
        assert await cache.get(1) is None
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_failure_without_prior_data_degrades_to_empty(self, clock):
        loader = CountingLoader()
        loader.error = RuntimeError("db down")
        cache = SingleFlightCache(loader, ttl=60, clock=clock)

        assert await cache.get(1) is None
        assert await cache.get_all() == {}

    @pytest.mark.asyncio
    async def test_failure_keeps_prior_data_and_retries_later(self, clock):
        loader = CountingLoader()
        cache = SingleFlightCache(loader, ttl=60, clock=clock)
        await cache.get(1)

        clock.advance(61)
        loader.error = RuntimeError("db down")
        assert await cache.get(1) == "one"

        loader.error = None
        loader.data = {1: "uno"}
        assert await cache.get(1) == "uno"
        assert loader.calls == 3

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_refresh(self, clock):
        loader = CountingLoader()
        loader.gate.clear()
        cache = SingleFlightCache(loader, ttl=60, clock=clock)

        first = asyncio.create_task(cache.get(1))
        second = asyncio.create_task(cache.get(2))
        await asyncio.sleep(0)
        first.cancel()
        loader.gate.set()

        assert await second == "two"
        with pytest.raises(asyncio.CancelledError):
            await first
        assert loader.calls == 1


class TestProductService:

    @pytest.mark.asyncio
    async def test_loads_products_from_database(self, session_factory):
        service = ProductService(session_factory, ttl=60)

        widget = await service.get_product(1)
        assert widget.name == "Widget"
        assert widget.cost == Decimal("25.00")
        assert widget.sku == "WID-001"
        assert await service.get_product(999) is None

    @pytest.mark.asyncio
    async def test_list_products_sorted_by_name(self, session_factory):
        service = ProductService(session_factory, ttl=60)
        names = [p.name for p in await service.list_products()]
        assert names == ["Gadget", "Mining Rig", "Widget"]
