import asyncio
from unittest.mock import AsyncMock

import pytest

from models.snapshot import StreamDescriptor
from modules.backoff import BackoffController
from modules.fetch_deduplicator import FetchDeduplicator
from modules.ledger_rpc import RateLimitedError, TransientNetworkError
from modules.snapshot_cache import SnapshotCache, now_ms
from modules.stream_poller import PollerState, StreamPoller

# ------------------------- Fixtures ------------------------- #

@pytest.fixture
def cache():
    return SnapshotCache()


@pytest.fixture
def views():
    return []


def make_poller(cache, fetch_fn, views, *, ttl_ms=2000, max_retries=5, base_ms=10, max_ms=40):
    descriptor = StreamDescriptor(key="market", interval_ms=5000, ttl_ms=ttl_ms, fetch_fn=fetch_fn)
    return StreamPoller(
        descriptor,
        cache,
        FetchDeduplicator(),
        BackoffController(base_ms=base_ms, max_ms=max_ms),
        on_view=views.append,
        max_rate_limit_retries=max_retries,
    )

# ------------------------- Tests ------------------------- #

def test_initial_view_is_loading(cache, views):
    poller = make_poller(cache, AsyncMock(), views)
    assert poller.view.loading is True
    assert poller.view.data is None
    assert poller.state is PollerState.IDLE
    assert cache.ttl_for("market") == 2000


@pytest.mark.asyncio
async def test_successful_tick_writes_cache_and_publishes(cache, views):
    fetch = AsyncMock(return_value={"near": 100})
    poller = make_poller(cache, fetch, views)

    view = await poller.tick()

    assert view.data == {"near": 100}
    assert view.loading is False
    assert view.error is None
    assert cache.value("market") == {"near": 100}
    assert poller.last_outcome is PollerState.UPDATED
    assert views[-1] == view


@pytest.mark.asyncio
async def test_fresh_snapshot_skips_fetch(cache, views):
    fetch = AsyncMock(return_value="remote")
    poller = make_poller(cache, fetch, views)
    cache.put("market", "cached")

    view = await poller.tick()

    fetch.assert_not_called()
    assert view.data == "cached"
    assert view.loading is False


@pytest.mark.asyncio
async def test_failure_keeps_last_good_data(cache, views):
    fetch = AsyncMock(side_effect=TransientNetworkError("connection reset"))
    poller = make_poller(cache, fetch, views)
    cache.put("market", "last-good", fetched_at=now_ms() - 60_000)

    view = await poller.tick()

    assert view.data == "last-good"
    assert view.loading is False
    assert "connection reset" in view.error
    assert poller.last_outcome is PollerState.FAILED
    assert poller.metrics["errors"] == 1


@pytest.mark.asyncio
async def test_rate_limits_then_success_writes_once(cache, views):
    fetch = AsyncMock(side_effect=[RateLimitedError("429"), RateLimitedError("429"), {"near": 101}])
    poller = make_poller(cache, fetch, views)
    writes = []
    cache.subscribe("market", writes.append)

    await poller.tick()
    await asyncio.sleep(0.2)

    assert fetch.await_count == 3
    assert len(writes) == 1
    assert cache.value("market") == {"near": 101}
    assert poller.view.error is None
    assert poller.backoff.state("market").consecutive_failures == 0
    await poller.close()


@pytest.mark.asyncio
async def test_rate_limit_error_surfaces_after_max_retries(cache, views):
    fetch = AsyncMock(side_effect=RateLimitedError("Too Many Requests"))
    poller = make_poller(cache, fetch, views, max_retries=2, base_ms=5, max_ms=5)

    view = await poller.tick()
    assert view.error is None
    assert poller.last_outcome is PollerState.RATE_LIMITED

    await asyncio.sleep(0.05)
    assert poller.view.error.startswith("Rate limited")
    await poller.close()


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_fetch(cache, views):
    gate = asyncio.Event()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await gate.wait()
        return "fresh"

    poller = make_poller(cache, fetch, views)
    cache.put("market", "cached")

    tasks = [asyncio.create_task(poller.refresh()) for _ in range(5)]
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(*tasks)

    assert calls == 1
    assert cache.value("market") == "fresh"


@pytest.mark.asyncio
async def test_closed_poller_never_writes(cache, views):
    gate = asyncio.Event()

    async def fetch():
        await gate.wait()
        return "late"

    poller = make_poller(cache, fetch, views)
    tick = asyncio.create_task(poller.tick())
    await asyncio.sleep(0)
    await poller.close()
    gate.set()
    await tick

    assert cache.value("market") is None
    assert views == []


@pytest.mark.asyncio
async def test_start_runs_loop_until_closed(cache, views):
    fetch = AsyncMock(return_value=1)
    poller = make_poller(cache, fetch, views)
    poller.start()
    await asyncio.sleep(0.02)
    await poller.close()
    assert fetch.await_count == 1
    assert cache.value("market") == 1
