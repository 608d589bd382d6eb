"""
stream_poller.py
----------------
One poller per stream. On every tick it serves the cached snapshot while it
is fresh, otherwise fetches through the deduplicator, writes the result into
the snapshot cache and publishes a ``StreamView`` for the view layer.

Rate limits are absorbed by the backoff controller: the poller schedules a
single one-shot retry on top of its regular interval and only reports an
error once the stream has been throttled ``max_rate_limit_retries`` times in
a row. Any other failure is reported immediately while the last good
snapshot stays visible.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import statistics
import time
from typing import Any, Callable, Optional, Union

from models.metrics import StreamView
from models.snapshot import StreamDescriptor
from modules.backoff import BackoffController
from modules.fetch_deduplicator import FetchDeduplicator
from modules.ledger_rpc import RateLimitedError
from modules.snapshot_cache import SnapshotCache
from utils.logger import stream_logger

ViewCallback = Callable[[StreamView], Any]


class PollerState(str, enum.Enum):
    IDLE = "Idle"
    FETCHING = "Fetching"
    UPDATED = "Updated"
    RATE_LIMITED = "RateLimited"
    FAILED = "Failed"


class StreamPoller:
    """Fixed-interval poller for a single stream."""

    def __init__(
        self,
        descriptor: StreamDescriptor,
        cache: SnapshotCache,
        deduplicator: FetchDeduplicator,
        backoff: BackoffController,
        *,
        on_view: Optional[ViewCallback] = None,
        max_rate_limit_retries: int = 5,
        logger: Optional[Union[logging.Logger, logging.LoggerAdapter]] = None,
    ) -> None:
        self.descriptor = descriptor
        self.key = descriptor.key
        self.cache = cache
        self.deduplicator = deduplicator
        self.backoff = backoff
        self.on_view = on_view
        self.max_rate_limit_retries = max_rate_limit_retries
        self.logger = logger or stream_logger(logging.getLogger(self.__class__.__name__), self.key)

        self.cache.set_ttl(self.key, descriptor.ttl_ms)

        self.state = PollerState.IDLE
        self.last_outcome: Optional[PollerState] = None
        self.view = StreamView(stream_key=self.key)

        self._closed = False
        self._loop_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None

        # metrics
        self.metrics = {
            "requests_sent": 0,
            "errors": 0,
            "rate_limited": 0,
            "latencies": [],
        }

    # -------------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------------- #
    @property
    def closed(self) -> bool:
        return self._closed or self.cache.closed

    def start(self) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(
                self.run(), name=f"poller-{self.key}"
            )
        return self._loop_task

    async def run(self) -> None:
        self.logger.info(
            "Poller started – every %d ms, ttl %d ms",
            self.descriptor.interval_ms, self.descriptor.ttl_ms,
        )
        try:
            while not self.closed:
                await self.tick()
                await asyncio.sleep(self.descriptor.interval_ms / 1000)
        except asyncio.CancelledError:
            self.logger.info("Poller cancelled – shutting down")
            raise

    async def close(self) -> None:
        """Stop ticking. A fetch already on the wire may finish but won't write."""
        self._closed = True
        for task in (self._retry_task, self._loop_task):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._retry_task, self._loop_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._retry_task = None
        self._loop_task = None

    # -------------------------------------------------------------------- #
    # Ticks
    # -------------------------------------------------------------------- #
    async def tick(self) -> StreamView:
        if self.closed or self.state is PollerState.FETCHING:
            return self.view

        if self.cache.is_fresh(self.key):
            self._publish(data=self.cache.value(self.key), loading=False, error=self.view.error)
            return self.view

        self.state = PollerState.FETCHING
        t0 = time.monotonic()
        self.metrics["requests_sent"] += 1
        try:
            value = await self.deduplicator.run_exclusive(self.key, self.descriptor.fetch_fn)
        except RateLimitedError as exc:
            self._on_rate_limited(exc)
        except Exception as exc:
            self._on_failure(exc)
        else:
            self.metrics["latencies"].append(time.monotonic() - t0)
            self._on_success(value)
        finally:
            if self.state is PollerState.FETCHING:
                self.state = PollerState.IDLE
        return self.view

    async def refresh(self) -> StreamView:
        """Manual "refresh now": drop freshness and fetch, joining any fetch in flight."""
        self.cache.invalidate(self.key)
        if self.state is PollerState.FETCHING:
            try:
                await self.deduplicator.run_exclusive(self.key, self.descriptor.fetch_fn)
            except Exception as exc:
                # the tick that owns the fetch records the outcome
                self.logger.debug("Joined fetch failed: %s", exc)
            return self.view
        return await self.tick()

    # -------------------------------------------------------------------- #
    # Outcomes
    # -------------------------------------------------------------------- #
    def _on_success(self, value: Any) -> None:
        if self.closed:
            self.logger.debug("Poller closed, discarding fetched value")
            return
        self.cache.put(self.key, value)
        self.backoff.on_success(self.key)
        self._finish(PollerState.UPDATED)
        self._publish(data=self.cache.value(self.key), loading=False, error=None)

    def _on_rate_limited(self, exc: Exception) -> None:
        self.metrics["rate_limited"] += 1
        self.backoff.on_rate_limited(self.key)
        delay = self.backoff.next_delay(self.key)
        failures = self.backoff.state(self.key).consecutive_failures
        self.logger.warning("Rate limited (%d in a row), retrying in %d ms", failures, delay)
        self._finish(PollerState.RATE_LIMITED)
        if not self.closed:
            self._schedule_retry(delay)
        error = self.view.error
        if failures >= self.max_rate_limit_retries:
            error = f"Rate limited: {exc}"
        self._publish(data=self.cache.value(self.key), loading=self.view.loading, error=error)

    def _on_failure(self, exc: Exception) -> None:
        self.metrics["errors"] += 1
        self.backoff.on_other_error(self.key)
        self.logger.warning("Fetch failed: %s", exc)
        self._finish(PollerState.FAILED)
        # first paint is over even on failure; keep the last good data
        self._publish(data=self.cache.value(self.key), loading=False, error=f"Failed to fetch {self.key}: {exc}")

    def _finish(self, outcome: PollerState) -> None:
        self.last_outcome = outcome
        self.state = PollerState.IDLE

    def _schedule_retry(self, delay_ms: int) -> None:
        # only one follow-up may be pending; a newer one replaces the older
        pending = self._retry_task
        if pending is not None and pending is not asyncio.current_task() and not pending.done():
            pending.cancel()
        self._retry_task = asyncio.get_running_loop().create_task(
            self._retry_after(delay_ms), name=f"retry-{self.key}"
        )

    async def _retry_after(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        if not self.closed:
            await self.tick()

    def _publish(self, *, data: Any, loading: bool, error: Optional[str]) -> None:
        if self.closed:
            return
        self.view = StreamView(stream_key=self.key, data=data, loading=loading, error=error)
        if self.on_view is not None:
            try:
                self.on_view(self.view)
            except Exception:
                self.logger.exception("View callback failed")

    # -------------------------------------------------------------------- #
    def log_metrics(self) -> None:
        avg = statistics.mean(self.metrics["latencies"]) if self.metrics["latencies"] else 0
        self.logger.info(
            "📊 Requests: %s | Errors: %s | Rate limited: %s | Avg latency: %.3fs",
            self.metrics["requests_sent"],
            self.metrics["errors"],
            self.metrics["rate_limited"],
            avg,
        )
