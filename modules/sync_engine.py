"""
sync_engine.py
--------------
Owning context for one synchronization session: the snapshot cache, the
three stream pollers, the derivation hook, the spread history and (when
enabled) the liquidation monitor.

The view layer talks to the engine only: it subscribes to event-bus topics
and calls ``refresh`` / ``place_instruction``.

Topics published on ``engine.bus``:

- ``stream.<key>``: ``StreamView`` after every poller outcome
- ``metrics``: ``DerivedMetrics`` after every cache update
- ``liquidation``: ``LiquidationOutcome`` from the monitor

Inbound, the view may publish raw instruction dicts on ``instruction``;
``core.initialization`` routes them through ``core.instruction_handler``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from models.instruction import Instruction
from models.metrics import DerivedMetrics, LiquidationOutcome, StreamView
from models.snapshot import Snapshot, StreamDescriptor
from modules.backoff import BackoffController
from modules.derivation import derive_metrics, select_own_position
from modules.fetch_deduplicator import FetchDeduplicator
from modules.instruction_sender import InstructionSender
from modules.ledger_rpc import LedgerRpcClient
from modules.liquidation_monitor import LiquidationMonitor
from modules.snapshot_cache import SnapshotCache
from modules.spread_history import SpreadHistory
from modules.stream_poller import StreamPoller
from utils.event_bus import EventBus
from utils.logger import stream_logger

POSITION = "position"
MARKET = "market"
HOLDINGS = "holdings"


class SyncEngine:
    def __init__(
        self,
        descriptors: Sequence[StreamDescriptor],
        *,
        cache: Optional[SnapshotCache] = None,
        deduplicator: Optional[FetchDeduplicator] = None,
        backoff: Optional[BackoffController] = None,
        bus: Optional[EventBus] = None,
        sender: Optional[InstructionSender] = None,
        monitor: Optional[LiquidationMonitor] = None,
        spread_history: Optional[SpreadHistory] = None,
        rpc: Optional[LedgerRpcClient] = None,
        own_position: Optional[str] = None,
        max_rate_limit_retries: int = 5,
        metrics_log_interval_s: float = 60,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.cache = cache or SnapshotCache()
        self.deduplicator = deduplicator or FetchDeduplicator()
        self.backoff = backoff or BackoffController()
        self.bus = bus or EventBus()
        self.sender = sender
        self.monitor = monitor
        self.spread_history = spread_history or SpreadHistory()
        self.rpc = rpc
        self.own_position = own_position
        self.metrics_log_interval_s = metrics_log_interval_s

        self.pollers: Dict[str, StreamPoller] = {
            d.key: StreamPoller(
                d,
                self.cache,
                self.deduplicator,
                self.backoff,
                on_view=self._on_view,
                max_rate_limit_retries=max_rate_limit_retries,
                logger=stream_logger(self.logger, d.key),
            )
            for d in descriptors
        }

        self._unsubscribe = [self.cache.subscribe(key, self._on_snapshot) for key in self.pollers]
        if MARKET in self.pollers:
            self._unsubscribe.append(
                self.cache.subscribe(MARKET, self.spread_history.on_market_snapshot)
            )
        if self.monitor is not None and self.monitor.on_outcome is None:
            self.monitor.on_outcome = self._on_liquidation

        self.latest_metrics: DerivedMetrics = self.compute_metrics()
        self._metrics_task: Optional[asyncio.Task] = None
        self._started = False

    # -------------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------------- #
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.logger.info("✅ SyncEngine starting streams: %s", ", ".join(self.pollers))
        for poller in self.pollers.values():
            poller.start()
        if self.monitor is not None:
            self.monitor.start()
        self._metrics_task = asyncio.get_running_loop().create_task(
            self._metrics_loop(), name="sync-metrics"
        )

    async def close(self) -> None:
        self.logger.info("SyncEngine shutting down")
        if self._metrics_task is not None:
            self._metrics_task.cancel()
            try:
                await self._metrics_task
            except asyncio.CancelledError:
                pass
        await asyncio.gather(*(p.close() for p in self.pollers.values()))
        if self.monitor is not None:
            await self.monitor.close()
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self.cache.close()
        await self.bus.close()
        if self.rpc is not None:
            await self.rpc.close()
        self._started = False

    async def __aenter__(self) -> "SyncEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def run(self) -> None:
        """Run until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.logger.info("SyncEngine cancelled")
        finally:
            await self.close()

    # -------------------------------------------------------------------- #
    # View-facing commands
    # -------------------------------------------------------------------- #
    async def refresh(self, stream_key: Optional[str] = None) -> List[StreamView]:
        """Manual invalidation; refreshes one stream or all of them."""
        if stream_key is not None:
            if stream_key not in self.pollers:
                raise KeyError(f"unknown stream {stream_key!r}")
            return [await self.pollers[stream_key].refresh()]
        return list(await asyncio.gather(*(p.refresh() for p in self.pollers.values())))

    async def place_instruction(self, *instructions: Instruction) -> str:
        """Forward a view-issued instruction to the ledger as-is."""
        if self.sender is None:
            raise RuntimeError("no signer configured, cannot place instructions")
        return await self.sender.submit(*instructions)

    def view(self, stream_key: str) -> StreamView:
        return self.pollers[stream_key].view

    # -------------------------------------------------------------------- #
    # Derivation
    # -------------------------------------------------------------------- #
    def compute_metrics(self) -> DerivedMetrics:
        position = select_own_position(self.cache.value(POSITION), self.own_position)
        return derive_metrics(position, self.cache.value(MARKET), self.cache.value(HOLDINGS))

    def _on_snapshot(self, snap: Snapshot) -> None:
        self.latest_metrics = self.compute_metrics()
        self._safe_publish("metrics", self.latest_metrics)

    def _on_view(self, view: StreamView) -> None:
        self._safe_publish(f"stream.{view.stream_key}", view)

    def _on_liquidation(self, outcome: LiquidationOutcome) -> None:
        self._safe_publish("liquidation", outcome)

    def _safe_publish(self, topic: str, payload: object) -> None:
        try:
            self.bus.publish(topic, payload)
        except RuntimeError:
            # no running loop (e.g. a put from a plain thread); the value is still readable
            self.logger.debug("No event loop for %s, event not published", topic)

    # -------------------------------------------------------------------- #
    async def _metrics_loop(self) -> None:
        while True:
            await asyncio.sleep(self.metrics_log_interval_s)
            self.log_metrics()

    def log_metrics(self) -> None:
        for poller in self.pollers.values():
            poller.log_metrics()
        m = self.latest_metrics
        self.logger.info(
            "📈 Metrics | uPnL: %.2f | rPnL: %.2f | Spread: %s | Health: %s",
            m.unrealized_pnl,
            m.realized_pnl,
            "n/a" if m.spread_bps is None else f"{m.spread_bps:.1f} bps",
            "n/a" if m.health_ratio is None else f"{m.health_ratio:.0f} bps",
        )
        if self.monitor is not None:
            self.monitor.log_stats()
