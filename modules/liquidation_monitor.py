"""
liquidation_monitor.py
----------------------
Slot-paced health check over every open position in the snapshot cache.

Per account::

    Healthy -> Watching -> Liquidating -> Liquidated
         ^        |  ^         |
         +--------+  +---------+  (submission failed: back to Watching)

An account enters ``Liquidating`` in the same synchronous step that adds it
to the in-flight map, so no later tick can submit it again before the first
submission has confirmed or failed. A failed submission is retried on a
later tick, unless the ledger meanwhile reports the position as liquidated.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from models.ledger import PositionAccount
from models.metrics import LiquidationDecision, LiquidationOutcome
from modules.derivation import MAINTENANCE_THRESHOLD_BPS, is_below_maintenance, position_health
from modules.snapshot_cache import SnapshotCache, now_ms

SLOT_MS = 400

Submitter = Callable[[PositionAccount], Awaitable[str]]
OutcomeCallback = Callable[[LiquidationOutcome], Any]


class AccountState(str, enum.Enum):
    HEALTHY = "Healthy"
    WATCHING = "Watching"
    LIQUIDATING = "Liquidating"
    LIQUIDATED = "Liquidated"


class LiquidationMonitor:
    def __init__(
        self,
        cache: SnapshotCache,
        submitter: Submitter,
        *,
        interval_ms: int = SLOT_MS,
        threshold_bps: float = MAINTENANCE_THRESHOLD_BPS,
        watch_margin_bps: float = 500,
        position_key: str = "position",
        market_key: str = "market",
        on_outcome: Optional[OutcomeCallback] = None,
        clock: Callable[[], int] = now_ms,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cache = cache
        self.submitter = submitter
        self.interval_ms = interval_ms
        self.threshold_bps = threshold_bps
        self.watch_margin_bps = watch_margin_bps
        self.position_key = position_key
        self.market_key = market_key
        self.on_outcome = on_outcome
        self.clock = clock
        self.logger = logger or logging.getLogger(self.__class__.__name__)

        self.states: Dict[str, AccountState] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._closed = False

        self.stats = {
            "ticks": 0,
            "liquidations": 0,
            "failures": 0,
        }

    # -------------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------------- #
    def start(self) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(
                self.run(), name="liquidation-monitor"
            )
        return self._loop_task

    async def run(self) -> None:
        self.logger.info(
            "🔍 Liquidation monitor started – every %d ms, threshold %s bps",
            self.interval_ms, self.threshold_bps,
        )
        try:
            while not self._closed:
                try:
                    self.tick()
                except Exception:
                    self.logger.exception("Monitor tick failed")
                await asyncio.sleep(self.interval_ms / 1000)
        except asyncio.CancelledError:
            self.logger.info("Liquidation monitor cancelled – shutting down")
            raise

    async def close(self) -> None:
        """Stop ticking and let in-flight submissions settle."""
        self._closed = True
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)

    def is_inflight(self, account_id: str) -> bool:
        return account_id in self._inflight

    def state_of(self, account_id: str) -> AccountState:
        return self.states.get(account_id, AccountState.HEALTHY)

    # -------------------------------------------------------------------- #
    # Evaluation
    # -------------------------------------------------------------------- #
    def tick(self) -> List[LiquidationDecision]:
        """Evaluate every open account once; return the decisions taken."""
        self.stats["ticks"] += 1
        positions: Dict[str, PositionAccount] = self.cache.value(self.position_key) or {}
        market = self.cache.value(self.market_key)
        price = market.primary_price if market is not None else None

        decisions: List[LiquidationDecision] = []
        for account_id, position in positions.items():
            state = self.state_of(account_id)
            if state is AccountState.LIQUIDATED or account_id in self._inflight:
                continue

            if position.liquidated:
                self._resolve_externally(account_id)
                continue

            ratio = position_health(position, price)
            if ratio is None:
                continue

            if is_below_maintenance(ratio, self.threshold_bps):
                decision = LiquidationDecision(
                    account_id=account_id,
                    triggered_at=self.clock(),
                    health_ratio_at_trigger=ratio,
                )
                self._begin(decision, position)
                decisions.append(decision)
            elif ratio < self.threshold_bps + self.watch_margin_bps:
                if state is not AccountState.WATCHING:
                    self.logger.info("👀 %s health %.0f bps, watching", account_id, ratio)
                self.states[account_id] = AccountState.WATCHING
            else:
                if state is AccountState.WATCHING:
                    self.logger.info("✅ %s recovered (%.0f bps)", account_id, ratio)
                self.states[account_id] = AccountState.HEALTHY
        return decisions

    def _begin(self, decision: LiquidationDecision, position: PositionAccount) -> None:
        account_id = decision.account_id
        self.logger.warning(
            "🚨 %s below maintenance: %.0f bps < %s bps – liquidating",
            account_id, decision.health_ratio_at_trigger, self.threshold_bps,
        )
        self.states[account_id] = AccountState.LIQUIDATING
        self._inflight[account_id] = asyncio.get_running_loop().create_task(
            self._execute(decision, position), name=f"liquidate-{account_id}"
        )

    async def _execute(self, decision: LiquidationDecision, position: PositionAccount) -> None:
        account_id = decision.account_id
        try:
            signature = await self.submitter(position)
        except Exception as exc:
            self.stats["failures"] += 1
            self.states[account_id] = AccountState.WATCHING
            self.logger.warning("❌ Liquidation of %s failed: %s", account_id, exc)
            self._emit(decision, "FAILED", error=str(exc))
        else:
            self.stats["liquidations"] += 1
            self.states[account_id] = AccountState.LIQUIDATED
            self.logger.info("🎉 Liquidated %s (%s)", account_id, signature)
            self._emit(decision, "CONFIRMED", signature=signature)
        finally:
            self._inflight.pop(account_id, None)

    def _resolve_externally(self, account_id: str) -> None:
        self.states[account_id] = AccountState.LIQUIDATED
        self.logger.info("%s already liquidated on-ledger, no longer watching", account_id)
        now = self.clock()
        self._publish(LiquidationOutcome(
            account_id=account_id, result="RESOLVED", decided_at=now, finished_at=now,
        ))

    def _emit(self, decision: LiquidationDecision, result: str, **extra: Any) -> None:
        self._publish(LiquidationOutcome(
            account_id=decision.account_id,
            result=result,
            decided_at=decision.triggered_at,
            finished_at=self.clock(),
            health_ratio_at_trigger=decision.health_ratio_at_trigger,
            **extra,
        ))

    def _publish(self, outcome: LiquidationOutcome) -> None:
        if self.on_outcome is None:
            return
        try:
            self.on_outcome(outcome)
        except Exception:
            self.logger.exception("Outcome callback failed for %s", outcome.account_id)

    def log_stats(self) -> None:
        self.logger.info(
            "📊 Monitor | Ticks: %s | Liquidations: %s | Failures: %s | Watching: %s",
            self.stats["ticks"],
            self.stats["liquidations"],
            self.stats["failures"],
            sum(1 for s in self.states.values() if s is AccountState.WATCHING),
        )
