# --------------------------------------------------------------------
# models/metrics.py
# Records handed to the view layer and to the liquidation submission step.
# None of these are persisted.
# --------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Optional


@dataclass(frozen=True)
class DerivedMetrics:
    unrealized_pnl: float
    spread_bps: Optional[float]  # None = undefined
    health_ratio: Optional[float]  # bps, None = no open exposure
    realized_pnl: float = 0.0
    position_pnl: float = 0.0


@dataclass(frozen=True)
class LiquidationDecision:
    account_id: str
    triggered_at: int  # epoch-ms
    health_ratio_at_trigger: float


@dataclass(frozen=True)
class StreamView:
    stream_key: str
    data: Any = None
    loading: bool = True
    error: Optional[str] = None


@dataclass(frozen=True)
class LiquidationOutcome:
    account_id: str
    result: Literal["CONFIRMED", "FAILED", "RESOLVED"]
    decided_at: int  # epoch-ms
    finished_at: int  # epoch-ms
    health_ratio_at_trigger: Optional[float] = None
    signature: Optional[str] = None
    error: Optional[str] = None
