"""
derivation.py
-------------
Pure figures derived from one snapshot set: spread, P&L, health.

No I/O and no state. Every function is total over its inputs: missing or
degenerate data yields ``None`` (spread, health) or ``0.0`` (P&L) instead of
an exception, so the view always has something to render.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence

from models.ledger import MarketQuote, PositionAccount, PositionHolding
from models.metrics import DerivedMetrics

BPS = 10_000
MAINTENANCE_THRESHOLD_BPS = 9000
PRIMARY_ASSET = "BTC"  # asset the single-price oracle quotes


def spread_bps(near_price: Optional[float], far_price: Optional[float]) -> Optional[float]:
    """Relative difference of the far quote over the near one, in bps."""
    if near_price is None or far_price is None or near_price <= 0:
        return None
    return (far_price - near_price) * BPS / near_price


def _directional_pnl(principal: float, entry_price: float, price: float, is_long: bool) -> float:
    if entry_price <= 0:
        return 0.0
    pnl = principal * (price - entry_price) / entry_price
    return pnl if is_long else -pnl


def unrealized_pnl(holding: PositionHolding, current_price: Optional[float]) -> float:
    """Mark-to-market P&L of a holding; realized P&L once it has settled."""
    if holding.is_settled:
        return realized_pnl(holding)
    if current_price is None or current_price <= 0:
        return 0.0
    return _directional_pnl(holding.principal_amount, holding.entry_price, current_price, holding.is_long)


def realized_pnl(holding: PositionHolding) -> float:
    if not holding.is_settled or holding.settlement_value is None:
        return 0.0
    return holding.settlement_value - holding.principal_amount


def position_pnl(position: PositionAccount, current_price: Optional[float]) -> float:
    if current_price is None or current_price <= 0:
        return 0.0
    return _directional_pnl(position.size, position.entry_price, current_price, position.is_long)


def health_ratio(collateral_value: float, exposure_size: float) -> Optional[float]:
    """Collateral over exposure in bps; ``None`` when there is no exposure."""
    if exposure_size is None or exposure_size <= 0 or collateral_value is None:
        return None
    return collateral_value * BPS / exposure_size


def position_health(position: PositionAccount, current_price: Optional[float]) -> Optional[float]:
    """Health of a leveraged position: collateral marked to ``current_price``.

    Without a price the position cannot be marked, so health is undefined
    rather than assumed.
    """
    if current_price is None or current_price <= 0:
        return None
    collateral_value = max(0.0, position.collateral + position_pnl(position, current_price))
    return health_ratio(collateral_value, position.size)


def is_below_maintenance(ratio: Optional[float], threshold_bps: float = MAINTENANCE_THRESHOLD_BPS) -> bool:
    # strictly below; sitting exactly on the threshold is still healthy
    return ratio is not None and ratio < threshold_bps


def select_own_position(
    positions: Optional[Dict[str, PositionAccount]], own_address: Optional[str] = None
) -> Optional[PositionAccount]:
    if not positions:
        return None
    if own_address:
        return positions.get(own_address)
    if len(positions) == 1:
        return next(iter(positions.values()))
    return None


def holding_price(market: Optional[MarketQuote], asset_symbol: str) -> Optional[float]:
    """Multi-asset oracle price, else the primary price for the primary asset."""
    if market is None:
        return None
    price = market.price_for(asset_symbol)
    if price is None and asset_symbol.upper() == PRIMARY_ASSET:
        price = market.primary_price
    return price


def derive_metrics(
    position: Optional[PositionAccount],
    market: Optional[MarketQuote],
    holdings: Optional[Sequence[PositionHolding]] = None,
) -> DerivedMetrics:
    """Combine the latest position, market and holdings snapshots."""
    holdings = holdings or ()
    price = market.primary_price if market is not None else None

    open_pnl = sum(
        unrealized_pnl(h, holding_price(market, h.asset_symbol))
        for h in holdings
        if not h.is_settled
    )
    closed_pnl = sum(realized_pnl(h) for h in holdings if h.is_settled)

    pos_pnl = 0.0
    health = None
    if position is not None and not position.liquidated:
        pos_pnl = position_pnl(position, price)
        health = position_health(position, price)

    return DerivedMetrics(
        unrealized_pnl=open_pnl + pos_pnl,
        spread_bps=spread_bps(market.near_price, market.far_price) if market is not None else None,
        health_ratio=health,
        realized_pnl=closed_pnl,
        position_pnl=pos_pnl,
    )
