"""
models/ledger.py
----------------
Decoded on-ledger entities. Amounts and prices are already converted from
6-decimal fixed point to floats by the decoder; nothing in here knows about
the wire representation.
"""
from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MarketStatus = Literal["Active", "Settled"]


class PositionHolding(BaseModel):
    """One settlement-slot bet owned by the user."""

    model_config = ConfigDict(frozen=True)

    id: int
    asset_symbol: str = "BTC"
    is_long: bool
    principal_amount: float = Field(..., ge=0)
    entry_price: float = Field(..., ge=0)
    created_at: int = 0  # slot
    is_settled: bool = False
    settlement_value: Optional[float] = None
    address: Optional[str] = None

    @field_validator("settlement_value")
    @classmethod
    def unset_until_settled(cls, v, info):
        # the ledger stores 0 for "not settled yet"
        if not info.data.get("is_settled"):
            return None
        return v


class PositionAccount(BaseModel):
    """Leveraged position the health ratio is computed for."""

    model_config = ConfigDict(frozen=True)

    address: str
    owner: str
    is_long: bool
    size: float = Field(..., ge=0)
    entry_price: float = Field(..., ge=0)
    cfd_tokens: float = 0.0
    leverage: int = 1
    collateral: float = Field(0.0, ge=0)
    liquidated: bool = False
    liquidated_slot: int = 0


class MarketQuote(BaseModel):
    """Market-price stream value: T+0 / T+2 quotes plus oracle prices."""

    model_config = ConfigDict(frozen=True)

    near_price: Optional[float] = None
    far_price: Optional[float] = None
    oracle_price: Optional[float] = None
    asset_prices: Dict[str, float] = Field(default_factory=dict)
    expiry_slot: int = 0
    status: MarketStatus = "Active"
    current_slot: int = 0

    def price_for(self, asset_symbol: str) -> Optional[float]:
        return self.asset_prices.get(asset_symbol.upper())

    @property
    def primary_price(self) -> Optional[float]:
        if self.oracle_price is not None:
            return self.oracle_price
        return self.near_price
