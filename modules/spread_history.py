"""
spread_history.py
-----------------

Rolling window of quoted spreads, one point per market update, for charts
and the spread heatmap. Points are kept in a bounded deque; ``to_frame``
hands them out as a Pandas DataFrame with standardised columns:

- ``slot``: ledger slot the quote was observed at
- ``fetched_at``: epoch-ms of the snapshot
- ``spread_bps``: quoted spread in basis points
- ``near_price`` / ``far_price``: the two legs

Undefined spreads are not recorded, so the frame never contains NaN spreads.

Example usage::

    history = SpreadHistory(maxlen=300)
    cache.subscribe("market", history.on_market_snapshot)
    df = history.to_frame()

"""

from __future__ import annotations

from collections import deque
from typing import Deque, List, Optional, Tuple

import pandas as pd

from models.ledger import MarketQuote
from models.snapshot import Snapshot
from modules.derivation import spread_bps


class SpreadHistory:
    columns: List[str] = ["slot", "fetched_at", "spread_bps", "near_price", "far_price"]

    def __init__(self, maxlen: int = 300) -> None:
        self._points: Deque[Tuple[int, int, float, float, float]] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._points)

    def record(self, quote: MarketQuote, fetched_at: int) -> Optional[float]:
        """Append the spread of ``quote``; returns it, or None when undefined."""
        spread = spread_bps(quote.near_price, quote.far_price)
        if spread is None:
            return None
        self._points.append((quote.current_slot, fetched_at, spread, quote.near_price, quote.far_price))
        return spread

    def on_market_snapshot(self, snap: Snapshot) -> None:
        if isinstance(snap.value, MarketQuote):
            self.record(snap.value, snap.fetched_at)

    def latest(self) -> Optional[float]:
        return self._points[-1][2] if self._points else None

    def to_frame(self) -> pd.DataFrame:
        if not self._points:
            return pd.DataFrame(columns=self.columns)
        df = pd.DataFrame(list(self._points), columns=self.columns)
        return df.astype({"slot": "int64", "fetched_at": "int64"})

    def summary(self) -> dict:
        """min / max / mean spread over the window, empty when nothing recorded."""
        df = self.to_frame()
        if df.empty:
            return {}
        spreads = df["spread_bps"]
        return {
            "points": int(len(df)),
            "min_bps": float(spreads.min()),
            "max_bps": float(spreads.max()),
            "mean_bps": float(spreads.mean()),
            "last_bps": float(spreads.iloc[-1]),
        }
