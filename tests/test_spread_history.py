import pytest

from models.ledger import MarketQuote
from models.snapshot import Snapshot
from modules.spread_history import SpreadHistory

# ------------------------- Tests ------------------------- #

def test_records_defined_spreads_only():
    history = SpreadHistory()
    assert history.record(MarketQuote(near_price=100.0, far_price=102.0, current_slot=1), 1000) == pytest.approx(200.0)
    assert history.record(MarketQuote(near_price=100.0), 2000) is None
    assert len(history) == 1
    assert history.latest() == pytest.approx(200.0)


def test_window_is_bounded():
    history = SpreadHistory(maxlen=3)
    for i in range(5):
        history.record(MarketQuote(near_price=100.0, far_price=100.0 + i, current_slot=i), i)
    df = history.to_frame()
    assert list(df["slot"]) == [2, 3, 4]
    assert list(df.columns) == SpreadHistory.columns


def test_market_snapshot_hook():
    history = SpreadHistory()
    history.on_market_snapshot(Snapshot(value=MarketQuote(near_price=50.0, far_price=51.0), fetched_at=5, stream_key="market"))
    history.on_market_snapshot(Snapshot(value={"not": "a quote"}, fetched_at=6, stream_key="market"))
    assert list(history.to_frame()["fetched_at"]) == [5]


def test_summary():
    history = SpreadHistory()
    assert history.summary() == {}
    assert history.to_frame().empty
    history.record(MarketQuote(near_price=100.0, far_price=101.0), 1)
    history.record(MarketQuote(near_price=100.0, far_price=103.0), 2)
    summary = history.summary()
    assert summary["points"] == 2
    assert summary["min_bps"] == pytest.approx(100.0)
    assert summary["max_bps"] == pytest.approx(300.0)
    assert summary["mean_bps"] == pytest.approx(200.0)
    assert summary["last_bps"] == pytest.approx(300.0)
