import base64
import struct
from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.pubkey import Pubkey

from modules.account_decoder import (
    BET_DISCRIMINATOR,
    MARKET_DISCRIMINATOR,
    ORACLE_DISCRIMINATOR,
    POSITION_ACCOUNT_SIZE,
    POSITION_DISCRIMINATOR,
)
from modules.addresses import ProgramAddresses
from modules.ledger_reader import LedgerReader

PROGRAM = str(Pubkey.new_unique())
IDENTITY = str(Pubkey.new_unique())

# ------------------------- Fixtures ------------------------- #

def b64(raw: bytes) -> dict:
    return {"data": [base64.b64encode(raw).decode(), "base64"]}


def position_raw(collateral=900_000_000):
    return (
        POSITION_DISCRIMINATOR
        + bytes(Pubkey.from_string(IDENTITY))
        + struct.pack("<BQQQBQBQ", 0, 1_000_000_000, 100_000_000, 0, 10, collateral, 0, 0)
        + b"\x00"
    )


@pytest.fixture
def addresses():
    return ProgramAddresses.derive(PROGRAM)


@pytest.fixture
def rpc():
    rpc = MagicMock()
    rpc.get_account_info = AsyncMock(return_value=None)
    rpc.get_program_accounts = AsyncMock(return_value=[])
    rpc.get_multiple_accounts = AsyncMock(return_value=[])
    rpc.get_slot = AsyncMock(return_value=777)
    return rpc


def make_reader(rpc, addresses, **kw):
    kw.setdefault("identity", IDENTITY)
    return LedgerReader(rpc, addresses, **kw)

# ------------------------- Tests ------------------------- #

@pytest.mark.asyncio
async def test_own_position_read_at_derived_address(rpc, addresses):
    expected = addresses.position_for(IDENTITY)
    rpc.get_account_info.return_value = b64(position_raw())

    positions = await make_reader(rpc, addresses).fetch_positions()

    rpc.get_account_info.assert_awaited_once_with(expected)
    rpc.get_program_accounts.assert_not_awaited()
    assert list(positions) == [expected]
    assert positions[expected].collateral == 900.0
    assert positions[expected].owner == IDENTITY


@pytest.mark.asyncio
async def test_configured_position_address_wins(rpc, addresses):
    configured = str(Pubkey.new_unique())
    reader = make_reader(rpc, addresses, position_address=configured)
    assert reader.own_position_address() == configured
    await reader.fetch_positions()
    rpc.get_account_info.assert_awaited_once_with(configured)


@pytest.mark.asyncio
async def test_missing_position_account_is_empty(rpc, addresses):
    assert await make_reader(rpc, addresses).fetch_positions() == {}


@pytest.mark.asyncio
async def test_undecodable_position_is_skipped(rpc, addresses):
    rpc.get_account_info.return_value = b64(b"\x00" * 10)
    assert await make_reader(rpc, addresses).fetch_positions() == {}


@pytest.mark.asyncio
async def test_fetch_positions_without_identity_is_empty(rpc, addresses):
    assert await make_reader(rpc, addresses, identity=None).fetch_positions() == {}
    rpc.get_account_info.assert_not_awaited()


@pytest.mark.asyncio
async def test_fetch_all_positions_scans_program(rpc, addresses):
    rpc.get_program_accounts.return_value = [
        {"pubkey": "PosA", "account": b64(position_raw())},
        {"pubkey": "Broken", "account": b64(b"\x00" * 10)},
    ]
    positions = await make_reader(rpc, addresses, identity=None, scope="all").fetch_positions()

    assert list(positions) == ["PosA"]
    program_id, filters = rpc.get_program_accounts.await_args.args
    assert program_id == PROGRAM
    assert {"dataSize": POSITION_ACCOUNT_SIZE} in filters
    assert all(f.get("memcmp", {}).get("offset") != 8 for f in filters)


@pytest.mark.asyncio
async def test_fetch_market_combines_accounts_and_slot(rpc, addresses):
    rpc.get_multiple_accounts.return_value = [
        b64(MARKET_DISCRIMINATOR + struct.pack("<QQQB", 100_000_000, 102_000_000, 900, 0)),
        b64(ORACLE_DISCRIMINATOR + bytes(32) + struct.pack("<Q", 101_000_000)),
        None,
    ]
    quote = await make_reader(rpc, addresses).fetch_market()

    rpc.get_multiple_accounts.assert_awaited_once_with(
        [addresses.market, addresses.oracle, addresses.multi_oracle]
    )
    assert quote.near_price == 100.0
    assert quote.far_price == 102.0
    assert quote.oracle_price == 101.0
    assert quote.current_slot == 777
    assert quote.primary_price == 101.0


@pytest.mark.asyncio
async def test_fetch_market_tolerates_missing_accounts(rpc, addresses):
    rpc.get_multiple_accounts.return_value = [None]
    quote = await make_reader(rpc, addresses).fetch_market()
    assert quote.near_price is None
    assert quote.oracle_price is None
    assert quote.current_slot == 777


@pytest.mark.asyncio
async def test_fetch_holdings_sorted_oldest_first(rpc, addresses):
    def bet(bet_id, created):
        return b64(
            BET_DISCRIMINATOR
            + bytes(32)
            + struct.pack("<Q", bet_id)
            + struct.pack("<I", 3) + b"BTC"
            + struct.pack("<BQBQQBQ", 0, 1_000_000, 1, 100_000_000, created, 0, 0)
        )

    rpc.get_program_accounts.return_value = [
        {"pubkey": "Bet2", "account": bet(2, 50)},
        {"pubkey": "Bet1", "account": bet(1, 10)},
    ]
    holdings = await make_reader(rpc, addresses).fetch_holdings()
    assert [h.id for h in holdings] == [1, 2]
    assert holdings[0].address == "Bet1"

    _, filters = rpc.get_program_accounts.await_args.args
    assert {"memcmp": {"offset": 8, "bytes": IDENTITY}} in filters


@pytest.mark.asyncio
async def test_rpc_errors_propagate(rpc, addresses):
    rpc.get_account_info.side_effect = ConnectionError("down")
    with pytest.raises(ConnectionError):
        await make_reader(rpc, addresses).fetch_positions()
