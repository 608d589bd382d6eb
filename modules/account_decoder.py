"""
account_decoder.py
------------------

Turns raw ledger accounts into the models in ``models.ledger``.

Accounts arrive in one of two shapes:

- the RPC form, ``{"data": ["<base64>", "base64"], ...}``, holding the
  program's borsh layout behind an 8-byte account discriminator;
- an already-decoded mapping (what an indexer or a test fixture hands over),
  with camelCase or snake_case keys and numbers as ints, strings or wrapped
  objects.

Every numeric field of the second shape goes through ``coerce_int`` so the
representation guessing happens in exactly one place. Amounts and prices are
6-decimal fixed point on the ledger and are converted to floats here; the
derivation engine never sees raw integers.

Anything that cannot be decoded raises ``DecodeError``. Callers treat that as
"no data" for the account concerned.

Example usage::

    info = await rpc.get_account_info(address)
    position = decode_position(address, info)

"""

from __future__ import annotations

import base64
import binascii
import hashlib
import struct
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from solders.pubkey import Pubkey

from models.ledger import PositionAccount, PositionHolding

FIXED_POINT = 1_000_000


class DecodeError(ValueError):
    """Malformed or unexpected account data."""


# ------------------------------------------------------------------ #
# Discriminators
# ------------------------------------------------------------------ #
def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


POSITION_DISCRIMINATOR = account_discriminator("Position")
MARKET_DISCRIMINATOR = account_discriminator("Market")
ORACLE_DISCRIMINATOR = account_discriminator("OracleMock")
MULTI_ORACLE_DISCRIMINATOR = account_discriminator("MultiAssetOracle")
BET_DISCRIMINATOR = account_discriminator("Bet")

POSITION_ACCOUNT_SIZE = 8 + 32 + 1 + 8 + 8 + 8 + 1 + 8 + 1 + 8 + 1


# ------------------------------------------------------------------ #
# Representation helpers
# ------------------------------------------------------------------ #
def coerce_int(value: Any, default: int = 0) -> int:
    """Best-effort integer from whatever the wire gave us, else ``default``."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value else default  # NaN
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "little") if value else default
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError:
            try:
                return int(float(text))
            except ValueError:
                return default
    if isinstance(value, Mapping):
        for key in ("value", "amount", "hex", "$numberLong"):
            if key in value:
                return coerce_int(value[key], default)
        return default
    return default


def to_ui(raw: int) -> float:
    return raw / FIXED_POINT


def _field(data: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return default


def account_bytes(info: Union[Mapping[str, Any], bytes, str, None]) -> bytes:
    """Extract the raw data bytes from an RPC account object."""
    if info is None:
        raise DecodeError("account does not exist")
    if isinstance(info, (bytes, bytearray)):
        return bytes(info)
    raw = info.get("data") if isinstance(info, Mapping) else info
    if isinstance(raw, (list, tuple)) and raw:
        if len(raw) > 1 and raw[1] != "base64":
            raise DecodeError(f"unsupported encoding {raw[1]!r}")
        raw = raw[0]
    if not isinstance(raw, str):
        raise DecodeError("account data missing")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"bad base64 account data: {exc}") from exc


def _is_decoded(info: Any) -> bool:
    return isinstance(info, Mapping) and "data" not in info


class _BorshReader:
    def __init__(self, data: bytes, discriminator: bytes) -> None:
        if len(data) < 8 or data[:8] != discriminator:
            raise DecodeError("account discriminator mismatch")
        self.data = data
        self.offset = 8

    def _unpack(self, fmt: str) -> Tuple:
        size = struct.calcsize(fmt)
        if self.offset + size > len(self.data):
            raise DecodeError("account data truncated")
        values = struct.unpack_from(fmt, self.data, self.offset)
        self.offset += size
        return values

    def u8(self) -> int:
        return self._unpack("<B")[0]

    def flag(self) -> bool:
        return self.u8() != 0

    def u32(self) -> int:
        return self._unpack("<I")[0]

    def u64(self) -> int:
        return self._unpack("<Q")[0]

    def pubkey(self) -> str:
        return str(Pubkey.from_bytes(self._unpack("<32s")[0]))

    def string(self) -> str:
        length = self.u32()
        raw = self._unpack(f"<{length}s")[0]
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError("invalid utf-8 in string field") from exc


# ------------------------------------------------------------------ #
# Accounts
# ------------------------------------------------------------------ #
def decode_position(address: str, info: Any) -> PositionAccount:
    if _is_decoded(info):
        side = _field(info, "side", default={})
        is_long = _field(info, "isLong", "is_long", default=None)
        if is_long is None:
            is_long = "long" in side if isinstance(side, Mapping) else str(side).lower() == "long"
        return PositionAccount(
            address=address,
            owner=str(_field(info, "owner", default="")),
            is_long=bool(is_long),
            size=to_ui(coerce_int(_field(info, "size"))),
            entry_price=to_ui(coerce_int(_field(info, "entryPrice", "entry_price"))),
            cfd_tokens=to_ui(coerce_int(_field(info, "cfdTokens", "cfd_tokens"))),
            leverage=coerce_int(_field(info, "leverage"), 1),
            collateral=to_ui(coerce_int(_field(info, "collateral"))),
            liquidated=bool(_field(info, "liquidated", default=False)),
            liquidated_slot=coerce_int(_field(info, "liquidatedSlot", "liquidated_slot")),
        )

    r = _BorshReader(account_bytes(info), POSITION_DISCRIMINATOR)
    owner = r.pubkey()
    side = r.u8()
    if side not in (0, 1):
        raise DecodeError(f"unknown position side {side}")
    return PositionAccount(
        address=address,
        owner=owner,
        is_long=side == 0,
        size=to_ui(r.u64()),
        entry_price=to_ui(r.u64()),
        cfd_tokens=to_ui(r.u64()),
        leverage=r.u8(),
        collateral=to_ui(r.u64()),
        liquidated=r.flag(),
        liquidated_slot=r.u64(),
    )


def decode_market(info: Any) -> Dict[str, Any]:
    """Return ``near_price``, ``far_price``, ``expiry_slot`` and ``status``."""
    if _is_decoded(info):
        status = _field(info, "status", default="Active")
        if isinstance(status, Mapping):
            status = "Settled" if "settled" in status else "Active"
        t0 = coerce_int(_field(info, "t0Price", "t0_price"))
        t2 = coerce_int(_field(info, "t2Price", "t2_price"))
        return {
            "near_price": to_ui(t0) if t0 else None,
            "far_price": to_ui(t2) if t2 else None,
            "expiry_slot": coerce_int(_field(info, "expirySlot", "expiry_slot")),
            "status": "Settled" if str(status).lower() == "settled" else "Active",
        }

    r = _BorshReader(account_bytes(info), MARKET_DISCRIMINATOR)
    t0, t2, expiry = r.u64(), r.u64(), r.u64()
    status = r.u8()
    if status not in (0, 1):
        raise DecodeError(f"unknown market status {status}")
    return {
        # the far leg is only written at settlement; 0 means "no quote yet"
        "near_price": to_ui(t0) if t0 else None,
        "far_price": to_ui(t2) if t2 else None,
        "expiry_slot": expiry,
        "status": "Settled" if status == 1 else "Active",
    }


def decode_oracle_price(info: Any) -> Optional[float]:
    if _is_decoded(info):
        price = coerce_int(_field(info, "price"))
        return to_ui(price) if price else None

    r = _BorshReader(account_bytes(info), ORACLE_DISCRIMINATOR)
    r.pubkey()  # admin
    price = r.u64()
    return to_ui(price) if price else None


def decode_asset_prices(info: Any) -> Dict[str, float]:
    """Map of upper-case asset symbol to price from the multi-asset oracle."""
    prices: Dict[str, float] = {}
    if _is_decoded(info):
        for entry in _field(info, "assetPrices", "asset_prices", default=[]) or []:
            if not isinstance(entry, Mapping):
                continue
            symbol = str(_field(entry, "assetSymbol", "asset_symbol", default="")).upper()
            price = coerce_int(_field(entry, "price"))
            if symbol and price:
                prices[symbol] = to_ui(price)
        return prices

    r = _BorshReader(account_bytes(info), MULTI_ORACLE_DISCRIMINATOR)
    r.pubkey()  # admin
    for _ in range(r.u32()):
        symbol = r.string().upper()
        r.u8()  # asset type
        price = r.u64()
        r.u64()  # last updated slot
        r.u8()  # source
        r.u64()  # confidence
        if symbol and price:
            prices[symbol] = to_ui(price)
    return prices


def decode_holding(address: str, info: Any) -> PositionHolding:
    if _is_decoded(info):
        is_settled = bool(_field(info, "isSettled", "is_settled", default=False))
        return PositionHolding(
            id=coerce_int(_field(info, "betId", "bet_id", "id")),
            asset_symbol=str(_field(info, "assetSymbol", "asset_symbol", default="BTC")).upper(),
            is_long=bool(_field(info, "isLong", "is_long", default=False)),
            principal_amount=to_ui(coerce_int(_field(info, "betAmount", "bet_amount", "principal_amount"))),
            entry_price=to_ui(coerce_int(_field(info, "entryPrice", "entry_price"))),
            created_at=coerce_int(_field(info, "createdSlot", "created_slot", "created_at")),
            is_settled=is_settled,
            settlement_value=to_ui(coerce_int(_field(info, "settlementValue", "settlement_value"))),
            address=address,
        )

    r = _BorshReader(account_bytes(info), BET_DISCRIMINATOR)
    r.pubkey()  # owner
    bet_id = r.u64()
    symbol = r.string().upper() or "BTC"
    r.u8()  # asset type
    amount = r.u64()
    is_long = r.flag()
    entry = r.u64()
    created = r.u64()
    is_settled = r.flag()
    settlement = r.u64()
    return PositionHolding(
        id=bet_id,
        asset_symbol=symbol,
        is_long=is_long,
        principal_amount=to_ui(amount),
        entry_price=to_ui(entry),
        created_at=created,
        is_settled=is_settled,
        settlement_value=to_ui(settlement),
        address=address,
    )
