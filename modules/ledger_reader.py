"""
ledger_reader.py
----------------
Remote reads for the three streams. Each ``fetch_*`` coroutine is one
stream's ``fetch_fn``: it issues the RPC calls, decodes the accounts and
returns the value that goes into the snapshot cache.

Accounts are read at their program-derived addresses. ``getProgramAccounts``
is only used where there is nothing to derive: every position when the
scope is ``all``, and the user's holdings.

Undecodable accounts are logged and skipped (a malformed position simply is
not there); RPC errors propagate so the poller can classify them.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from models.ledger import MarketQuote, PositionAccount, PositionHolding
from modules.account_decoder import (
    BET_DISCRIMINATOR,
    POSITION_ACCOUNT_SIZE,
    POSITION_DISCRIMINATOR,
    DecodeError,
    decode_asset_prices,
    decode_holding,
    decode_market,
    decode_oracle_price,
    decode_position,
)
from modules.addresses import ProgramAddresses
from modules.ledger_rpc import LedgerRpcClient

OWNER_OFFSET = 8  # right after the account discriminator


def _memcmp_b64(offset: int, raw: bytes) -> dict:
    return {"memcmp": {"offset": offset, "bytes": base64.b64encode(raw).decode(), "encoding": "base64"}}


def _memcmp_owner(identity: str) -> dict:
    # identities are already base58, which is memcmp's default encoding
    return {"memcmp": {"offset": OWNER_OFFSET, "bytes": identity}}


class LedgerReader:
    def __init__(
        self,
        rpc: LedgerRpcClient,
        addresses: ProgramAddresses,
        *,
        identity: Optional[str] = None,
        position_address: Optional[str] = None,
        scope: str = "own",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.rpc = rpc
        self.addresses = addresses
        self.identity = identity
        self.position_address = position_address
        self.scope = scope
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    @property
    def program_id(self) -> str:
        return self.addresses.program_id

    def own_position_address(self) -> Optional[str]:
        if self.position_address:
            return self.position_address
        if self.identity:
            return self.addresses.position_for(self.identity)
        return None

    # -------------------------------------------------------------------- #
    async def fetch_positions(self) -> Dict[str, PositionAccount]:
        """Open leveraged positions keyed by account address."""
        if self.scope == "all":
            return await self._scan_positions()

        address = self.own_position_address()
        if address is None:
            return {}
        info = await self.rpc.get_account_info(address)
        if info is None:
            return {}
        try:
            return {address: decode_position(address, info)}
        except (DecodeError, ValidationError) as exc:
            self.logger.warning("Skipping undecodable position %s: %s", address, exc)
            return {}

    async def _scan_positions(self) -> Dict[str, PositionAccount]:
        filters = [{"dataSize": POSITION_ACCOUNT_SIZE}, _memcmp_b64(0, POSITION_DISCRIMINATOR)]
        accounts = await self.rpc.get_program_accounts(self.program_id, filters)
        positions: Dict[str, PositionAccount] = {}
        for entry in accounts:
            address = entry.get("pubkey", "")
            try:
                positions[address] = decode_position(address, entry.get("account"))
            except (DecodeError, ValidationError) as exc:
                self.logger.warning("Skipping undecodable position %s: %s", address, exc)
        return positions

    async def fetch_market(self) -> MarketQuote:
        """Market quotes, oracle prices and the current slot in two RPC calls."""
        a = self.addresses
        infos = await self.rpc.get_multiple_accounts([a.market, a.oracle, a.multi_oracle])
        current_slot = await self.rpc.get_slot()
        market_info, oracle_info, multi_info = (list(infos) + [None] * 3)[:3]

        fields: Dict[str, Any] = {"current_slot": current_slot}
        try:
            fields.update(decode_market(market_info))
        except DecodeError as exc:
            self.logger.warning("Market account undecodable: %s", exc)

        # either oracle may legitimately not exist for a deployment
        if oracle_info is not None:
            try:
                fields["oracle_price"] = decode_oracle_price(oracle_info)
            except DecodeError as exc:
                self.logger.warning("Oracle account undecodable: %s", exc)

        if multi_info is not None:
            try:
                fields["asset_prices"] = decode_asset_prices(multi_info)
            except DecodeError as exc:
                self.logger.warning("Multi-asset oracle undecodable: %s", exc)

        return MarketQuote(**fields)

    async def fetch_holdings(self) -> List[PositionHolding]:
        """The user's settlement-slot holdings, oldest first."""
        if not self.identity:
            return []
        filters = [_memcmp_b64(0, BET_DISCRIMINATOR), _memcmp_owner(self.identity)]
        accounts = await self.rpc.get_program_accounts(self.program_id, filters)
        holdings: List[PositionHolding] = []
        for entry in accounts:
            address = entry.get("pubkey", "")
            try:
                holdings.append(decode_holding(address, entry.get("account")))
            except (DecodeError, ValidationError) as exc:
                self.logger.warning("Skipping undecodable holding %s: %s", address, exc)
        holdings.sort(key=lambda h: (h.created_at, h.id))
        return holdings
