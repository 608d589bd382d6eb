"""
addresses.py
------------
Program-derived addresses of the accounts the engine reads and the
liquidation instruction touches.

Singletons (market, vault, mints, oracles) are derived from fixed seeds;
positions from ``[b"position", owner]``; token accounts are the owner's
associated token account for a mint. Explicit addresses from the
configuration win over derived ones.

Example usage::

    addrs = ProgramAddresses.derive(program_id)
    addrs.position_for(identity)
    addrs.associated_token_account(owner, addrs.cfd_mint)

"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Union

from solders.pubkey import Pubkey

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

MARKET_SEED = b"market"
USDC_VAULT_SEED = b"usdc_vault"
CFD_MINT_SEED = b"mint"
ORACLE_SEED = b"oracle"
MULTI_ORACLE_SEED = b"multi_oracle"
POSITION_SEED = b"position"

Address = Union[str, Pubkey]


def to_pubkey(address: Address) -> Pubkey:
    return address if isinstance(address, Pubkey) else Pubkey.from_string(str(address))


@lru_cache(maxsize=1024)
def _find(program_id: str, *seeds: bytes) -> str:
    pda, _bump = Pubkey.find_program_address(list(seeds), Pubkey.from_string(program_id))
    return str(pda)


def find_program_address(program_id: Address, *seeds: Union[bytes, Address]) -> str:
    """Base58 PDA for ``seeds``; pubkey seeds may be given as base58 strings."""
    raw = [s if isinstance(s, bytes) else bytes(to_pubkey(s)) for s in seeds]
    return _find(str(program_id), *raw)


def associated_token_account(owner: Address, mint: Address) -> str:
    return find_program_address(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        to_pubkey(owner),
        to_pubkey(TOKEN_PROGRAM_ID),
        to_pubkey(mint),
    )


@dataclass(frozen=True)
class ProgramAddresses:
    program_id: str
    market: str
    usdc_vault: str
    cfd_mint: str
    oracle: str
    multi_oracle: str
    usdc_mint: Optional[str] = None

    @classmethod
    def derive(
        cls,
        program_id: str,
        *,
        market: Optional[str] = None,
        oracle: Optional[str] = None,
        multi_oracle: Optional[str] = None,
        usdc_mint: Optional[str] = None,
    ) -> "ProgramAddresses":
        return cls(
            program_id=program_id,
            market=market or find_program_address(program_id, MARKET_SEED),
            usdc_vault=find_program_address(program_id, USDC_VAULT_SEED),
            cfd_mint=find_program_address(program_id, CFD_MINT_SEED),
            oracle=oracle or find_program_address(program_id, ORACLE_SEED),
            multi_oracle=multi_oracle or find_program_address(program_id, MULTI_ORACLE_SEED),
            usdc_mint=usdc_mint,
        )

    def position_for(self, owner: Address) -> str:
        return find_program_address(self.program_id, POSITION_SEED, owner)

    @staticmethod
    def associated_token_account(owner: Address, mint: Address) -> str:
        return associated_token_account(owner, mint)
