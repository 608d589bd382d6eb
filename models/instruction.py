from __future__ import annotations

import base64
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class AccountMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    pubkey: str = Field(..., min_length=32, max_length=44)
    is_signer: bool = False
    is_writable: bool = False


class Instruction(BaseModel):
    """One program instruction. ``data`` travels as base64 in JSON form."""

    model_config = ConfigDict(frozen=True)

    program_id: str = Field(..., min_length=32, max_length=44)
    accounts: List[AccountMeta] = Field(default_factory=list)
    data: bytes = b""

    @field_validator("data", mode="before")
    @classmethod
    def decode_data(cls, v):
        if isinstance(v, str):
            return base64.b64decode(v)
        return v

    @field_serializer("data")
    def encode_data(self, v: bytes) -> str:
        return base64.b64encode(v).decode()


class UnsignedTransaction(BaseModel):
    """What the signer receives: it assembles, signs and serializes it."""

    model_config = ConfigDict(frozen=True)

    fee_payer: str
    recent_blockhash: str
    instructions: List[Instruction] = Field(..., min_length=1)
