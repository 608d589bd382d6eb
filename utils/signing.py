# -------------------------------------------------------------------
#  🔐  utils/signing.py  – the signing capability the core is handed.
# -------------------------------------------------------------------
"""The wallet is an external collaborator. All the core knows about it is an
identity (base58 public key) and a ``sign`` callable that turns an
``UnsignedTransaction`` into serialized signed bytes (or their base64 form).
Wallet adapters are free to sign asynchronously."""
from __future__ import annotations

import inspect
from typing import Awaitable, Protocol, Union, runtime_checkable

from models.instruction import UnsignedTransaction

SignedTransaction = Union[bytes, str]

__all__ = ["Signer", "SignedTransaction", "sign_transaction"]


@runtime_checkable
class Signer(Protocol):
    identity: str

    def sign(
        self, transaction: UnsignedTransaction
    ) -> Union[SignedTransaction, Awaitable[SignedTransaction]]:
        ...


async def sign_transaction(signer: Signer, transaction: UnsignedTransaction) -> SignedTransaction:
    """Call ``signer.sign`` whether it is sync or async."""
    signed = signer.sign(transaction)
    if inspect.isawaitable(signed):
        signed = await signed
    if not signed:
        raise ValueError("signer returned an empty transaction")
    return signed
