# modules/instruction_sender.py
"""
Builds, signs, submits and confirms state-changing instructions.

Two callers use it: the liquidation monitor (``liquidate``) and the view's
"place instruction" command (``submit``), which is forwarded without being
interpreted.
"""
from __future__ import annotations

import logging
from typing import Optional

from models.instruction import AccountMeta, Instruction, UnsignedTransaction
from models.ledger import PositionAccount
from modules.account_decoder import instruction_discriminator
from modules.addresses import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    ProgramAddresses,
    associated_token_account,
)
from modules.ledger_rpc import LedgerError, LedgerRpcClient, SubmissionError
from utils.signing import Signer, sign_transaction

LIQUIDATE_POSITION = instruction_discriminator("liquidate_position")


def _w(pubkey: str) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_writable=True)


def _ro(pubkey: str) -> AccountMeta:
    return AccountMeta(pubkey=pubkey)


class InstructionSender:
    def __init__(
        self,
        rpc: LedgerRpcClient,
        signer: Signer,
        addresses: ProgramAddresses,
        *,
        confirm_timeout_s: float = 30,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.rpc = rpc
        self.signer = signer
        self.addresses = addresses
        self.confirm_timeout_s = confirm_timeout_s
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    # -------------------------------------------------------------- #
    def build_liquidation(self, position: PositionAccount) -> Instruction:
        """``liquidate_position`` with its accounts in program order."""
        a = self.addresses
        if not a.usdc_mint:
            raise SubmissionError("USDC mint not configured, cannot liquidate")
        liquidator = self.signer.identity
        accounts = [
            _w(position.address),
            _w(a.market),
            _w(a.usdc_vault),
            _w(a.cfd_mint),
            _w(associated_token_account(position.owner, a.cfd_mint)),
            _w(associated_token_account(position.owner, a.usdc_mint)),
            _w(associated_token_account(liquidator, a.usdc_mint)),
            _ro(a.usdc_mint),
            AccountMeta(pubkey=liquidator, is_signer=True, is_writable=True),
            _ro(a.oracle),
            _ro(TOKEN_PROGRAM_ID),
            _ro(ASSOCIATED_TOKEN_PROGRAM_ID),
            _ro(SYSTEM_PROGRAM_ID),
        ]
        return Instruction(program_id=a.program_id, accounts=accounts, data=LIQUIDATE_POSITION)

    async def submit(self, *instructions: Instruction) -> str:
        """Sign and send ``instructions`` in one transaction, wait for confirmation.

        Returns the transaction signature. Every failure on the way is raised
        as ``SubmissionError``.
        """
        try:
            blockhash = await self.rpc.get_latest_blockhash()
            tx = UnsignedTransaction(
                fee_payer=self.signer.identity,
                recent_blockhash=blockhash,
                instructions=list(instructions),
            )
            signed = await sign_transaction(self.signer, tx)
            signature = await self.rpc.send_transaction(signed)
            self.logger.info("📝 Sent transaction %s", signature)
            await self.rpc.confirm_transaction(signature, timeout_s=self.confirm_timeout_s)
        except SubmissionError:
            raise
        except (LedgerError, ValueError) as exc:
            raise SubmissionError(str(exc)) from exc
        self.logger.info("✅ Confirmed %s", signature)
        return signature

    async def liquidate(self, position: PositionAccount) -> str:
        self.logger.info("⚡ Liquidating position %s", position.address)
        try:
            instruction = self.build_liquidation(position)
        except ValueError as exc:
            # owner that is not a valid pubkey
            raise SubmissionError(f"cannot build liquidation for {position.address}: {exc}") from exc
        return await self.submit(instruction)
