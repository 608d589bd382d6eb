"""
core/instruction_handler.py
---------------------------
View-facing entry point for "place instruction X". The view publishes the
raw instruction dict on the engine bus topic ``instruction``;
``initialize_components`` subscribes ``handle_instruction`` to it, which
validates the payload and forwards it to ``SyncEngine.place_instruction``.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from models.instruction import Instruction
from modules.ledger_rpc import SubmissionError

INSTRUCTION_TOPIC = "instruction"

logger = logging.getLogger(__name__)


async def handle_instruction(payload: Dict[str, Any], *, engine) -> Optional[str]:
    """Validate a view-issued instruction with Pydantic and forward it.

    Returns the confirmed signature, or ``None`` when the payload was invalid,
    the ledger rejected it or no signer is configured (all logged, none raised).
    """
    try:
        instruction = Instruction(**payload)
    except ValidationError as ve:
        logger.warning("Instruction validation failed: %s", ve)
        return None

    try:
        signature = await engine.place_instruction(instruction)
    except SubmissionError as exc:
        logger.warning("Instruction for %s rejected: %s", instruction.program_id, exc)
        return None
    except RuntimeError as exc:
        logger.warning("Instruction dropped: %s", exc)
        return None

    logger.info("🚀 Instruction confirmed: %s", signature)
    return signature
