from unittest.mock import AsyncMock, MagicMock

import pytest

from core.instruction_handler import handle_instruction
from models.instruction import Instruction
from modules.ledger_rpc import SubmissionError

PROGRAM = "Prog111111111111111111111111111111111111111"
ACCOUNT = "Acct111111111111111111111111111111111111111"

# ------------------------- Fixtures ------------------------- #

@pytest.fixture
def engine():
    engine = MagicMock()
    engine.place_instruction = AsyncMock(return_value="sig-1")
    return engine

# ------------------------- Tests ------------------------- #

@pytest.mark.asyncio
async def test_valid_payload_is_forwarded(engine):
    payload = {
        "program_id": PROGRAM,
        "accounts": [{"pubkey": ACCOUNT, "is_writable": True}],
        "data": "AQID",
    }
    assert await handle_instruction(payload, engine=engine) == "sig-1"
    sent = engine.place_instruction.await_args.args[0]
    assert isinstance(sent, Instruction)
    assert sent.data == b"\x01\x02\x03"
    assert sent.accounts[0].is_writable is True


@pytest.mark.asyncio
async def test_invalid_payload_is_dropped(engine):
    assert await handle_instruction({"program_id": "short"}, engine=engine) is None
    engine.place_instruction.assert_not_awaited()


@pytest.mark.asyncio
async def test_rejected_submission_returns_none(engine):
    engine.place_instruction.side_effect = SubmissionError("simulation failed")
    assert await handle_instruction({"program_id": PROGRAM}, engine=engine) is None


@pytest.mark.asyncio
async def test_read_only_engine_returns_none(engine):
    engine.place_instruction.side_effect = RuntimeError("no signer configured")
    assert await handle_instruction({"program_id": PROGRAM}, engine=engine) is None
