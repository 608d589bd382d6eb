"""
ledger_rpc.py
-------------
Thin asynchronous JSON-RPC client for the ledger endpoint. It only moves
requests and responses; account decoding lives in ``account_decoder`` and
stream-specific reads in ``ledger_reader``.

Errors are classified here so the rest of the core can react by type:
``RateLimitedError`` feeds the backoff controller, ``TransientNetworkError``
becomes a stream error flag, ``SubmissionError`` sends a liquidation back to
re-evaluation.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Union

import aiohttp

RATE_LIMIT_CODES = {429}
RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit")


# ----------------------------- errors ------------------------------------- #
class LedgerError(Exception):
    """Base class for everything the ledger boundary raises."""


class RateLimitedError(LedgerError):
    """The endpoint refused the call because of its request-rate ceiling."""


class TransientNetworkError(LedgerError):
    """Connection problems, timeouts, 5xx answers, RPC-level errors."""


class SubmissionError(LedgerError):
    """A transaction was rejected, failed on-ledger or never confirmed."""


def _looks_rate_limited(code: Any, message: str) -> bool:
    if code in RATE_LIMIT_CODES:
        return True
    text = (message or "").lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


# ---------------------------- rpc client ---------------------------------- #
class LedgerRpcClient:
    """JSON-RPC 2.0 over HTTP POST, sharing one ``aiohttp.ClientSession``."""

    def __init__(
        self,
        url: str,
        *,
        commitment: str = "confirmed",
        timeout_s: float = 10,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url = url
        self.commitment = commitment
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

        self.metrics = {
            "requests_sent": 0,
            "errors": 0,
            "rate_limited": 0,
        }

    # -------------------------------------------------------------------- #
    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        """Send one request and return its ``result`` field."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        session = await self._get_session()
        try:
            async with session.post(self.url, json=payload, timeout=self.timeout) as resp:
                self.metrics["requests_sent"] += 1
                if resp.status == 429:
                    self.metrics["rate_limited"] += 1
                    raise RateLimitedError(f"{method}: HTTP 429 Too Many Requests")
                if resp.status != 200:
                    self.metrics["errors"] += 1
                    raise TransientNetworkError(f"{method}: HTTP {resp.status}")
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.metrics["errors"] += 1
            raise TransientNetworkError(f"{method}: {exc!r}") from exc

        if not isinstance(body, dict):
            self.metrics["errors"] += 1
            raise TransientNetworkError(f"{method}: malformed response")

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            if _looks_rate_limited(code, message):
                self.metrics["rate_limited"] += 1
                raise RateLimitedError(f"{method}: {message}")
            self.metrics["errors"] += 1
            raise TransientNetworkError(f"{method}: [{code}] {message}")

        self.logger.debug("RPC %s -> ok", method)
        return body.get("result")

    # -------------------------------------------------------------------- #
    # Reads
    # -------------------------------------------------------------------- #
    async def get_slot(self) -> int:
        return int(await self.call("getSlot", [{"commitment": self.commitment}]))

    async def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        result = await self.call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        return (result or {}).get("value")

    async def get_multiple_accounts(
        self, addresses: Sequence[str]
    ) -> List[Optional[Dict[str, Any]]]:
        result = await self.call(
            "getMultipleAccounts",
            [list(addresses), {"encoding": "base64", "commitment": self.commitment}],
        )
        return list((result or {}).get("value") or [])

    async def get_program_accounts(
        self, program_id: str, filters: Optional[List[dict]] = None
    ) -> List[Dict[str, Any]]:
        config: Dict[str, Any] = {"encoding": "base64", "commitment": self.commitment}
        if filters:
            config["filters"] = filters
        result = await self.call("getProgramAccounts", [program_id, config])
        return list(result or [])

    async def get_latest_blockhash(self) -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]["blockhash"]

    # -------------------------------------------------------------------- #
    # Writes
    # -------------------------------------------------------------------- #
    async def send_transaction(self, signed_tx: Union[bytes, str]) -> str:
        """Submit a signed, serialized transaction and return its signature."""
        if isinstance(signed_tx, (bytes, bytearray)):
            signed_tx = base64.b64encode(bytes(signed_tx)).decode()
        try:
            return await self.call(
                "sendTransaction",
                [signed_tx, {"encoding": "base64", "preflightCommitment": self.commitment}],
            )
        except RateLimitedError:
            raise
        except TransientNetworkError as exc:
            raise SubmissionError(str(exc)) from exc

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self.call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": False}],
        )
        statuses = (result or {}).get("value") or [None]
        return statuses[0]

    async def confirm_transaction(
        self, signature: str, *, timeout_s: float = 30, poll_every: float = 0.4
    ) -> Dict[str, Any]:
        """Poll until ``signature`` reaches the client's commitment level."""
        deadline = time.monotonic() + timeout_s
        wanted = ("confirmed", "finalized") if self.commitment != "finalized" else ("finalized",)
        while True:
            try:
                status = await self.get_signature_status(signature)
            except (RateLimitedError, TransientNetworkError) as exc:
                self.logger.debug("Status poll for %s failed: %s", signature, exc)
                status = None
            if status:
                if status.get("err"):
                    raise SubmissionError(f"{signature} failed: {status['err']}")
                if status.get("confirmationStatus") in wanted:
                    return status
            if time.monotonic() >= deadline:
                raise SubmissionError(f"{signature} not confirmed after {timeout_s}s")
            await asyncio.sleep(poll_every)
