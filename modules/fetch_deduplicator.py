"""
fetch_deduplicator.py
---------------------
At most one outstanding remote call per stream. Callers that arrive while a
fetch is in flight await the same future instead of starting another one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class FetchDeduplicator:
    def __init__(self) -> None:
        self._inflight: Dict[str, asyncio.Future] = {}

    def is_inflight(self, stream_key: str) -> bool:
        return stream_key in self._inflight

    async def run_exclusive(
        self, stream_key: str, fetch_fn: Callable[[], Awaitable[Any]]
    ) -> Any:
        pending = self._inflight.get(stream_key)
        if pending is not None:
            logger.debug("Joining in-flight fetch for %s", stream_key)
            # shield: one joiner being cancelled must not cancel the fetch for the rest
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._run(stream_key, fetch_fn))
        self._inflight[stream_key] = task
        return await asyncio.shield(task)

    async def _run(self, stream_key: str, fetch_fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await fetch_fn()
        finally:
            self._inflight.pop(stream_key, None)
