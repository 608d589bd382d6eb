"""
backoff.py
----------
Per-stream retry delay for rate-limited RPC calls. Each stream backs off on
its own so one throttled stream does not starve the others.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict

from models.snapshot import BackoffState

logger = logging.getLogger(__name__)

BASE_DELAY_MS = 1000
MAX_DELAY_MS = 10000


class BackoffController:
    """Exponential backoff: base, doubling per consecutive rate limit, capped."""

    def __init__(self, base_ms: int = BASE_DELAY_MS, max_ms: int = MAX_DELAY_MS) -> None:
        self.base_ms = base_ms
        self.max_ms = max_ms
        self._lock = threading.Lock()
        self._states: Dict[str, BackoffState] = {}

    def _state(self, stream_key: str) -> BackoffState:
        state = self._states.get(stream_key)
        if state is None:
            state = BackoffState(stream_key=stream_key, current_delay_ms=self.base_ms)
            self._states[stream_key] = state
        return state

    def state(self, stream_key: str) -> BackoffState:
        """Copy of the current state for ``stream_key``."""
        with self._lock:
            s = self._state(stream_key)
            return BackoffState(s.stream_key, s.current_delay_ms, s.consecutive_failures)

    def next_delay(self, stream_key: str) -> int:
        with self._lock:
            return self._state(stream_key).current_delay_ms

    def on_success(self, stream_key: str) -> None:
        with self._lock:
            state = self._state(stream_key)
            state.current_delay_ms = self.base_ms
            state.consecutive_failures = 0

    def on_rate_limited(self, stream_key: str) -> None:
        """Count a rate limit. The first one leaves the delay at base, later ones double it."""
        with self._lock:
            state = self._state(stream_key)
            if state.consecutive_failures > 0:
                state.current_delay_ms = min(state.current_delay_ms * 2, self.max_ms)
            state.consecutive_failures += 1
            logger.debug(
                "%s rate limited %d time(s), next delay %d ms",
                stream_key, state.consecutive_failures, state.current_delay_ms,
            )

    def on_other_error(self, stream_key: str) -> None:
        # non rate-limit failures leave the backoff untouched
        with self._lock:
            self._state(stream_key)
