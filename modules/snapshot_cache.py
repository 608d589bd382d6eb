"""
snapshot_cache.py
-----------------
Most recent fetched value per stream, with a time-to-live and change
notifications. Every consumer reads remote state through this cache; nobody
keeps a private copy.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set

from models.snapshot import Snapshot

logger = logging.getLogger(__name__)

Subscriber = Callable[[Snapshot], Any]


def now_ms() -> int:
    return int(time.time() * 1000)


class SnapshotCache:
    """Thread-safe map of ``stream_key -> Snapshot``.

    ``put`` never merges: the new value replaces the old one wholesale. The
    only write that is refused is one stamped earlier than the snapshot
    already held, so a slow fetch can never roll a stream back in time.
    """

    def __init__(
        self,
        ttl_ms: Optional[Dict[str, int]] = None,
        *,
        default_ttl_ms: int = 2000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._ttl_ms: Dict[str, int] = dict(ttl_ms or {})
        self._default_ttl_ms = default_ttl_ms
        self._clock = clock
        self._lock = threading.RLock()
        self._snapshots: Dict[str, Snapshot] = {}
        self._invalidated: set[str] = set()
        self._subs: Dict[str, List[Subscriber]] = defaultdict(list)
        self._closed = False
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    # Policy
    # ------------------------------------------------------------------ #
    def set_ttl(self, stream_key: str, ttl_ms: int) -> None:
        with self._lock:
            self._ttl_ms[stream_key] = ttl_ms

    def ttl_for(self, stream_key: str) -> int:
        return self._ttl_ms.get(stream_key, self._default_ttl_ms)

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def get(self, stream_key: str) -> Optional[Snapshot]:
        with self._lock:
            return self._snapshots.get(stream_key)

    def value(self, stream_key: str, default: Any = None) -> Any:
        snap = self.get(stream_key)
        return snap.value if snap is not None else default

    def is_fresh(self, stream_key: str) -> bool:
        with self._lock:
            snap = self._snapshots.get(stream_key)
            if snap is None or stream_key in self._invalidated:
                return False
            return self._clock() - snap.fetched_at < self.ttl_for(stream_key)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    def put(
        self, stream_key: str, value: Any, *, fetched_at: Optional[int] = None
    ) -> Optional[Snapshot]:
        """Store ``value`` and notify subscribers.

        Returns the snapshot now held for the key, or ``None`` once the cache
        has been closed.
        """
        with self._lock:
            if self._closed:
                logger.debug("Cache closed, dropping write for %s", stream_key)
                return None
            stamp = self._clock() if fetched_at is None else fetched_at
            current = self._snapshots.get(stream_key)
            if current is not None and stamp < current.fetched_at:
                logger.debug(
                    "Stale write for %s ignored (%s < %s)",
                    stream_key, stamp, current.fetched_at,
                )
                return current
            snap = Snapshot(value=value, fetched_at=stamp, stream_key=stream_key)
            self._snapshots[stream_key] = snap
            self._invalidated.discard(stream_key)
            subscribers = list(self._subs.get(stream_key, []))

        self._notify(subscribers, snap)
        return snap

    def invalidate(self, stream_key: str) -> None:
        """Mark a key stale without dropping the last good value."""
        with self._lock:
            self._invalidated.add(stream_key)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subs.clear()

    # ------------------------------------------------------------------ #
    # Notifications
    # ------------------------------------------------------------------ #
    def subscribe(self, stream_key: str, fn: Subscriber) -> Callable[[], None]:
        """Register ``fn`` for updates of ``stream_key``; returns an unsubscribe callable."""
        with self._lock:
            self._subs[stream_key].append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                if fn in self._subs.get(stream_key, []):
                    self._subs[stream_key].remove(fn)

        return _unsubscribe

    def _notify(self, subscribers: List[Subscriber], snap: Snapshot) -> None:
        for fn in subscribers:
            try:
                res = fn(snap)
                if asyncio.iscoroutine(res):
                    task = asyncio.get_running_loop().create_task(res)
                    self._pending.add(task)
                    task.add_done_callback(self._subscriber_done)
            except Exception:
                logger.exception("Cache subscriber failed for %s", snap.stream_key)

    def _subscriber_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async cache subscriber failed", exc_info=task.exception())
