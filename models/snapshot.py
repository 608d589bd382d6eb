# --------------------------------------------------------------------
# models/snapshot.py
# Cache records and per-stream policy. Shared by the cache, the pollers and
# the backoff controller.
# --------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Snapshot(Generic[T]):
    value: T
    fetched_at: int  # epoch-ms
    stream_key: str


@dataclass(frozen=True)
class StreamDescriptor:
    key: str
    interval_ms: int
    ttl_ms: int
    fetch_fn: Callable[[], Awaitable[Any]]


@dataclass
class BackoffState:
    stream_key: str
    current_delay_ms: int
    consecutive_failures: int = 0
