# src/task_query/query/query_cache.py

"""
Result cache and timeout guard.

Both are owned by a QueryEngine instance (no module-level singletons) and
are torn down with it.

Concurrency model: asyncio, single thread. Cache reads and writes complete
within one scheduling turn, so there is no locking and writes are
last-write-wins. Two callers issuing the same query at the same time both
miss and both fetch unless the engine enables in-flight coalescing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from ..core.cancellation import CancellationToken
from .errors import QueryTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    key: str
    result: T
    written_at: float


class QueryCache(Generic[T]):
    """
    Result snapshots keyed by the raw query text (before any optimization).

    `clock` returns seconds (time.monotonic by default); entries older than
    timeout_ms are treated as absent and evicted on read.
    """

    def __init__(self, timeout_ms: int, *, clock: Clock | None = None) -> None:
        self._entries: dict[str, CacheEntry[T]] = {}
        self._clock = clock or time.monotonic
        self.timeout_ms = timeout_ms

    def __len__(self) -> int:
        return len(self._entries)

    def _fresh(self, entry: CacheEntry[T]) -> bool:
        return (self._clock() - entry.written_at) * 1000.0 < self.timeout_ms

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not self._fresh(entry):
            del self._entries[key]
            logger.debug("Cache entry expired key=%r", key)
            return None
        return entry.result

    def put(self, key: str, result: T) -> None:
        self._entries[key] = CacheEntry(key=key, result=result, written_at=self._clock())

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        n = len(self._entries)
        self._entries.clear()
        if n:
            logger.debug("Cache cleared entries=%s", n)


class TimeoutGuard:
    """
    Races an execution against a deadline.

    Losing the race cancels the token and raises QueryTimeoutError, but the
    in-flight work is left running: cancellation is cooperative only, so a
    record source that ignores the token keeps consuming resources until it
    finishes. Such work is tracked in `abandoned` and logged, both when it is
    abandoned and when it eventually completes. Under sustained load this set
    can grow; `shutdown()` cancels whatever is still running.
    """

    def __init__(self) -> None:
        self._abandoned: set[asyncio.Task] = set()
        self.timeouts = 0

    @property
    def abandoned(self) -> int:
        return len(self._abandoned)

    async def execute_with_timeout(
        self,
        fn: Callable[[CancellationToken], Awaitable[T]],
        timeout_ms: int,
        *,
        token: CancellationToken | None = None,
        label: str = "query",
    ) -> T:
        token = token or CancellationToken()
        task = asyncio.ensure_future(fn(token))
        started = time.monotonic()

        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000.0)
        except asyncio.CancelledError:
            # The caller itself was cancelled; the work has no one left to wait for it.
            token.cancel("caller cancelled")
            task.cancel()
            raise

        if task in done:
            return task.result()

        self.timeouts += 1
        token.cancel(f"timeout after {timeout_ms}ms")
        self._abandoned.add(task)
        task.add_done_callback(lambda t: self._on_abandoned_done(t, label, started))
        logger.warning(
            "%s timed out after %sms; in-flight work abandoned (still running=%s)",
            label,
            timeout_ms,
            len(self._abandoned),
        )
        raise QueryTimeoutError(timeout_ms)

    def _on_abandoned_done(self, task: asyncio.Task, label: str, started: float) -> None:
        self._abandoned.discard(task)
        elapsed_ms = (time.monotonic() - started) * 1000.0
        if task.cancelled():
            logger.info("Abandoned %s cancelled after %.0fms", label, elapsed_ms)
            return
        exc = task.exception()
        if exc is not None:
            logger.info("Abandoned %s failed after %.0fms: %r", label, elapsed_ms, exc)
        else:
            logger.info("Abandoned %s finished after %.0fms; result discarded", label, elapsed_ms)

    async def shutdown(self) -> None:
        """Cancel abandoned work that is still running and wait for it to unwind."""
        pending = list(self._abandoned)
        if not pending:
            return
        logger.info("Cancelling %s abandoned query task(s)", len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
