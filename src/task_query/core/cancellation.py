# src/task_query/core/cancellation.py

from __future__ import annotations

from ..query.errors import QueryCancelledError


class CancellationToken:
    """
    Advisory cancellation flag threaded into record-source calls.

    Cancelling never interrupts anything by itself: a record source checks the
    token between units of work and stops if it can. I/O that cannot observe
    the token (a blocking call already running in a worker thread, an HTTP
    request in flight) runs to completion anyway.
    """

    __slots__ = ("_cancelled", "_reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise QueryCancelledError(self._reason or "cancelled")

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled}, reason={self._reason!r})"
