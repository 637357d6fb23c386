# src/task_query/query/errors.py

from __future__ import annotations


class QueryError(Exception):
    """Base class for query subsystem failures."""


class QueryValidationError(QueryError):
    """The query was rejected before it reached the record source."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class QueryTimeoutError(QueryError):
    """The execution lost the race against its deadline."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Query execution timeout after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class QueryCancelledError(QueryError):
    """Raised by a record source that noticed its cancellation token."""


class RecordSourceError(QueryError):
    """Narrowing or transport failure in the record source (no retry)."""
