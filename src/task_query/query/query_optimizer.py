# src/task_query/query/query_optimizer.py

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

from .errors import QueryValidationError
from .query_model import StructuredQuery

logger = logging.getLogger(__name__)

MAX_FILTER_VALUES = 100


@dataclass(frozen=True, slots=True)
class QueryOptimizationSettings:
    """
    Resource limits for query execution.

    max_candidates bounds how many identifiers a narrowing step may return
    when the native predicate over-approximates (the refine pass needs them
    all). coalesce_inflight makes concurrent identical queries share one
    execution; it is off by default, so each caller runs its own fetch.
    """

    max_execution_time_ms: int = 5000
    max_results: int = 1000
    enable_cache: bool = True
    cache_timeout_ms: int = 60000
    max_candidates: int = 10000
    coalesce_inflight: bool = False

    def __post_init__(self) -> None:
        for name in ("max_execution_time_ms", "max_results", "cache_timeout_ms", "max_candidates"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")


DEFAULT_OPTIMIZATION_SETTINGS = QueryOptimizationSettings()


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    error: str | None = None

    def __bool__(self) -> bool:
        return self.valid


class QueryOptimizer:
    """Validates a structured query and clamps its limit to the configured maximum."""

    def __init__(self, settings: QueryOptimizationSettings | None = None) -> None:
        self._settings = settings or DEFAULT_OPTIMIZATION_SETTINGS

    @property
    def settings(self) -> QueryOptimizationSettings:
        return self._settings

    def update_settings(self, **changes) -> QueryOptimizationSettings:
        self._settings = dataclasses.replace(self._settings, **changes)
        logger.debug("Optimizer settings updated: %s", changes)
        return self._settings

    def validate(self, query: StructuredQuery) -> ValidationResult:
        if not query.filters and not query.limit:
            return ValidationResult(
                False, "Query without filters must have a limit to prevent performance issues"
            )

        for cond in query.filters:
            if isinstance(cond.value, tuple) and len(cond.value) > MAX_FILTER_VALUES:
                return ValidationResult(
                    False,
                    f"Filter on {cond.field!r} has {len(cond.value)} values; "
                    f"at most {MAX_FILTER_VALUES} are allowed",
                )

        return ValidationResult(True)

    def ensure_valid(self, query: StructuredQuery) -> None:
        result = self.validate(query)
        if not result.valid:
            raise QueryValidationError(result.error or "invalid query")

    def optimize(self, query: StructuredQuery) -> StructuredQuery:
        """Fill in or clamp the limit. A stricter caller limit is never loosened."""
        max_results = self._settings.max_results
        if not query.limit or query.limit > max_results:
            return dataclasses.replace(query, limit=max_results)
        return query

    def effective_limit(self, limit: int | None) -> int:
        max_results = self._settings.max_results
        if not limit or limit <= 0:
            return max_results
        return min(limit, max_results)
