# src/task_query/query/query_engine.py

"""
Query engine.

Pipeline for one call:

    text -> parse -> validate -> optimize -> compile
         -> narrow (record source) -> hydrate -> refine -> sort -> limit
         -> cache write -> caller

The engine owns its cache and timeout guard; both live and die with the
engine instance. There is no retry: a failed or timed-out query must be
re-issued by the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date

from ..core.cancellation import CancellationToken
from ..core.ports import RecordSource
from ..tasks.task_models import TaskRecord, attributes_to_record
from .errors import QueryCancelledError, QueryError, QueryTimeoutError, RecordSourceError
from .query_cache import Clock, QueryCache, TimeoutGuard
from .query_compiler import CompiledQuery, compile_query, order_records
from .query_model import StructuredQuery
from .query_optimizer import QueryOptimizationSettings, QueryOptimizer
from .query_parser import parse

logger = logging.getLogger(__name__)

QueryResult = tuple[TaskRecord, ...]


@dataclass(slots=True)
class EngineStats:
    fetches: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    timeouts: int = 0
    hydration_failures: int = 0


@dataclass(frozen=True, slots=True)
class QueryPlan:
    query: StructuredQuery
    valid: bool
    error: str | None = None
    limit: int | None = None
    predicate: str | None = None
    exact: bool = False


class QueryEngine:
    """
    Executes task queries against a RecordSource.

    `today` supplies the evaluation date for relative expressions
    ("today + 7d"); `clock` drives cache freshness (seconds, monotonic).
    """

    def __init__(
        self,
        source: RecordSource,
        settings: QueryOptimizationSettings | None = None,
        *,
        today: Callable[[], date] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._source = source
        self._optimizer = QueryOptimizer(settings)
        self._cache: QueryCache[QueryResult] = QueryCache(
            self._optimizer.settings.cache_timeout_ms, clock=clock
        )
        self._guard = TimeoutGuard()
        self._today = today or date.today
        self._inflight: dict[str, asyncio.Future[QueryResult]] = {}
        self._closed = False
        self.stats = EngineStats()

    # ---- lifecycle ----

    async def __aenter__(self) -> QueryEngine:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Drop cached results and cancel any abandoned or coalesced work still running."""
        if self._closed:
            return
        self._closed = True
        self._cache.clear()
        for fut in list(self._inflight.values()):
            fut.cancel()
        self._inflight.clear()
        await self._guard.shutdown()
        logger.debug("QueryEngine closed stats=%s", self.stats)

    # ---- settings / cache ----

    @property
    def settings(self) -> QueryOptimizationSettings:
        return self._optimizer.settings

    @property
    def optimizer(self) -> QueryOptimizer:
        return self._optimizer

    @property
    def abandoned(self) -> int:
        """Timed-out executions that are still running in the background."""
        return self._guard.abandoned

    def update_settings(self, **changes) -> QueryOptimizationSettings:
        settings = self._optimizer.update_settings(**changes)
        self._cache.timeout_ms = settings.cache_timeout_ms
        return settings

    def set_cache_timeout(self, timeout_ms: int) -> None:
        self.update_settings(cache_timeout_ms=timeout_ms)

    def clear_cache(self) -> None:
        self._cache.clear()

    # ---- pipeline ----

    def parse(self, text: str) -> StructuredQuery:
        return parse(text)

    def compile(self, query: StructuredQuery) -> CompiledQuery:
        return compile_query(query, self._today())

    async def execute_query(self, text: str, *, use_cache: bool = True) -> QueryResult:
        """
        Run a query end to end.

        Raises QueryValidationError (record source untouched), QueryTimeoutError
        or RecordSourceError. use_cache=False skips the cache read; the fresh
        result still replaces the cached entry.
        """
        if self._closed:
            raise RuntimeError("QueryEngine is closed")

        settings = self._optimizer.settings
        if settings.enable_cache and use_cache:
            cached = self._cache.get(text)
            if cached is not None:
                self.stats.cache_hits += 1
                logger.debug("Cache hit (%s records)", len(cached))
                return cached
            self.stats.cache_misses += 1

        if not settings.coalesce_inflight:
            return await self._run(text)

        fut = self._inflight.get(text)
        if fut is None:
            fut = asyncio.ensure_future(self._run(text))
            self._inflight[text] = fut
            fut.add_done_callback(lambda done: self._forget_inflight(text, done))
        else:
            logger.debug("Joining in-flight execution for identical query")
        return await asyncio.shield(fut)

    def _forget_inflight(self, text: str, fut: asyncio.Future[QueryResult]) -> None:
        if self._inflight.get(text) is fut:
            del self._inflight[text]

    async def _run(self, text: str) -> QueryResult:
        settings = self._optimizer.settings

        query = parse(text)
        self._optimizer.ensure_valid(query)
        query = self._optimizer.optimize(query)
        compiled = self.compile(query)

        async def run(token: CancellationToken) -> QueryResult:
            return await self.execute(compiled, compiled.limit, token=token)

        try:
            records = await self._guard.execute_with_timeout(
                run, settings.max_execution_time_ms, label="task query"
            )
        except QueryTimeoutError:
            self.stats.timeouts += 1
            raise

        if settings.enable_cache:
            self._cache.put(text, records)
        return records

    async def execute(
        self,
        compiled: CompiledQuery,
        limit: int | None,
        *,
        token: CancellationToken | None = None,
    ) -> QueryResult:
        """Narrow natively, hydrate, refine exactly, sort stably and apply the limit."""
        token = token or CancellationToken()
        max_candidates = self._optimizer.settings.max_candidates

        # The query limit is never pushed down: hydration can still drop rows.
        self.stats.fetches += 1
        try:
            ids = await self._source.narrow(compiled.predicate, limit=max_candidates, token=token)
        except QueryError:
            raise
        except Exception as e:
            raise RecordSourceError(f"narrowing failed: {e}") from e

        if len(ids) >= max_candidates:
            logger.warning(
                "Narrowing returned max_candidates=%s ids; results may be incomplete", max_candidates
            )

        records: list[TaskRecord] = []
        for block_id in ids:
            token.raise_if_cancelled()
            try:
                attrs = await self._source.hydrate(block_id, token=token)
            except QueryCancelledError:
                raise
            except Exception:
                self.stats.hydration_failures += 1
                logger.exception("Hydration failed block_id=%s; skipping", block_id)
                continue

            record = attributes_to_record(block_id, attrs)
            if record is None:
                logger.debug("Block %s has no task attributes; skipping", block_id)
                continue
            records.append(record)

        matched = compiled.refine.apply(records)
        ordered = order_records(matched, compiled.sorts)
        if limit:
            ordered = ordered[:limit]

        logger.debug(
            "Executed query candidates=%s hydrated=%s matched=%s returned=%s",
            len(ids),
            len(records),
            len(matched),
            len(ordered),
        )
        return tuple(ordered)

    def explain(self, text: str) -> QueryPlan:
        """Parse, validate, optimize and compile without touching the record source."""
        query = parse(text)
        validation = self._optimizer.validate(query)
        if not validation.valid:
            return QueryPlan(query=query, valid=False, error=validation.error)

        optimized = self._optimizer.optimize(query)
        compiled = self.compile(optimized)
        return QueryPlan(
            query=query,
            valid=True,
            limit=optimized.limit,
            predicate=compiled.predicate,
            exact=compiled.exact,
        )

