# tests/test_query_engine.py

from __future__ import annotations

import asyncio
import time
from datetime import date

import pytest

from task_query.core.ports import RecordSource
from task_query.query.errors import QueryTimeoutError, QueryValidationError, RecordSourceError
from task_query.query.query_engine import QueryEngine
from task_query.query.query_optimizer import QueryOptimizationSettings
from task_query.tasks.task_models import TaskRecord, TaskStatus, record_to_attributes

from .fakes import (
    BrokenRecordSource,
    FakeClock,
    FakeRecordSource,
    FlakyHydrationSource,
    HangingRecordSource,
)

TODAY = date(2026, 1, 25)

WEEK_QUERY = """
tasks
where status != done
  and due <= today + 7d
sort by due asc
limit 50
"""


def _engine(source: RecordSource, *, clock: FakeClock | None = None, **settings) -> QueryEngine:
    return QueryEngine(
        source,
        QueryOptimizationSettings(**settings),
        today=lambda: TODAY,
        clock=clock,
    )


def _ids(records) -> list[str]:
    return [r.task_id for r in records]


@pytest.mark.asyncio
async def test_open_tasks_due_within_a_week() -> None:
    source = FakeRecordSource(
        [
            TaskRecord(task_id="a", description="old", status=TaskStatus.DONE, due_date="2026-01-20"),
            TaskRecord(task_id="b", description="soon", status=TaskStatus.TODO, due_date="2026-01-26"),
            TaskRecord(task_id="c", description="later", status=TaskStatus.TODO, due_date="2026-02-10"),
        ]
    )
    async with _engine(source) as engine:
        records = await engine.execute_query(WEEK_QUERY)

    assert _ids(records) == ["b"]
    assert records[0].due_date == "2026-01-26"
    assert records[0].source_block_id == "b2"


@pytest.mark.asyncio
async def test_sample_week_query(sample_records: list[TaskRecord]) -> None:
    async with _engine(FakeRecordSource(sample_records)) as engine:
        records = await engine.execute_query(WEEK_QUERY)
    # t4 has no due date and never satisfies an ordering comparison.
    assert _ids(records) == ["t1", "t5", "t6"]


@pytest.mark.asyncio
async def test_boolean_chains_and_sorting(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource(sample_records)
    queries = [
        "where tags includes home or priority = high\nsort by priority asc, description asc\nlimit 10",
        "where tags includes work\nnot description includes bug\nlimit 10",
        "where status in todo, doing\nand not due > today\nsort by description desc\nlimit 10",
        "not status = todo\nsort by due desc\nlimit 10",
    ]
    expected = [
        ["t1", "t3", "t2"],
        ["t1", "t6"],
        ["t1", "t4"],
        ["t3", "t5", "t2"],
    ]

    async with _engine(source) as engine:
        for text, want in zip(queries, expected, strict=True):
            assert _ids(await engine.execute_query(text)) == want, text


@pytest.mark.asyncio
async def test_identical_query_hits_cache_once(sample_records: list[TaskRecord]) -> None:
    clock = FakeClock()
    source = FakeRecordSource(sample_records)
    engine = _engine(source, clock=clock, cache_timeout_ms=1000)

    first = await engine.execute_query(WEEK_QUERY)
    second = await engine.execute_query(WEEK_QUERY)

    assert second is first
    assert source.narrow_calls == 1
    assert engine.stats.cache_hits == 1
    assert engine.stats.cache_misses == 1

    clock.advance(1.5)
    third = await engine.execute_query(WEEK_QUERY)
    assert third == first
    assert source.narrow_calls == 2

    await engine.close()


@pytest.mark.asyncio
async def test_cache_key_is_raw_text(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource(sample_records)
    async with _engine(source) as engine:
        await engine.execute_query("where status = todo\nlimit 5")
        await engine.execute_query("where status = todo\nlimit  5")
    assert source.narrow_calls == 2


@pytest.mark.asyncio
async def test_bypass_skips_read_but_refreshes_entry(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource(sample_records)
    async with _engine(source) as engine:
        first = await engine.execute_query(WEEK_QUERY)
        fresh = await engine.execute_query(WEEK_QUERY, use_cache=False)
        cached = await engine.execute_query(WEEK_QUERY)

    assert source.narrow_calls == 2
    assert fresh == first
    assert cached is fresh


@pytest.mark.asyncio
async def test_disabled_cache_always_fetches(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource(sample_records)
    async with _engine(source, enable_cache=False) as engine:
        await engine.execute_query(WEEK_QUERY)
        await engine.execute_query(WEEK_QUERY)
    assert source.narrow_calls == 2


@pytest.mark.asyncio
async def test_clear_cache_and_timeout_update(sample_records: list[TaskRecord]) -> None:
    clock = FakeClock()
    source = FakeRecordSource(sample_records)
    async with _engine(source, clock=clock) as engine:
        await engine.execute_query(WEEK_QUERY)
        engine.clear_cache()
        await engine.execute_query(WEEK_QUERY)
        assert source.narrow_calls == 2

        engine.set_cache_timeout(100)
        assert engine.settings.cache_timeout_ms == 100
        clock.advance(0.5)
        await engine.execute_query(WEEK_QUERY)
        assert source.narrow_calls == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "tasks", "sort by due", "limit 0"])
async def test_validation_failure_never_touches_source(text: str) -> None:
    source = FakeRecordSource()
    async with _engine(source) as engine:
        with pytest.raises(QueryValidationError) as ei:
            await engine.execute_query(text)
    assert "must have a limit" in ei.value.reason
    assert source.narrow_calls == 0


@pytest.mark.asyncio
async def test_timeout_fires_at_deadline_and_work_is_abandoned() -> None:
    source = HangingRecordSource(seconds=10)
    engine = _engine(source, max_execution_time_ms=50)

    started = time.monotonic()
    with pytest.raises(QueryTimeoutError) as ei:
        await engine.execute_query("where status = todo")
    elapsed = time.monotonic() - started

    assert ei.value.timeout_ms == 50
    assert 0.045 <= elapsed < 2.0
    assert engine.stats.timeouts == 1
    # Still running in the background.
    assert engine.abandoned == 1
    assert source.started == 1
    assert source.finished == 0

    await engine.close()
    assert engine.abandoned == 0


@pytest.mark.asyncio
async def test_cooperative_source_stops_after_timeout() -> None:
    source = HangingRecordSource(seconds=10, cooperative=True)
    engine = _engine(source, max_execution_time_ms=30)

    with pytest.raises(QueryTimeoutError):
        await engine.execute_query("where status = todo")

    for _ in range(100):
        if engine.abandoned == 0:
            break
        await asyncio.sleep(0.01)

    assert source.saw_cancel
    assert source.finished == 0
    assert engine.abandoned == 0
    await engine.close()


@pytest.mark.asyncio
async def test_timeout_result_is_not_cached() -> None:
    source = HangingRecordSource(seconds=10)
    engine = _engine(source, max_execution_time_ms=20)
    for _ in range(2):
        with pytest.raises(QueryTimeoutError):
            await engine.execute_query("where status = todo")
    assert source.started == 2
    await engine.close()


@pytest.mark.asyncio
async def test_concurrent_identical_queries_both_fetch(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource(sample_records, delay=0.02)
    async with _engine(source) as engine:
        a, b = await asyncio.gather(
            engine.execute_query(WEEK_QUERY),
            engine.execute_query(WEEK_QUERY),
        )
    assert a == b
    assert source.narrow_calls == 2


@pytest.mark.asyncio
async def test_coalescing_shares_one_execution(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource(sample_records, delay=0.02)
    async with _engine(source, coalesce_inflight=True) as engine:
        a, b = await asyncio.gather(
            engine.execute_query(WEEK_QUERY),
            engine.execute_query(WEEK_QUERY),
        )
        assert a is b
        assert source.narrow_calls == 1

        # Once settled, the in-flight slot is released and the cache answers.
        await engine.execute_query(WEEK_QUERY)
        assert source.narrow_calls == 1


@pytest.mark.asyncio
async def test_failed_hydration_is_skipped(sample_records: list[TaskRecord]) -> None:
    source = FlakyHydrationSource(sample_records, failing={"b1"})
    async with _engine(source) as engine:
        records = await engine.execute_query("where tags includes work\nlimit 10")
    assert _ids(records) == ["t4", "t6"]
    assert engine.stats.hydration_failures == 1


@pytest.mark.asyncio
async def test_blocks_without_task_attributes_are_skipped(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource(sample_records)
    source.add("x1", {"custom-task-id": "orphan", "custom-task-status": "TODO"})
    async with _engine(source) as engine:
        records = await engine.execute_query("where status = todo\nlimit 10")
    assert _ids(records) == ["t1", "t4", "t6"]


@pytest.mark.asyncio
async def test_narrowing_failure_propagates_and_is_not_cached(sample_records: list[TaskRecord]) -> None:
    source = BrokenRecordSource(sample_records)
    async with _engine(source) as engine:
        for _ in range(2):
            with pytest.raises(RecordSourceError):
                await engine.execute_query(WEEK_QUERY)
    assert source.narrow_calls == 2


@pytest.mark.asyncio
async def test_limit_is_applied_after_refine(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource(sample_records)
    async with _engine(source, max_candidates=500) as engine:
        records = await engine.execute_query("where status = todo\nlimit 2")
        assert _ids(records) == ["t1", "t4"]
        assert source.last_limit == 500

        records = await engine.execute_query("where status = todo\nsort by due desc\nlimit 2")
        assert _ids(records) == ["t4", "t6"]
        assert source.last_limit == 500

        records = await engine.execute_query("where description includes i\nlimit 2")
        assert _ids(records) == ["t1", "t2"]
        assert source.last_limit == 500


@pytest.mark.asyncio
async def test_failed_hydration_does_not_shorten_a_limited_result(sample_records: list[TaskRecord]) -> None:
    source = FlakyHydrationSource(sample_records, failing={"b1"})
    async with _engine(source) as engine:
        records = await engine.execute_query("where status = todo\nlimit 2")
    assert _ids(records) == ["t4", "t6"]
    assert engine.stats.hydration_failures == 1


@pytest.mark.asyncio
async def test_leading_non_task_block_does_not_shorten_a_limited_result(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource()
    source.add("x0", {"custom-task-id": "orphan", "custom-task-description": "", "custom-task-status": "TODO"})
    for i, record in enumerate(sample_records, start=1):
        source.add(f"b{i}", record_to_attributes(record))
    async with _engine(source) as engine:
        records = await engine.execute_query("where status = todo\nlimit 1")
    assert _ids(records) == ["t1"]


@pytest.mark.asyncio
async def test_limit_is_clamped_to_max_results(sample_records: list[TaskRecord]) -> None:
    async with _engine(FakeRecordSource(sample_records), max_results=2) as engine:
        records = await engine.execute_query("where status != done\nlimit 100")
    assert _ids(records) == ["t1", "t3"]


@pytest.mark.asyncio
async def test_closed_engine_rejects_queries() -> None:
    engine = _engine(FakeRecordSource())
    await engine.close()
    await engine.close()
    with pytest.raises(RuntimeError):
        await engine.execute_query("limit 1")


def test_explain_does_not_touch_source(sample_records: list[TaskRecord]) -> None:
    source = FakeRecordSource(sample_records)
    engine = _engine(source, max_results=20)

    plan = engine.explain(WEEK_QUERY)
    assert plan.valid
    assert plan.limit == 20
    assert plan.predicate is not None and "2026-02-01" not in plan.predicate
    assert not plan.exact

    bad = engine.explain("tasks")
    assert not bad.valid
    assert bad.error is not None

    assert source.narrow_calls == 0
