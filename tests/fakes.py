# tests/fakes.py

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Iterable

from task_query.core.cancellation import CancellationToken
from task_query.tasks.task_models import TaskRecord, format_ial, record_to_attributes


class FakeRecordSource:
    """
    In-memory RecordSource for engine tests.

    Blocks live in a dict; narrowing predicates are evaluated by an in-memory
    SQLite table holding only the IAL strings, so compiled predicates behave
    exactly as they would against a real store.

    - Counts narrow/hydrate calls for assertions
    - Remembers the last narrowing limit
    - Optional delay before narrowing returns
    """

    def __init__(self, records: Iterable[TaskRecord] = (), *, delay: float = 0.0) -> None:
        self.blocks: dict[str, dict[str, str]] = {}
        self.delay = delay
        self.narrow_calls = 0
        self.hydrate_calls = 0
        self.last_limit: int | None = None
        self.predicates: list[str] = []
        for i, record in enumerate(records, start=1):
            self.add(f"b{i}", record_to_attributes(record))

    def add(self, block_id: str, attrs: dict[str, str]) -> None:
        self.blocks[block_id] = dict(attrs)

    def _select(self, predicate: str, limit: int | None) -> list[str]:
        conn = sqlite3.connect(":memory:")
        try:
            conn.execute("CREATE TABLE blocks (id TEXT PRIMARY KEY, ial TEXT NOT NULL)")
            conn.executemany(
                "INSERT INTO blocks(id, ial) VALUES (?, ?)",
                [(bid, format_ial(attrs)) for bid, attrs in self.blocks.items()],
            )
            sql = f"SELECT id FROM blocks WHERE {predicate} ORDER BY rowid ASC"
            if limit is not None:
                sql += f" LIMIT {int(limit)}"
            return [row[0] for row in conn.execute(sql).fetchall()]
        finally:
            conn.close()

    async def narrow(
        self,
        predicate: str,
        *,
        limit: int | None = None,
        token: CancellationToken | None = None,
    ) -> list[str]:
        self.narrow_calls += 1
        self.last_limit = limit
        self.predicates.append(predicate)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._select(predicate, limit)

    async def hydrate(
        self,
        block_id: str,
        *,
        token: CancellationToken | None = None,
    ) -> dict[str, str]:
        self.hydrate_calls += 1
        return dict(self.blocks[block_id])


class HangingRecordSource:
    """
    Record source whose narrowing takes `seconds` and ignores the token
    unless `cooperative` is set, in which case it polls the token.
    """

    def __init__(self, seconds: float = 10.0, *, cooperative: bool = False) -> None:
        self.seconds = seconds
        self.cooperative = cooperative
        self.started = 0
        self.finished = 0
        self.saw_cancel = False

    async def narrow(
        self,
        predicate: str,
        *,
        limit: int | None = None,
        token: CancellationToken | None = None,
    ) -> list[str]:
        self.started += 1
        if not self.cooperative:
            await asyncio.sleep(self.seconds)
            self.finished += 1
            return []

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.seconds
        while loop.time() < deadline:
            if token is not None and token.cancelled:
                self.saw_cancel = True
                token.raise_if_cancelled()
            await asyncio.sleep(0.005)
        self.finished += 1
        return []

    async def hydrate(
        self,
        block_id: str,
        *,
        token: CancellationToken | None = None,
    ) -> dict[str, str]:
        raise KeyError(block_id)


class FlakyHydrationSource(FakeRecordSource):
    """FakeRecordSource whose hydration fails for selected block ids."""

    def __init__(self, records: Iterable[TaskRecord], *, failing: Iterable[str]) -> None:
        super().__init__(records)
        self.failing = set(failing)

    async def hydrate(
        self,
        block_id: str,
        *,
        token: CancellationToken | None = None,
    ) -> dict[str, str]:
        if block_id in self.failing:
            self.hydrate_calls += 1
            raise OSError(f"block {block_id} unreadable")
        return await super().hydrate(block_id, token=token)


class BrokenRecordSource(FakeRecordSource):
    """Narrowing always fails with a non-query exception."""

    async def narrow(
        self,
        predicate: str,
        *,
        limit: int | None = None,
        token: CancellationToken | None = None,
    ) -> list[str]:
        self.narrow_calls += 1
        raise ConnectionError("record store offline")


class FakeClock:
    """Monotonic clock in seconds that only moves when told to."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
