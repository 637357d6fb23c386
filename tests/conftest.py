# tests/conftest.py

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from task_query.tasks.task_models import TaskPriority, TaskRecord, TaskStatus
from task_query.tasks.task_store import TaskStore

TODAY = date(2026, 1, 25)


@pytest.fixture()
def today() -> date:
    """Fixed evaluation date so relative expressions are deterministic."""
    return TODAY


@pytest.fixture()
def sample_records() -> list[TaskRecord]:
    """
    Six tasks covering every status, mixed priorities, missing dates,
    quoted text and a pass-through attribute.

    Fakes and stores assign block ids b1..b6 in this order.
    """
    return [
        TaskRecord(
            task_id="t1",
            description="Write report",
            status=TaskStatus.TODO,
            priority=TaskPriority.HIGH,
            due_date="2026-01-20",
            tags=("work",),
        ),
        TaskRecord(
            task_id="t2",
            description="Buy milk",
            status=TaskStatus.DONE,
            due_date="2026-01-24",
            done_date="2026-01-24",
            tags=("home",),
        ),
        TaskRecord(
            task_id="t3",
            description="Plan trip",
            status=TaskStatus.DOING,
            priority=TaskPriority.MEDIUM,
            due_date="2026-02-10",
            tags=("home", "travel"),
        ),
        TaskRecord(
            task_id="t4",
            description='Fix bug "quoted"',
            status=TaskStatus.TODO,
            priority=TaskPriority.HIGHEST,
            tags=("work",),
            depends_on=("t1",),
        ),
        TaskRecord(
            task_id="t5",
            description="Call mom",
            status=TaskStatus.CANCELLED,
            priority=TaskPriority.LOW,
            due_date="2026-01-26",
            scheduled_date="2026-01-25",
        ),
        TaskRecord(
            task_id="t6",
            description="Review PR",
            status=TaskStatus.TODO,
            due_date="2026-01-30",
            tags=("work",),
            attributes={"custom-task-effort": "3"},
        ),
    ]


@pytest.fixture()
def store(tmp_path: Path) -> TaskStore:
    """Real SQLite store in a per-test temp directory."""
    return TaskStore(tmp_path / "tasks.sqlite3")


@pytest.fixture()
def filled_store(store: TaskStore, sample_records: list[TaskRecord]) -> TaskStore:
    for i, record in enumerate(sample_records, start=1):
        store.add_task(record, block_id=f"b{i}")
    return store
