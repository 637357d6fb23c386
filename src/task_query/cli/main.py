# src/task_query/cli/main.py

"""
CLI entrypoint.

    taskq run [FILE]        execute a query (FILE or stdin) and print matching tasks
    taskq explain [FILE]    show the parsed query, limit and native predicate
    taskq add ...           add a task to the local SQLite store

Exit codes: 0 ok, 1 record-source failure, 2 invalid query, 3 timeout.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from collections.abc import Sequence
from typing import TextIO

from ..cli.bootstrap import create_task_store, open_engine
from ..config import get_settings
from ..logging_setup import setup_logging
from ..query.errors import QueryTimeoutError, QueryValidationError, RecordSourceError
from ..query.query_engine import QueryEngine
from ..tasks.task_models import PRIORITY_NAMES, TaskPriority, TaskRecord, TaskStatus

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SOURCE_ERROR = 1
EXIT_INVALID = 2
EXIT_TIMEOUT = 3


def format_record(record: TaskRecord) -> str:
    parts = [f"[{record.status.value}] {record.description}"]
    if record.due_date:
        parts.append(f"due={record.due_date}")
    if record.scheduled_date:
        parts.append(f"scheduled={record.scheduled_date}")
    if record.priority != TaskPriority.NONE:
        parts.append(f"prio={int(record.priority)}")
    if record.tags:
        parts.append(" ".join(f"#{t.lstrip('#')}" for t in record.tags))
    return "  ".join(parts)


def _read_query(path: str | None, stdin: TextIO) -> str:
    if not path or path == "-":
        return stdin.read()
    with open(path, encoding="utf-8") as fh:
        return fh.read()


async def _run(text: str, out: TextIO) -> int:
    async with open_engine() as engine:
        try:
            records = await engine.execute_query(text)
        except QueryValidationError as e:
            print(f"Invalid query: {e.reason}", file=sys.stderr)
            return EXIT_INVALID
        except QueryTimeoutError as e:
            print(f"Query timed out after {e.timeout_ms}ms", file=sys.stderr)
            return EXIT_TIMEOUT
        except RecordSourceError as e:
            logger.error("Record source failed: %s", e)
            return EXIT_SOURCE_ERROR

    for record in records:
        print(format_record(record), file=out)
    logger.info("%s task(s)", len(records))
    return EXIT_OK


def _explain(engine: QueryEngine, text: str, out: TextIO) -> int:
    plan = engine.explain(text)

    print("filters:", file=out)
    for cond in plan.query.filters:
        logic = cond.logic.value if cond.logic else "-"
        print(f"  {logic:>4} {cond.canonical_field} {cond.operator.value} {cond.value!r}", file=out)
    print("sorts:", file=out)
    for sort in plan.query.sorts:
        print(f"  {sort.canonical_field} {sort.direction.value}", file=out)

    if not plan.valid:
        print(f"invalid: {plan.error}", file=out)
        return EXIT_INVALID

    print(f"limit: {plan.limit}", file=out)
    print(f"exact: {plan.exact}", file=out)
    print(f"predicate: {plan.predicate}", file=out)
    return EXIT_OK


async def _explain_cmd(text: str, out: TextIO) -> int:
    async with open_engine() as engine:
        return _explain(engine, text, out)


def _add(args: argparse.Namespace, out: TextIO) -> int:
    priority = TaskPriority.NONE
    if args.priority:
        key = args.priority.strip().lower()
        priority = PRIORITY_NAMES.get(key) or TaskPriority.from_attr(key)

    record = TaskRecord(
        task_id=args.task_id or uuid.uuid4().hex,
        description=args.description,
        status=TaskStatus.from_attr(args.status),
        priority=priority,
        due_date=args.due,
        scheduled_date=args.scheduled,
        start_date=args.start,
        recurrence_rule=args.recurrence,
        tags=tuple(t.lstrip("#") for t in args.tag or ()),
        depends_on=tuple(args.depends_on or ()),
    )
    store = create_task_store()
    block_id = store.add_task(record)
    print(block_id, file=out)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskq", description="Query task records.")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="execute a query")
    run.add_argument("file", nargs="?", help="query file (default: stdin)")

    explain = sub.add_parser("explain", help="show how a query compiles")
    explain.add_argument("file", nargs="?", help="query file (default: stdin)")

    add = sub.add_parser("add", help="add a task to the local SQLite store")
    add.add_argument("--description", required=True)
    add.add_argument("--task-id", dest="task_id")
    add.add_argument("--status", default=TaskStatus.TODO.value)
    add.add_argument("--priority")
    add.add_argument("--due")
    add.add_argument("--scheduled")
    add.add_argument("--start")
    add.add_argument("--recurrence")
    add.add_argument("--tag", action="append")
    add.add_argument("--depends-on", dest="depends_on", action="append")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()

    level_name = str(settings.log_level).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    args = build_parser().parse_args(argv)
    out = sys.stdout

    if args.command == "add":
        return _add(args, out)

    text = _read_query(args.file, sys.stdin)
    if args.command == "explain":
        return asyncio.run(_explain_cmd(text, out))
    return asyncio.run(_run(text, out))


if __name__ == "__main__":
    sys.exit(main())
