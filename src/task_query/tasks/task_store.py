# src/task_query/tasks/task_store.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any

from ..core.cancellation import CancellationToken
from ..query.errors import RecordSourceError
from .task_models import TaskRecord, format_ial, record_to_attributes

logger = logging.getLogger(__name__)


class TaskStore:
    """
    SQLite block store with the same coarse query surface as a SiYuan notebook.

    Each task is a row in `blocks`: the attribute map is kept as JSON (for
    hydration) and as an inline attribute list string in `ial`, which is the
    only column narrowing predicates may inspect.

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "tasks.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except sqlite3.Error:
            total = -1
        logger.info("TaskStore ready db=%s total=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS blocks (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL DEFAULT '',
                    ial TEXT NOT NULL DEFAULT '',
                    attrs TEXT NOT NULL DEFAULT '{}',
                    created REAL NOT NULL,
                    updated REAL NOT NULL
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(blocks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE blocks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("content", "TEXT NOT NULL DEFAULT ''")
            add_col("ial", "TEXT NOT NULL DEFAULT ''")
            add_col("attrs", "TEXT NOT NULL DEFAULT '{}'")
            add_col("created", "REAL NOT NULL DEFAULT 0")
            add_col("updated", "REAL NOT NULL DEFAULT 0")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_blocks_created ON blocks(created)")

            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _attrs_to_str(attrs: dict[str, str]) -> str:
        return json.dumps(attrs, ensure_ascii=False, sort_keys=True)

    @staticmethod
    def _str_to_attrs(s: str | None) -> dict[str, str]:
        if not s:
            return {}
        try:
            val = json.loads(s)
        except ValueError:
            logger.warning("Corrupt attrs JSON in blocks table; treating as empty")
            return {}
        if not isinstance(val, dict):
            return {}
        return {str(k): str(v) for k, v in val.items() if v is not None}

    # ---- public API ----

    def count_tasks(self) -> int:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM blocks WHERE ial LIKE '%custom-task-id=%'")
            (n,) = cur.fetchone()
            return int(n)
        finally:
            conn.close()

    def add_task(self, record: TaskRecord, *, block_id: str | None = None) -> str:
        """Insert a task block and return its block id (generated when not given)."""
        if not record.task_id or not record.task_id.strip():
            raise ValueError("task_id is required")
        if not record.description or not record.description.strip():
            raise ValueError("description is required")

        block_id = block_id or record.source_block_id or _new_block_id()
        self.upsert_attributes(block_id, record_to_attributes(record), content=record.description)
        logger.debug(
            "Task added block_id=%s task_id=%s status=%s due=%s",
            block_id,
            record.task_id,
            record.status.value,
            record.due_date,
        )
        return block_id

    def upsert_attributes(self, block_id: str, attrs: dict[str, str], *, content: str = "") -> None:
        """Store a block's full attribute set (the raw form a record source exposes)."""
        now = time.time()
        clean = {str(k): str(v) for k, v in attrs.items() if v is not None}
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO blocks(id, content, ial, attrs, created, updated)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    content = excluded.content,
                    ial = excluded.ial,
                    attrs = excluded.attrs,
                    updated = excluded.updated
                """,
                (block_id, content, format_ial(clean), self._attrs_to_str(clean), now, now),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_task(self, block_id: str) -> bool:
        conn = self._get_conn()
        try:
            cur = conn.execute("DELETE FROM blocks WHERE id = ?", (block_id,))
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def get_attributes(self, block_id: str) -> dict[str, str]:
        """Full attribute map of a block; KeyError if the block does not exist."""
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT attrs FROM blocks WHERE id = ?", (block_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise KeyError(block_id)
        return self._str_to_attrs(row["attrs"])

    def select_ids(self, predicate: str, *, limit: int | None = None) -> list[str]:
        """
        Evaluate a narrowing predicate (a WHERE fragment over `ial`).

        The predicate is produced by the query compiler, which escapes every
        literal it embeds; it is never built from raw user text.
        """
        sql = f"SELECT id FROM blocks WHERE {predicate} ORDER BY rowid ASC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)

        conn = self._get_conn()
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.exception("Narrowing query failed")
            raise RecordSourceError(f"sqlite narrowing failed: {e}") from e
        finally:
            conn.close()
        return [str(r["id"]) for r in rows]


def _new_block_id() -> str:
    """SiYuan-style block id: timestamp plus a short random suffix."""
    return time.strftime("%Y%m%d%H%M%S") + "-" + uuid.uuid4().hex[:7]


class TaskStoreSource:
    """
    RecordSource adapter over TaskStore.

    SQLite calls run in a worker thread via asyncio.to_thread. The token is
    checked before and after each call; a call already running in its thread
    is not interrupted.
    """

    def __init__(self, store: TaskStore) -> None:
        self._store = store

    @property
    def store(self) -> TaskStore:
        return self._store

    async def narrow(
        self,
        predicate: str,
        *,
        limit: int | None = None,
        token: CancellationToken | None = None,
    ) -> list[str]:
        if token is not None:
            token.raise_if_cancelled()
        ids = await asyncio.to_thread(self._store.select_ids, predicate, limit=limit)
        if token is not None:
            token.raise_if_cancelled()
        return ids

    async def hydrate(
        self,
        block_id: str,
        *,
        token: CancellationToken | None = None,
    ) -> dict[str, str]:
        if token is not None:
            token.raise_if_cancelled()
        return await asyncio.to_thread(self._store.get_attributes, block_id)
