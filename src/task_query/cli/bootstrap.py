# src/task_query/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the configured record source into a QueryEngine.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

from ..config import Settings, get_settings
from ..connectors.siyuan_client import SiYuanClient
from ..core.ports import RecordSource
from ..query.query_engine import QueryEngine
from ..tasks.task_store import TaskStore, TaskStoreSource

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def create_task_store(settings: Settings | None = None) -> TaskStore:
    if settings is None:
        settings = get_settings()
    _ensure_local_dirs(settings)
    return TaskStore(settings.db_path)


@contextlib.asynccontextmanager
async def open_engine(settings: Settings | None = None) -> AsyncIterator[QueryEngine]:
    """
    Build a QueryEngine over the configured backend and tear everything down on exit.

    Keeping settings injectable makes the CLI easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    source: RecordSource
    client: SiYuanClient | None = None
    if settings.backend == "siyuan":
        client = SiYuanClient(settings.siyuan_url, token=settings.siyuan_token or None)
        source = client
        logger.info("Using SiYuan record source url=%s", settings.siyuan_url)
    else:
        source = TaskStoreSource(create_task_store(settings))
        logger.info("Using SQLite record source db=%s", settings.db_path)

    engine = QueryEngine(source, settings.query_settings())
    try:
        yield engine
    finally:
        await engine.close()
        if client is not None:
            await client.aclose()
