# src/task_query/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the query engine.

The engine depends on a Protocol instead of a concrete store. This keeps the
SQLite store and the SiYuan HTTP client swappable and makes testing easier.
"""

from typing import Protocol

from .cancellation import CancellationToken


class RecordSource(Protocol):
    """
    Holder of task records with coarse, substring-only query capability.

    - narrow: evaluate a native predicate (LIKE patterns over the `ial`
      column) and return candidate block ids, possibly a superset of the
      real answer. `limit` caps the number of ids when given.
    - hydrate: resolve one block id into its full attribute map.

    Both accept an advisory cancellation token; honouring it is best-effort.
    """

    async def narrow(
            self,
            predicate: str,
            *,
            limit: int | None = None,
            token: CancellationToken | None = None,
    ) -> list[str]: ...

    async def hydrate(
            self,
            block_id: str,
            *,
            token: CancellationToken | None = None,
    ) -> dict[str, str]: ...
