# src/task_query/connectors/siyuan_client.py

"""
SiYuan kernel API as a RecordSource.

Narrowing runs the compiled predicate through /api/query/sql; hydration
reads /api/attr/getBlockAttrs. Transport and API errors surface as
RecordSourceError without retry.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.cancellation import CancellationToken
from ..query.errors import RecordSourceError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:6806"


class SiYuanClient:
    """
    Thin async wrapper over the SiYuan HTTP API.

    The client owns its httpx.AsyncClient unless one is injected (tests pass
    one backed by httpx.MockTransport). Use it as an async context manager or
    call aclose().
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        token: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Token {token}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
        )
        if not self._owns_client and token:
            self._client.headers.update({"Authorization": f"Token {token}"})

    async def __aenter__(self) -> SiYuanClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, endpoint: str, payload: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(endpoint, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise RecordSourceError(f"SiYuan request {endpoint} failed: {e}") from e
        except ValueError as e:
            raise RecordSourceError(f"SiYuan request {endpoint} returned invalid JSON") from e

        if not isinstance(body, dict):
            raise RecordSourceError(f"SiYuan request {endpoint} returned unexpected body")

        code = body.get("code", -1)
        if code != 0:
            raise RecordSourceError(f"SiYuan request {endpoint} failed: code={code} msg={body.get('msg')}")
        return body.get("data")

    async def query_sql(self, stmt: str) -> list[dict[str, Any]]:
        data = await self._request("/api/query/sql", {"stmt": stmt})
        return list(data or [])

    async def get_block_attrs(self, block_id: str) -> dict[str, str]:
        data = await self._request("/api/attr/getBlockAttrs", {"id": block_id})
        if not isinstance(data, dict):
            raise RecordSourceError(f"No attributes for block {block_id}")
        return {str(k): str(v) for k, v in data.items()}

    # ---- RecordSource ----

    async def narrow(
        self,
        predicate: str,
        *,
        limit: int | None = None,
        token: CancellationToken | None = None,
    ) -> list[str]:
        if token is not None:
            token.raise_if_cancelled()

        stmt = f"SELECT id FROM blocks WHERE {predicate}"
        if limit is not None:
            stmt += f" LIMIT {int(limit)}"

        logger.debug("SiYuan narrow stmt=%s", stmt)
        rows = await self.query_sql(stmt)
        if token is not None:
            token.raise_if_cancelled()
        return [str(r["id"]) for r in rows if isinstance(r, dict) and r.get("id")]

    async def hydrate(
        self,
        block_id: str,
        *,
        token: CancellationToken | None = None,
    ) -> dict[str, str]:
        if token is not None:
            token.raise_if_cancelled()
        return await self.get_block_attrs(block_id)
