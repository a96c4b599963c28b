"""
Analysis backend the batch executor talks to.

``HttpAnalysisBackend`` drives the web app's analysis endpoints: cached results
come from ``/api/analyzed-videos`` and fresh ones from ``/api/analyze``, which
are then saved back so later batches hit the cache.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from .models import WorkItem

logger = logging.getLogger(__name__)


class BackendError(RuntimeError):
    pass


class AnalysisBackend(Protocol):
    async def check_cache(self, item_id: str) -> Any | None: ...

    async def compute_and_store(self, item: WorkItem) -> Any | None: ...


class HttpAnalysisBackend:
    def __init__(self, base_url: str, timeout: float = 120, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def check_cache(self, item_id: str) -> Any | None:
        try:
            r = await self._client.get("/api/analyzed-videos", params={"videoId": item_id})
            if r.status_code == 404:
                return None
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as e:
            raise BackendError(f"Cache lookup for {item_id} failed: {e}") from e
        except ValueError as e:
            raise BackendError(f"Cache lookup for {item_id} returned invalid JSON") from e

        if not isinstance(data, dict):
            return None
        return data.get("analysis") or None

    async def compute_and_store(self, item: WorkItem) -> Any | None:
        video = item.payload or {"id": item.id, "title": item.title}
        try:
            r = await self._client.post("/api/analyze", json=video)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as e:
            raise BackendError(f"Analysis of {item.id} failed: {e}") from e
        except ValueError as e:
            raise BackendError(f"Analysis of {item.id} returned invalid JSON") from e

        if not isinstance(data, dict):
            data = {}
        analysis = data.get("analysis")
        if not analysis or data.get("error") or (isinstance(analysis, dict) and analysis.get("error")):
            logger.warning("Analysis of %s returned no usable result: %s", item.id, data.get("error"))
            return None

        try:
            r = await self._client.post(
                "/api/analyzed-videos",
                json={"action": "save", "video": video, "analysisResult": analysis},
            )
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise BackendError(f"Saving analysis of {item.id} failed: {e}") from e

        return analysis
