"""
External Vector Index Client

Queries a managed vector-search endpoint that knows only chunk ids and
vectors (Vertex AI Vector Search ``findNeighbors`` wire format), then
hydrates each returned id from the chunk store.

Level and topic filters are sent as ``restricts`` tags and re-checked after
hydration. Hydration failures drop that one candidate; they are never
retried and never fail the query.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .models import Chunk, DistanceMeasure, SearchFilters
from .protocols import ChunkStore
from ..config import settings
from ..core.errors import IndexQueryError, IndexUnavailableError

logger = logging.getLogger("kb.remote_index")


class RemoteVectorIndex:
    """
    Nearest-neighbour search against an external index service.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        url: Optional[str] = None,
        token: Optional[str] = None,
        deployed_index_id: Optional[str] = None,
        measure: DistanceMeasure = DistanceMeasure.COSINE,
        reports_similarity: Optional[bool] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if token is None and settings.remote_index_token is not None:
            token = settings.remote_index_token.get_secret_value()

        self._chunk_store = chunk_store
        self.url = url or settings.remote_index_url
        self.token = token
        self.deployed_index_id = deployed_index_id or settings.remote_index_deployed_id
        self.measure = measure
        self.reports_similarity = (
            settings.remote_index_reports_similarity
            if reports_similarity is None
            else reports_similarity
        )
        self.timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def find_nearest(
        self,
        vector: Sequence[float],
        k: int,
        measure: DistanceMeasure,
        filters: Optional[SearchFilters] = None,
    ) -> List[Tuple[Chunk, float]]:
        if not self.url or not self.deployed_index_id:
            raise IndexUnavailableError(
                "Remote vector index is not configured "
                "(remote_index_url / remote_index_deployed_id)."
            )
        if measure is not self.measure:
            raise IndexQueryError(
                f"Remote index serves {self.measure.value} distance, "
                f"query asked for {measure.value}."
            )
        if k <= 0:
            return []

        data = await self._post(self._build_payload(vector, k, filters))
        neighbors = self._parse_neighbors(data)

        results: List[Tuple[Chunk, float]] = []
        for chunk_id, raw in neighbors:
            chunk = await self._hydrate(chunk_id)
            if chunk is None:
                continue
            if filters is not None and not filters.matches(chunk):
                continue
            results.append((chunk, self._to_distance(raw)))

        results.sort(key=lambda pair: pair[1])
        return results[:k]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        vector: Sequence[float],
        k: int,
        filters: Optional[SearchFilters],
    ) -> Dict[str, Any]:
        restricts: List[Dict[str, Any]] = []
        if filters is not None:
            if filters.levels is not None:
                restricts.append({"namespace": "level", "allowList": list(filters.levels)})
            if filters.topic is not None:
                restricts.append({"namespace": "topic", "allowList": [filters.topic]})

        datapoint: Dict[str, Any] = {"featureVector": [float(x) for x in vector]}
        if restricts:
            datapoint["restricts"] = restricts

        return {
            "deployedIndexId": self.deployed_index_id,
            "queries": [{"datapoint": datapoint, "neighborCount": k}],
            "returnFullDatapoint": False,
        }

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error("Remote index rejected query (HTTP %d)", status_code)
            if status_code in (401, 403, 404):
                raise IndexUnavailableError(
                    f"Remote index unavailable (HTTP {status_code})."
                ) from exc
            raise IndexQueryError(
                f"Remote index returned HTTP {status_code}.",
                transient=status_code == 429 or status_code >= 500,
            ) from exc
        except httpx.ConnectError as exc:
            raise IndexUnavailableError(
                f"Remote index unreachable: {type(exc).__name__}",
                transient=True,
            ) from exc
        except httpx.HTTPError as exc:
            raise IndexQueryError(
                f"Remote index request failed: {type(exc).__name__}",
                transient=True,
            ) from exc

        try:
            return response.json()
        except ValueError as exc:
            raise IndexQueryError("Remote index response is not valid JSON.") from exc

    @staticmethod
    def _parse_neighbors(data: Any) -> List[Tuple[str, float]]:
        """
        Extract (datapoint id, distance) pairs.

        Expected shape:
            {"nearestNeighbors": [{"neighbors": [
                {"datapoint": {"datapointId": "..."}, "distance": 0.12}, ...]}]}
        """
        if not isinstance(data, dict):
            raise IndexQueryError("Remote index response must be an object.")

        groups = data.get("nearestNeighbors") or []
        if not groups:
            return []

        neighbors = groups[0].get("neighbors") or []
        parsed: List[Tuple[str, float]] = []
        for neighbor in neighbors:
            try:
                chunk_id = neighbor["datapoint"]["datapointId"]
                distance = float(neighbor.get("distance", 0.0))
            except (KeyError, TypeError, ValueError) as exc:
                raise IndexQueryError("Malformed neighbor in remote index response.") from exc
            parsed.append((str(chunk_id), distance))
        return parsed

    def _to_distance(self, raw: float) -> float:
        # Euclidean endpoints always report a distance
        if self.reports_similarity and self.measure is DistanceMeasure.COSINE:
            return min(2.0, max(0.0, 1.0 - raw))
        return raw

    async def _hydrate(self, chunk_id: str) -> Optional[Chunk]:
        try:
            chunk = await self._chunk_store.get_chunk(chunk_id)
        except Exception:
            logger.warning("Dropping candidate %s: hydration failed", chunk_id, exc_info=True)
            return None
        if chunk is None:
            logger.warning("Dropping candidate %s: not found in chunk store", chunk_id)
        return chunk
