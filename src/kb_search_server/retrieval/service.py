"""
Knowledge Base Search

The single read-side entry point. One call runs the whole pipeline:

    normalize -> embed (RETRIEVAL_QUERY) -> strategy -> ResultChunk[]

An empty list means "no relevant knowledge" and is never used to signal a
failure; provider failures surface as typed ``RetrievalError`` subclasses.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..config import settings
from ..core.errors import EmbeddingError, RetrievalTimeoutError
from ..embeddings.models import DistanceMeasure, ResultChunk, TaskType
from ..embeddings.protocols import EmbeddingProvider
from .normalizer import normalize
from .prioritizer import SearchStrategy
from .relevance import RelevanceConfigProvider, ThresholdSource

logger = logging.getLogger("kb.search")


@dataclass(frozen=True)
class SearchOptions:
    limit: Optional[int] = None
    topic: Optional[str] = None
    levels: Optional[Sequence[str]] = None
    distance_threshold: Optional[float] = None
    timeout: Optional[float] = None


class SearchReport(BaseModel):
    """Search results plus how they were produced (admin test-search)."""

    query: str
    normalized_query: str
    results: List[ResultChunk] = Field(default_factory=list)
    threshold: float
    threshold_source: ThresholdSource
    threshold_clamped: bool = False
    strategy: str
    measure: DistanceMeasure
    tiers_searched: List[str] = Field(default_factory=list)
    tier_errors: Dict[str, str] = Field(default_factory=dict)


class KnowledgeBaseSearch:
    """
    Retrieval façade.

    Parameters
    ----------
    embedder : EmbeddingProvider
        Produces the query vector. Retries live inside the provider.

    strategy : SearchStrategy
        Tiered or flat prioritizer; retries index calls itself.

    relevance : RelevanceConfigProvider
        Source of the distance threshold.

    timeout : float, optional
        Overall time budget for one search.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        strategy: SearchStrategy,
        relevance: RelevanceConfigProvider,
        timeout: Optional[float] = None,
    ) -> None:
        self._embedder = embedder
        self._strategy = strategy
        self._relevance = relevance
        self.measure = strategy.measure
        self.timeout = settings.search_timeout_seconds if timeout is None else timeout

    @property
    def strategy_name(self) -> str:
        return self._strategy.name

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
    ) -> List[ResultChunk]:
        """
        Return the relevant chunks for ``query``, best first.

        Raises
        ------
        EmbeddingError, IndexUnavailableError, IndexQueryError
            When a provider fails after retries.
        ConfigurationError
            When the threshold or a provider setting is invalid.
        RetrievalTimeoutError
            When the overall time budget is exceeded.
        """
        report = await self.search_with_diagnostics(query, options)
        return report.results

    async def search_with_diagnostics(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
    ) -> SearchReport:
        options = options or SearchOptions()
        timeout = options.timeout if options.timeout is not None else self.timeout

        try:
            return await asyncio.wait_for(self._run(query, options), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Search exceeded %.1fs time budget", timeout)
            raise RetrievalTimeoutError(
                f"Search did not complete within {timeout:.1f}s."
            ) from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(self, query: str, options: SearchOptions) -> SearchReport:
        limit = max(1, options.limit or settings.default_search_limit)
        resolution = await self._relevance.resolve(options.distance_threshold)
        normalized = normalize(query)

        report = SearchReport(
            query=query or "",
            normalized_query=normalized,
            threshold=resolution.value,
            threshold_source=resolution.source,
            threshold_clamped=resolution.clamped,
            strategy=self._strategy.name,
            measure=self.measure,
        )

        if not normalized:
            logger.info("Empty query after normalization; nothing to search")
            return report

        vector = await self._embedder.embed(normalized, TaskType.RETRIEVAL_QUERY)
        if not vector:
            raise EmbeddingError("Embedding provider returned an empty query vector.")

        outcome = await self._strategy.run(
            vector,
            limit=limit,
            threshold=resolution.value,
            topic=options.topic,
            levels=options.levels,
        )

        report.results = [
            ResultChunk.from_chunk(chunk, distance) for chunk, distance in outcome.results
        ]
        report.tiers_searched = outcome.tiers_searched
        report.tier_errors = outcome.tier_errors

        logger.info(
            "Search returned %d chunk(s) (strategy=%s, threshold=%.3f from %s)",
            len(report.results),
            self._strategy.name,
            resolution.value,
            resolution.source,
        )
        return report
