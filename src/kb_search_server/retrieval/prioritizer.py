"""
Relevance Filter & Prioritizer

Turns raw nearest-neighbour candidates into the final ranked context set.
Two strategies exist; a deployment picks exactly one:

- ``TieredSearchStrategy``: search tiers one at a time in priority order and
  return the first tier that has any candidate within the threshold.
- ``FlatSearchStrategy``: one search across all tiers with a larger candidate
  pool, then keep those within the threshold and order by (tier, distance).

Both keep a candidate when ``distance <= threshold`` (smaller is closer).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import settings
from ..core.errors import ConfigurationError, IndexQueryError, IndexUnavailableError
from ..core.retry import RetryPolicy
from ..embeddings.models import (
    LEVEL_ORDER,
    SEARCHABLE_LEVELS,
    Chunk,
    DistanceMeasure,
    Level,
    SearchFilters,
    level_rank,
)
from ..embeddings.protocols import NearestNeighborIndex

logger = logging.getLogger("kb.prioritizer")

Candidate = Tuple[Chunk, float]


@dataclass
class StrategyOutcome:
    """Ranked candidates plus what the strategy did to get them."""

    results: List[Candidate]
    tiers_searched: List[str] = field(default_factory=list)
    tier_errors: Dict[str, str] = field(default_factory=dict)


def within_threshold(candidates: Sequence[Candidate], threshold: float) -> List[Candidate]:
    return [(chunk, distance) for chunk, distance in candidates if distance <= threshold]


def resolve_tiers(levels: Optional[Sequence[str]] = None) -> List[Level]:
    """
    Tiers to search, in priority order.

    Without a filter the searchable tiers are used; with one, only
    recognised levels survive and unknown strings are dropped.
    """
    if levels is None:
        return list(SEARCHABLE_LEVELS)
    requested = {l.value if isinstance(l, Level) else l for l in levels}
    unknown = requested - {l.value for l in LEVEL_ORDER}
    if unknown:
        logger.warning("Ignoring unknown levels in filter: %s", sorted(unknown))
    return [level for level in LEVEL_ORDER if level.value in requested]


class TieredSearchStrategy:
    """
    Priority-tiered sequential search.

    Lower tiers are only consulted when every higher tier came back with
    nothing inside the threshold. A failing tier is skipped, but if every
    tier fails the outage is raised rather than reported as "no matches".
    """

    name = "tiered"

    def __init__(
        self,
        index: NearestNeighborIndex,
        measure: DistanceMeasure,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._index = index
        self.measure = measure
        self._retry = retry_policy or RetryPolicy.from_settings()

    async def run(
        self,
        vector: Sequence[float],
        limit: int,
        threshold: float,
        topic: Optional[str] = None,
        levels: Optional[Sequence[str]] = None,
    ) -> StrategyOutcome:
        tiers = resolve_tiers(levels)
        outcome = StrategyOutcome(results=[])

        for tier in tiers:
            outcome.tiers_searched.append(tier.value)
            filters = SearchFilters.for_levels([tier], topic=topic)
            try:
                candidates = await self._retry.call(
                    f"index query ({tier.value})",
                    lambda: self._index.find_nearest(vector, limit, self.measure, filters),
                )
            except (IndexUnavailableError, IndexQueryError) as exc:
                logger.error("Search in '%s' tier failed: %s", tier.value, exc)
                outcome.tier_errors[tier.value] = type(exc).__name__
                continue

            relevant = within_threshold(candidates, threshold)
            if relevant:
                outcome.results = relevant[:limit]
                return outcome

        if tiers and len(outcome.tier_errors) == len(tiers):
            raise IndexUnavailableError(
                f"Search failed in every tier: {sorted(outcome.tier_errors)}"
            )
        return outcome


class FlatSearchStrategy:
    """
    Single search across all tiers, prioritized in process.

    Candidate pool is ``limit * candidate_multiplier``; survivors are ordered
    by tier rank then distance, keeping index order on ties.
    """

    name = "flat"

    def __init__(
        self,
        index: NearestNeighborIndex,
        measure: DistanceMeasure,
        retry_policy: Optional[RetryPolicy] = None,
        candidate_multiplier: Optional[int] = None,
    ) -> None:
        self._index = index
        self.measure = measure
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._multiplier = max(1, candidate_multiplier or settings.candidate_multiplier)

    async def run(
        self,
        vector: Sequence[float],
        limit: int,
        threshold: float,
        topic: Optional[str] = None,
        levels: Optional[Sequence[str]] = None,
    ) -> StrategyOutcome:
        tiers = resolve_tiers(levels)
        if not tiers:
            return StrategyOutcome(results=[])

        filters = SearchFilters.for_levels(tiers, topic=topic)
        candidates = await self._retry.call(
            "index query (all tiers)",
            lambda: self._index.find_nearest(
                vector, limit * self._multiplier, self.measure, filters
            ),
        )

        relevant = within_threshold(candidates, threshold)
        ranked = sorted(relevant, key=lambda pair: (level_rank(pair[0].level), pair[1]))
        return StrategyOutcome(
            results=ranked[:limit],
            tiers_searched=[t.value for t in tiers],
        )


SearchStrategy = TieredSearchStrategy | FlatSearchStrategy


def build_strategy(
    name: str,
    index: NearestNeighborIndex,
    measure: DistanceMeasure,
    retry_policy: Optional[RetryPolicy] = None,
) -> SearchStrategy:
    if name == "tiered":
        return TieredSearchStrategy(index, measure, retry_policy)
    if name == "flat":
        return FlatSearchStrategy(index, measure, retry_policy)
    raise ConfigurationError(
        f"Unknown retrieval strategy: {name!r}", setting="retrieval_strategy"
    )
