"""
End-to-end retrieval over the FAISS store with the bag-of-words embedder.

Hand-computed cosine distances for the return-policy corpus and the query
"how many days to return an item":

    "The return window is 30 days."   High  ~0.691
    "Returns require a receipt."      High  ~0.811
    "Our store hours are 9 to 5."     Low   ~0.857
"""

import asyncio

import pytest

from kb_search_server.core.errors import (
    EmbeddingError,
    IndexUnavailableError,
    RetrievalTimeoutError,
)
from kb_search_server.core.retry import NO_RETRY
from kb_search_server.embeddings.models import DistanceMeasure, Level, Source, TaskType
from kb_search_server.retrieval.prioritizer import build_strategy
from kb_search_server.retrieval.relevance import RelevanceConfigProvider
from kb_search_server.retrieval.service import KnowledgeBaseSearch, SearchOptions

from conftest import MemoryRelevanceStore

QUERY = "how many days to return an item"
WINDOW = "The return window is 30 days."
HOURS = "Our store hours are 9 to 5."
RECEIPT = "Returns require a receipt."


@pytest.fixture
async def corpus(indexer):
    await indexer.create_and_index(Source(name="window.txt", level=Level.HIGH), WINDOW)
    await indexer.create_and_index(Source(name="hours.txt", level=Level.LOW), HOURS)
    await indexer.create_and_index(Source(name="receipt.txt", level=Level.HIGH), RECEIPT)


# ---------------------------------------------------------------------
# End-to-end scenario
# ---------------------------------------------------------------------

async def test_return_policy_question_tiered(corpus, make_search):
    search = make_search("tiered", threshold=0.9)

    results = await search.search(QUERY)

    assert [r.text for r in results] == [WINDOW, RECEIPT]
    assert all(r.level == "High" for r in results)
    assert results[0].distance < results[1].distance
    assert results[0].distance == pytest.approx(0.691, abs=0.01)


async def test_return_policy_question_flat(corpus, make_search):
    search = make_search("flat", threshold=0.9)

    results = await search.search(QUERY)

    assert [r.text for r in results] == [WINDOW, RECEIPT, HOURS]
    assert results[2].level == "Low"


async def test_result_carries_citation_metadata(corpus, make_search):
    results = await make_search(threshold=0.9).search(QUERY)

    top = results[0]
    assert top.source_name == "window.txt"
    assert top.chunk_number == 1
    assert top.source_id


# ---------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------

@pytest.mark.parametrize("strategy", ["tiered", "flat"])
async def test_verbatim_chunk_text_matches_itself(corpus, make_search, strategy):
    results = await make_search(strategy, threshold=0.5).search(RECEIPT)

    assert results[0].text == RECEIPT
    assert results[0].distance == pytest.approx(0.0, abs=1e-5)


async def test_more_permissive_threshold_never_returns_fewer_results(corpus, make_search):
    counts = []
    for threshold in [0.0, 0.5, 0.7, 0.82, 0.86, 0.9, 1.2, 2.0]:
        results = await make_search("flat", threshold=threshold).search(QUERY)
        counts.append(len(results))

    assert counts == sorted(counts)
    assert counts[0] == 0
    assert counts[-1] == 3


async def test_low_tier_excluded_even_when_closer(indexer, make_search):
    await indexer.create_and_index(
        Source(name="policy.txt", level=Level.HIGH), "Store policy covers returns."
    )
    await indexer.create_and_index(
        Source(name="hours.txt", level=Level.LOW), HOURS
    )
    query = "what are the store hours"

    tiered = await make_search("tiered", threshold=1.0).search(query)
    flat = await make_search("flat", threshold=1.0).search(query)

    assert [r.source_name for r in tiered] == ["policy.txt"]
    assert flat[0].level == "High"
    assert flat[1].level == "Low"
    assert flat[1].distance < flat[0].distance


async def test_strict_threshold_returns_empty_list(corpus, make_search):
    results = await make_search(threshold=0.0).search(QUERY)
    assert results == []


async def test_embedding_outage_is_an_error_not_empty(corpus, store):
    class DownEmbedder:
        model_name = "down"

        async def embed(self, text, task_type):
            raise EmbeddingError("provider down")

        async def embed_many(self, texts, task_type):
            raise EmbeddingError("provider down")

    search = KnowledgeBaseSearch(
        embedder=DownEmbedder(),
        strategy=build_strategy("tiered", store, DistanceMeasure.COSINE, NO_RETRY),
        relevance=RelevanceConfigProvider(MemoryRelevanceStore(), DistanceMeasure.COSINE),
    )

    with pytest.raises(EmbeddingError):
        await search.search(QUERY)


async def test_index_outage_is_an_error_not_empty(corpus, make_search):
    class DownIndex:
        async def find_nearest(self, vector, k, measure, filters=None):
            raise IndexUnavailableError("index down")

    search = make_search("tiered", threshold=0.9, index=DownIndex())

    with pytest.raises(IndexUnavailableError):
        await search.search(QUERY)


# ---------------------------------------------------------------------
# Façade behaviour
# ---------------------------------------------------------------------

async def test_query_is_normalized_and_embedded_as_query(corpus, make_search, embedder):
    embedder.calls.clear()
    await make_search(threshold=0.9).search("  How many DAYS to return an item?? ")

    assert embedder.calls == [(QUERY, TaskType.RETRIEVAL_QUERY)]


async def test_punctuation_only_query_skips_providers(corpus, make_search, embedder):
    embedder.calls.clear()
    results = await make_search().search("?!")

    assert results == []
    assert embedder.calls == []


async def test_limit_truncates_results(corpus, make_search):
    results = await make_search("flat", threshold=0.9).search(
        QUERY, SearchOptions(limit=1)
    )
    assert [r.text for r in results] == [WINDOW]


async def test_level_filter_restricts_tiers(corpus, make_search):
    results = await make_search("tiered", threshold=0.9).search(
        QUERY, SearchOptions(levels=["Low"])
    )
    assert [r.text for r in results] == [HOURS]


async def test_per_call_threshold_override(corpus, make_search):
    search = make_search("tiered", threshold=0.9)
    results = await search.search(QUERY, SearchOptions(distance_threshold=0.7))
    assert [r.text for r in results] == [WINDOW]


async def test_diagnostics_report_threshold_origin(corpus, make_search):
    report = await make_search("tiered").search_with_diagnostics(QUERY)

    assert report.threshold_source == "default"
    assert report.strategy == "tiered"
    assert report.measure is DistanceMeasure.COSINE
    assert report.tiers_searched[0] == "High"
    assert report.normalized_query == QUERY


async def test_slow_search_times_out(corpus, store):
    class SlowEmbedder:
        model_name = "slow"

        async def embed(self, text, task_type):
            await asyncio.sleep(5)
            return [1.0]

        async def embed_many(self, texts, task_type):
            return [await self.embed(t, task_type) for t in texts]

    search = KnowledgeBaseSearch(
        embedder=SlowEmbedder(),
        strategy=build_strategy("tiered", store, DistanceMeasure.COSINE, NO_RETRY),
        relevance=RelevanceConfigProvider(MemoryRelevanceStore(), DistanceMeasure.COSINE),
        timeout=0.05,
    )

    with pytest.raises(RetrievalTimeoutError):
        await search.search(QUERY)
