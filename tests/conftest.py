"""
Shared fixtures.

``FakeEmbedder`` is a deterministic bag-of-words embedder: each distinct
token gets its own dimension, so cosine distances between short sentences
can be worked out by hand.
"""

from typing import Any, Dict, List, Optional, Sequence

import pytest

from kb_search_server.core.retry import NO_RETRY
from kb_search_server.embeddings.index import FaissChunkStore
from kb_search_server.embeddings.indexer import IndexingService
from kb_search_server.embeddings.models import DistanceMeasure, TaskType
from kb_search_server.retrieval.prioritizer import build_strategy
from kb_search_server.retrieval.relevance import RelevanceConfigProvider
from kb_search_server.retrieval.service import KnowledgeBaseSearch


class FakeEmbedder:
    model_name = "fake-bag-of-words"

    def __init__(self, dim: int = 128):
        self.dim = dim
        self.vocab: Dict[str, int] = {}
        self.calls: List[tuple] = []

    def _token(self, token: str) -> str:
        # "returns" and "return" share a dimension
        if len(token) > 3 and token.endswith("s"):
            return token[:-1]
        return token

    def vector(self, text: str) -> List[float]:
        vec = [0.0] * self.dim
        for token in text.split():
            key = self._token(token)
            if key not in self.vocab:
                self.vocab[key] = len(self.vocab) % self.dim
            vec[self.vocab[key]] += 1.0
        return vec

    async def embed(self, text: str, task_type: TaskType) -> List[float]:
        self.calls.append((text, task_type))
        return self.vector(text)

    async def embed_many(self, texts: Sequence[str], task_type: TaskType) -> List[List[float]]:
        return [await self.embed(t, task_type) for t in texts]


class MemoryRelevanceStore:
    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self.values = dict(values or {})
        self.reads = 0

    async def read(self) -> Dict[str, Any]:
        self.reads += 1
        return dict(self.values)

    async def write(self, values: Dict[str, Any]) -> None:
        self.values.update(values)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def store():
    return FaissChunkStore(measure=DistanceMeasure.COSINE)


@pytest.fixture
def indexer(store, embedder):
    return IndexingService(store, embedder)


@pytest.fixture
def make_search(store, embedder):
    """Factory for a search façade over the shared store and embedder."""

    def _make(strategy: str = "tiered", threshold: Optional[float] = None, index=None):
        values = {"distance_threshold": threshold} if threshold is not None else {}
        provider = RelevanceConfigProvider(
            MemoryRelevanceStore(values), DistanceMeasure.COSINE, ttl=0
        )
        return KnowledgeBaseSearch(
            embedder=embedder,
            strategy=build_strategy(strategy, index or store, DistanceMeasure.COSINE, NO_RETRY),
            relevance=provider,
        )

    return _make
