"""
Dependency providers for the API layer.

Each provider returns a process-wide instance built from ``settings``.
Tests replace them through ``app.dependency_overrides``.
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, Query, status

from ..config import settings
from ..core.retry import RetryPolicy
from ..embeddings.embedder import Embedder
from ..embeddings.index import FaissChunkStore
from ..embeddings.indexer import IndexingService
from ..embeddings.models import DistanceMeasure
from ..embeddings.protocols import KnowledgeStore, NearestNeighborIndex
from ..embeddings.queue import IndexingQueue, indexing_queue
from ..embeddings.remote_index import RemoteVectorIndex
from ..llm.client import LLMClient
from ..retrieval.prioritizer import SearchStrategy, build_strategy
from ..retrieval.relevance import JsonRelevanceConfigStore, RelevanceConfigProvider
from ..retrieval.service import KnowledgeBaseSearch

logger = logging.getLogger("kb.dependencies")


def get_measure() -> DistanceMeasure:
    return DistanceMeasure(settings.distance_measure)


@lru_cache
def get_store() -> KnowledgeStore:
    measure = get_measure()

    if settings.vector_backend == "pgvector":
        from ..db import PgVectorStore, get_session_factory

        logger.info("Using pgvector knowledge store (%s distance)", measure.value)
        return PgVectorStore(get_session_factory(), measure)

    store = FaissChunkStore(
        measure=measure,
        index_path=settings.vector_index_path,
        meta_path=settings.vector_meta_path,
    )
    store.load()
    logger.info("Using FAISS knowledge store (%s distance)", measure.value)
    return store


@lru_cache
def get_index() -> NearestNeighborIndex:
    """Remote index when configured, otherwise the store searches itself."""
    if settings.remote_index_url:
        return RemoteVectorIndex(
            chunk_store=get_store(),
            measure=get_measure(),
            timeout=settings.search_timeout_seconds,
        )
    return get_store()


@lru_cache
def get_embedder() -> Embedder:
    return Embedder()


@lru_cache
def get_relevance_provider() -> RelevanceConfigProvider:
    if settings.vector_backend == "pgvector":
        from ..db import PgRelevanceConfigStore, get_session_factory

        store = PgRelevanceConfigStore(get_session_factory())
    else:
        store = JsonRelevanceConfigStore(settings.relevance_config_path)
    return RelevanceConfigProvider(store, get_measure())


@lru_cache
def get_strategy() -> SearchStrategy:
    return build_strategy(
        settings.retrieval_strategy,
        get_index(),
        get_measure(),
        RetryPolicy.from_settings(),
    )


@lru_cache
def get_search_service() -> KnowledgeBaseSearch:
    return KnowledgeBaseSearch(
        embedder=get_embedder(),
        strategy=get_strategy(),
        relevance=get_relevance_provider(),
    )


@lru_cache
def get_indexing_service() -> IndexingService:
    return IndexingService(get_store(), get_embedder())


def get_indexing_queue() -> IndexingQueue:
    return indexing_queue


@lru_cache
def get_llm_client() -> LLMClient:
    return LLMClient()


# ---------------------------------------------------------------------
# Security Dependency
# ---------------------------------------------------------------------

async def verify_admin(
    x_admin_key: Optional[str] = Header(None, alias="x-admin-key"),
    key: Optional[str] = Query(None)
):
    """
    Verify the request is from an admin using the configured API key.
    Checks header first, then query param.
    """
    expected_key = settings.admin_api_key.get_secret_value() if settings.admin_api_key else None

    if not expected_key:
        # If no key is configured, disable admin access securely
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access is not configured (ADMIN_API_KEY missing)"
        )

    provided_key = x_admin_key or key

    if not provided_key or provided_key != expected_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing admin API key"
        )

