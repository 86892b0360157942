"""
Admin Routes

Operator endpoints for tuning and inspecting the knowledge base.

Security
--------
All endpoints are protected by `verify_admin` which requires:
- `x-admin-key` header OR
- `key` query parameter

Endpoints
---------
- Relevance threshold (read / update)
- Test search with a threshold override and full diagnostics
- Store statistics
- Embedding provider self-test
- Bulk chunk deletion and JSONL export of vectors
"""

import json
import logging
from typing import Annotated, Any, AsyncIterator, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from .models import (
    EmbeddingDiagnostics,
    OperationResult,
    RelevanceSettings,
    RelevanceUpdateRequest,
    StatsResponse,
    TestSearchRequest,
)
from .dependencies import (
    get_embedder,
    get_indexing_queue,
    get_relevance_provider,
    get_search_service,
    get_store,
    verify_admin,
)
from ..embeddings.embedder import Embedder
from ..embeddings.models import Chunk
from ..embeddings.protocols import KnowledgeStore
from ..embeddings.queue import IndexingQueue
from ..retrieval.relevance import RelevanceConfigProvider, ThresholdResolution
from ..retrieval.service import KnowledgeBaseSearch, SearchOptions, SearchReport

logger = logging.getLogger("kb.admin")


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(verify_admin)])


# ---------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------

def _relevance_settings(
    resolution: ThresholdResolution,
    provider: RelevanceConfigProvider,
) -> RelevanceSettings:
    return RelevanceSettings(
        distance_threshold=resolution.value,
        source=resolution.source,
        measure=provider.measure.value,
        clamped=resolution.clamped,
    )


def export_record(chunk: Chunk) -> Dict[str, Any]:
    """
    One line of the vector export, in the managed-index import format.
    """
    return {
        "id": chunk.id,
        "embedding": chunk.embedding,
        "restricts": [
            {"namespace": "sourceId", "allow": [chunk.source_id]},
            {"namespace": "level", "allow": [chunk.level]},
            {"namespace": "topic", "allow": [chunk.topic or ""]},
        ],
    }


async def _export_lines(store: KnowledgeStore) -> AsyncIterator[str]:
    exported = 0
    async for chunk in store.iter_chunks():
        if not chunk.embedding:
            continue
        exported += 1
        yield json.dumps(export_record(chunk)) + "\n"
    logger.info("Exported %d chunk vector(s)", exported)


# ---------------------------------------------------------------------
# Relevance
# ---------------------------------------------------------------------

@router.get("/relevance", response_model=RelevanceSettings)
async def get_relevance(
    provider: Annotated[RelevanceConfigProvider, Depends(get_relevance_provider)],
) -> RelevanceSettings:
    resolution = await provider.get_threshold()
    return _relevance_settings(resolution, provider)


@router.put("/relevance", response_model=RelevanceSettings)
async def update_relevance(
    req: RelevanceUpdateRequest,
    provider: Annotated[RelevanceConfigProvider, Depends(get_relevance_provider)],
) -> RelevanceSettings:
    """
    Store a new distance threshold; ``null`` restores the default.
    Out-of-range values are clamped to the measure's valid range.
    """
    resolution = await provider.set_threshold(req.distance_threshold)
    logger.info(
        "Relevance threshold updated to %.3f (%s)", resolution.value, resolution.source
    )
    return _relevance_settings(resolution, provider)


# ---------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------

@router.post("/test-search", response_model=SearchReport)
async def test_search(
    req: TestSearchRequest,
    service: Annotated[KnowledgeBaseSearch, Depends(get_search_service)],
) -> SearchReport:
    """
    Run a search exactly as the chat path would, and report how the result
    set was produced (threshold and its origin, tiers tried, tier failures).
    """
    return await service.search_with_diagnostics(
        req.query,
        SearchOptions(
            limit=req.limit,
            topic=req.topic,
            levels=req.levels,
            distance_threshold=req.distance_threshold,
        ),
    )


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    store: Annotated[KnowledgeStore, Depends(get_store)],
    queue: Annotated[IndexingQueue, Depends(get_indexing_queue)],
) -> StatsResponse:
    stats = await store.stats()
    return StatsResponse(**stats, queue_size=queue.qsize())


@router.get("/diagnostics/embedding", response_model=EmbeddingDiagnostics)
async def embedding_diagnostics(
    embedder: Annotated[Embedder, Depends(get_embedder)],
) -> EmbeddingDiagnostics:
    result = await embedder.self_test()
    return EmbeddingDiagnostics(model=embedder.model_name, **result)


# ---------------------------------------------------------------------
# Bulk Chunk Operations
# ---------------------------------------------------------------------

@router.delete("/chunks", response_model=OperationResult)
async def delete_all_chunks(
    store: Annotated[KnowledgeStore, Depends(get_store)],
) -> OperationResult:
    removed = await store.delete_all_chunks()
    logger.warning("Deleted all %d chunk(s) from the knowledge base", removed)
    return OperationResult(status="deleted", count=removed)


@router.get("/chunks/export")
async def export_chunks(
    store: Annotated[KnowledgeStore, Depends(get_store)],
) -> StreamingResponse:
    """Stream every chunk vector as JSONL (``id``, ``embedding``, ``restricts``)."""
    return StreamingResponse(
        _export_lines(store),
        media_type="application/x-ndjson",
        headers={"Content-Disposition": 'attachment; filename="embeddings.jsonl"'},
    )
