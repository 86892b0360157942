"""
Source Routes

This module exposes endpoints for managing knowledge sources:
- Creating a source and queueing its text for indexing
- Listing and inspecting sources with their indexing status
- Re-indexing, moving between priority levels, and deleting

Deleting a source removes every chunk it owns; moving it re-tags every
chunk with the new level. Both go through the same per-source guard as
indexing, so a source that is currently being processed answers 409.

Every write endpoint requires the admin key (see `verify_admin`).
"""

from fastapi import APIRouter, Depends, Query, Response, status
from typing import List, Annotated, Optional

from .models import (
    OperationResult,
    SourceCreateRequest,
    SourceMoveRequest,
    SourceReindexRequest,
    SourceResponse,
)
from .dependencies import get_indexing_queue, get_indexing_service, get_store, verify_admin
from ..config import settings
from ..core.errors import InvalidLevelError, SourceBusyError, SourceNotFoundError
from ..embeddings.indexer import IndexingService
from ..embeddings.models import IndexingStatus, Level, Source, parse_level
from ..embeddings.protocols import KnowledgeStore
from ..embeddings.queue import IndexingJob, IndexingQueue

router = APIRouter(prefix="/sources", tags=["sources"])


# ---------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------

def _require_level(value: str) -> Level:
    level = parse_level(value)
    if level is None:
        raise InvalidLevelError(
            f"Unknown level {value!r}; expected one of: "
            + ", ".join(l.value for l in Level)
        )
    return level


async def _require_source(store: KnowledgeStore, source_id: str) -> Source:
    source = await store.get_source(source_id)
    if source is None:
        raise SourceNotFoundError(f"Source '{source_id}' not found.")
    return source


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------

@router.post(
    "/",
    response_model=SourceResponse,
    summary="Create a source and index its text",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_admin)],
)
async def create_source(
    req: SourceCreateRequest,
    response: Response,
    store: Annotated[KnowledgeStore, Depends(get_store)],
    indexer: Annotated[IndexingService, Depends(get_indexing_service)],
    queue: Annotated[IndexingQueue, Depends(get_indexing_queue)],
    wait: bool = Query(False, description="Index before responding"),
) -> SourceResponse:
    """
    Register a new source.

    By default the text is queued for background indexing and the source is
    returned in ``pending`` state. With ``wait=true`` indexing runs inline
    and the indexed source is returned.
    """
    source = Source(
        name=req.name,
        level=_require_level(req.level),
        topic=req.topic,
        description=req.description,
        download_url=req.download_url,
    )

    if wait:
        indexed = await indexer.create_and_index(source, req.text)
        response.status_code = status.HTTP_201_CREATED
        return SourceResponse.from_source(indexed)

    await store.create_source(source)
    await queue.enqueue(IndexingJob(source_id=source.id, content=req.text))
    return SourceResponse.from_source(source)


@router.get(
    "/",
    response_model=List[SourceResponse],
    summary="List sources",
)
async def list_sources(
    store: Annotated[KnowledgeStore, Depends(get_store)],
    level: Optional[str] = Query(None),
) -> List[SourceResponse]:
    level_filter = _require_level(level) if level else None
    sources = await store.list_sources(level_filter)
    return [SourceResponse.from_source(s) for s in sources]


@router.get(
    "/{source_id}",
    response_model=SourceResponse,
    summary="Get one source with its indexing status",
)
async def get_source(
    source_id: str,
    store: Annotated[KnowledgeStore, Depends(get_store)],
) -> SourceResponse:
    return SourceResponse.from_source(await _require_source(store, source_id))


@router.delete(
    "/{source_id}",
    response_model=OperationResult,
    summary="Delete a source and all of its chunks",
    dependencies=[Depends(verify_admin)],
)
async def delete_source(
    source_id: str,
    indexer: Annotated[IndexingService, Depends(get_indexing_service)],
) -> OperationResult:
    removed = await indexer.delete_source(source_id)
    return OperationResult(status="deleted", count=removed)


@router.post(
    "/{source_id}/move",
    response_model=SourceResponse,
    summary="Move a source to another priority level",
    dependencies=[Depends(verify_admin)],
)
async def move_source(
    source_id: str,
    req: SourceMoveRequest,
    indexer: Annotated[IndexingService, Depends(get_indexing_service)],
) -> SourceResponse:
    moved = await indexer.move_source(source_id, _require_level(req.level))
    return SourceResponse.from_source(moved)


@router.post(
    "/{source_id}/reindex",
    response_model=OperationResult,
    summary="Replace a source's chunks with freshly indexed text",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_admin)],
)
async def reindex_source(
    source_id: str,
    req: SourceReindexRequest,
    store: Annotated[KnowledgeStore, Depends(get_store)],
    queue: Annotated[IndexingQueue, Depends(get_indexing_queue)],
) -> OperationResult:
    source = await _require_source(store, source_id)
    if source.indexing_status is IndexingStatus.PROCESSING and not source.claim_expired(
        settings.processing_lease_seconds
    ):
        raise SourceBusyError(f"Source {source_id} is already being processed.")

    qsize = await queue.enqueue(IndexingJob(source_id=source_id, content=req.text))
    return OperationResult(status="queued", details={"queue_size": qsize})
