"""
Search Routes

This module defines the knowledge base search endpoint. It is the HTTP face
of the retrieval façade: callers get the ranked chunks to use as context, or
an empty list when nothing in the knowledge base is relevant.
"""

from fastapi import APIRouter, Depends, status
from typing import List, Annotated

from .models import SearchRequest
from .dependencies import get_search_service
from ..embeddings.models import ResultChunk
from ..retrieval.service import KnowledgeBaseSearch, SearchOptions

router = APIRouter(prefix="/search", tags=["search"])


@router.post(
    "/",
    response_model=List[ResultChunk],
    summary="Retrieve relevant knowledge base chunks",
    status_code=status.HTTP_200_OK,
)
async def search(
    req: SearchRequest,
    service: Annotated[KnowledgeBaseSearch, Depends(get_search_service)],
) -> List[ResultChunk]:
    """
    Retrieve the most relevant chunks for a free-text question.

    Parameters
    ----------
    req : SearchRequest
        Contains:
        - query: Search query string
        - limit: Maximum number of chunks to return
        - topic / levels: Optional filters

    Returns
    -------
    List[ResultChunk]
        Ranked chunks, best first. An empty list means no relevant knowledge.
    """
    # Provider failures are typed RetrievalErrors and are mapped to 5xx
    # responses by the registered exception handlers.
    return await service.search(
        req.query,
        SearchOptions(limit=req.limit, topic=req.topic, levels=req.levels),
    )
